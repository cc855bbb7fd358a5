"""
Bid pricing rules.

`validate_bid` is a pure function of the lot's pricing state and a
candidate amount. It either rejects the amount or returns the amount to
record, rounded down onto the price-step grid anchored at the calculated
price:

    calculated = max(0, starting_price - discount)
    running    = highest accepted bid, else calculated
    minimum    = running + step if a bid exists, else calculated
    maximum    = running * 100
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from sqlmodel.ext.asyncio.session import AsyncSession

from hammr.core import ItemStatus
from hammr.db import Item, highest_accepted_bid

MAX_MULTIPLIER = 100


@dataclass(frozen=True)
class LotPricing:
    status: ItemStatus
    starting_price: float
    discount: float
    price_step: float
    highest_bid: Optional[float] = None

    @property
    def calculated_price(self) -> float:
        return max(0.0, self.starting_price - self.discount)

    @property
    def running_price(self) -> float:
        if self.highest_bid is None:
            return self.calculated_price
        return self.highest_bid

    @property
    def min_acceptable(self) -> float:
        if self.highest_bid is None:
            return self.calculated_price
        return self.highest_bid + self.price_step

    @property
    def max_acceptable(self) -> float:
        return self.running_price * MAX_MULTIPLIER


@dataclass(frozen=True)
class Verdict:
    ok: bool
    amount: Optional[float] = None
    error: Optional[str] = None
    running_price: Optional[float] = None
    min_acceptable: Optional[float] = None

    @classmethod
    def reject(cls, error: str, pricing: Optional[LotPricing] = None) -> "Verdict":
        if pricing is None:
            return cls(ok=False, error=error)
        return cls(
            ok=False,
            error=error,
            running_price=pricing.running_price,
            min_acceptable=pricing.min_acceptable,
        )


def _fmt(value: float) -> str:
    return f"{value:g}"


def validate_bid(
    pricing: LotPricing, amount: float, *, dedup_used: bool = False
) -> Verdict:
    if pricing.status != ItemStatus.BEING_SOLD:
        return Verdict.reject("Item is not currently being sold")
    if amount <= 0:
        return Verdict.reject("Bid amount must be positive")
    if dedup_used:
        return Verdict.reject("Bid already processed")

    minimum = pricing.min_acceptable
    maximum = pricing.max_acceptable
    too_low = f"Bid too low. Minimum bid: {_fmt(minimum)}"
    too_high = f"Bid too high. Maximum allowed: {_fmt(maximum)} (running price x {MAX_MULTIPLIER})"

    if amount < minimum:
        return Verdict.reject(too_low, pricing)
    if amount > maximum:
        return Verdict.reject(too_high, pricing)

    # round down onto the step grid instead of rejecting off-step amounts
    adjusted = amount
    if pricing.price_step > 0:
        base = pricing.calculated_price
        steps = math.floor((amount - base) / pricing.price_step)
        adjusted = base + steps * pricing.price_step

    if adjusted < minimum:
        return Verdict.reject(too_low, pricing)
    if adjusted > maximum:
        return Verdict.reject(too_high, pricing)

    return Verdict(
        ok=True,
        amount=adjusted,
        running_price=pricing.running_price,
        min_acceptable=minimum,
    )


async def load_pricing(
    session: AsyncSession, auction_id: int, item_id: int
) -> Optional[LotPricing]:
    item = await session.get(Item, item_id, populate_existing=True, with_for_update=True)
    if item is None:
        return None
    highest = await highest_accepted_bid(session, auction_id, item_id)
    return LotPricing(
        status=item.status,
        starting_price=item.starting_price,
        discount=item.discount,
        price_step=item.price_step,
        highest_bid=highest.amount if highest else None,
    )
