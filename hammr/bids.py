# hammr/bids.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from hammr.core import (
    BidCandidate,
    BidSource,
    BidStatus,
    ChatMessage,
    ItemStatus,
    ValidationRejected,
    as_naive_utc,
    utcnow,
)
from hammr.db import Bid, Item, existing_dedup_keys, winning_bid
from hammr.validation import load_pricing, validate_bid

log = logging.getLogger("hammr.bids")

# only messages that are nothing but digits count as bids ("moon 653" does not)
_BID_RE = re.compile(r"^\d+$")

SessionMaker = Callable[[], AsyncSession]


def extract_candidates(messages: Iterable[ChatMessage]) -> list[BidCandidate]:
    out: list[BidCandidate] = []
    for msg in messages:
        if not msg.text:
            continue
        text = msg.text.strip()
        if not _BID_RE.match(text):
            continue
        amount = int(text)
        if amount <= 0:
            continue
        out.append(
            BidCandidate(
                amount=amount,
                timestamp=msg.published_at,
                author_name=msg.author_name or "Unknown User",
                dedup_key=msg.message_id,
                author_avatar=msg.author_avatar,
            )
        )
    return out


@dataclass
class BatchResult:
    processed: int = 0
    created: int = 0
    errors: list[str] = field(default_factory=list)
    winning_bid: Optional[Bid] = None


@dataclass
class ManualBidResult:
    success: bool
    bid: Optional[Bid] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class BidStats:
    total_bids: int
    unique_bidders: int
    current_price: float
    starting_price: float


class BidReconciler:
    """Turns candidate bids into at most one winning bid per (auction, item)."""

    def __init__(self, sessions: SessionMaker):
        self._sessions = sessions
        # (auction_id, item_id) pairs with a batch currently being reconciled
        self._in_flight: set[tuple[int, int]] = set()

    def is_busy(self, auction_id: int, item_id: int) -> bool:
        return (auction_id, item_id) in self._in_flight

    async def process_incoming_bids(
        self,
        auction_id: int,
        item_id: int,
        candidates: list[BidCandidate],
        source: BidSource = BidSource.CHAT,
    ) -> BatchResult:
        key = (auction_id, item_id)
        if key in self._in_flight:
            log.warning("Batch for %s-%s rejected: another batch in progress", *key)
            return BatchResult(errors=["Processing already in progress for this item"])
        self._in_flight.add(key)
        try:
            return await self._reconcile(auction_id, item_id, candidates, source)
        finally:
            self._in_flight.discard(key)

    async def create_manual_bid(
        self, auction_id: int, item_id: int, bidder_name: str, amount: float
    ) -> ManualBidResult:
        if not bidder_name or not amount:
            return ManualBidResult(False, error="Missing required bid information")
        key = (auction_id, item_id)
        if key in self._in_flight:
            return ManualBidResult(False, error="Processing already in progress for this item")
        self._in_flight.add(key)
        cand = BidCandidate(amount=amount, timestamp=utcnow(), author_name=bidder_name)
        try:
            async with self._sessions() as session:
                bid = await self._accept(session, auction_id, item_id, cand, BidSource.MANUAL)
        except ValidationRejected as exc:
            return ManualBidResult(False, error=str(exc))
        except SQLAlchemyError:
            log.exception("Manual bid for %s-%s failed", auction_id, item_id)
            return ManualBidResult(False, error="Failed to create bid")
        finally:
            self._in_flight.discard(key)
        log.info("Manual bid %s by %s on %s-%s", bid.amount, bidder_name, auction_id, item_id)
        return ManualBidResult(True, bid=bid)

    # ---- reads ---------------------------------------------------------

    async def current_winning_bid(self, auction_id: int, item_id: int) -> Optional[Bid]:
        async with self._sessions() as session:
            return await winning_bid(session, item_id, auction_id)

    async def bids_for_item(self, auction_id: int, item_id: int, limit: int = 10) -> list[Bid]:
        async with self._sessions() as session:
            stmt = (
                select(Bid)
                .where(Bid.auction_id == auction_id, Bid.item_id == item_id)
                .order_by(Bid.amount.desc(), Bid.created_at.desc())
                .limit(limit)
            )
            return list((await session.exec(stmt)).all())

    async def item_bid_stats(self, auction_id: int, item_id: int) -> BidStats:
        async with self._sessions() as session:
            scope = (Bid.auction_id == auction_id, Bid.item_id == item_id)
            total = (await session.exec(select(func.count(Bid.id)).where(*scope))).one()
            bidders = (
                await session.exec(
                    select(func.count(func.distinct(Bid.bidder_name))).where(*scope)
                )
            ).one()
            winner = await winning_bid(session, item_id, auction_id)
            item = await session.get(Item, item_id)
        return BidStats(
            total_bids=total,
            unique_bidders=bidders,
            current_price=winner.amount if winner else 0.0,
            starting_price=item.starting_price if item else 0.0,
        )

    # ---- internals -----------------------------------------------------

    async def _reconcile(
        self,
        auction_id: int,
        item_id: int,
        candidates: list[BidCandidate],
        source: BidSource,
    ) -> BatchResult:
        async with self._sessions() as session:
            item = await session.get(Item, item_id)
            if (
                item is None
                or item.status != ItemStatus.BEING_SOLD
                or item.selling_started_at is None
            ):
                return BatchResult(errors=["Item is not actively being sold"])
            started = item.selling_started_at

            fresh = [c for c in candidates if as_naive_utc(c.timestamp) >= started]
            if len(fresh) < len(candidates):
                log.debug(
                    "Dropped %d messages older than selling start %s",
                    len(candidates) - len(fresh),
                    started.isoformat(),
                )

            seen = await existing_dedup_keys(
                session, {c.dedup_key for c in fresh if c.dedup_key}
            )
            pending = [c for c in fresh if not c.dedup_key or c.dedup_key not in seen]
            # oldest first; for the same instant the higher bid goes first
            pending.sort(key=lambda c: (as_naive_utc(c.timestamp), -c.amount))

            result = BatchResult()
            for cand in pending:
                result.processed += 1
                try:
                    bid = await self._accept(session, auction_id, item_id, cand, source)
                except ValidationRejected as exc:
                    result.errors.append(f"{cand.author_name} ({cand.amount:g}): {exc}")
                    continue
                except SQLAlchemyError:
                    log.exception("Error storing bid from %s", cand.author_name)
                    result.errors.append(f"{cand.author_name}: Processing error")
                    continue
                result.created += 1
                result.winning_bid = bid
            return result

    async def _accept(
        self,
        session: AsyncSession,
        auction_id: int,
        item_id: int,
        cand: BidCandidate,
        source: BidSource,
    ) -> Bid:
        """Validate and store one bid as the new winner, all in one transaction."""
        try:
            pricing = await load_pricing(session, auction_id, item_id)
            if pricing is None:
                raise ValidationRejected("Item not found")
            used = bool(cand.dedup_key) and bool(
                await existing_dedup_keys(session, {cand.dedup_key})
            )
            verdict = validate_bid(pricing, cand.amount, dedup_used=used)
            if not verdict.ok:
                raise ValidationRejected(verdict.error)

            # a concurrent batch may have landed an equal or higher bid meanwhile
            higher = (
                await session.exec(
                    select(Bid)
                    .where(
                        Bid.auction_id == auction_id,
                        Bid.item_id == item_id,
                        Bid.status == BidStatus.ACCEPTED,
                        Bid.amount >= verdict.amount,
                    )
                    .limit(1)
                )
            ).first()
            if higher is not None:
                raise ValidationRejected("Outbid by higher bid")

            winners = await session.exec(
                select(Bid).where(
                    Bid.auction_id == auction_id,
                    Bid.item_id == item_id,
                    Bid.is_winning == True,  # noqa: E712
                )
            )
            for old in winners.all():
                old.is_winning = False
                old.status = BidStatus.OUTBID
                session.add(old)

            bid = Bid(
                auction_id=auction_id,
                item_id=item_id,
                bidder_name=cand.author_name,
                amount=verdict.amount,
                source=source,
                status=BidStatus.ACCEPTED,
                is_winning=True,
                dedup_key=cand.dedup_key,
                details={
                    "original_amount": cand.amount,
                    "author_avatar": cand.author_avatar,
                    "timestamp": as_naive_utc(cand.timestamp).isoformat(),
                },
            )
            session.add(bid)
            await session.commit()
        except ValidationRejected:
            await session.rollback()
            raise
        except IntegrityError:
            # unique dedup_key: the same message got here twice
            await session.rollback()
            raise ValidationRejected("Bid already processed")
        except SQLAlchemyError:
            await session.rollback()
            raise
        # keep it readable after later rollbacks in the same session
        session.expunge(bid)
        return bid
