# hammr/lifecycle.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional

from sqlalchemy import delete
from sqlmodel import select

from hammr.core import (
    AuctionStatus,
    ChatFeed,
    ConcurrencyConflict,
    InvalidTransition,
    ItemStatus,
    NotFound,
    utcnow,
)
from hammr.db import (
    Auction,
    AuctionItem,
    Item,
    auction_ids_for_item,
    items_in_auction,
    winning_bid,
)

log = logging.getLogger("hammr.lifecycle")

StatusListener = Callable[[int, ItemStatus, Optional[int]], Awaitable[None]]

_ALLOWED: dict[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.READY: frozenset(
        {ItemStatus.BEING_SOLD, ItemStatus.SOLD, ItemStatus.WITHDRAWN}
    ),
    ItemStatus.BEING_SOLD: frozenset(
        {ItemStatus.READY, ItemStatus.SOLD, ItemStatus.WITHDRAWN}
    ),
    ItemStatus.SOLD: frozenset(),
    ItemStatus.WITHDRAWN: frozenset(),
}


@dataclass(frozen=True)
class FinishSummary:
    sold: int
    removed: int
    returned: int


class ItemStateMachine:
    """
    Owns item status changes. At most one item system-wide may be
    BEING_SOLD; every successful change is announced to the listeners
    (the monitor scheduler subscribes here).
    """

    def __init__(self, sessions, listeners: Iterable[StatusListener] = ()):
        self._sessions = sessions
        self._listeners: list[StatusListener] = list(listeners)
        # held from the BEING_SOLD check through the commit; SQLite ignores FOR UPDATE
        self._lock = asyncio.Lock()

    def subscribe(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    async def transition(
        self, item_id: int, new_status: ItemStatus, auction_id: Optional[int] = None
    ) -> Item:
        new_status = ItemStatus(new_status)
        async with self._lock, self._sessions() as session:
            item = await session.get(Item, item_id, with_for_update=True)
            if item is None:
                raise NotFound(f"Item {item_id} not found")
            if new_status not in _ALLOWED[item.status]:
                raise InvalidTransition(
                    f"Cannot move item {item_id} from {item.status.value} to {new_status.value}"
                )

            if new_status == ItemStatus.BEING_SOLD:
                other = (
                    await session.exec(
                        select(Item)
                        .where(Item.status == ItemStatus.BEING_SOLD, Item.id != item_id)
                        .with_for_update()
                    )
                ).first()
                if other is not None:
                    raise ConcurrencyConflict(
                        f"Item {other.id} ({other.name!r}) is currently being sold; "
                        "finish it first"
                    )
                item.selling_started_at = utcnow()
                await self._mark_started(session, item_id, auction_id)
            else:
                item.selling_started_at = None

            if new_status == ItemStatus.SOLD:
                winner = await winning_bid(session, item_id, auction_id)
                if winner is None:
                    raise InvalidTransition(f"Item {item_id} has no winning bid")
                item.final_price = winner.amount

            previous = item.status
            item.status = new_status
            session.add(item)
            await session.commit()

        log.info("Item %s: %s -> %s", item_id, previous.value, new_status.value)
        await self._emit(item_id, new_status, auction_id)
        return item

    async def start_selling(self, item_id: int, auction_id: Optional[int] = None) -> Item:
        return await self.transition(item_id, ItemStatus.BEING_SOLD, auction_id)

    async def mark_sold(self, item_id: int, auction_id: Optional[int] = None) -> Item:
        return await self.transition(item_id, ItemStatus.SOLD, auction_id)

    async def withdraw(self, item_id: int, auction_id: Optional[int] = None) -> Item:
        return await self.transition(item_id, ItemStatus.WITHDRAWN, auction_id)

    async def return_to_ready(self, item_id: int, auction_id: Optional[int] = None) -> Item:
        return await self.transition(item_id, ItemStatus.READY, auction_id)

    # ---- auction level -------------------------------------------------

    async def start_auction(self, auction_id: int, feed: ChatFeed) -> Auction:
        """Verify the live chat is reachable and move the auction to READY."""
        async with self._sessions() as session:
            auction = await session.get(Auction, auction_id)
            if auction is None:
                raise NotFound(f"Auction {auction_id} not found")
            if auction.status != AuctionStatus.SCHEDULED:
                raise InvalidTransition("Auction must be SCHEDULED to start")
            if not await items_in_auction(session, auction_id):
                raise InvalidTransition("Auction must have at least one item to start")
            stream = auction.stream_ref()
            if stream is None:
                raise InvalidTransition("Auction has no video id or channel id")

            chat_id = await feed.resolve_chat_session(stream)
            if not chat_id:
                raise InvalidTransition(f"No active live chat for {stream.kind} {stream.value}")

            auction.status = AuctionStatus.READY
            session.add(auction)
            await session.commit()
        log.info("Auction %s ready (chat %s)", auction_id, chat_id)
        return auction

    async def finish_auction(self, auction_id: int) -> FinishSummary:
        """
        Close an auction: items still on sale go back to READY, unsold
        items leave the auction, sold ones stay for the results.
        """
        async with self._lock, self._sessions() as session:
            auction = await session.get(Auction, auction_id)
            if auction is None:
                raise NotFound(f"Auction {auction_id} not found")
            if auction.status not in (AuctionStatus.READY, AuctionStatus.STARTED):
                raise InvalidTransition("Can only finish auctions that are READY or STARTED")

            items = await items_in_auction(session, auction_id)
            returned = [i.id for i in items if i.status == ItemStatus.BEING_SOLD]
            unsold = [i.id for i in items if i.status != ItemStatus.SOLD]
            for item in items:
                if item.id in returned:
                    item.status = ItemStatus.READY
                    item.selling_started_at = None
                    session.add(item)
            if unsold:
                await session.exec(
                    delete(AuctionItem).where(
                        AuctionItem.auction_id == auction_id,
                        AuctionItem.item_id.in_(unsold),
                    )
                )
            auction.status = AuctionStatus.FINISHED
            session.add(auction)
            await session.commit()

        for item_id in returned:
            await self._emit(item_id, ItemStatus.READY, auction_id)
        summary = FinishSummary(
            sold=len(items) - len(unsold), removed=len(unsold), returned=len(returned)
        )
        log.info("Auction %s finished: %s", auction_id, summary)
        return summary

    # ---- internals -----------------------------------------------------

    async def _mark_started(self, session, item_id: int, auction_id: Optional[int]) -> None:
        ids = [auction_id] if auction_id else await auction_ids_for_item(session, item_id)
        for aid in ids:
            auction = await session.get(Auction, aid)
            if auction is not None and auction.status == AuctionStatus.READY:
                auction.status = AuctionStatus.STARTED
                session.add(auction)

    async def _emit(self, item_id: int, status: ItemStatus, auction_id: Optional[int]) -> None:
        for listener in self._listeners:
            try:
                await listener(item_id, status, auction_id)
            except Exception:
                # the status change is already committed
                log.exception("Status listener failed for item %s (%s)", item_id, status.value)
