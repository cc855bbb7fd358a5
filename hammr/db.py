# hammr/db.py
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import JSON, Column, UniqueConstraint, func
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import Field, SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from hammr.core import (
    AuctionStatus,
    BidSource,
    BidStatus,
    ItemStatus,
    StreamRef,
    utcnow,
)


class Auction(SQLModel, table=True):
    __tablename__ = "auction"
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = ""
    status: AuctionStatus = Field(default=AuctionStatus.SCHEDULED, index=True)
    video_id: Optional[str] = None
    channel_id: Optional[str] = None
    discount_pool: float = 0
    created_at: datetime = Field(default_factory=utcnow)

    def stream_ref(self) -> Optional[StreamRef]:
        if self.video_id:
            return StreamRef("video", self.video_id)
        if self.channel_id:
            return StreamRef("channel", self.channel_id)
        return None


class Item(SQLModel, table=True):
    __tablename__ = "item"
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = ""
    owner_id: Optional[int] = Field(default=None, index=True)
    status: ItemStatus = Field(default=ItemStatus.READY, index=True)
    starting_price: float
    discount: float = 0
    price_step: float = 1
    selling_started_at: Optional[datetime] = None
    final_price: Optional[float] = None

    @property
    def calculated_price(self) -> float:
        return max(0.0, self.starting_price - self.discount)


class AuctionItem(SQLModel, table=True):
    """Ordered membership of an item in an auction; owned by the auction."""

    __tablename__ = "auction_item"
    __table_args__ = (
        UniqueConstraint("auction_id", "item_id", name="uq_auction_item"),
    )
    id: Optional[int] = Field(default=None, primary_key=True)
    auction_id: int = Field(foreign_key="auction.id", index=True)
    item_id: int = Field(foreign_key="item.id", index=True)
    order: int = 0


class Bid(SQLModel, table=True):
    __tablename__ = "bid"
    id: Optional[int] = Field(default=None, primary_key=True)
    auction_id: int = Field(foreign_key="auction.id", index=True)
    item_id: int = Field(foreign_key="item.id", index=True)
    bidder_name: str
    amount: float
    source: BidSource = BidSource.CHAT
    status: BidStatus = Field(default=BidStatus.ACCEPTED, index=True)
    is_winning: bool = Field(default=False, index=True)
    dedup_key: Optional[str] = Field(default=None, unique=True)
    created_at: datetime = Field(default_factory=utcnow)
    # original requested amount, feed author info
    details: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))


class MonitoringJob(SQLModel, table=True):
    __tablename__ = "monitoring_job"
    auction_id: int = Field(foreign_key="auction.id", primary_key=True)
    item_id: int = Field(foreign_key="item.id", primary_key=True)
    is_active: bool = Field(default=True, index=True)
    last_processed_time: datetime = Field(default_factory=utcnow)
    current_polling_interval: int = 10_000
    pagination_token: Optional[str] = None
    auction_not_found_count: int = 0
    item_not_found_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ---- engine / sessions -----------------------------------------------------


def make_engine(url: str, echo: bool = False) -> AsyncEngine:
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database:
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    return create_async_engine(url, echo=echo)


async def create_tables(engine: AsyncEngine) -> None:
    # TODO(migrations): move to Alembic revisions once the schema settles.
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# ---- setup helpers ---------------------------------------------------------


async def add_auction(
    session: AsyncSession,
    name: str,
    *,
    video_id: Optional[str] = None,
    channel_id: Optional[str] = None,
    discount_pool: float = 0,
) -> Auction:
    if not (video_id or channel_id):
        raise ValueError("An auction needs a video id or a channel id")
    row = Auction(
        name=name, video_id=video_id, channel_id=channel_id, discount_pool=discount_pool
    )
    session.add(row)
    await session.commit()
    await session.refresh(row)
    return row


async def add_item(
    session: AsyncSession,
    name: str,
    starting_price: float,
    *,
    price_step: float = 1,
    discount: float = 0,
    owner_id: Optional[int] = None,
) -> Item:
    row = Item(
        name=name,
        starting_price=starting_price,
        price_step=price_step,
        discount=discount,
        owner_id=owner_id,
    )
    session.add(row)
    await session.commit()
    await session.refresh(row)
    return row


async def attach_item(session: AsyncSession, auction_id: int, item_id: int) -> AuctionItem:
    """Append an item to the end of an auction's running order."""
    last = (
        await session.exec(
            select(func.max(AuctionItem.order)).where(AuctionItem.auction_id == auction_id)
        )
    ).first()
    row = AuctionItem(
        auction_id=auction_id, item_id=item_id, order=0 if last is None else last + 1
    )
    session.add(row)
    await session.commit()
    await session.refresh(row)
    return row


# ---- queries ---------------------------------------------------------------


async def auction_ids_for_item(session: AsyncSession, item_id: int) -> list[int]:
    stmt = (
        select(AuctionItem.auction_id)
        .where(AuctionItem.item_id == item_id)
        .order_by(AuctionItem.id)
    )
    return list((await session.exec(stmt)).all())


async def items_in_auction(session: AsyncSession, auction_id: int) -> list[Item]:
    stmt = (
        select(Item)
        .join(AuctionItem, AuctionItem.item_id == Item.id)
        .where(AuctionItem.auction_id == auction_id)
        .order_by(AuctionItem.order)
    )
    return list((await session.exec(stmt)).all())


async def winning_bid(
    session: AsyncSession, item_id: int, auction_id: Optional[int] = None
) -> Optional[Bid]:
    stmt = select(Bid).where(
        Bid.item_id == item_id,
        Bid.is_winning == True,  # noqa: E712
        Bid.status == BidStatus.ACCEPTED,
    )
    if auction_id is not None:
        stmt = stmt.where(Bid.auction_id == auction_id)
    return (await session.exec(stmt.order_by(Bid.amount.desc()).limit(1))).first()


async def highest_accepted_bid(
    session: AsyncSession, auction_id: int, item_id: int
) -> Optional[Bid]:
    stmt = (
        select(Bid)
        .where(
            Bid.auction_id == auction_id,
            Bid.item_id == item_id,
            Bid.status == BidStatus.ACCEPTED,
        )
        .order_by(Bid.amount.desc())
        .limit(1)
    )
    return (await session.exec(stmt)).first()


async def existing_dedup_keys(session: AsyncSession, keys: set[str]) -> set[str]:
    if not keys:
        return set()
    stmt = select(Bid.dedup_key).where(Bid.dedup_key.in_(keys))
    return set((await session.exec(stmt)).all())


async def discount_used(session: AsyncSession, auction_id: int) -> float:
    """Sum of item discounts drawn from an auction's discount pool."""
    stmt = (
        select(func.coalesce(func.sum(Item.discount), 0))
        .join(AuctionItem, AuctionItem.item_id == Item.id)
        .where(AuctionItem.auction_id == auction_id)
    )
    return float((await session.exec(stmt)).one())


async def items_being_sold(session: AsyncSession) -> list[Item]:
    stmt = select(Item).where(Item.status == ItemStatus.BEING_SOLD)
    return list((await session.exec(stmt)).all())


async def active_jobs(session: AsyncSession) -> list[MonitoringJob]:
    stmt = (
        select(MonitoringJob)
        .where(MonitoringJob.is_active == True)  # noqa: E712
        .order_by(MonitoringJob.auction_id, MonitoringJob.item_id)
    )
    return list((await session.exec(stmt)).all())
