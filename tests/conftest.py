from datetime import timedelta
from typing import Optional

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from hammr.bids import BidReconciler
from hammr.core import ChatFeed, ChatMessage, ChatPage, StreamRef, TransportFailure, utcnow
from hammr.db import add_auction, add_item, attach_item, create_tables, make_engine, session_factory
from hammr.joblog import MemoryLogSink, attach_sink, detach_sink
from hammr.lifecycle import ItemStateMachine
from hammr.scheduler import MonitorScheduler
from hammr.settings import PollingCfg


class FakeFeed(ChatFeed):
    """Scripted feed: hands out queued pages (or raises queued errors)."""

    def __init__(self):
        self.chat_id: Optional[str] = "chat-1"
        self.pages: list = []
        self.resolved: list[StreamRef] = []
        self.fetched: list[tuple[str, Optional[str]]] = []
        self.invalidated: list[Optional[StreamRef]] = []

    async def resolve_chat_session(self, stream):
        self.resolved.append(stream)
        return self.chat_id

    async def fetch_page(self, chat_id, page_token=None):
        self.fetched.append((chat_id, page_token))
        if not self.pages:
            return ChatPage([], page_token, 10_000)
        nxt = self.pages.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt

    def invalidate(self, stream=None):
        self.invalidated.append(stream)


def chat(msg_id: str, text: str, author: str = "viewer", seconds: float = 1) -> ChatMessage:
    return ChatMessage(
        message_id=msg_id,
        author_name=author,
        published_at=utcnow() + timedelta(seconds=seconds),
        text=text,
    )


def page(*messages, token="tok-next", interval=10_000) -> ChatPage:
    return ChatPage(list(messages), token, interval)


@pytest.fixture
async def engine(tmp_path):
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path}/test.sqlite")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def sessions(engine):
    return session_factory(engine)


@pytest.fixture
async def auction(sessions):
    async with sessions() as s:
        return await add_auction(s, "Sunday stream", video_id="vid-1")


@pytest.fixture
async def item(sessions, auction):
    """Starting price 100, step 10, attached to `auction`."""
    async with sessions() as s:
        row = await add_item(s, "Vintage radio", 100, price_step=10)
        await attach_item(s, auction.id, row.id)
        return row


@pytest.fixture
def feed():
    return FakeFeed()


@pytest.fixture
def reconciler(sessions):
    return BidReconciler(sessions)


@pytest.fixture
def sink():
    mem = MemoryLogSink()
    handler = attach_sink(mem)
    yield mem
    detach_sink(handler)


@pytest.fixture
async def aps():
    sched = AsyncIOScheduler(timezone="UTC")
    sched.start(paused=True)
    yield sched
    if sched.running:
        sched.shutdown(wait=False)


@pytest.fixture
def polling():
    return PollingCfg()


@pytest.fixture
def monitor(sessions, feed, reconciler, polling, sink, aps):
    return MonitorScheduler(sessions, feed, reconciler, polling, sink=sink, scheduler=aps)


@pytest.fixture
def items(sessions, monitor):
    machine = ItemStateMachine(sessions)
    machine.subscribe(monitor.handle_status_change)
    return machine


@pytest.fixture
def bare_items(sessions):
    return ItemStateMachine(sessions)
