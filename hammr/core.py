from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class AuctionStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    READY = "READY"
    STARTED = "STARTED"
    FINISHED = "FINISHED"


class ItemStatus(str, Enum):
    READY = "READY"
    BEING_SOLD = "BEING_SOLD"
    SOLD = "SOLD"
    WITHDRAWN = "WITHDRAWN"


class BidSource(str, Enum):
    MANUAL = "MANUAL"
    CHAT = "CHAT"
    PHONE = "PHONE"
    ONLINE = "ONLINE"


class BidStatus(str, Enum):
    ACCEPTED = "ACCEPTED"
    OUTBID = "OUTBID"


class NotFound(LookupError):
    """Raised when an auction or item row does not exist."""


class ValidationRejected(ValueError):
    """Raised when a bid breaks a pricing or state rule."""


class TransportFailure(RuntimeError):
    """Raised when the chat feed cannot be reached or answers with an error."""


class ConcurrencyConflict(RuntimeError):
    """Raised when another batch or another selling item holds the resource."""


class InvalidTransition(ValueError):
    """Raised for an item status change the selling rules do not allow."""


def utcnow() -> datetime:
    # naive UTC, matching what SQLite hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class StreamRef:
    """Feed identifier: a live video id, or a channel to look one up on."""

    kind: str  # "video" | "channel"
    value: str


@dataclass(frozen=True)
class ChatMessage:
    message_id: str
    author_name: str
    published_at: datetime
    text: Optional[str]
    author_avatar: str = ""


@dataclass(frozen=True)
class ChatPage:
    messages: list[ChatMessage]
    next_page_token: Optional[str]
    recommended_interval_ms: int


@dataclass(frozen=True)
class BidCandidate:
    amount: float
    timestamp: datetime
    author_name: str
    dedup_key: Optional[str] = None
    author_avatar: str = ""


class ChatFeed(ABC):
    """A pluggable live-chat reader."""

    @abstractmethod
    async def resolve_chat_session(self, stream: StreamRef) -> Optional[str]: ...

    @abstractmethod
    async def fetch_page(
        self, chat_id: str, page_token: Optional[str] = None
    ) -> ChatPage: ...

    # Optional: drop cached chat ids (all of them when stream is None)
    def invalidate(self, stream: Optional[StreamRef] = None) -> None: ...
