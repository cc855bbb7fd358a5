"""
YouTube live chat reader – YouTube Data API v3.

Resolves:
  • channel id  -> current live video id   (search?eventType=live)
  • video id    -> activeLiveChatId        (videos?part=liveStreamingDetails)
Reads:
  • liveChat/messages pages with nextPageToken + pollingIntervalMillis
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import httpx

from hammr.core import (
    ChatFeed,
    ChatMessage,
    ChatPage,
    StreamRef,
    TransportFailure,
    utcnow,
)
from hammr.settings import FeedCfg

log = logging.getLogger("hammr.youtube")

DEFAULT_INTERVAL_MS = 10_000

# --------------------------------------------------------------------------- #
#  Field masks – only ask for what we read, it is cheaper on quota
# --------------------------------------------------------------------------- #

_VIDEO_FIELDS = "items/liveStreamingDetails/activeLiveChatId"
_CHAT_FIELDS = (
    "items(id,snippet(publishedAt,textMessageDetails/messageText),"
    "authorDetails(displayName,profileImageUrl)),nextPageToken,pollingIntervalMillis"
)


@dataclass
class _Cached:
    chat_id: Optional[str]
    expires_at: float


class YouTubeChatFeed(ChatFeed):
    """Live chat feed backed by the YouTube Data API."""

    def __init__(
        self,
        cfg: FeedCfg,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.cfg = cfg
        self._transport = transport
        self._cache: dict[StreamRef, _Cached] = {}

    # ---------------- public ---------------- #

    async def resolve_chat_session(self, stream: StreamRef) -> Optional[str]:
        now = time.monotonic()
        hit = self._cache.get(stream)
        if hit and now < hit.expires_at:
            log.debug("chat id for %s %s (cached): %s", stream.kind, stream.value, hit.chat_id)
            return hit.chat_id
        self._cache.pop(stream, None)

        video_id = stream.value
        if stream.kind == "channel":
            video_id = await self.live_video_for_channel(stream.value)
        chat_id = await self._live_chat_id(video_id) if video_id else None

        ttl = (
            self.cfg.cache_ttl_success_seconds
            if chat_id
            else self.cfg.cache_ttl_failure_seconds
        )
        self._cache[stream] = _Cached(chat_id, now + ttl)
        log.info("chat id for %s %s: %s", stream.kind, stream.value, chat_id or "none")
        return chat_id

    async def fetch_page(
        self, chat_id: str, page_token: Optional[str] = None
    ) -> ChatPage:
        params = {
            "liveChatId": chat_id,
            "part": "snippet,authorDetails",
            "fields": _CHAT_FIELDS,
        }
        if page_token:
            params["pageToken"] = page_token
        data = await self._get("liveChat/messages", params)
        messages = [m for m in (self._parse_message(i) for i in data.get("items", [])) if m]
        interval = data.get("pollingIntervalMillis") or DEFAULT_INTERVAL_MS
        log.debug("got %d messages, recommended interval %sms", len(messages), interval)
        return ChatPage(
            messages=messages,
            next_page_token=data.get("nextPageToken"),
            recommended_interval_ms=int(interval),
        )

    async def live_video_for_channel(self, channel_id: str) -> Optional[str]:
        data = await self._get(
            "search",
            {"channelId": channel_id, "part": "snippet", "type": "video", "eventType": "live"},
        )
        items = data.get("items") or []
        if not items:
            log.info("no live stream on channel %s", channel_id)
            return None
        return items[0].get("id", {}).get("videoId")

    def invalidate(self, stream: Optional[StreamRef] = None) -> None:
        if stream is None:
            self._cache.clear()
            log.debug("cleared the whole chat id cache")
        else:
            self._cache.pop(stream, None)

    def cache_stats(self) -> dict[str, Any]:
        now = time.monotonic()
        return {
            "size": len(self._cache),
            "entries": [
                {
                    "stream": f"{ref.kind}:{ref.value}",
                    "chat_id": c.chat_id,
                    "expires_in": round(c.expires_at - now, 1),
                }
                for ref, c in self._cache.items()
            ],
        }

    # ---------------- HTTP ---------------- #

    async def _live_chat_id(self, video_id: str) -> Optional[str]:
        data = await self._get(
            "videos", {"id": video_id, "part": "liveStreamingDetails", "fields": _VIDEO_FIELDS}
        )
        items = data.get("items") or []
        if not items:
            return None
        return (items[0].get("liveStreamingDetails") or {}).get("activeLiveChatId")

    async def _get(self, path: str, params: dict[str, str]) -> dict[str, Any]:
        if not self.cfg.api_key:
            raise TransportFailure("YouTube API key not configured")
        async with httpx.AsyncClient(
            base_url=self.cfg.base_url,
            timeout=self.cfg.timeout_seconds,
            transport=self._transport,
        ) as client:
            try:
                r = await client.get(path, params={**params, "key": self.cfg.api_key})
                r.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise TransportFailure(
                    f"YouTube API error: {exc.response.status_code} on {path}"
                ) from exc
            except httpx.HTTPError as exc:
                raise TransportFailure(f"YouTube API unreachable: {exc}") from exc
            return r.json()

    # --------------- PARSE ---------------- #

    @staticmethod
    def _parse_message(item: dict[str, Any]) -> Optional[ChatMessage]:
        msg_id = item.get("id")
        if not msg_id:
            return None
        snippet = item.get("snippet") or {}
        author = item.get("authorDetails") or {}
        text = (snippet.get("textMessageDetails") or {}).get("messageText")
        published = snippet.get("publishedAt")
        return ChatMessage(
            message_id=msg_id,
            author_name=author.get("displayName") or "Unknown User",
            author_avatar=author.get("profileImageUrl") or "",
            published_at=_parse_ts(published) if published else utcnow(),
            text=text,
        )


def _parse_ts(value: str) -> datetime:
    # "2024-05-01T18:03:11.123456+00:00" or "...Z"
    return datetime.fromisoformat(value.replace("Z", "+00:00"))
