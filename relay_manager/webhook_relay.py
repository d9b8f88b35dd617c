#!/usr/bin/env python3
"""
Webhook Relay
Receives webhooks at a stable URL on behalf of apps whose own URLs are
ephemeral. Events are queued per session and the app polls for them:

    provider -> /api/webhook/proxy/{session_id} -> queue -> /api/webhook/poll/{session_id}
"""

import asyncio
import logging
import secrets
import time
from typing import Dict, List, Optional

from pydantic import Field

from .config import WebhookSettings
from .kv_store import Clock, KeyValueStore
from .oauth_sessions import RelayModel

logger = logging.getLogger(__name__)

SESSION_NS = "webhook_session"
QUEUE_NS = "webhook_queue"

# Headers added by the edge/proxy in front of the relay, not by the sender
SKIPPED_HEADER_PREFIXES = ("cf-",)
SKIPPED_HEADERS = {"host"}


class WebhookSession(RelayModel):
    id: str
    created_at: int
    last_poll_at: int
    webcontainer_id: Optional[str] = None
    description: Optional[str] = None
    total_received: int = 0


class WebhookEvent(RelayModel):
    id: str
    session_id: str
    timestamp: int
    method: str
    path: str
    headers: Dict[str, str] = Field(default_factory=dict)
    query: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    content_type: Optional[str] = None


def generate_session_id() -> str:
    return secrets.token_hex(16)


def generate_event_id(now_ms: int) -> str:
    return f"evt_{now_ms}_{secrets.token_hex(8)}"


def filter_headers(headers) -> Dict[str, str]:
    """Drop hop headers that describe the relay's own edge rather than the sender"""
    kept = {}
    for name, value in headers.items():
        lowered = name.lower()
        if lowered in SKIPPED_HEADERS or lowered.startswith(SKIPPED_HEADER_PREFIXES):
            continue
        kept[lowered] = value
    return kept


def build_webhook_url(public_url: str, session_id: str) -> str:
    return f"{public_url.rstrip('/')}/api/webhook/proxy/{session_id}"


def build_poll_url(public_url: str, session_id: str) -> str:
    return f"{public_url.rstrip('/')}/api/webhook/poll/{session_id}"


class WebhookRelay:
    """Webhook sessions and their bounded event queues"""

    def __init__(self, store: KeyValueStore, settings: WebhookSettings, clock: Clock = time.time):
        self.store = store
        self.settings = settings
        self._clock = clock
        self._lock = asyncio.Lock()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _is_expired(self, session: WebhookSession, now_ms: int) -> bool:
        return now_ms - session.last_poll_at > self.settings.session_ttl * 1000

    async def _save(self, session: WebhookSession):
        remaining = session.last_poll_at / 1000 + self.settings.session_ttl - self._clock()
        await self.store.set(SESSION_NS, session.id, session.model_dump(mode="json"), ttl=max(remaining, 0.001))

    async def create_session(self, webcontainer_id: Optional[str] = None,
                             description: Optional[str] = None) -> WebhookSession:
        now = self._now_ms()
        session = WebhookSession(
            id=generate_session_id(),
            created_at=now,
            last_poll_at=now,
            webcontainer_id=webcontainer_id,
            description=description,
        )
        await self._save(session)
        logger.info(f"Created webhook session {session.id}")
        await self.sweep()
        return session

    async def get_session(self, session_id: str) -> Optional[WebhookSession]:
        data = await self.store.get(SESSION_NS, session_id)
        if data is None:
            return None
        session = WebhookSession.model_validate(data)
        if self._is_expired(session, self._now_ms()):
            logger.info(f"Webhook session {session_id} expired")
            await self.delete_session(session_id)
            return None
        return session

    async def delete_session(self, session_id: str) -> bool:
        deleted = await self.store.delete(SESSION_NS, session_id)
        await self.store.delete(QUEUE_NS, session_id)
        if deleted:
            logger.info(f"Deleted webhook session {session_id}")
        return deleted

    async def add_event(self, session_id: str, method: str, path: str, headers: Dict[str, str],
                        query: Dict[str, str], body: Optional[str],
                        content_type: Optional[str]) -> Optional[WebhookEvent]:
        """Queue an incoming webhook; returns None if the session is unknown or expired"""
        session = await self.get_session(session_id)
        if session is None:
            return None

        now = self._now_ms()
        event = WebhookEvent(
            id=generate_event_id(now),
            session_id=session_id,
            timestamp=now,
            method=method.upper(),
            path=path or "/",
            headers=headers,
            query=query,
            body=body,
            content_type=content_type,
        )
        length = await self.store.push(
            QUEUE_NS, session_id, event.model_dump(mode="json"),
            max_len=self.settings.max_queue, ttl=self.settings.session_ttl,
        )
        async with self._lock:
            current = await self.get_session(session_id)
            if current is not None:
                current.total_received += 1
                await self._save(current)
        logger.debug(f"Queued webhook {event.id} for session {session_id} ({length} pending)")
        return event

    async def poll(self, session_id: str, limit: Optional[int] = None) -> List[WebhookEvent]:
        """Remove and return pending events, oldest first. Polling keeps the session alive."""
        async with self._lock:
            session = await self.get_session(session_id)
            if session is None:
                return []
            session.last_poll_at = self._now_ms()
            await self._save(session)
            await self.store.touch(QUEUE_NS, session_id, self.settings.session_ttl)

        await self._drop_stale(session_id)
        raw_events = await self.store.drain(QUEUE_NS, session_id, limit if limit else None)
        return [WebhookEvent.model_validate(raw) for raw in raw_events]

    async def peek(self, session_id: str, limit: Optional[int] = None) -> List[WebhookEvent]:
        if await self.get_session(session_id) is None:
            return []
        raw_events = await self.store.peek(QUEUE_NS, session_id, limit if limit else None)
        return [WebhookEvent.model_validate(raw) for raw in raw_events]

    async def pending_count(self, session_id: str) -> int:
        return await self.store.length(QUEUE_NS, session_id)

    async def queue_status(self, session_id: str) -> Optional[Dict[str, Optional[int]]]:
        if await self.get_session(session_id) is None:
            return None
        oldest = await self.store.peek(QUEUE_NS, session_id, 1)
        return {
            "count": await self.store.length(QUEUE_NS, session_id),
            "oldestTimestamp": oldest[0]["timestamp"] if oldest else None,
        }

    async def _drop_stale(self, session_id: str) -> int:
        cutoff = self._now_ms() - self.settings.event_ttl * 1000
        dropped = await self.store.trim_older_than(QUEUE_NS, session_id, "timestamp", cutoff)
        if dropped:
            logger.debug(f"Dropped {dropped} stale events from session {session_id}")
        return dropped

    async def list_sessions(self) -> List[WebhookSession]:
        await self.sweep()
        sessions = []
        for session_id in await self.store.keys(SESSION_NS):
            session = await self.get_session(session_id)
            if session is not None:
                sessions.append(session)
        return sorted(sessions, key=lambda s: s.created_at)

    async def sweep(self) -> int:
        """Delete inactive sessions and drop stale events from the rest"""
        removed = 0
        for session_id in await self.store.keys(SESSION_NS):
            if await self.get_session(session_id) is None:
                removed += 1
                continue
            await self._drop_stale(session_id)
        if removed:
            logger.info(f"Cleaned up {removed} expired webhook sessions")
        return removed
