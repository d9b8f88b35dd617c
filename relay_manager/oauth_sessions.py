#!/usr/bin/env python3
"""
OAuth Session and Token Stores

Sessions follow an explicit lifecycle instead of existence-in-map checks:

    created -> authorizing -> code_received -> exchanging -> completed
                                                         +-> failed
    created / authorizing / code_received -> failed   (provider error)
    any non-terminal state -> expired                 (TTL elapsed)

The state parameter index is single-use: it is popped when the callback
arrives, so a replayed callback finds nothing.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .config import OAuthSettings
from .errors import InvalidStateTransition
from .kv_store import Clock, KeyValueStore
from .pkce import generate_pkce, generate_secure_string

logger = logging.getLogger(__name__)

SESSION_NS = "oauth_session"
STATE_NS = "oauth_state"
TOKEN_NS = "oauth_tokens"


class OAuthFlowState(str, Enum):
    CREATED = "created"
    AUTHORIZING = "authorizing"
    CODE_RECEIVED = "code_received"
    EXCHANGING = "exchanging"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATES = {OAuthFlowState.COMPLETED, OAuthFlowState.FAILED, OAuthFlowState.EXPIRED}

ALLOWED_TRANSITIONS = {
    OAuthFlowState.CREATED: {OAuthFlowState.AUTHORIZING, OAuthFlowState.FAILED, OAuthFlowState.EXPIRED},
    OAuthFlowState.AUTHORIZING: {OAuthFlowState.CODE_RECEIVED, OAuthFlowState.FAILED, OAuthFlowState.EXPIRED},
    OAuthFlowState.CODE_RECEIVED: {OAuthFlowState.EXCHANGING, OAuthFlowState.FAILED, OAuthFlowState.EXPIRED},
    OAuthFlowState.EXCHANGING: {OAuthFlowState.COMPLETED, OAuthFlowState.FAILED, OAuthFlowState.EXPIRED},
    OAuthFlowState.COMPLETED: set(),
    OAuthFlowState.FAILED: set(),
    OAuthFlowState.EXPIRED: set(),
}


class RelayModel(BaseModel):
    """camelCase on the wire, snake_case in Python"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_public(self, **kwargs) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, **kwargs)


class DynamicCredentials(RelayModel):
    client_id: str
    client_secret: str
    app_id: Optional[str] = None
    app_name: Optional[str] = None


class OAuthSession(RelayModel):
    id: str
    provider: str
    state: str
    code_verifier: str
    code_challenge: str
    redirect_uri: str
    scopes: List[str] = Field(default_factory=list)
    webcontainer_id: Optional[str] = None
    created_at: int
    expires_at: int
    updated_at: int
    status: OAuthFlowState = OAuthFlowState.CREATED
    error: Optional[str] = None
    dynamic_credentials: Optional[DynamicCredentials] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def summary(self) -> Dict[str, Any]:
        """Public view without the verifier or client secret"""
        data = self.to_public(exclude={"code_verifier", "dynamic_credentials"})
        if self.dynamic_credentials:
            data["appId"] = self.dynamic_credentials.app_id
            data["appName"] = self.dynamic_credentials.app_name
        return data


class OAuthTokens(BaseModel):
    """Token endpoint response; provider-specific extras are kept"""
    model_config = ConfigDict(extra="allow")

    access_token: str
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None


def _ms(clock: Clock) -> int:
    return int(clock() * 1000)


class OAuthSessionStore:
    """OAuth sessions keyed by id, with a single-use index keyed by state"""

    def __init__(self, store: KeyValueStore, settings: OAuthSettings, clock: Clock = time.time):
        self.store = store
        self.settings = settings
        self._clock = clock
        self._lock = asyncio.Lock()

    def _storage_ttl(self, session: OAuthSession) -> float:
        if session.is_terminal:
            return self.settings.terminal_ttl
        remaining = (session.expires_at - _ms(self._clock)) / 1000
        # keep expired sessions readable for terminal_ttl so callers see "expired"
        return max(remaining, 0) + self.settings.terminal_ttl

    async def _save(self, session: OAuthSession):
        await self.store.set(SESSION_NS, session.id, session.model_dump(mode="json"), ttl=self._storage_ttl(session))

    async def create(self, provider: str, scopes: List[str], redirect_uri: str,
                     webcontainer_id: Optional[str] = None,
                     dynamic_credentials: Optional[DynamicCredentials] = None) -> OAuthSession:
        now = _ms(self._clock)
        pkce = generate_pkce()
        session = OAuthSession(
            id=generate_secure_string(16),
            provider=provider,
            state=generate_secure_string(16),
            code_verifier=pkce.code_verifier,
            code_challenge=pkce.code_challenge,
            redirect_uri=redirect_uri,
            scopes=list(scopes),
            webcontainer_id=webcontainer_id,
            created_at=now,
            expires_at=now + int(self.settings.session_ttl * 1000),
            updated_at=now,
            dynamic_credentials=dynamic_credentials,
        )
        await self._save(session)
        await self.store.set(STATE_NS, session.state, session.id, ttl=self.settings.session_ttl)
        logger.debug(f"Created OAuth session {session.id} for {provider}")
        return session

    async def _load(self, session_id: str) -> Optional[OAuthSession]:
        data = await self.store.get(SESSION_NS, session_id)
        if data is None:
            return None
        session = OAuthSession.model_validate(data)
        if not session.is_terminal and _ms(self._clock) >= session.expires_at:
            session.status = OAuthFlowState.EXPIRED
            session.error = "session expired"
            session.updated_at = _ms(self._clock)
            await self._save(session)
            await self.store.delete(STATE_NS, session.state)
            logger.info(f"OAuth session {session_id} expired")
        return session

    async def get(self, session_id: str) -> Optional[OAuthSession]:
        """Any known session, including terminal ones still retained"""
        return await self._load(session_id)

    async def get_active(self, session_id: str) -> Optional[OAuthSession]:
        """Session only if it has not reached a terminal state"""
        session = await self._load(session_id)
        if session is None or session.is_terminal:
            return None
        return session

    async def get_by_state(self, state: str) -> Optional[OAuthSession]:
        """Look up a pending session by state without consuming the state"""
        session_id = await self.store.get(STATE_NS, state)
        if session_id is None:
            return None
        return await self.get_active(session_id)

    async def claim_state(self, state: str) -> Optional[OAuthSession]:
        """
        Consume a state parameter. Only the first caller gets the session;
        later callers (replays) get None.
        """
        session_id = await self.store.pop(STATE_NS, state)
        if session_id is None:
            return None
        session = await self.get_active(session_id)
        if session is None or session.status not in (OAuthFlowState.CREATED, OAuthFlowState.AUTHORIZING):
            return None
        return session

    async def transition(self, session_id: str, target: OAuthFlowState,
                         error: Optional[str] = None) -> OAuthSession:
        async with self._lock:
            session = await self._load(session_id)
            if session is None:
                raise InvalidStateTransition(session_id, "missing", target.value)
            if target not in ALLOWED_TRANSITIONS[session.status]:
                raise InvalidStateTransition(session_id, session.status.value, target.value)

            previous = session.status
            session.status = target
            session.updated_at = _ms(self._clock)
            if error is not None:
                session.error = error
            await self._save(session)

            if target not in (OAuthFlowState.CREATED, OAuthFlowState.AUTHORIZING):
                await self.store.delete(STATE_NS, session.state)

            logger.debug(f"OAuth session {session_id}: {previous.value} -> {target.value}")
            return session

    async def delete(self, session_id: str):
        data = await self.store.pop(SESSION_NS, session_id)
        if data is not None:
            await self.store.delete(STATE_NS, data["state"])

    async def list_sessions(self) -> List[OAuthSession]:
        sessions = []
        for session_id in await self.store.keys(SESSION_NS):
            session = await self._load(session_id)
            if session is not None:
                sessions.append(session)
        return sessions

    async def sweep(self) -> int:
        """Mark overdue sessions expired; the store drops retained ones on its own TTL"""
        expired = 0
        for session_id in await self.store.keys(SESSION_NS):
            data = await self.store.get(SESSION_NS, session_id)
            if data is None:
                continue
            status = OAuthFlowState(data["status"])
            if status not in TERMINAL_STATES and _ms(self._clock) >= data["expires_at"]:
                await self._load(session_id)
                expired += 1
        return expired


class OAuthTokenStore:
    """Issued tokens keyed by OAuth session id, expiring with the token"""

    def __init__(self, store: KeyValueStore, settings: OAuthSettings, namespace: str = TOKEN_NS):
        self.store = store
        self.settings = settings
        self.namespace = namespace

    def _ttl(self, tokens: OAuthTokens) -> float:
        return float(tokens.expires_in) if tokens.expires_in else self.settings.token_ttl

    async def store_tokens(self, key: str, tokens: OAuthTokens):
        await self.store.set(self.namespace, key, tokens.model_dump(mode="json"), ttl=self._ttl(tokens))

    async def get(self, key: str) -> Optional[OAuthTokens]:
        data = await self.store.get(self.namespace, key)
        return OAuthTokens.model_validate(data) if data is not None else None

    async def pop(self, key: str) -> Optional[OAuthTokens]:
        data = await self.store.pop(self.namespace, key)
        return OAuthTokens.model_validate(data) if data is not None else None

    async def has(self, key: str) -> bool:
        return await self.store.get(self.namespace, key) is not None
