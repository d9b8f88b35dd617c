"""Tests for the OAuth session lifecycle and token store."""

from __future__ import annotations

import asyncio

import pytest

from relay_manager.config import OAuthSettings
from relay_manager.errors import InvalidStateTransition
from relay_manager.oauth_sessions import (
    DynamicCredentials,
    OAuthFlowState,
    OAuthSessionStore,
    OAuthTokens,
    OAuthTokenStore,
)
from relay_manager.pkce import verify_pkce


@pytest.fixture
def settings() -> OAuthSettings:
    return OAuthSettings(session_ttl=600, terminal_ttl=300, token_ttl=3600)


@pytest.fixture
def sessions(store, settings, clock) -> OAuthSessionStore:
    return OAuthSessionStore(store, settings, clock=clock)


async def new_session(sessions, **kwargs):
    return await sessions.create("github", ["repo"], "https://relay.example.com", **kwargs)


async def test_create_session(sessions, clock):
    session = await new_session(sessions, webcontainer_id="wc-1")

    assert session.status == OAuthFlowState.CREATED
    assert session.created_at == int(clock.now * 1000)
    assert session.expires_at == session.created_at + 600_000
    assert session.id != session.state
    assert verify_pkce(session.code_verifier, session.code_challenge)
    assert (await sessions.get(session.id)).webcontainer_id == "wc-1"


async def test_state_lookup_does_not_consume(sessions):
    session = await new_session(sessions)

    assert (await sessions.get_by_state(session.state)).id == session.id
    assert (await sessions.get_by_state(session.state)).id == session.id
    assert await sessions.get_by_state("unknown") is None


async def test_claim_state_is_single_use(sessions):
    session = await new_session(sessions)

    claimed = await sessions.claim_state(session.state)
    assert claimed.id == session.id
    assert await sessions.claim_state(session.state) is None


async def test_concurrent_claims_yield_one_session(sessions):
    session = await new_session(sessions)

    results = await asyncio.gather(*(sessions.claim_state(session.state) for _ in range(5)))
    assert sum(1 for r in results if r is not None) == 1


async def test_full_lifecycle(sessions):
    session = await new_session(sessions)
    for target in (
        OAuthFlowState.AUTHORIZING,
        OAuthFlowState.CODE_RECEIVED,
        OAuthFlowState.EXCHANGING,
        OAuthFlowState.COMPLETED,
    ):
        session = await sessions.transition(session.id, target)

    assert session.status == OAuthFlowState.COMPLETED
    assert session.is_terminal
    assert await sessions.get_active(session.id) is None
    assert (await sessions.get(session.id)).status == OAuthFlowState.COMPLETED


async def test_illegal_transition_rejected(sessions):
    session = await new_session(sessions)

    with pytest.raises(InvalidStateTransition) as excinfo:
        await sessions.transition(session.id, OAuthFlowState.COMPLETED)
    assert excinfo.value.current == "created"
    assert excinfo.value.target == "completed"


async def test_terminal_states_are_final(sessions):
    session = await new_session(sessions)
    await sessions.transition(session.id, OAuthFlowState.FAILED, error="access_denied")

    with pytest.raises(InvalidStateTransition):
        await sessions.transition(session.id, OAuthFlowState.AUTHORIZING)
    assert (await sessions.get(session.id)).error == "access_denied"


async def test_transition_of_unknown_session(sessions):
    with pytest.raises(InvalidStateTransition):
        await sessions.transition("missing", OAuthFlowState.AUTHORIZING)


async def test_leaving_authorizing_releases_state(sessions):
    session = await new_session(sessions)
    await sessions.transition(session.id, OAuthFlowState.AUTHORIZING)
    assert await sessions.get_by_state(session.state) is not None

    await sessions.transition(session.id, OAuthFlowState.FAILED)
    assert await sessions.get_by_state(session.state) is None


async def test_overdue_session_reports_expired(sessions, clock):
    session = await new_session(sessions)
    clock.advance(601)

    loaded = await sessions.get(session.id)
    assert loaded.status == OAuthFlowState.EXPIRED
    assert loaded.error == "session expired"
    assert await sessions.claim_state(session.state) is None


async def test_expired_session_eventually_forgotten(sessions, clock):
    session = await new_session(sessions)
    clock.advance(601)
    await sessions.get(session.id)
    clock.advance(301)

    assert await sessions.get(session.id) is None


async def test_sweep_marks_overdue_sessions(sessions, clock):
    first = await new_session(sessions)
    clock.advance(500)
    second = await new_session(sessions)
    clock.advance(200)

    assert await sessions.sweep() == 1
    assert (await sessions.get(first.id)).status == OAuthFlowState.EXPIRED
    assert (await sessions.get(second.id)).status == OAuthFlowState.CREATED


async def test_summary_hides_secrets(sessions):
    session = await new_session(
        sessions,
        dynamic_credentials=DynamicCredentials(
            client_id="app-client", client_secret="app-secret", app_id="app-1", app_name="My App"
        ),
    )

    summary = session.summary()
    assert "codeVerifier" not in summary
    assert "dynamicCredentials" not in summary
    assert "app-secret" not in str(summary)
    assert summary["appName"] == "My App"
    assert summary["codeChallenge"] == session.code_challenge
    assert summary["status"] == "created"


async def test_delete_removes_state_index(sessions):
    session = await new_session(sessions)
    await sessions.delete(session.id)

    assert await sessions.get(session.id) is None
    assert await sessions.claim_state(session.state) is None


async def test_list_sessions(sessions):
    first = await new_session(sessions)
    second = await new_session(sessions)

    ids = {s.id for s in await sessions.list_sessions()}
    assert ids == {first.id, second.id}


async def test_token_store_pop_is_one_time(store, settings, clock):
    tokens = OAuthTokenStore(store, settings)
    await tokens.store_tokens("s1", OAuthTokens(access_token="abc", expires_in=60, id_token="extra"))

    assert await tokens.has("s1")
    popped = await tokens.pop("s1")
    assert popped.access_token == "abc"
    assert popped.model_extra["id_token"] == "extra"
    assert await tokens.pop("s1") is None


async def test_token_store_expires_with_token(store, settings, clock):
    tokens = OAuthTokenStore(store, settings)
    await tokens.store_tokens("short", OAuthTokens(access_token="a", expires_in=60))
    await tokens.store_tokens("default", OAuthTokens(access_token="b"))

    clock.advance(61)
    assert await tokens.get("short") is None
    assert (await tokens.get("default")).access_token == "b"
    clock.advance(3600)
    assert await tokens.get("default") is None
