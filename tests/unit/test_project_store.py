"""Tests for encrypted per-project credentials."""

from __future__ import annotations

import re

import pytest
from cryptography.exceptions import InvalidTag

from relay_manager.config import ProjectSettings
from relay_manager.oauth_sessions import OAuthTokens
from relay_manager.project_store import (
    PROJECT_NS,
    PROJECT_TOKEN_NS,
    ProjectStore,
    SecretBox,
    generate_project_id,
    project_redirect_uri,
)

DAY = 24 * 3600


@pytest.fixture
def settings() -> ProjectSettings:
    return ProjectSettings(encryption_key="test-encryption-key", credentials_ttl=30 * DAY, token_ttl=3600)


@pytest.fixture
def projects(store, settings, clock) -> ProjectStore:
    return ProjectStore(store, settings, clock=clock)


def test_project_id_format():
    assert re.fullmatch(r"proj_[A-Za-z0-9]{12}", generate_project_id())


def test_redirect_uri_forces_https():
    assert project_redirect_uri("proj_1", "http://relay.example.com/") == (
        "https://relay.example.com/api/oauth/proxy/callback/proj_1"
    )
    assert project_redirect_uri("proj_1", "http://localhost:3100") == (
        "http://localhost:3100/api/oauth/proxy/callback/proj_1"
    )


def test_secret_box_round_trip_and_tamper_detection():
    box = SecretBox("passphrase")
    sealed = box.encrypt("client-secret")

    assert set(sealed) == {"iv", "ciphertext", "tag"}
    assert "client-secret" not in str(sealed)
    assert box.decrypt(sealed) == "client-secret"
    assert box.encrypt("client-secret")["iv"] != sealed["iv"]

    with pytest.raises(InvalidTag):
        SecretBox("other passphrase").decrypt(sealed)


async def test_register_encrypts_secret_at_rest(projects, store, clock):
    project = await projects.register("client-123", "secret-456", app_id="app-1", app_name="Meeting Bot")

    assert project.project_id.startswith("proj_")
    assert project.expires_at == project.created_at + 30 * DAY * 1000
    record = await store.get(PROJECT_NS, project.project_id)
    assert record["client_id"] == "client-123"
    assert "secret-456" not in str(record)

    loaded = await projects.get_credentials(project.project_id)
    assert loaded.client_secret == "secret-456"
    assert loaded.app_name == "Meeting Bot"
    assert loaded.provider == "zoom"


async def test_register_with_explicit_id(projects):
    project = await projects.register("client", "secret", provider="GitHub", project_id="proj_fixed")
    assert project.project_id == "proj_fixed"
    assert project.provider == "github"


async def test_development_key_fallback(store, clock, caplog):
    dev = ProjectStore(store, ProjectSettings(), clock=clock)
    project = await dev.register("client", "secret")

    assert "development key" in caplog.text
    assert (await dev.get_credentials(project.project_id)).client_secret == "secret"


async def test_wrong_key_cannot_read_credentials(projects, store, clock):
    project = await projects.register("client", "secret")
    other = ProjectStore(store, ProjectSettings(encryption_key="another-key"), clock=clock)

    assert await other.get_credentials(project.project_id) is None


async def test_credentials_expire(projects, clock):
    project = await projects.register("client", "secret")
    clock.advance(30 * DAY + 1)

    assert await projects.get_credentials(project.project_id) is None
    assert await projects.sweep() == 0


async def test_sweep_counts_records_past_expiry(projects, store, clock):
    project = await projects.register("client", "secret")
    record = await store.get(PROJECT_NS, project.project_id)
    record["expires_at"] = project.created_at
    await store.set(PROJECT_NS, project.project_id, record)

    assert await projects.sweep() == 1
    assert await store.get(PROJECT_NS, project.project_id) is None


async def test_find_by_client_id(projects):
    project = await projects.register("client-a", "secret")
    await projects.register("client-b", "secret")

    assert await projects.find_by_client_id("client-a") == project.project_id
    assert await projects.find_by_client_id("client-z") is None


async def test_list_projects_masks_client_id(projects, clock):
    first = await projects.register("abcdefghijkl", "secret", app_name="First")
    clock.advance(1)
    second = await projects.register("zyxwvutsrqpo", "secret", app_name="Second")
    await projects.store_tokens(second.project_id, OAuthTokens(access_token="tok"))

    listed = await projects.list_projects()
    assert [p["projectId"] for p in listed] == [first.project_id, second.project_id]
    assert listed[0]["clientId"] == "abcdefgh..."
    assert listed[0]["hasTokens"] is False
    assert listed[1]["hasTokens"] is True
    assert "secret" not in str(listed)


async def test_tokens_are_encrypted_and_taken_once(projects, store):
    project = await projects.register("client", "secret")
    await projects.store_tokens(
        project.project_id,
        OAuthTokens(access_token="access-1", refresh_token="refresh-1", expires_in=3599, scope="meeting:read"),
    )

    record = await store.get(PROJECT_TOKEN_NS, project.project_id)
    assert "access-1" not in str(record)
    assert "refresh-1" not in str(record)

    tokens = await projects.take_tokens(project.project_id)
    assert tokens.access_token == "access-1"
    assert tokens.refresh_token == "refresh-1"
    assert tokens.expires_in == 3599
    assert tokens.scope == "meeting:read"
    assert await projects.take_tokens(project.project_id) is None


async def test_tokens_expire_with_shorter_lifetime(projects, clock):
    project = await projects.register("client", "secret")
    await projects.store_tokens(project.project_id, OAuthTokens(access_token="a", expires_in=60))

    clock.advance(61)
    assert not await projects.has_tokens(project.project_id)


async def test_delete_removes_tokens(projects):
    project = await projects.register("client", "secret")
    await projects.store_tokens(project.project_id, OAuthTokens(access_token="a"))

    assert await projects.delete(project.project_id) is True
    assert await projects.get_credentials(project.project_id) is None
    assert not await projects.has_tokens(project.project_id)
    assert await projects.delete(project.project_id) is False
