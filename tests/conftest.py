"""Shared fixtures for the relay test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from relay_manager.config import ProviderCredentials, RelayConfig
from relay_manager.kv_store import MemoryKeyValueStore

FIXTURES = Path(__file__).parent / "fixtures"
ECHO_SERVER = FIXTURES / "echo_mcp_server.py"


class FakeClock:
    """Manually advanced replacement for time.time"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryKeyValueStore:
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def relay_config() -> RelayConfig:
    config = RelayConfig()
    config.server.public_url = "https://relay.example.com"
    config.providers["github"] = ProviderCredentials("gh-client-id", "gh-client-secret")
    config.providers["zoom"] = ProviderCredentials("zoom-client-id", "zoom-client-secret")
    config.projects.encryption_key = "test-encryption-key"
    config.oauth.exchange_backoff = 0.0
    return config
