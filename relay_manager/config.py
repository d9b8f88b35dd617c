#!/usr/bin/env python3
"""
Relay Configuration Module
Loads settings from an optional TOML file, then applies environment overrides
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import toml

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = "settings.toml"


@dataclass
class ServerSettings:
    host: str = "localhost"
    port: int = 3100
    public_url: Optional[str] = None  # falls back to the request origin


@dataclass
class StoreSettings:
    backend: str = "memory"  # memory, redis
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "relay"
    sweep_interval: float = 60.0


@dataclass
class OAuthSettings:
    session_ttl: float = 600.0
    terminal_ttl: float = 300.0
    token_ttl: float = 3600.0
    exchange_retries: int = 2
    exchange_backoff: float = 0.5
    http_timeout: float = 30.0


@dataclass
class WebhookSettings:
    max_queue: int = 100
    session_ttl: float = 3600.0
    event_ttl: float = 300.0


@dataclass
class MCPSettings:
    startup_timeout: float = 30.0
    call_timeout: float = 60.0
    idle_timeout: float = 1800.0
    sweep_interval: float = 60.0
    ping_timeout: float = 5.0
    max_restarts: int = 3
    restart_backoff: float = 1.0


@dataclass
class ProjectSettings:
    encryption_key: Optional[str] = None
    credentials_ttl: float = 30 * 24 * 3600.0
    token_ttl: float = 3600.0


@dataclass
class ProviderCredentials:
    client_id: str = ""
    client_secret: str = ""


@dataclass
class RelayConfig:
    """Complete relay configuration"""
    server: ServerSettings = field(default_factory=ServerSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    oauth: OAuthSettings = field(default_factory=OAuthSettings)
    webhooks: WebhookSettings = field(default_factory=WebhookSettings)
    mcp: MCPSettings = field(default_factory=MCPSettings)
    projects: ProjectSettings = field(default_factory=ProjectSettings)
    providers: Dict[str, ProviderCredentials] = field(default_factory=dict)
    gitlab_url: str = "https://gitlab.com"

    def provider_credentials(self, provider: str) -> ProviderCredentials:
        return self.providers.get(provider.lower(), ProviderCredentials())


# Environment variables consulted per provider, first non-empty wins
PROVIDER_ENV_VARS = {
    "zoom": (("ZOOM_OAUTH_CLIENT_ID", "ZOOM_CLIENT_ID"), ("ZOOM_OAUTH_CLIENT_SECRET", "ZOOM_CLIENT_SECRET")),
    "github": (("GITHUB_OAUTH_CLIENT_ID",), ("GITHUB_OAUTH_CLIENT_SECRET",)),
    "gitlab": (("GITLAB_OAUTH_CLIENT_ID",), ("GITLAB_OAUTH_CLIENT_SECRET",)),
    "google": (("GOOGLE_OAUTH_CLIENT_ID",), ("GOOGLE_OAUTH_CLIENT_SECRET",)),
}


def _first_env(env: Mapping[str, str], names) -> str:
    for name in names:
        value = env.get(name)
        if value:
            return value
    return ""


def _apply_section(target, values: Dict[str, Any], section: str):
    """Copy known keys from a TOML table onto a settings dataclass"""
    for key, value in values.items():
        if not hasattr(target, key):
            logger.warning(f"Unknown setting [{section}] {key} ignored")
            continue
        current = getattr(target, key)
        try:
            if isinstance(current, bool):
                value = bool(value)
            elif isinstance(current, int):
                value = int(value)
            elif isinstance(current, float):
                value = float(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for [{section}] {key}: {value!r}") from e
        setattr(target, key, value)


def _env_number(env: Mapping[str, str], name: str, cast):
    raw = env.get(name)
    if raw is None or raw == "":
        return None
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigError(f"Environment variable {name} must be a number, got {raw!r}") from e


def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> RelayConfig:
    """
    Build a RelayConfig.

    Args:
        path: TOML settings file. Defaults to $RELAY_SETTINGS or settings.toml;
              a missing default file is not an error, a missing explicit one is.
        env: environment mapping (defaults to os.environ)
    """
    env = os.environ if env is None else env
    config = RelayConfig()

    explicit = path is not None or bool(env.get("RELAY_SETTINGS"))
    settings_path = Path(path or env.get("RELAY_SETTINGS") or DEFAULT_SETTINGS_FILE)

    data: Dict[str, Any] = {}
    if settings_path.exists():
        try:
            data = toml.load(settings_path)
        except (toml.TomlDecodeError, OSError) as e:
            raise ConfigError(f"Failed to read settings file {settings_path}: {e}") from e
        logger.info(f"Loaded settings from {settings_path}")
    elif explicit:
        raise ConfigError(f"Settings file not found: {settings_path}")

    for section in ("server", "store", "oauth", "webhooks", "mcp", "projects"):
        if section in data:
            _apply_section(getattr(config, section), data[section], section)

    if "gitlab_url" in data:
        config.gitlab_url = str(data["gitlab_url"])

    # Environment overrides
    public_url = env.get("PUBLIC_URL") or env.get("VITE_PUBLIC_URL")
    if public_url:
        config.server.public_url = public_url

    port = _env_number(env, "MCP_PROXY_PORT", int)
    if port is not None:
        config.server.port = port

    max_queue = _env_number(env, "WEBHOOK_PROXY_MAX_QUEUE", int)
    if max_queue is not None:
        config.webhooks.max_queue = max_queue

    webhook_ttl = _env_number(env, "WEBHOOK_PROXY_TTL", float)
    if webhook_ttl is not None:
        config.webhooks.session_ttl = webhook_ttl

    if env.get("PROJECT_STORE_ENCRYPTION_KEY"):
        config.projects.encryption_key = env["PROJECT_STORE_ENCRYPTION_KEY"]

    if env.get("RELAY_REDIS_URL"):
        config.store.redis_url = env["RELAY_REDIS_URL"]
        config.store.backend = "redis"

    gitlab_url = env.get("GITLAB_URL") or env.get("VITE_GITLAB_URL")
    if gitlab_url:
        config.gitlab_url = gitlab_url
    config.gitlab_url = config.gitlab_url.rstrip("/")

    # Provider credentials: environment first, settings file wins when set
    file_providers = data.get("providers", {})
    for name, (id_vars, secret_vars) in PROVIDER_ENV_VARS.items():
        creds = ProviderCredentials(
            client_id=_first_env(env, id_vars),
            client_secret=_first_env(env, secret_vars),
        )
        overrides = file_providers.get(name, {})
        if overrides.get("client_id"):
            creds.client_id = str(overrides["client_id"])
        if overrides.get("client_secret"):
            creds.client_secret = str(overrides["client_secret"])
        config.providers[name] = creds

    if config.store.backend not in ("memory", "redis"):
        raise ConfigError(f"Unknown store backend: {config.store.backend}")
    if config.webhooks.max_queue < 1:
        raise ConfigError("webhooks.max_queue must be at least 1")

    return config
