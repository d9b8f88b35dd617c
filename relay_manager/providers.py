#!/usr/bin/env python3
"""
OAuth Provider Configuration
Static endpoint table per provider; credentials come from RelayConfig
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import ProviderCredentials, RelayConfig

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ["zoom", "github", "gitlab", "google"]

CLIENT_SECRET_BASIC = "client_secret_basic"
CLIENT_SECRET_POST = "client_secret_post"

# Scopes used when a flow is started with env-configured credentials
DEFAULT_SCOPES: Dict[str, List[str]] = {
    "zoom": ["meeting:read", "meeting:write", "user:read"],
    "github": ["repo", "user"],
    "gitlab": ["api", "read_user", "read_repository", "write_repository"],
    "google": ["openid", "email", "profile"],
}

# Scopes used for newly created apps started with dynamic credentials
DYNAMIC_DEFAULT_SCOPES: Dict[str, List[str]] = {
    "zoom": ["meeting:read:meeting", "zoomapp:inmeeting"],
    "github": ["repo", "user"],
    "gitlab": ["api", "read_user", "read_repository"],
    "google": ["openid", "email", "profile"],
}


@dataclass
class ProviderConfig:
    """Endpoints and credentials for one OAuth provider"""
    name: str
    authorization_url: str
    token_url: str
    client_id: str
    client_secret: str
    scopes: List[str]
    additional_params: Dict[str, str] = field(default_factory=dict)
    token_auth_method: str = CLIENT_SECRET_POST
    supports_pkce: bool = True

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)


def get_supported_providers() -> List[str]:
    return list(SUPPORTED_PROVIDERS)


def default_scopes(provider: str, dynamic: bool = False) -> List[str]:
    table = DYNAMIC_DEFAULT_SCOPES if dynamic else DEFAULT_SCOPES
    return list(table.get(provider.lower(), []))


def get_provider_config(provider: str, config: RelayConfig,
                        credentials: Optional[ProviderCredentials] = None) -> Optional[ProviderConfig]:
    """
    Resolve a provider by name (case-insensitive).

    Returns None for unknown providers. `credentials` replaces the configured
    client id/secret, as used by dynamic flows.
    """
    name = provider.lower()
    creds = credentials or config.provider_credentials(name)

    if name == "zoom":
        return ProviderConfig(
            name="zoom",
            authorization_url="https://zoom.us/oauth/authorize",
            token_url="https://zoom.us/oauth/token",
            client_id=creds.client_id,
            client_secret=creds.client_secret,
            scopes=default_scopes("zoom"),
            token_auth_method=CLIENT_SECRET_BASIC,
        )

    if name == "github":
        return ProviderConfig(
            name="github",
            authorization_url="https://github.com/login/oauth/authorize",
            token_url="https://github.com/login/oauth/access_token",
            client_id=creds.client_id,
            client_secret=creds.client_secret,
            scopes=default_scopes("github"),
        )

    if name == "gitlab":
        base = config.gitlab_url
        return ProviderConfig(
            name="gitlab",
            authorization_url=f"{base}/oauth/authorize",
            token_url=f"{base}/oauth/token",
            client_id=creds.client_id,
            client_secret=creds.client_secret,
            scopes=default_scopes("gitlab"),
        )

    if name == "google":
        return ProviderConfig(
            name="google",
            authorization_url="https://accounts.google.com/o/oauth2/v2/auth",
            token_url="https://oauth2.googleapis.com/token",
            client_id=creds.client_id,
            client_secret=creds.client_secret,
            scopes=default_scopes("google"),
            additional_params={"access_type": "offline", "prompt": "consent"},
        )

    logger.debug(f"Unknown OAuth provider requested: {provider}")
    return None


def ensure_https(url: str) -> str:
    """Force https, except for local development hosts"""
    if url.startswith("http://localhost") or url.startswith("http://127.0.0.1"):
        return url
    if url[:7].lower() == "http://":
        return "https://" + url[7:]
    return url


def mask_client_id(client_id: str) -> str:
    return f"{client_id[:8]}..." if client_id else ""
