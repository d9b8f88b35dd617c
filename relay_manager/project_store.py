#!/usr/bin/env python3
"""
Project Credential Store
Per-project OAuth app credentials for marketplace-initiated installs, where
the provider redirects to /api/oauth/proxy/callback/{project_id} and the
relay must exchange the code with that project's own client credentials.

Client secrets and issued tokens are encrypted at rest with AES-256-GCM.
"""

import base64
import logging
import os
import secrets
import string
import time
from typing import Any, Dict, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel

from .config import ProjectSettings
from .kv_store import Clock, KeyValueStore
from .oauth_sessions import OAuthTokens
from .providers import ensure_https, mask_client_id

logger = logging.getLogger(__name__)

PROJECT_NS = "project"
PROJECT_TOKEN_NS = "project_tokens"

DEVELOPMENT_KEY = "oauth-relay-development-key-do-not-use-in-production"
KDF_SALT = b"oauth-relay-project-store-salt"
KDF_ITERATIONS = 100_000
PROJECT_ID_ALPHABET = string.ascii_letters + string.digits


def generate_project_id() -> str:
    return "proj_" + "".join(secrets.choice(PROJECT_ID_ALPHABET) for _ in range(12))


def project_redirect_uri(project_id: str, base_url: str) -> str:
    """Callback URL to register with the provider for this project"""
    return f"{ensure_https(base_url.rstrip('/'))}/api/oauth/proxy/callback/{project_id}"


class SecretBox:
    """AES-256-GCM with a key derived from a passphrase via PBKDF2-HMAC-SHA256"""

    def __init__(self, passphrase: str):
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=KDF_SALT, iterations=KDF_ITERATIONS)
        self._aead = AESGCM(kdf.derive(passphrase.encode("utf-8")))

    def encrypt(self, plaintext: str) -> Dict[str, str]:
        iv = os.urandom(12)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        return {
            "iv": base64.b64encode(iv).decode("ascii"),
            "ciphertext": base64.b64encode(sealed[:-16]).decode("ascii"),
            "tag": base64.b64encode(sealed[-16:]).decode("ascii"),
        }

    def decrypt(self, sealed: Dict[str, str]) -> str:
        iv = base64.b64decode(sealed["iv"])
        data = base64.b64decode(sealed["ciphertext"]) + base64.b64decode(sealed["tag"])
        return self._aead.decrypt(iv, data, None).decode("utf-8")


class ProjectCredentials(BaseModel):
    project_id: str
    provider: str = "zoom"
    client_id: str
    client_secret: str
    app_id: str = ""
    app_name: str = ""
    created_at: int
    expires_at: Optional[int] = None


class ProjectStore:
    """Encrypted per-project credentials and one-time token pickup"""

    def __init__(self, store: KeyValueStore, settings: ProjectSettings, clock: Clock = time.time):
        self.store = store
        self.settings = settings
        self._clock = clock
        passphrase = settings.encryption_key
        if not passphrase:
            logger.warning("PROJECT_STORE_ENCRYPTION_KEY not set, using development key")
            passphrase = DEVELOPMENT_KEY
        self._box = SecretBox(passphrase)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def register(self, client_id: str, client_secret: str, app_id: str = "", app_name: str = "",
                       provider: str = "zoom", project_id: Optional[str] = None) -> ProjectCredentials:
        now = self._now_ms()
        credentials = ProjectCredentials(
            project_id=project_id or generate_project_id(),
            provider=provider.lower(),
            client_id=client_id,
            client_secret=client_secret,
            app_id=app_id,
            app_name=app_name,
            created_at=now,
            expires_at=now + int(self.settings.credentials_ttl * 1000),
        )
        record = credentials.model_dump()
        record["client_secret"] = self._box.encrypt(client_secret)
        await self.store.set(PROJECT_NS, credentials.project_id, record, ttl=self.settings.credentials_ttl)
        logger.info(f"Stored credentials for project {credentials.project_id}: {app_name} ({app_id})")
        return credentials

    async def _record(self, project_id: str) -> Optional[Dict[str, Any]]:
        record = await self.store.get(PROJECT_NS, project_id)
        if record is None:
            return None
        if record.get("expires_at") and record["expires_at"] <= self._now_ms():
            logger.info(f"Project credentials expired: {project_id}")
            await self.delete(project_id)
            return None
        return record

    async def get_credentials(self, project_id: str) -> Optional[ProjectCredentials]:
        record = await self._record(project_id)
        if record is None:
            return None
        try:
            secret = self._box.decrypt(record["client_secret"])
        except (InvalidTag, KeyError, ValueError) as e:
            logger.error(f"Failed to decrypt credentials for {project_id}: {type(e).__name__}")
            return None
        return ProjectCredentials.model_validate({**record, "client_secret": secret})

    async def delete(self, project_id: str) -> bool:
        deleted = await self.store.delete(PROJECT_NS, project_id)
        await self.store.delete(PROJECT_TOKEN_NS, project_id)
        if deleted:
            logger.info(f"Deleted project {project_id}")
        return deleted

    async def find_by_client_id(self, client_id: str) -> Optional[str]:
        for project_id in await self.store.keys(PROJECT_NS):
            record = await self._record(project_id)
            if record is not None and record["client_id"] == client_id:
                return project_id
        return None

    async def list_projects(self) -> List[Dict[str, Any]]:
        projects = []
        for project_id in await self.store.keys(PROJECT_NS):
            record = await self._record(project_id)
            if record is None:
                continue
            projects.append({
                "projectId": project_id,
                "provider": record.get("provider", "zoom"),
                "appId": record.get("app_id", ""),
                "appName": record.get("app_name", ""),
                "clientId": mask_client_id(record["client_id"]),
                "createdAt": record["created_at"],
                "hasTokens": await self.has_tokens(project_id),
            })
        return sorted(projects, key=lambda p: p["createdAt"])

    async def store_tokens(self, project_id: str, tokens: OAuthTokens):
        record = {
            "access_token": self._box.encrypt(tokens.access_token),
            "refresh_token": self._box.encrypt(tokens.refresh_token) if tokens.refresh_token else None,
            "token_type": tokens.token_type,
            "expires_in": tokens.expires_in,
            "scope": tokens.scope,
            "stored_at": self._now_ms(),
        }
        ttl = self.settings.token_ttl
        if tokens.expires_in:
            ttl = min(float(tokens.expires_in), ttl)
        await self.store.set(PROJECT_TOKEN_NS, project_id, record, ttl=ttl)
        logger.info(f"Stored tokens for project {project_id}")

    async def has_tokens(self, project_id: str) -> bool:
        return await self.store.get(PROJECT_TOKEN_NS, project_id) is not None

    async def take_tokens(self, project_id: str) -> Optional[OAuthTokens]:
        """Return and remove the project's tokens"""
        record = await self.store.pop(PROJECT_TOKEN_NS, project_id)
        if record is None:
            return None
        try:
            access_token = self._box.decrypt(record["access_token"])
            refresh_token = self._box.decrypt(record["refresh_token"]) if record.get("refresh_token") else None
        except (InvalidTag, KeyError, ValueError) as e:
            logger.error(f"Failed to decrypt tokens for {project_id}: {type(e).__name__}")
            return None
        logger.info(f"Retrieved and cleared tokens for project {project_id}")
        return OAuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            token_type=record.get("token_type") or "Bearer",
            expires_in=record.get("expires_in"),
            scope=record.get("scope"),
        )

    def redirect_uri(self, project_id: str, base_url: str) -> str:
        return project_redirect_uri(project_id, base_url)

    async def sweep(self) -> int:
        removed = 0
        for project_id in await self.store.keys(PROJECT_NS):
            if await self._record(project_id) is None:
                removed += 1
        if removed:
            logger.info(f"Cleaned up {removed} expired projects")
        return removed
