#!/usr/bin/env python3
"""
OAuth Proxy
Runs authorization-code flows on behalf of apps whose own URLs are
ephemeral, so providers only ever see the relay's stable callback URL.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from .config import ProviderCredentials, RelayConfig
from .errors import (
    MissingCredentialsError,
    OAuthCallbackError,
    TokenExchangeError,
    UnsupportedProviderError,
)
from .oauth_sessions import (
    DynamicCredentials,
    OAuthFlowState,
    OAuthSession,
    OAuthSessionStore,
    OAuthTokens,
    OAuthTokenStore,
)
from .project_store import ProjectCredentials, ProjectStore, project_redirect_uri
from .providers import (
    CLIENT_SECRET_BASIC,
    ProviderConfig,
    default_scopes,
    ensure_https,
    get_provider_config,
    get_supported_providers,
)

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/api/oauth/proxy/callback"


def callback_url(public_url: str) -> str:
    return f"{ensure_https(public_url.rstrip('/'))}{CALLBACK_PATH}"


def build_authorization_url(provider: ProviderConfig, session: OAuthSession, public_url: str) -> str:
    """Authorization endpoint URL carrying client id, state, scopes and PKCE challenge"""
    params: Dict[str, str] = {
        "client_id": provider.client_id,
        "redirect_uri": callback_url(public_url),
        "response_type": "code",
        "state": session.state,
        "scope": " ".join(session.scopes),
    }
    if provider.supports_pkce:
        params["code_challenge"] = session.code_challenge
        params["code_challenge_method"] = "S256"
    params.update(provider.additional_params)
    return f"{provider.authorization_url}?{urlencode(params)}"


async def exchange_code(http: httpx.AsyncClient, token_url: str, client_id: str, client_secret: str,
                        form: Dict[str, str], auth_method: str = "client_secret_post",
                        retries: int = 2, backoff: float = 0.5) -> OAuthTokens:
    """
    POST a form-encoded grant to a token endpoint.

    Transport errors and 5xx responses are retried `retries` times with a
    linearly growing delay; 4xx responses fail immediately.
    """
    data = dict(form)
    auth = None
    if auth_method == CLIENT_SECRET_BASIC:
        auth = httpx.BasicAuth(client_id, client_secret)
    else:
        data["client_id"] = client_id
        data["client_secret"] = client_secret

    headers = {"Accept": "application/json"}
    last_error: Optional[str] = None

    for attempt in range(retries + 1):
        if attempt:
            await asyncio.sleep(backoff * attempt)
        try:
            response = await http.post(token_url, data=data, headers=headers, auth=auth)
        except httpx.TransportError as e:
            last_error = f"{type(e).__name__}: {e}"
            logger.warning(f"Token request to {token_url} failed (attempt {attempt + 1}): {last_error}")
            continue

        if response.status_code >= 500:
            last_error = f"{response.status_code} {response.text}"
            logger.warning(f"Token endpoint {token_url} returned {response.status_code} (attempt {attempt + 1})")
            continue

        if response.status_code >= 400:
            raise TokenExchangeError(f"Token exchange failed: {response.status_code} {response.text}")

        try:
            payload = response.json()
        except ValueError as e:
            raise TokenExchangeError(f"Token endpoint returned non-JSON body: {response.text[:200]}") from e
        if not isinstance(payload, dict):
            raise TokenExchangeError(f"Token endpoint returned unexpected JSON: {response.text[:200]}")

        # GitHub reports some failures as 200 with an error field
        if "error" in payload and "access_token" not in payload:
            description = payload.get("error_description", payload["error"])
            raise TokenExchangeError(f"Token exchange failed: {description}")

        try:
            return OAuthTokens.model_validate(payload)
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise TokenExchangeError(f"Token endpoint returned an invalid token response (bad fields: {fields})") from e

    raise TokenExchangeError(f"Token exchange failed after {retries + 1} attempts: {last_error}")


class OAuthProxy:
    """Starts flows, completes callbacks and hands out issued tokens"""

    def __init__(self, config: RelayConfig, sessions: OAuthSessionStore, tokens: OAuthTokenStore,
                 projects: Optional[ProjectStore] = None, http: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.sessions = sessions
        self.tokens = tokens
        self.projects = projects
        self.http = http or httpx.AsyncClient(timeout=config.oauth.http_timeout)

    async def close(self):
        await self.http.aclose()

    def resolve_provider(self, provider: str, credentials: Optional[ProviderCredentials] = None) -> ProviderConfig:
        resolved = get_provider_config(provider, self.config, credentials)
        if resolved is None:
            raise UnsupportedProviderError(provider)
        return resolved

    def _provider_for_session(self, session: OAuthSession) -> ProviderConfig:
        creds = None
        if session.dynamic_credentials:
            creds = ProviderCredentials(
                client_id=session.dynamic_credentials.client_id,
                client_secret=session.dynamic_credentials.client_secret,
            )
        return self.resolve_provider(session.provider, creds)

    async def start_flow(self, provider: str, scopes: Optional[List[str]], public_url: str,
                         webcontainer_id: Optional[str] = None) -> Tuple[OAuthSession, str]:
        """Start a flow with the relay's configured credentials for `provider`"""
        config = self.resolve_provider(provider)
        if not config.has_credentials:
            raise MissingCredentialsError(config.name)

        session = await self.sessions.create(
            config.name, scopes or config.scopes, public_url, webcontainer_id=webcontainer_id
        )
        url = build_authorization_url(config, session, public_url)
        session = await self.sessions.transition(session.id, OAuthFlowState.AUTHORIZING)
        logger.info(f"Started OAuth flow {session.id} for {config.name}")
        return session, url

    async def start_dynamic_flow(self, provider: str, client_id: str, client_secret: str,
                                 scopes: Optional[List[str]], public_url: str,
                                 app_id: Optional[str] = None, app_name: Optional[str] = None,
                                 webcontainer_id: Optional[str] = None) -> Tuple[OAuthSession, str]:
        """Start a flow with credentials supplied by the caller, e.g. for a freshly created app"""
        if provider.lower() not in get_supported_providers():
            raise UnsupportedProviderError(provider)
        config = self.resolve_provider(provider, ProviderCredentials(client_id, client_secret))

        session = await self.sessions.create(
            config.name,
            scopes or default_scopes(config.name, dynamic=True),
            public_url,
            webcontainer_id=webcontainer_id,
            dynamic_credentials=DynamicCredentials(
                client_id=client_id, client_secret=client_secret, app_id=app_id, app_name=app_name
            ),
        )
        url = build_authorization_url(config, session, public_url)
        session = await self.sessions.transition(session.id, OAuthFlowState.AUTHORIZING)
        logger.info(f"Started dynamic OAuth flow {session.id} for {config.name} app: {app_name or app_id}")
        return session, url

    async def handle_callback(self, code: Optional[str], state: Optional[str],
                              error: Optional[str] = None,
                              error_description: Optional[str] = None) -> Tuple[OAuthSession, OAuthTokens]:
        """
        Complete a flow from the provider redirect.

        Raises OAuthCallbackError with codes: the provider's own error code,
        invalid_request (also for a session whose provider is no longer
        supported), invalid_state, token_exchange_failed.
        """
        if error:
            description = error_description or "Unknown error occurred"
            if state:
                pending = await self.sessions.claim_state(state)
                if pending is not None:
                    await self.sessions.transition(pending.id, OAuthFlowState.FAILED, error=f"{error}: {description}")
            logger.warning(f"Provider returned OAuth error {error}: {description}")
            raise OAuthCallbackError(error, description)

        if not code or not state:
            raise OAuthCallbackError("invalid_request", "Missing code or state parameter")

        session = await self.sessions.claim_state(state)
        if session is None:
            raise OAuthCallbackError("invalid_state", "OAuth session expired or invalid. Please try again.")

        try:
            provider = self._provider_for_session(session)
        except UnsupportedProviderError as e:
            await self.sessions.transition(session.id, OAuthFlowState.FAILED, error=str(e))
            raise OAuthCallbackError("invalid_request", str(e)) from e

        session = await self.sessions.transition(session.id, OAuthFlowState.CODE_RECEIVED)
        session = await self.sessions.transition(session.id, OAuthFlowState.EXCHANGING)

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": callback_url(session.redirect_uri),
        }
        if provider.supports_pkce:
            form["code_verifier"] = session.code_verifier

        try:
            tokens = await exchange_code(
                self.http, provider.token_url, provider.client_id, provider.client_secret, form,
                auth_method=provider.token_auth_method,
                retries=self.config.oauth.exchange_retries,
                backoff=self.config.oauth.exchange_backoff,
            )
        except TokenExchangeError as e:
            logger.error(f"OAuth token exchange error for {session.provider}: {e}")
            await self.sessions.transition(session.id, OAuthFlowState.FAILED, error=str(e))
            raise OAuthCallbackError("token_exchange_failed", str(e)) from e

        await self.tokens.store_tokens(session.id, tokens)
        session = await self.sessions.transition(session.id, OAuthFlowState.COMPLETED)
        logger.info(f"OAuth flow {session.id} completed for {session.provider}")
        return session, tokens

    async def handle_project_callback(self, project_id: str, code: Optional[str], public_url: str,
                                      error: Optional[str] = None,
                                      error_description: Optional[str] = None) -> ProjectCredentials:
        """
        Complete a marketplace install for a registered project. Tokens are
        held encrypted until the project's owner picks them up.
        """
        if error:
            raise OAuthCallbackError(error, error_description or "Unknown error occurred")
        if not code:
            raise OAuthCallbackError("invalid_request", "Missing authorization code")
        if self.projects is None:
            raise OAuthCallbackError("project_not_found", "Project store is not available")

        project = await self.projects.get_credentials(project_id)
        if project is None:
            raise OAuthCallbackError("project_not_found", f"Project not found or expired: {project_id}")

        provider = self.resolve_provider(project.provider, ProviderCredentials(project.client_id, project.client_secret))
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": project_redirect_uri(project_id, public_url),
        }
        try:
            tokens = await exchange_code(
                self.http, provider.token_url, project.client_id, project.client_secret, form,
                auth_method=CLIENT_SECRET_BASIC,
                retries=self.config.oauth.exchange_retries,
                backoff=self.config.oauth.exchange_backoff,
            )
        except TokenExchangeError as e:
            logger.error(f"Token exchange failed for project {project_id}: {e}")
            raise OAuthCallbackError("token_exchange_failed", str(e)) from e

        await self.projects.store_tokens(project_id, tokens)
        logger.info(f"Project {project_id} authorized for {project.app_name or project.app_id}")
        return project

    async def refresh_tokens(self, provider: str, refresh_token: str,
                             client_id: Optional[str] = None,
                             client_secret: Optional[str] = None) -> OAuthTokens:
        """Trade a refresh token for new tokens; the old refresh token is kept if none is returned"""
        creds = ProviderCredentials(client_id, client_secret) if client_id and client_secret else None
        config = self.resolve_provider(provider, creds)
        if not config.has_credentials:
            raise MissingCredentialsError(config.name)

        tokens = await exchange_code(
            self.http, config.token_url, config.client_id, config.client_secret,
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            auth_method=config.token_auth_method,
            retries=self.config.oauth.exchange_retries,
            backoff=self.config.oauth.exchange_backoff,
        )
        if tokens.refresh_token is None:
            tokens.refresh_token = refresh_token
        logger.info(f"Refreshed tokens for {config.name}")
        return tokens

    async def get_session(self, session_id: str) -> Optional[OAuthSession]:
        return await self.sessions.get(session_id)

    async def take_tokens(self, session_id: str) -> Optional[OAuthTokens]:
        """One-time read of the tokens issued for a session"""
        return await self.tokens.pop(session_id)

    def provider_overview(self) -> List[Dict[str, object]]:
        overview = []
        for name in get_supported_providers():
            config = self.resolve_provider(name)
            overview.append({
                "name": name,
                "configured": config.has_credentials,
                "scopes": config.scopes,
                "pkce": config.supports_pkce,
            })
        return overview
