#!/usr/bin/env python3
"""
Relay error hierarchy
Services raise these; HTTP handlers translate them into JSON responses
"""


class RelayError(Exception):
    """Base class for relay errors"""
    status = 500


class ConfigError(RelayError):
    """Invalid or unreadable configuration"""


class UnsupportedProviderError(RelayError):
    status = 400

    def __init__(self, provider: str):
        super().__init__(f"Unsupported provider: {provider}")
        self.provider = provider


class MissingCredentialsError(RelayError):
    status = 500

    def __init__(self, provider: str):
        super().__init__(f"OAuth credentials not configured for provider: {provider}")
        self.provider = provider

    @property
    def hint(self) -> str:
        name = self.provider.upper()
        return f"Please set {name}_OAUTH_CLIENT_ID and {name}_OAUTH_CLIENT_SECRET environment variables"


class InvalidStateTransition(RelayError):
    status = 409

    def __init__(self, session_id: str, current: str, target: str):
        super().__init__(f"Session {session_id}: cannot move from {current} to {target}")
        self.current = current
        self.target = target


class OAuthCallbackError(RelayError):
    """Callback could not be completed. `code` is an OAuth-style error code."""
    status = 400

    def __init__(self, code: str, description: str):
        super().__init__(f"{code}: {description}")
        self.code = code
        self.description = description


class TokenExchangeError(RelayError):
    status = 502


class SessionNotFoundError(RelayError):
    status = 404


class SessionNotRunningError(RelayError):
    status = 409


class ToolNotFoundError(RelayError):
    status = 404


class ToolExecutionError(RelayError):
    status = 500


class ToolTimeoutError(RelayError):
    status = 504
