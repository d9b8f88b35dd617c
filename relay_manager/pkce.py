#!/usr/bin/env python3
"""
PKCE helpers (RFC 7636)
"""

import hmac
import secrets
from dataclasses import dataclass

from authlib.oauth2.rfc7636 import create_s256_code_challenge


@dataclass(frozen=True)
class PKCEPair:
    code_verifier: str
    code_challenge: str
    method: str = "S256"


def generate_secure_string(length: int = 32) -> str:
    """Hex string built from `length` random bytes"""
    return secrets.token_hex(length)


def generate_pkce() -> PKCEPair:
    """Generate a verifier (64 hex chars) and its S256 challenge"""
    verifier = generate_secure_string(32)
    return PKCEPair(code_verifier=verifier, code_challenge=create_s256_code_challenge(verifier))


def verify_pkce(code_verifier: str, code_challenge: str) -> bool:
    return hmac.compare_digest(create_s256_code_challenge(code_verifier), code_challenge)
