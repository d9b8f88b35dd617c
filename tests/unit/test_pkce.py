"""Tests for PKCE helpers."""

from __future__ import annotations

import re

from relay_manager.pkce import generate_pkce, generate_secure_string, verify_pkce


def test_secure_string_is_hex_of_requested_bytes():
    value = generate_secure_string(16)
    assert re.fullmatch(r"[0-9a-f]{32}", value)
    assert generate_secure_string(16) != value


def test_generated_pair_verifies():
    pair = generate_pkce()

    assert re.fullmatch(r"[0-9a-f]{64}", pair.code_verifier)
    assert pair.method == "S256"
    assert "=" not in pair.code_challenge
    assert len(pair.code_challenge) == 43
    assert verify_pkce(pair.code_verifier, pair.code_challenge)


def test_rfc7636_reference_vector():
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    challenge = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
    assert verify_pkce(verifier, challenge)


def test_wrong_verifier_is_rejected():
    pair = generate_pkce()
    assert not verify_pkce(generate_pkce().code_verifier, pair.code_challenge)
