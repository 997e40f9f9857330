"""Test PKCE verifier and challenge generation."""

import base64
import hashlib
import re

import pytest

from event_calendar_sync.pkce import (
    PKCEPair,
    derive_code_challenge,
    generate_code_verifier,
    generate_state,
)


BASE64URL = re.compile(r"^[A-Za-z0-9_-]+$")


def test_verifier_is_unpadded_base64url():
    verifier = generate_code_verifier()

    assert BASE64URL.match(verifier)
    assert "=" not in verifier
    # 32 random bytes encode to 43 characters
    assert len(verifier) == 43


def test_verifier_rejects_short_entropy():
    with pytest.raises(ValueError):
        generate_code_verifier(16)


def test_independent_verifiers_differ():
    assert generate_code_verifier() != generate_code_verifier()


def test_challenge_is_deterministic():
    verifier = generate_code_verifier()
    assert derive_code_challenge(verifier) == derive_code_challenge(verifier)


def test_challenge_matches_rfc7636_example():
    # Appendix B of RFC 7636
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert derive_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_challenge_is_sha256_of_verifier():
    verifier = "some-verifier"
    expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
    assert derive_code_challenge(verifier) == expected


def test_pair_uses_s256():
    pair = PKCEPair.generate()

    assert pair.method == "S256"
    assert pair.challenge == derive_code_challenge(pair.verifier)


def test_state_values_are_random():
    assert generate_state() != generate_state()
