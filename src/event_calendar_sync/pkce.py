"""PKCE helpers for the OAuth2 Authorization Code flow (RFC 7636)."""

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass


logger = logging.getLogger(__name__)

VERIFIER_BYTES = 32
CHALLENGE_METHOD = "S256"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier(num_bytes: int = VERIFIER_BYTES) -> str:
    """Generate a PKCE code verifier.

    Args:
        num_bytes: Amount of random data to encode (at least 32)

    Returns:
        A base64url string without padding (43 chars for 32 bytes)
    """
    if num_bytes < VERIFIER_BYTES:
        raise ValueError(f"Code verifier needs at least {VERIFIER_BYTES} random bytes")

    verifier = _b64url(secrets.token_bytes(num_bytes))
    logger.debug(f"Generated PKCE verifier ({len(verifier)} chars)")
    return verifier


def derive_code_challenge(verifier: str) -> str:
    """Derive the S256 code challenge for ``verifier``.

    Args:
        verifier: The PKCE code verifier

    Returns:
        The base64url-encoded SHA-256 digest of the verifier, unpadded
    """
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_state() -> str:
    """Random value echoed back by the authorization server on redirect."""
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class PKCEPair:
    """Verifier and the challenge derived from it."""

    verifier: str
    challenge: str
    method: str = CHALLENGE_METHOD

    @classmethod
    def generate(cls) -> 'PKCEPair':
        verifier = generate_code_verifier()
        return cls(verifier=verifier, challenge=derive_code_challenge(verifier))
