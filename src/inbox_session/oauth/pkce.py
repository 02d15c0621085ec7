"""PKCE (RFC 7636) verifier, challenge and state helpers."""

from __future__ import annotations

import base64
import hashlib
import secrets

CHALLENGE_METHOD = "S256"


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    """Return 32 random bytes encoded as unpadded base64url (43 characters)."""
    return _base64url(secrets.token_bytes(32))


def code_challenge(verifier: str) -> str:
    """Return the S256 challenge for ``verifier``."""
    return _base64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_state() -> str:
    """Return 16 random bytes as lowercase hex."""
    return secrets.token_hex(16)


__all__ = ["CHALLENGE_METHOD", "code_challenge", "generate_code_verifier", "generate_state"]
