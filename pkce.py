"""
pkce.py — PKCE (RFC 7636) helpers for the downstream IndieAuth handshake.

S256 only. Verifiers carry 256 bits of entropy, state values 128 bits.
"""

import base64
import hashlib
import secrets

VERIFIER_BYTES = 32  # -> 43 chars
STATE_BYTES = 16  # -> 22 chars


def base64url_encode(data: bytes) -> str:
    """Base64url without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    return base64url_encode(secrets.token_bytes(VERIFIER_BYTES))


def generate_code_challenge(verifier: str) -> str:
    """S256 challenge: base64url(SHA-256(verifier))."""
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64url_encode(digest)


def generate_state() -> str:
    """Single-use nonce binding an authorization request to its callback."""
    return base64url_encode(secrets.token_bytes(STATE_BYTES))
