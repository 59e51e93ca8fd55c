"""PKCE (Proof Key for Code Exchange) and opaque token helpers.

RFC 7636 protects the authorization code with a *code verifier* (random
high-entropy string) that stays inside the broker and a *code challenge*
derived from it that is sent to the upstream authorization endpoint.

Only the S256 transformation is implemented; ``plain`` is rejected everywhere
in the broker, both upstream and towards MCP clients.

The same secure random source also mints the opaque values the broker hands
out: transaction ids, consent tokens, state nonces, broker authorization codes
and broker access/refresh tokens.

This module performs **no logging** of any generated value.
"""

from __future__ import annotations

import base64
import hmac
import secrets
from hashlib import sha256
from typing import Final

# RFC-7636 §4.1 mandates the verifier length between 43 and 128 characters.
_VERIFIER_LEN: Final[int] = 64
_ALLOWED_CHARS: Final[str] = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "abcdefghijklmnopqrstuvwxyz"
    "0123456789"
    "-._~"
)
_OPAQUE_TOKEN_BYTES: Final[int] = 32


def generate_code_verifier(length: int = _VERIFIER_LEN) -> str:
    """Generate a high-entropy code verifier.

    Parameters
    ----------
    length:
        Desired length between 43 and 128 characters (default 64).

    Returns
    -------
    str
        The generated code verifier.
    """
    if not 43 <= length <= 128:
        raise ValueError("code verifier length must be 43-128 characters")
    return "".join(secrets.choice(_ALLOWED_CHARS) for _ in range(length))


def code_challenge_s256(verifier: str) -> str:
    """Compute the *S256* PKCE code challenge for a given verifier.

    Returns
    -------
    str
        Base64url-encoded SHA-256 hash without padding.
    """
    digest = sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_code_challenge(verifier: str, challenge: str) -> bool:
    """Return *True* if *verifier* hashes to *challenge* (constant time)."""
    try:
        derived = code_challenge_s256(verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(derived, challenge)


def generate_opaque_token(nbytes: int = _OPAQUE_TOKEN_BYTES) -> str:
    """Return a random, unguessable URL-safe token."""
    return secrets.token_urlsafe(nbytes)
