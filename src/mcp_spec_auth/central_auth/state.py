"""State parameter helpers for the upstream leg of the OAuth 2.0 flow.

The *state* parameter protects the user against CSRF and lets the broker find
the in-flight transaction when the identity provider redirects back.  Four
values are encoded in a compact, URL-safe string:

1. ``auth_txn_id`` – opaque transaction id generated at authorize time
2. ``ts`` – UNIX timestamp produced by an injected :pyclass:`~mcp_spec_auth.central_auth.clock.Clock`
3. ``nonce`` – random anti-forgery value, unique per transaction
4. ``sig`` – HMAC-SHA256 signature of the first three fields

Format (plain text before base64-url encoding)::

    <auth_txn_id>:<ts>:<nonce>:<sig>

Signature validation only proves the state was minted by this broker.  The
callback handler additionally compares the received value byte-for-byte with
the state stored on the transaction.

Logging
-------
Only the (truncated) ``auth_txn_id`` is ever logged; the full state string as
well as the HMAC secret are *never* written to logs.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
from hashlib import sha256
from typing import Final

from mcp_spec_auth.central_auth.clock import Clock, default_clock
from mcp_spec_auth.central_auth.pkce import generate_opaque_token

_LOG = logging.getLogger("mcp-spec-auth.central_auth.state")

_SIG_LEN: Final[int] = 32  # characters kept from hex digest


def _b64e(data: str) -> str:
    """Base64-URL encode *without* padding."""
    return base64.urlsafe_b64encode(data.encode("utf-8")).rstrip(b"=").decode("ascii")


def _b64d(data: str) -> str:
    """Decode base64-URL data that may lack padding."""
    pad_len = (-len(data)) % 4
    return base64.urlsafe_b64decode(data + "=" * pad_len).decode("utf-8")


def _sign(message: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), msg=message.encode(), digestmod=sha256).hexdigest()
    return digest[:_SIG_LEN]


class InvalidStateError(Exception):
    """Raised when an incoming state is missing/invalid or signature check fails."""


def build_state(
    auth_txn_id: str,
    secret: str,
    *,
    nonce: str | None = None,
    clock: Clock = default_clock,
) -> str:
    """Build the state string for an upstream authorization request.

    Parameters
    ----------
    auth_txn_id:
        Identifier of the authorization transaction.
    secret:
        Application secret used to sign the state.
    nonce:
        Anti-forgery value; a fresh opaque token when omitted.
    clock:
        Time source; defaults to :pyfunc:`~mcp_spec_auth.central_auth.clock.default_clock`.

    Returns
    -------
    str
        URL-safe state value.
    """
    if ":" in auth_txn_id:
        raise ValueError("auth_txn_id must not contain ':'")
    nonce = nonce or generate_opaque_token(16)
    payload = f"{auth_txn_id}:{int(clock())}:{nonce}"
    encoded = _b64e(f"{payload}:{_sign(payload, secret)}")
    _LOG.debug("Built state for auth_txn_id=%s****", auth_txn_id[:6])
    return encoded


def parse_state(state: str, secret: str) -> tuple[str, int]:
    """Validate and decode a state received in the upstream callback.

    Returns
    -------
    tuple[str, int]
        ``(auth_txn_id, ts)`` on success.

    Raises
    ------
    InvalidStateError
        If the state is malformed or the signature does not validate.
    """
    try:
        decoded = _b64d(state)
    except (ValueError, binascii.Error):
        raise InvalidStateError("state cannot be decoded") from None

    parts = decoded.split(":")
    if len(parts) != 4:
        raise InvalidStateError("state has an unexpected format")

    auth_txn_id, ts_str, nonce, sig = parts
    if not auth_txn_id or not nonce or not ts_str.isdigit():
        raise InvalidStateError("state missing fields")

    expected_sig = _sign(f"{auth_txn_id}:{ts_str}:{nonce}", secret)
    if not hmac.compare_digest(sig, expected_sig):
        raise InvalidStateError("state signature mismatch")

    _LOG.debug("Parsed state for auth_txn_id=%s****", auth_txn_id[:6])
    return auth_txn_id, int(ts_str)
