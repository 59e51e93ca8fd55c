"""Authorization broker core package.

This namespace hosts the **HTTP-agnostic** building blocks of the double-hop
OAuth 2.0 broker: an authorization server towards MCP clients that is itself
an OAuth client of the upstream identity provider.

Sub-modules
-----------
clock
    Test-friendly time abstraction.
pkce
    Proof-Key for Code Exchange and opaque token helpers.
state
    CSRF-resistant ``state`` parameter encoding / validation.
models
    Immutable dataclasses for transactions, token sets, session props, grants.
store
    Transaction / grant persistence (disk and in-memory).
upstream
    OAuth client for the identity provider.
claims
    Identity-token validation against the provider's signing keys.
consent
    Local consent gate.
session
    Session props assembly.
hooks
    Token exchange extension point.
service
    The broker state machine.
errors
    Exception types used by the broker.
log_utils
    Structured logging helpers (thin wrapper around :pymod:`logging`).

The most used public objects are re-exported here for convenience.
"""

from __future__ import annotations

from .clock import Clock, default_clock  # noqa: F401
from .errors import (  # noqa: F401
    AuthFlowError,
    ClaimsInvalid,
    ConsentTokenInvalid,
    MissingSubjectClaim,
    RefreshTokenRevoked,
    StateMismatch,
    TransactionExpired,
    TransactionNotFound,
    Unauthenticated,
    UpstreamExchangeFailed,
)
from .log_utils import get_auth_logger  # noqa: F401
from .models import AuthTxnRecord, BrokerState, SessionProps, TokenSet  # noqa: F401
from .pkce import code_challenge_s256, generate_code_verifier, generate_opaque_token  # noqa: F401
from .state import InvalidStateError, build_state, parse_state  # noqa: F401

__all__ = [
    # clock
    "Clock",
    "default_clock",
    # pkce
    "generate_code_verifier",
    "code_challenge_s256",
    "generate_opaque_token",
    # state
    "build_state",
    "parse_state",
    "InvalidStateError",
    # models
    "AuthTxnRecord",
    "BrokerState",
    "SessionProps",
    "TokenSet",
    # errors
    "AuthFlowError",
    "ClaimsInvalid",
    "ConsentTokenInvalid",
    "MissingSubjectClaim",
    "RefreshTokenRevoked",
    "StateMismatch",
    "TransactionExpired",
    "TransactionNotFound",
    "Unauthenticated",
    "UpstreamExchangeFailed",
    # logging helpers
    "get_auth_logger",
]
