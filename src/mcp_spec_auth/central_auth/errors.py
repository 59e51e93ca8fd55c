"""Exception types raised by the authorization broker.

Only lightweight, **data-carrying** exceptions live here so that web/MCP layers
can transform them into HTTP responses.  Every error carries a machine
readable ``kind`` used in server-side logs; the payload returned to callers is
always the same generic ``authentication failed`` surface so that no internal
detail (upstream bodies, signature failure reasons) ever leaks.
"""

from __future__ import annotations

from typing import ClassVar

GENERIC_MESSAGE = "Authentication failed."


class AuthFlowError(RuntimeError):
    """Base class for every failure of the authorize/callback/token flow."""

    kind: ClassVar[str] = "auth_failed"
    #: OAuth ``error`` code used on the token endpoint
    oauth_error: ClassVar[str] = "invalid_request"
    #: The caller must restart from ``/authorize`` instead of retrying.
    restart_flow: ClassVar[bool] = True
    #: Transient failure; the caller may retry with backoff.
    retryable: ClassVar[bool] = False

    def __init__(self, message: str | None = None, *, auth_txn_id: str | None = None) -> None:
        super().__init__(message or self.kind.replace("_", " "))
        self.auth_txn_id = auth_txn_id

    def to_payload(self) -> dict[str, str]:
        """Return a JSON-serialisable payload **without internal detail**."""
        return {"error": self.oauth_error, "error_description": GENERIC_MESSAGE}


class TransactionNotFound(AuthFlowError):
    """The transaction id is unknown or was already consumed."""

    kind = "transaction_not_found"
    oauth_error = "invalid_grant"


class TransactionExpired(AuthFlowError):
    """The transaction outlived its TTL."""

    kind = "transaction_expired"
    oauth_error = "invalid_grant"


class StateMismatch(AuthFlowError):
    """The callback ``state`` does not match the one issued (CSRF)."""

    kind = "state_mismatch"


class ConsentTokenInvalid(AuthFlowError):
    """Consent token mismatch, reuse, or consent not granted."""

    kind = "consent_token_invalid"
    oauth_error = "access_denied"


class UpstreamExchangeFailed(AuthFlowError):
    """The identity provider rejected the code/verifier or refresh request."""

    kind = "upstream_exchange_failed"
    oauth_error = "invalid_grant"


class UpstreamUnavailable(AuthFlowError):
    """Network failure talking to the identity provider."""

    kind = "upstream_unavailable"
    oauth_error = "temporarily_unavailable"
    restart_flow = False
    retryable = True


class ClaimsInvalid(AuthFlowError):
    """Identity token failed signature/issuer/audience/expiry validation."""

    kind = "claims_invalid"
    oauth_error = "invalid_grant"

    REASONS: ClassVar[frozenset[str]] = frozenset(
        {"signature", "issuer", "audience", "expired", "not_yet_valid", "malformed"}
    )

    def __init__(self, reason: str, message: str | None = None) -> None:
        if reason not in self.REASONS:
            raise ValueError(f"unknown claims failure reason: {reason}")
        super().__init__(message or f"identity token rejected ({reason})")
        self.reason = reason


class MissingSubjectClaim(AuthFlowError):
    """The verified identity token carries no usable ``sub``."""

    kind = "missing_subject_claim"
    oauth_error = "invalid_grant"


class RefreshTokenRevoked(AuthFlowError):
    """The refresh token is revoked, expired, or was already rotated."""

    kind = "refresh_token_revoked"
    oauth_error = "invalid_grant"


class Unauthenticated(AuthFlowError):
    """No valid broker-issued credential accompanies the request."""

    kind = "unauthenticated"
    oauth_error = "invalid_token"


class InvalidClient(AuthFlowError):
    """Unknown client id or redirect URI not registered for it."""

    kind = "invalid_client"
    oauth_error = "invalid_client"


class InvalidRequest(AuthFlowError):
    """Missing, repeated, or unsupported request parameter."""

    kind = "invalid_request"
    restart_flow = False


class InvalidGrant(AuthFlowError):
    """Broker-issued authorization code is unknown, expired, reused, or mismatched."""

    kind = "invalid_grant"
    oauth_error = "invalid_grant"
