"""Typed, immutable records used by the authorization broker."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Final, Mapping

from mcp_spec_auth.central_auth.clock import Clock, default_clock

# Phases persisted on a transaction record.
PHASE_CONSENT_PENDING: Final[str] = "consent_pending"
PHASE_CONSENT_GRANTED: Final[str] = "consent_granted"


class BrokerState(str, Enum):
    """States of one authorize -> callback -> token attempt."""

    IDLE = "idle"
    AUTHORIZE_REQUESTED = "authorize_requested"
    CONSENT_PENDING = "consent_pending"
    CONSENT_GRANTED = "consent_granted"
    CALLBACK_RECEIVED = "callback_received"
    TOKEN_ISSUED = "token_issued"
    EXPIRED = "expired"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class AuthTxnRecord:
    """In-flight authorization transaction.

    ``code_verifier`` never leaves the broker; ``client_redirect_uri`` and
    ``client_state`` are echoed back to the MCP client untouched.
    """

    auth_txn_id: str
    client_id: str
    client_redirect_uri: str
    code_verifier: str
    code_challenge: str
    consent_token: str
    state: str
    client_state: str | None = None
    requested_scopes: tuple[str, ...] = ()
    # PKCE sent by the MCP client to the broker (not the upstream pair above)
    client_code_challenge: str | None = None
    client_code_challenge_method: str | None = None
    # sha256 of the consent cookie handed to the browser that opened /authorize
    browser_binding_hash: str | None = None
    phase: str = PHASE_CONSENT_PENDING
    created_at: int = field(default_factory=lambda: int(default_clock()))
    ttl_seconds: int = 600

    @property
    def expires_at(self) -> int:
        return self.created_at + self.ttl_seconds

    def is_expired(self, *, clock: Clock = default_clock) -> bool:
        """Return *True* if the transaction exceeded its TTL."""
        return clock() >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["requested_scopes"] = list(self.requested_scopes)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AuthTxnRecord:
        values = dict(data)
        values["requested_scopes"] = tuple(values.get("requested_scopes") or ())
        return cls(**values)


@dataclass(frozen=True, slots=True)
class TokenSet:
    """Upstream token set; opaque to consumers except for TTL bookkeeping."""

    access_token: str
    access_token_ttl: int
    id_token: str
    refresh_token: str | None = None
    obtained_at: int = field(default_factory=lambda: int(default_clock()))

    @property
    def expires_at(self) -> int:
        return self.obtained_at + self.access_token_ttl

    def is_expiring(self, *, grace_seconds: int = 0, clock: Clock = default_clock) -> bool:
        """Return *True* if the access token expires within *grace_seconds*."""
        return (self.expires_at - clock()) <= grace_seconds

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TokenSet:
        return cls(**dict(data))


@dataclass(frozen=True, slots=True)
class SessionProps:
    """Per-user identity context attached to every authenticated request."""

    claims: Mapping[str, Any]
    token_set: TokenSet

    @property
    def subject(self) -> str:
        return str(self.claims["sub"])

    def with_token_set(self, token_set: TokenSet) -> SessionProps:
        """Return a copy whose token set was refreshed in place."""
        return replace(self, token_set=token_set)

    def to_dict(self) -> dict[str, Any]:
        return {"claims": dict(self.claims), "token_set": self.token_set.to_dict()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SessionProps:
        return cls(
            claims=dict(data["claims"]),
            token_set=TokenSet.from_dict(data["token_set"]),
        )


@dataclass(frozen=True, slots=True)
class ClientRecord:
    """Minimal dynamically registered MCP client."""

    client_id: str
    redirect_uris: tuple[str, ...]
    client_name: str | None = None
    created_at: int = field(default_factory=lambda: int(default_clock()))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["redirect_uris"] = list(self.redirect_uris)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ClientRecord:
        values = dict(data)
        values["redirect_uris"] = tuple(values.get("redirect_uris") or ())
        return cls(**values)


@dataclass(frozen=True, slots=True)
class BrokerGrant:
    """Credentials minted by the broker, bound to one :class:`SessionProps`.

    Only SHA-256 hashes of the broker code and tokens are kept.  A grant
    starts with a single-use authorization code; exchanging it clears the code
    and sets the access/refresh pair, which is rotated on every refresh.
    """

    grant_id: str
    client_id: str
    props: SessionProps
    redirect_uri: str
    scopes: tuple[str, ...] = ()
    code_hash: str | None = None
    code_expires_at: int = 0
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    access_token_hash: str | None = None
    access_expires_at: int = 0
    refresh_token_hash: str | None = None
    refresh_expires_at: int = 0
    created_at: int = field(default_factory=lambda: int(default_clock()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "grant_id": self.grant_id,
            "client_id": self.client_id,
            "props": self.props.to_dict(),
            "redirect_uri": self.redirect_uri,
            "scopes": list(self.scopes),
            "code_hash": self.code_hash,
            "code_expires_at": self.code_expires_at,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
            "access_token_hash": self.access_token_hash,
            "access_expires_at": self.access_expires_at,
            "refresh_token_hash": self.refresh_token_hash,
            "refresh_expires_at": self.refresh_expires_at,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BrokerGrant:
        values = dict(data)
        values["props"] = SessionProps.from_dict(values["props"])
        values["scopes"] = tuple(values.get("scopes") or ())
        return cls(**values)
