"""CentralAuthService – the authorization broker state machine.

The broker is an OAuth 2.0 authorization server towards MCP clients and an
OAuth 2.0 client towards the upstream identity provider.  One attempt moves
through::

    IDLE -> AUTHORIZE_REQUESTED -> CONSENT_PENDING -> CONSENT_GRANTED
         -> CALLBACK_RECEIVED -> TOKEN_ISSUED

with ``EXPIRED`` / ``FAILED`` reachable from every intermediate state.  Each
suspension point (waiting for the user agent to come back) is a persisted
:class:`AuthTxnRecord`, never an in-memory continuation.

Handlers in ``mcp_spec_auth.servers.auth`` call the façade methods below and
translate :class:`AuthFlowError` into one generic failure surface.  **All
secrets are redacted** from logs; failure detail is logged server-side with
transaction / user context only.
"""

from __future__ import annotations

import hmac
import logging
import threading
import uuid
import zlib
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Iterator
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from mcp_spec_auth.central_auth.claims import ClaimsValidator
from mcp_spec_auth.central_auth.clock import Clock, default_clock, deadline, is_past
from mcp_spec_auth.central_auth.consent import ConsentController, ConsentView
from mcp_spec_auth.central_auth.errors import (
    AuthFlowError,
    ConsentTokenInvalid,
    InvalidClient,
    InvalidGrant,
    InvalidRequest,
    RefreshTokenRevoked,
    StateMismatch,
    TransactionExpired,
    TransactionNotFound,
    Unauthenticated,
)
from mcp_spec_auth.central_auth.hooks import (
    GrantType,
    TokenExchangeEvent,
    TokenExchangeHook,
    UpstreamRefreshHook,
)
from mcp_spec_auth.central_auth.log_utils import get_auth_logger
from mcp_spec_auth.central_auth.models import (
    PHASE_CONSENT_GRANTED,
    AuthTxnRecord,
    BrokerGrant,
    BrokerState,
    ClientRecord,
    SessionProps,
)
from mcp_spec_auth.central_auth.pkce import (
    code_challenge_s256,
    generate_code_verifier,
    generate_opaque_token,
    verify_code_challenge,
)
from mcp_spec_auth.central_auth.session import build_session_props
from mcp_spec_auth.central_auth.state import InvalidStateError, build_state, parse_state
from mcp_spec_auth.central_auth.store import AuthStore, default_store, hash_secret
from mcp_spec_auth.central_auth.upstream import UpstreamClient
from mcp_spec_auth.utils.environment import BrokerConfig

_LOG = logging.getLogger("mcp-spec-auth.central_auth.service")
_LOGGER_NAME = "mcp-spec-auth.central_auth.service"

# upstream refreshes of one grant are serialised on one of these locks
_GRANT_LOCK_STRIPES = 64

# --------------------------------------------------------------------------- #
# Request / response records                                                  #
# --------------------------------------------------------------------------- #


@dataclass(frozen=True, slots=True)
class AuthorizeRequest:
    """Normalised ``/authorize`` parameters of an MCP client."""

    client_id: str
    redirect_uri: str
    response_type: str = "code"
    scopes: tuple[str, ...] = ()
    state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None


@dataclass(frozen=True, slots=True)
class TokenRequest:
    """Normalised ``/token`` form of an MCP client."""

    grant_type: str
    client_id: str
    code: str | None = None
    redirect_uri: str | None = None
    code_verifier: str | None = None
    refresh_token: str | None = None


@dataclass(frozen=True, slots=True)
class TokenResponse:
    access_token: str
    refresh_token: str
    expires_in: int
    scope: str = ""
    token_type: str = "bearer"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "refresh_token": self.refresh_token,
        }
        if self.scope:
            data["scope"] = self.scope
        return data


@dataclass(frozen=True, slots=True)
class CallbackResult:
    """Outcome of a successful upstream callback."""

    redirect_url: str
    grant_id: str
    subject: str


# --------------------------------------------------------------------------- #
# Helpers                                                                     #
# --------------------------------------------------------------------------- #
_CREDENTIAL_SEP = "."


def _compose_credential(grant_id: str, secret: str) -> str:
    return f"{grant_id}{_CREDENTIAL_SEP}{secret}"


def _split_credential(value: str | None) -> tuple[str, str] | None:
    if not value or value.count(_CREDENTIAL_SEP) != 1:
        return None
    grant_id, secret = value.split(_CREDENTIAL_SEP)
    if not grant_id or not secret:
        return None
    return grant_id, secret


def _hash_matches(stored_hash: str | None, secret: str) -> bool:
    if not stored_hash:
        return False
    return hmac.compare_digest(stored_hash, hash_secret(secret))


def _append_query(url: str, **params: str | None) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit(parts._replace(query=urlencode(query)))


def _validate_redirect_uri(redirect_uri: str) -> None:
    parts = urlsplit(redirect_uri)
    if parts.scheme not in ("https", "http") or not parts.netloc or parts.fragment:
        raise InvalidRequest("redirect_uri must be an absolute http(s) URL without fragment")
    if parts.scheme == "http" and parts.hostname not in ("localhost", "127.0.0.1", "::1"):
        raise InvalidRequest("plain http redirect_uri is only allowed for loopback hosts")


@contextmanager
def _flow_step(log: logging.LoggerAdapter, state: BrokerState) -> Iterator[None]:
    """Log the terminal transition of a failing step, then re-raise."""
    try:
        yield
    except AuthFlowError as exc:
        outcome = BrokerState.EXPIRED if isinstance(exc, TransactionExpired) else BrokerState.FAILED
        log.warning(
            "Transition %s -> %s kind=%s detail=%s",
            state.value,
            outcome.value,
            exc.kind,
            exc,
        )
        raise


# --------------------------------------------------------------------------- #
# Public service                                                              #
# --------------------------------------------------------------------------- #
class CentralAuthService:
    """Application service orchestrating the brokered OAuth flow."""

    def __init__(
        self,
        config: BrokerConfig,
        *,
        store: AuthStore | None = None,
        upstream: UpstreamClient | None = None,
        claims_validator: ClaimsValidator | None = None,
        token_hook: TokenExchangeHook | None = None,
        clock: Clock = default_clock,
    ) -> None:
        self.config = config
        self.store = store or default_store()
        self.upstream = upstream or UpstreamClient(config, clock=clock)
        self.claims_validator = claims_validator or ClaimsValidator.for_jwks_uri(
            self.upstream.jwks_uri
        )
        self.token_hook = token_hook or UpstreamRefreshHook(self.upstream, clock=clock)
        self.consent = ConsentController(self.store, clock=clock)
        self._clock = clock
        self._grant_locks = tuple(threading.Lock() for _ in range(_GRANT_LOCK_STRIPES))

        state_secret = config.state_secret
        if not state_secret:
            # Ephemeral secret – suitable for single-instance dev setups
            state_secret = uuid.uuid4().hex
            _LOG.warning(
                "MCP_STATE_HMAC_SECRET not set – generated transient secret. "
                "In-flight authorizations will break after process restart."
            )
        self._state_secret: str = state_secret

    # ------------------------------------------------------------------ #
    # Client registration                                                #
    # ------------------------------------------------------------------ #
    def register_client(
        self, redirect_uris: list[str] | tuple[str, ...], client_name: str | None = None
    ) -> ClientRecord:
        """Register an MCP client (minimal dynamic client registration)."""
        if not redirect_uris:
            raise InvalidRequest("redirect_uris is required")
        for uri in redirect_uris:
            _validate_redirect_uri(uri)
        client = ClientRecord(
            client_id=generate_opaque_token(16),
            redirect_uris=tuple(redirect_uris),
            client_name=client_name,
            created_at=int(self._clock()),
        )
        self.store.save_client(client)
        _LOG.info("Registered client_id=%s name=%s", client.client_id, client_name or "-")
        return client

    def _check_client(self, client_id: str, redirect_uri: str) -> ClientRecord | None:
        if not client_id:
            raise InvalidRequest("client_id is required")
        _validate_redirect_uri(redirect_uri)
        client = self.store.load_client(client_id)
        if client is None:
            if self.config.require_registered_clients:
                raise InvalidClient("unknown client_id")
            return None
        if redirect_uri not in client.redirect_uris:
            raise InvalidClient("redirect_uri not registered for client")
        return client

    # ------------------------------------------------------------------ #
    # IDLE -> AUTHORIZE_REQUESTED -> CONSENT_PENDING                     #
    # ------------------------------------------------------------------ #
    def start_authorization(
        self, request: AuthorizeRequest, *, browser_binding: str | None = None
    ) -> tuple[AuthTxnRecord, ConsentView]:
        """Create and persist a transaction, returning it with its consent view.

        *browser_binding* is a secret held by the user agent (the consent
        cookie); when given, consent is only accepted together with it.
        """
        log = get_auth_logger(base_logger_name=_LOGGER_NAME, client_id=request.client_id)
        with _flow_step(log, BrokerState.IDLE):
            if request.response_type != "code":
                raise InvalidRequest("only response_type=code is supported")
            method = request.code_challenge_method
            if request.code_challenge:
                method = method or "S256"
                if method != "S256":
                    raise InvalidRequest("only the S256 code_challenge_method is supported")
            elif method:
                raise InvalidRequest("code_challenge_method without code_challenge")
            client = self._check_client(request.client_id, request.redirect_uri)

            auth_txn_id = generate_opaque_token(24)
            code_verifier = generate_code_verifier()
            txn = AuthTxnRecord(
                auth_txn_id=auth_txn_id,
                client_id=request.client_id,
                client_redirect_uri=request.redirect_uri,
                client_state=request.state,
                requested_scopes=tuple(dict.fromkeys(request.scopes)),
                code_verifier=code_verifier,
                code_challenge=code_challenge_s256(code_verifier),
                consent_token=generate_opaque_token(),
                state=build_state(auth_txn_id, self._state_secret, clock=self._clock),
                client_code_challenge=request.code_challenge,
                client_code_challenge_method=method if request.code_challenge else None,
                browser_binding_hash=hash_secret(browser_binding) if browser_binding else None,
                created_at=int(self._clock()),
                ttl_seconds=self.config.consent_ttl,
            )
            self.store.put_txn(txn)

        log = get_auth_logger(
            base_logger_name=_LOGGER_NAME, auth_txn_id=auth_txn_id, client_id=request.client_id
        )
        log.info(
            "Transition %s -> %s",
            BrokerState.AUTHORIZE_REQUESTED.value,
            BrokerState.CONSENT_PENDING.value,
        )
        view = self.consent.render_consent(txn, client.client_name if client else None)
        return txn, view

    # ------------------------------------------------------------------ #
    # CONSENT_PENDING -> CONSENT_GRANTED                                 #
    # ------------------------------------------------------------------ #
    def confirm_consent(
        self, auth_txn_id: str, consent_token: str, browser_binding: str | None = None
    ) -> str:
        """Record consent and return the upstream authorize URL."""
        log = get_auth_logger(base_logger_name=_LOGGER_NAME, auth_txn_id=auth_txn_id)
        with _flow_step(log, BrokerState.CONSENT_PENDING):
            txn = self.consent.confirm_consent(auth_txn_id, consent_token, browser_binding)
            url = self.upstream.build_authorize_url(
                txn.code_challenge, txn.state, self.config.scopes
            )
        log.info(
            "Transition %s -> %s",
            BrokerState.CONSENT_PENDING.value,
            BrokerState.CONSENT_GRANTED.value,
        )
        return url

    # ------------------------------------------------------------------ #
    # CONSENT_GRANTED -> CALLBACK_RECEIVED -> code for the MCP client    #
    # ------------------------------------------------------------------ #
    def handle_callback(self, code: str, state: str) -> CallbackResult:
        """Consume the transaction, exchange *code* upstream and mint a broker code."""
        try:
            auth_txn_id, _ = parse_state(state, self._state_secret)
        except InvalidStateError as exc:
            _LOG.warning("Callback rejected: %s", exc)
            raise StateMismatch("state cannot be verified") from None

        log = get_auth_logger(base_logger_name=_LOGGER_NAME, auth_txn_id=auth_txn_id)
        with _flow_step(log, BrokerState.CONSENT_GRANTED):
            txn = self.store.consume_txn(auth_txn_id)
            if txn is None:
                raise TransactionNotFound(auth_txn_id=auth_txn_id)
            if txn.is_expired(clock=self._clock):
                raise TransactionExpired(auth_txn_id=auth_txn_id)
            if not hmac.compare_digest(txn.state.encode(), state.encode()):
                raise StateMismatch(auth_txn_id=auth_txn_id)
            if txn.phase != PHASE_CONSENT_GRANTED:
                raise ConsentTokenInvalid("consent was not granted", auth_txn_id=auth_txn_id)

        log = get_auth_logger(
            base_logger_name=_LOGGER_NAME, auth_txn_id=auth_txn_id, client_id=txn.client_id
        )
        with _flow_step(log, BrokerState.CALLBACK_RECEIVED):
            token_set = self.upstream.exchange_code(code, txn.code_verifier)
            claims = self.claims_validator.validate(
                token_set.id_token, self.upstream.issuer, self.config.upstream_client_id
            )
            props = build_session_props(claims, token_set)

            grant_id = generate_opaque_token(16)
            code_secret = generate_opaque_token()
            grant = BrokerGrant(
                grant_id=grant_id,
                client_id=txn.client_id,
                props=props,
                redirect_uri=txn.client_redirect_uri,
                scopes=txn.requested_scopes,
                code_hash=hash_secret(code_secret),
                code_expires_at=deadline(self.config.auth_code_ttl, clock=self._clock),
                code_challenge=txn.client_code_challenge,
                code_challenge_method=txn.client_code_challenge_method,
                created_at=int(self._clock()),
            )
            self.store.save_grant(grant)

        get_auth_logger(
            base_logger_name=_LOGGER_NAME,
            auth_txn_id=auth_txn_id,
            client_id=txn.client_id,
            subject=props.subject,
        ).info(
            "Transition %s -> %s",
            BrokerState.CALLBACK_RECEIVED.value,
            BrokerState.TOKEN_ISSUED.value,
        )
        redirect_url = _append_query(
            txn.client_redirect_uri,
            code=_compose_credential(grant_id, code_secret),
            state=txn.client_state,
        )
        return CallbackResult(redirect_url=redirect_url, grant_id=grant_id, subject=props.subject)

    # ------------------------------------------------------------------ #
    # /token                                                             #
    # ------------------------------------------------------------------ #
    def exchange_token(self, request: TokenRequest) -> TokenResponse:
        """Serve the broker token endpoint (``authorization_code`` / ``refresh_token``)."""
        log = get_auth_logger(base_logger_name=_LOGGER_NAME, client_id=request.client_id)
        with _flow_step(log, BrokerState.TOKEN_ISSUED):
            if request.grant_type == "authorization_code":
                return self._exchange_authorization_code(request, log)
            if request.grant_type == "refresh_token":
                return self._exchange_refresh_token(request, log)
            raise InvalidRequest(f"unsupported grant_type {request.grant_type!r}")

    def _exchange_authorization_code(
        self, request: TokenRequest, log: logging.LoggerAdapter
    ) -> TokenResponse:
        parsed = _split_credential(request.code)
        if parsed is None:
            raise InvalidGrant("malformed authorization code")
        grant_id, secret = parsed
        grant = self.store.load_grant(grant_id)
        if grant is None:
            raise InvalidGrant("unknown authorization code")
        if grant.code_hash is None:
            # Code replay: revoke everything issued from it.
            self.store.delete_grant(grant_id)
            raise InvalidGrant("authorization code already used; grant revoked")
        if not _hash_matches(grant.code_hash, secret):
            raise InvalidGrant("authorization code mismatch")
        if is_past(grant.code_expires_at, clock=self._clock):
            self.store.delete_grant(grant_id)
            raise InvalidGrant("authorization code expired")
        if request.client_id != grant.client_id:
            raise InvalidGrant("authorization code issued to another client")
        if request.redirect_uri and request.redirect_uri != grant.redirect_uri:
            raise InvalidGrant("redirect_uri mismatch")
        if grant.code_challenge:
            if not request.code_verifier or not verify_code_challenge(
                request.code_verifier, grant.code_challenge
            ):
                raise InvalidGrant("code_verifier does not match code_challenge")

        new_grant, response = self._issue_tokens(grant, "authorization_code")
        if not self.store.swap_grant(grant, new_grant):
            raise InvalidGrant("authorization code already used")
        log.info("Issued broker tokens (expires in %ss)", response.expires_in)
        return response

    def _exchange_refresh_token(
        self, request: TokenRequest, log: logging.LoggerAdapter
    ) -> TokenResponse:
        parsed = _split_credential(request.refresh_token)
        if parsed is None:
            raise RefreshTokenRevoked("malformed refresh token")
        grant_id, secret = parsed
        with self._grant_lock(grant_id):
            grant = self.store.load_grant(grant_id)
            if grant is None or not _hash_matches(grant.refresh_token_hash, secret):
                raise RefreshTokenRevoked("refresh token unknown or already rotated")
            if is_past(grant.refresh_expires_at, clock=self._clock):
                self.store.delete_grant(grant_id)
                raise RefreshTokenRevoked("refresh token expired")
            if request.client_id and request.client_id != grant.client_id:
                raise RefreshTokenRevoked("refresh token issued to another client")

            try:
                new_grant, response = self._issue_tokens(grant, "refresh_token")
            except RefreshTokenRevoked:
                self.store.swap_grant(grant, None)
                raise
            if not self.store.swap_grant(grant, new_grant):
                raise RefreshTokenRevoked("refresh token already rotated")
        log.info("Rotated broker tokens (expires in %ss)", response.expires_in)
        return response

    def _issue_tokens(
        self, grant: BrokerGrant, grant_type: GrantType
    ) -> tuple[BrokerGrant, TokenResponse]:
        props = grant.props
        access_ttl = self.config.access_token_ttl
        result = self.token_hook(
            TokenExchangeEvent(grant_type=grant_type, client_id=grant.client_id, props=props)
        )
        if result is not None:
            props = result.new_props or props
            if result.access_token_ttl:
                access_ttl = max(1, min(access_ttl, int(result.access_token_ttl)))

        access_secret = generate_opaque_token()
        refresh_secret = generate_opaque_token()
        new_grant = replace(
            grant,
            props=props,
            code_hash=None,
            code_expires_at=0,
            code_challenge=None,
            code_challenge_method=None,
            access_token_hash=hash_secret(access_secret),
            access_expires_at=deadline(access_ttl, clock=self._clock),
            refresh_token_hash=hash_secret(refresh_secret),
            refresh_expires_at=deadline(self.config.refresh_token_ttl, clock=self._clock),
        )
        response = TokenResponse(
            access_token=_compose_credential(grant.grant_id, access_secret),
            refresh_token=_compose_credential(grant.grant_id, refresh_secret),
            expires_in=access_ttl,
            scope=" ".join(grant.scopes),
        )
        return new_grant, response

    # ------------------------------------------------------------------ #
    # Downstream collaborator interface                                  #
    # ------------------------------------------------------------------ #
    def _authenticated_grant(self, access_token: str | None) -> BrokerGrant:
        parsed = _split_credential(access_token)
        if parsed is None:
            raise Unauthenticated("missing or malformed access token")
        grant_id, secret = parsed
        grant = self.store.load_grant(grant_id)
        if grant is None or not _hash_matches(grant.access_token_hash, secret):
            raise Unauthenticated("unknown or revoked access token")
        if is_past(grant.access_expires_at, clock=self._clock):
            raise Unauthenticated("access token expired")
        return grant

    def current_user(self, access_token: str | None) -> SessionProps:
        """Return the identity bound to *access_token*.

        Refreshes the upstream token set synchronously when it is about to
        expire; a failed refresh fails the request instead of continuing with
        stale credentials.  Refreshes of one grant run one at a time, and a
        request that waited behind another refresh reuses its result.

        Raises:
            Unauthenticated: No valid broker-issued credential.
            RefreshTokenRevoked: Upstream refresh was refused; restart the flow.
        """
        grant = self._authenticated_grant(access_token)
        if not self._needs_refresh(grant):
            return grant.props

        with self._grant_lock(grant.grant_id):
            grant = self._authenticated_grant(access_token)
            if not self._needs_refresh(grant):
                return grant.props
            props = grant.props
            log = get_auth_logger(
                base_logger_name=_LOGGER_NAME, client_id=grant.client_id, subject=props.subject
            )
            try:
                refreshed = self.upstream.refresh(
                    props.token_set.refresh_token or "", previous=props.token_set
                )
            except RefreshTokenRevoked:
                # Only drop the grant if it still holds the token set that was refused
                if self.store.swap_grant(grant, None):
                    log.warning("Upstream refresh token revoked; grant dropped")
                raise
            new_grant = replace(grant, props=props.with_token_set(refreshed))
            if not self.store.swap_grant(grant, new_grant):
                raise Unauthenticated("grant changed during refresh")
        log.info("Refreshed upstream token set in place")
        return new_grant.props

    def _needs_refresh(self, grant: BrokerGrant) -> bool:
        return grant.props.token_set.is_expiring(
            grace_seconds=self.config.refresh_grace_seconds, clock=self._clock
        )

    def _grant_lock(self, grant_id: str) -> threading.Lock:
        return self._grant_locks[zlib.crc32(grant_id.encode()) % len(self._grant_locks)]

    def logout(self, access_token: str | None) -> str:
        """Invalidate the grant behind *access_token*; returns the subject.

        Upstream tokens are not revoked.
        """
        grant = self._authenticated_grant(access_token)
        self.store.delete_grant(grant.grant_id)
        subject = grant.props.subject
        get_auth_logger(
            base_logger_name=_LOGGER_NAME, client_id=grant.client_id, subject=subject
        ).info("Logged out; broker grant deleted")
        return subject

    # ------------------------------------------------------------------ #
    # Discovery                                                          #
    # ------------------------------------------------------------------ #
    def authorization_server_metadata(self) -> dict[str, Any]:
        issuer = self.config.issuer
        return {
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}/authorize",
            "token_endpoint": f"{issuer}/token",
            "registration_endpoint": f"{issuer}/register",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "code_challenge_methods_supported": ["S256"],
            "token_endpoint_auth_methods_supported": ["none"],
        }

    def protected_resource_metadata(self, resource_path: str = "/mcp") -> dict[str, Any]:
        return {
            "resource": f"{self.config.issuer}{resource_path}",
            "authorization_servers": [self.config.issuer],
            "bearer_methods_supported": ["header"],
        }
