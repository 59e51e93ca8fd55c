"""Local consent gate shown before the user agent is sent upstream.

The consent step binds the browser to one transaction through a single-use
consent token and, for browser flows, a cookie set when the transaction was
opened.  It protects against blind redirects (an attacker-crafted
``/authorize`` link silently bouncing a logged-in user through the identity
provider) and records the user's approval before the upstream round trip.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass, replace

from mcp_spec_auth.central_auth.clock import Clock, default_clock
from mcp_spec_auth.central_auth.errors import (
    ConsentTokenInvalid,
    TransactionExpired,
    TransactionNotFound,
)
from mcp_spec_auth.central_auth.log_utils import get_auth_logger
from mcp_spec_auth.central_auth.models import (
    PHASE_CONSENT_GRANTED,
    PHASE_CONSENT_PENDING,
    AuthTxnRecord,
)
from mcp_spec_auth.central_auth.store import AuthStore, hash_secret

_LOGGER_NAME = "mcp-spec-auth.central_auth.consent"


@dataclass(frozen=True, slots=True)
class ConsentView:
    """Everything the consent page needs; contains no upstream secrets."""

    auth_txn_id: str
    consent_token: str
    client_id: str
    client_name: str
    redirect_uri: str
    scopes: tuple[str, ...]
    expires_at: int


class ConsentController:
    """Render and confirm the consent gate of one transaction."""

    def __init__(self, store: AuthStore, *, clock: Clock = default_clock) -> None:
        self.store = store
        self._clock = clock

    def render_consent(self, txn: AuthTxnRecord, client_name: str | None = None) -> ConsentView:
        """Return the presentation data for *txn* (no state mutation)."""
        return ConsentView(
            auth_txn_id=txn.auth_txn_id,
            consent_token=txn.consent_token,
            client_id=txn.client_id,
            client_name=client_name or txn.client_id,
            redirect_uri=txn.client_redirect_uri,
            scopes=txn.requested_scopes,
            expires_at=txn.expires_at,
        )

    def confirm_consent(
        self, auth_txn_id: str, consent_token: str, browser_binding: str | None = None
    ) -> AuthTxnRecord:
        """Validate *consent_token* and flip the transaction to ``consent_granted``.

        When the transaction was opened with a browser binding, *browser_binding*
        must carry the same value (the consent cookie of that browser).

        Returns:
            The updated transaction record.

        Raises:
            TransactionNotFound: Unknown or already consumed transaction.
            TransactionExpired: The transaction outlived its TTL.
            ConsentTokenInvalid: Wrong token, token reuse, consent already given,
                or a confirmation from another browser.
        """
        log = get_auth_logger(base_logger_name=_LOGGER_NAME, auth_txn_id=auth_txn_id)
        txn = self.store.get_txn(auth_txn_id)
        if txn is None:
            raise TransactionNotFound(auth_txn_id=auth_txn_id)
        if txn.is_expired(clock=self._clock):
            raise TransactionExpired(auth_txn_id=auth_txn_id)
        if not consent_token or not hmac.compare_digest(
            txn.consent_token.encode(), consent_token.encode()
        ):
            log.warning("Consent token does not match transaction")
            raise ConsentTokenInvalid("consent token mismatch", auth_txn_id=auth_txn_id)
        if txn.browser_binding_hash is not None and not (
            browser_binding
            and hmac.compare_digest(txn.browser_binding_hash, hash_secret(browser_binding))
        ):
            log.warning("Consent submitted without the browser binding of the transaction")
            raise ConsentTokenInvalid(
                "consent not bound to this browser", auth_txn_id=auth_txn_id
            )
        if txn.phase != PHASE_CONSENT_PENDING:
            log.warning("Consent token reused (phase=%s)", txn.phase)
            raise ConsentTokenInvalid("consent token already used", auth_txn_id=auth_txn_id)

        granted = replace(txn, phase=PHASE_CONSENT_GRANTED)
        if not self.store.transition_txn(auth_txn_id, PHASE_CONSENT_PENDING, granted):
            # lost a race with a concurrent confirmation or the callback
            raise ConsentTokenInvalid("consent token already used", auth_txn_id=auth_txn_id)
        log.info("Consent granted")
        return granted
