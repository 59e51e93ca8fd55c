"""OAuth 2.0 client towards the upstream identity provider (Auth0-style).

Responsibilities:

* build the upstream authorize URL (``response_type=code`` + S256 PKCE),
* exchange an authorization code and the broker-held verifier for tokens,
* rotate tokens with a refresh token.

The code verifier is only ever sent in the body of the POST to the token
endpoint; it never appears in a redirect URL.  The code exchange is **not**
retried automatically because an authorization code is single-use.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable
from urllib.parse import urlencode

import requests

from mcp_spec_auth.central_auth.clock import Clock, default_clock
from mcp_spec_auth.central_auth.errors import (
    RefreshTokenRevoked,
    UpstreamExchangeFailed,
    UpstreamUnavailable,
)
from mcp_spec_auth.central_auth.models import TokenSet
from mcp_spec_auth.utils.environment import BrokerConfig

_LOG = logging.getLogger("mcp-spec-auth.central_auth.upstream")

_TIMEOUT = (5, 20)
_DEFAULT_EXPIRES_IN = 3600


class UpstreamClient:
    """Talks to the identity provider's ``/authorize`` and ``/oauth/token``."""

    def __init__(
        self,
        config: BrokerConfig,
        *,
        session: requests.Session | None = None,
        clock: Clock = default_clock,
    ) -> None:
        self.config = config
        self._session = session or requests.Session()
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Endpoints                                                          #
    # ------------------------------------------------------------------ #
    @property
    def issuer(self) -> str:
        return f"https://{self.config.upstream_domain}/"

    @property
    def authorize_endpoint(self) -> str:
        return f"https://{self.config.upstream_domain}/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"https://{self.config.upstream_domain}/oauth/token"

    @property
    def jwks_uri(self) -> str:
        return f"https://{self.config.upstream_domain}/.well-known/jwks.json"

    # ------------------------------------------------------------------ #
    # Authorize                                                          #
    # ------------------------------------------------------------------ #
    def build_authorize_url(
        self, code_challenge: str, state: str, scopes: Iterable[str] | None = None
    ) -> str:
        """Return the upstream authorize URL for one transaction."""
        scope_val = " ".join(scopes or ()) or self.config.upstream_scope
        query_params: dict[str, str] = {
            "response_type": "code",
            "client_id": self.config.upstream_client_id,
            "redirect_uri": self.config.callback_url,
            "scope": scope_val,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        if self.config.upstream_audience:
            query_params["audience"] = self.config.upstream_audience
        return f"{self.authorize_endpoint}?{urlencode(query_params)}"

    # ------------------------------------------------------------------ #
    # Token endpoint                                                     #
    # ------------------------------------------------------------------ #
    def exchange_code(self, code: str, code_verifier: str) -> TokenSet:
        """Exchange an authorization code + verifier for a :class:`TokenSet`."""
        payload = {
            "grant_type": "authorization_code",
            "client_id": self.config.upstream_client_id,
            "client_secret": self.config.upstream_client_secret,
            "code": code,
            "redirect_uri": self.config.callback_url,
            "code_verifier": code_verifier,
        }
        resp = self._post_token(payload)
        if not resp.ok:
            _LOG.warning(
                "Upstream code exchange rejected status=%s error=%s",
                resp.status_code,
                self._error_code(resp),
            )
            raise UpstreamExchangeFailed(f"token endpoint returned {resp.status_code}")
        token_set = self._token_set(resp, previous_refresh_token=None)
        if not token_set.id_token:
            raise UpstreamExchangeFailed("token response missing id_token")
        _LOG.info("Exchanged upstream code (expires in %ss)", token_set.access_token_ttl)
        return token_set

    def refresh(self, refresh_token: str, *, previous: TokenSet | None = None) -> TokenSet:
        """Rotate tokens; the returned set supersedes the old one."""
        if not refresh_token:
            raise RefreshTokenRevoked("no upstream refresh token available")
        payload = {
            "grant_type": "refresh_token",
            "client_id": self.config.upstream_client_id,
            "client_secret": self.config.upstream_client_secret,
            "refresh_token": refresh_token,
        }
        resp = self._post_token(payload)
        if not resp.ok:
            error_code = self._error_code(resp)
            _LOG.warning(
                "Upstream refresh rejected status=%s error=%s", resp.status_code, error_code
            )
            if error_code in ("invalid_grant", "unauthorized_client") or resp.status_code == 401:
                raise RefreshTokenRevoked("upstream refresh token rejected")
            raise UpstreamExchangeFailed(f"token endpoint returned {resp.status_code}")

        token_set = self._token_set(resp, previous_refresh_token=refresh_token)
        if not token_set.id_token and previous is not None:
            # Providers may omit id_token on refresh; identity is unchanged.
            token_set = TokenSet(
                access_token=token_set.access_token,
                access_token_ttl=token_set.access_token_ttl,
                id_token=previous.id_token,
                refresh_token=token_set.refresh_token,
                obtained_at=token_set.obtained_at,
            )
        _LOG.info("Refreshed upstream tokens (expires in %ss)", token_set.access_token_ttl)
        return token_set

    # ---------------- internal helpers --------------------------------- #
    def _post_token(self, payload: dict[str, str]) -> requests.Response:
        try:
            return self._session.post(
                self.token_endpoint,
                data=payload,
                headers={"Accept": "application/json"},
                timeout=_TIMEOUT,
            )
        except requests.RequestException as exc:
            _LOG.warning("Upstream token request failed: %s", type(exc).__name__)
            raise UpstreamUnavailable("token endpoint unreachable") from exc

    @staticmethod
    def _error_code(resp: requests.Response) -> str:
        try:
            body: Any = resp.json()
        except ValueError:
            return "unparseable"
        if isinstance(body, dict):
            return str(body.get("error") or "unknown")
        return "unknown"

    def _token_set(
        self, resp: requests.Response, *, previous_refresh_token: str | None
    ) -> TokenSet:
        try:
            data = resp.json()
        except ValueError as exc:
            raise UpstreamExchangeFailed("token response is not JSON") from exc
        if not isinstance(data, dict) or not data.get("access_token"):
            raise UpstreamExchangeFailed("token response missing access_token")
        return TokenSet(
            access_token=data["access_token"],
            access_token_ttl=int(data.get("expires_in") or _DEFAULT_EXPIRES_IN),
            id_token=data.get("id_token") or "",
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            obtained_at=int(self._clock()),
        )
