"""Token exchange hook: extension point run whenever the broker mints tokens.

The broker calls the configured hook each time it issues tokens to an MCP
client (``authorization_code`` grant) or rotates them (``refresh_token``
grant).  A hook may replace the session props bound to the grant and shorten
the broker access-token TTL, e.g. to persist or rotate the upstream refresh
token per grant, without touching the broker state machine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Protocol, runtime_checkable

from mcp_spec_auth.central_auth.clock import Clock, default_clock
from mcp_spec_auth.central_auth.models import SessionProps
from mcp_spec_auth.central_auth.upstream import UpstreamClient

_LOG = logging.getLogger("mcp-spec-auth.central_auth.hooks")

GrantType = Literal["authorization_code", "refresh_token"]


@dataclass(frozen=True, slots=True)
class TokenExchangeEvent:
    grant_type: GrantType
    client_id: str
    props: SessionProps


@dataclass(frozen=True, slots=True)
class TokenExchangeResult:
    new_props: SessionProps | None = None
    access_token_ttl: int | None = None


@runtime_checkable
class TokenExchangeHook(Protocol):
    def __call__(self, event: TokenExchangeEvent) -> TokenExchangeResult | None: ...


class UpstreamRefreshHook:
    """Default hook keeping broker tokens in step with the upstream tokens.

    * ``authorization_code`` – the broker access token never outlives the
      upstream access token (the time left on it, not its original TTL).
    * ``refresh_token`` – the upstream token set is rotated along with the
      broker refresh token; failures propagate and fail the refresh grant.
    """

    def __init__(self, upstream: UpstreamClient, *, clock: Clock = default_clock) -> None:
        self.upstream = upstream
        self._clock = clock

    def __call__(self, event: TokenExchangeEvent) -> TokenExchangeResult | None:
        token_set = event.props.token_set
        if event.grant_type == "authorization_code":
            remaining = token_set.expires_at - int(self._clock())
            return TokenExchangeResult(access_token_ttl=max(1, remaining))

        refreshed = self.upstream.refresh(token_set.refresh_token or "", previous=token_set)
        _LOG.debug("Rotated upstream tokens for client_id=%s", event.client_id)
        return TokenExchangeResult(
            new_props=event.props.with_token_set(refreshed),
            access_token_ttl=refreshed.access_token_ttl,
        )
