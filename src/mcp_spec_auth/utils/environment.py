"""Environment-driven configuration for the authorization broker."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Final, Tuple

logger = logging.getLogger("mcp-spec-auth.utils.environment")

_TRUTHY: Final[Tuple[str, ...]] = ("true", "1", "yes", "y", "on")

DEFAULT_UPSTREAM_SCOPE: Final[str] = "openid email profile offline_access"


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def _required(name: str) -> str:
    value = (os.getenv(name) or "").strip()
    if not value:
        raise ValueError(f"{name} environment variable is required")
    return value


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive")
    return value


def _normalise_domain(domain: str) -> str:
    """Accept ``tenant.auth0.com`` as well as ``https://tenant.auth0.com/``."""
    domain = domain.strip()
    for prefix in ("https://", "http://"):
        if domain.startswith(prefix):
            domain = domain[len(prefix):]
    return domain.rstrip("/")


@dataclass(frozen=True)
class BrokerConfig:
    """Settings of the broker, loaded from environment variables at startup.

    Upstream values describe the identity provider; the TTLs bound the
    credentials the broker itself mints.  Nothing here is hardcoded.
    """

    upstream_domain: str
    upstream_client_id: str
    upstream_client_secret: str
    upstream_audience: str = ""
    upstream_scope: str = DEFAULT_UPSTREAM_SCOPE
    public_url: str = "http://localhost:8000"
    access_token_ttl: int = 300
    refresh_token_ttl: int = 3600
    consent_ttl: int = 600
    auth_code_ttl: int = 120
    # refresh the upstream token set this long before it expires
    refresh_grace_seconds: int = 60
    state_secret: str | None = None
    require_registered_clients: bool = False

    @property
    def callback_url(self) -> str:
        return f"{self.public_url.rstrip('/')}/callback"

    @property
    def issuer(self) -> str:
        return self.public_url.rstrip("/")

    @property
    def scopes(self) -> tuple[str, ...]:
        return tuple(self.upstream_scope.split())

    @classmethod
    def from_env(cls) -> BrokerConfig:
        """Create the configuration from ``AUTH0_*`` and ``MCP_*`` variables.

        Raises:
            ValueError: If a required variable is missing or a TTL is invalid.
        """
        config = cls(
            upstream_domain=_normalise_domain(_required("AUTH0_DOMAIN")),
            upstream_client_id=_required("AUTH0_CLIENT_ID"),
            upstream_client_secret=_required("AUTH0_CLIENT_SECRET"),
            upstream_audience=(os.getenv("AUTH0_AUDIENCE") or "").strip(),
            upstream_scope=(os.getenv("AUTH0_SCOPE") or DEFAULT_UPSTREAM_SCOPE).strip(),
            public_url=(os.getenv("MCP_PUBLIC_URL") or "http://localhost:8000").strip(),
            access_token_ttl=_int_env("MCP_ACCESS_TOKEN_TTL", 300),
            refresh_token_ttl=_int_env("MCP_REFRESH_TOKEN_TTL", 3600),
            consent_ttl=_int_env("MCP_CONSENT_TTL", 600),
            auth_code_ttl=_int_env("MCP_AUTH_CODE_TTL", 120),
            refresh_grace_seconds=_int_env("MCP_REFRESH_GRACE_SECONDS", 60),
            state_secret=os.getenv("MCP_STATE_HMAC_SECRET") or None,
            require_registered_clients=_truthy(os.getenv("MCP_REQUIRE_REGISTERED_CLIENTS")),
        )
        if config.refresh_token_ttl < config.access_token_ttl:
            logger.warning(
                "MCP_REFRESH_TOKEN_TTL (%ss) is shorter than MCP_ACCESS_TOKEN_TTL (%ss)",
                config.refresh_token_ttl,
                config.access_token_ttl,
            )
        logger.info(
            "Broker configured for upstream domain=%s audience=%s",
            config.upstream_domain,
            config.upstream_audience or "-",
        )
        return config
