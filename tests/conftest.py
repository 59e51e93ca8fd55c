"""Shared fixtures: fake clock, fake token endpoint, RSA signing key, broker service."""

from __future__ import annotations

import json
import time
from typing import Any, Callable

import jwt
import pytest
import requests
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from mcp_spec_auth.central_auth.claims import ClaimsValidator
from mcp_spec_auth.central_auth.service import CentralAuthService
from mcp_spec_auth.central_auth.store import MemoryAuthStore
from mcp_spec_auth.central_auth.upstream import UpstreamClient
from mcp_spec_auth.utils.environment import BrokerConfig

UPSTREAM_DOMAIN = "tenant.example.auth0.com"
UPSTREAM_ISSUER = f"https://{UPSTREAM_DOMAIN}/"
UPSTREAM_CLIENT_ID = "upstream-client"
SIGNING_KID = "test-key-1"


def pytest_addoption(parser):
    """Add integration option to pytest."""
    parser.addoption(
        "--integration",
        action="store_true",
        default=False,
        help="run integration tests",
    )


# --------------------------------------------------------------------------- #
# Time                                                                        #
# --------------------------------------------------------------------------- #
class FakeClock:
    """Manually advanced clock (seconds since the epoch)."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# --------------------------------------------------------------------------- #
# HTTP                                                                        #
# --------------------------------------------------------------------------- #
class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None) -> None:
        self.status_code = status_code
        self._payload = payload

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    """Replays queued responses in place of a ``requests.Session``."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict | None]] = []
        self._queue: list[FakeResponse | Exception] = []

    def queue(self, *items: FakeResponse | Exception) -> None:
        self._queue.extend(items)

    def _next(self) -> FakeResponse:
        if not self._queue:
            raise AssertionError("unexpected HTTP call")
        item = self._queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def post(self, url: str, data: dict | None = None, **_: Any) -> FakeResponse:
        self.calls.append(("POST", url, data))
        return self._next()

    def get(self, url: str, **_: Any) -> FakeResponse:
        self.calls.append(("GET", url, None))
        return self._next()


@pytest.fixture()
def token_endpoint() -> FakeSession:
    return FakeSession()


def token_response(
    id_token: str | None,
    *,
    access_token: str = "upstream-at-1",
    refresh_token: str | None = "upstream-rt-1",
    expires_in: int = 3600,
) -> FakeResponse:
    payload: dict[str, Any] = {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": expires_in,
    }
    if id_token is not None:
        payload["id_token"] = id_token
    if refresh_token is not None:
        payload["refresh_token"] = refresh_token
    return FakeResponse(200, payload)


# --------------------------------------------------------------------------- #
# Signing keys                                                                #
# --------------------------------------------------------------------------- #
@pytest.fixture(scope="session")
def signing_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def jwks(signing_key: rsa.RSAPrivateKey) -> dict[str, Any]:
    jwk = json.loads(RSAAlgorithm.to_jwk(signing_key.public_key()))
    jwk.update({"kid": SIGNING_KID, "use": "sig", "alg": "RS256"})
    return {"keys": [jwk]}


@pytest.fixture(scope="session")
def make_id_token(signing_key: rsa.RSAPrivateKey) -> Callable[..., str]:
    """Return a factory for RS256 identity tokens; ``None`` drops a claim."""

    def _make(*, kid: str = SIGNING_KID, key: Any = None, **overrides: Any) -> str:
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": UPSTREAM_ISSUER,
            "aud": UPSTREAM_CLIENT_ID,
            "sub": "auth0|user-1",
            "email": "user@example.com",
            "name": "Example User",
            "iat": now,
            "exp": now + 3600,
        }
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        return jwt.encode(claims, key or signing_key, algorithm="RS256", headers={"kid": kid})

    return _make


# --------------------------------------------------------------------------- #
# Broker                                                                      #
# --------------------------------------------------------------------------- #
@pytest.fixture()
def broker_config() -> BrokerConfig:
    return BrokerConfig(
        upstream_domain=UPSTREAM_DOMAIN,
        upstream_client_id=UPSTREAM_CLIENT_ID,
        upstream_client_secret="upstream-secret",
        public_url="https://broker.example.com",
        state_secret="state-secret",
    )


@pytest.fixture()
def service_factory(
    clock: FakeClock, token_endpoint: FakeSession, jwks: dict[str, Any]
) -> Callable[..., CentralAuthService]:
    def _build(config: BrokerConfig, **kwargs: Any) -> CentralAuthService:
        kwargs.setdefault("store", MemoryAuthStore(clock=clock))
        kwargs.setdefault(
            "upstream", UpstreamClient(config, session=token_endpoint, clock=clock)
        )
        kwargs.setdefault("claims_validator", ClaimsValidator(lambda: jwks))
        return CentralAuthService(config, clock=clock, **kwargs)

    return _build


@pytest.fixture()
def service(
    broker_config: BrokerConfig, service_factory: Callable[..., CentralAuthService]
) -> CentralAuthService:
    return service_factory(broker_config)


@pytest.fixture()
def upstream_tokens() -> Callable[..., FakeResponse]:
    """Factory for successful upstream token endpoint responses."""
    return token_response


@pytest.fixture()
def upstream_error() -> Callable[..., FakeResponse]:
    """Factory for failed upstream token endpoint responses."""

    def _error(status_code: int = 400, error: str | None = "invalid_grant") -> FakeResponse:
        return FakeResponse(status_code, {"error": error} if error else None)

    return _error
