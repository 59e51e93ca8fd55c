"""Identity-token validation (the broker's trust boundary).

Every downstream claim, notably ``sub`` which isolates users' data, is only as
trustworthy as :meth:`ClaimsValidator.validate`.  Tokens are verified with
``PyJWT`` against the issuer's published JSON Web Key Set.

Fetching the JWKS is an idempotent read, so network failures are retried with
bounded exponential backoff.  Keys are cached; a token signed with an unknown
``kid`` forces one refetch to pick up key rotation.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Final

import jwt
import requests
from cachetools import TTLCache
from jwt.exceptions import PyJWKError, PyJWKSetError

from mcp_spec_auth.central_auth.errors import ClaimsInvalid, UpstreamUnavailable

_LOG = logging.getLogger("mcp-spec-auth.central_auth.claims")

_ALGORITHMS: Final[list[str]] = ["RS256"]
_TIMEOUT = (5, 10)

JwksFetcher = Callable[[], dict[str, Any]]


def fetch_jwks(
    jwks_uri: str,
    *,
    session: requests.Session | None = None,
    attempts: int = 3,
    backoff: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    """GET *jwks_uri*, retrying network and 5xx failures with exponential backoff."""
    http = session or requests.Session()
    last_exc: Exception | None = None
    for attempt in range(attempts):
        try:
            resp = http.get(jwks_uri, timeout=_TIMEOUT)
        except requests.RequestException as exc:
            last_exc = exc
        else:
            if resp.status_code < 500:
                # 4xx and bad bodies are not transient
                try:
                    resp.raise_for_status()
                    data = resp.json()
                except (requests.HTTPError, ValueError) as exc:
                    raise UpstreamUnavailable("JWKS endpoint returned no usable document") from exc
                if not isinstance(data, dict) or not isinstance(data.get("keys"), list):
                    raise UpstreamUnavailable("JWKS document has no keys")
                return data
            last_exc = requests.HTTPError(f"JWKS endpoint returned {resp.status_code}")
        if attempt + 1 < attempts:
            delay = backoff * (2**attempt)
            _LOG.debug("JWKS fetch attempt %d failed, retrying in %.2fs", attempt + 1, delay)
            sleep(delay)
    _LOG.warning("JWKS fetch failed after %d attempts: %s", attempts, last_exc)
    raise UpstreamUnavailable("could not fetch signing keys") from last_exc


class ClaimsValidator:
    """Verify signature, issuer, audience and lifetime of identity tokens."""

    def __init__(
        self,
        jwks_fetcher: JwksFetcher,
        *,
        leeway: int = 30,
        cache_ttl: int = 600,
    ) -> None:
        self._fetch = jwks_fetcher
        self.leeway = leeway
        self._cache: TTLCache[str, jwt.PyJWKSet] = TTLCache(maxsize=1, ttl=cache_ttl)

    @classmethod
    def for_jwks_uri(cls, jwks_uri: str, **kwargs: Any) -> ClaimsValidator:
        return cls(lambda: fetch_jwks(jwks_uri), **kwargs)

    # ------------------------------------------------------------------ #
    # Key lookup                                                         #
    # ------------------------------------------------------------------ #
    def _key_set(self, *, force: bool = False) -> jwt.PyJWKSet:
        if not force:
            cached = self._cache.get("jwks")
            if cached is not None:
                return cached
        try:
            key_set = jwt.PyJWKSet.from_dict(self._fetch())
        except (PyJWKError, PyJWKSetError) as exc:
            raise UpstreamUnavailable("published signing keys are unusable") from exc
        self._cache["jwks"] = key_set
        return key_set

    def _signing_key(self, kid: str | None) -> Any:
        for force in (False, True):
            keys = self._key_set(force=force).keys
            if kid is None and len(keys) == 1:
                return keys[0].key
            for candidate in keys:
                if candidate.key_id == kid:
                    return candidate.key
        raise ClaimsInvalid("signature", f"no signing key matches kid={kid!r}")

    # ------------------------------------------------------------------ #
    # Validation                                                         #
    # ------------------------------------------------------------------ #
    def validate(
        self, id_token: str, expected_issuer: str, expected_audience: str
    ) -> dict[str, Any]:
        """Return the verified claims of *id_token*.

        Raises:
            ClaimsInvalid: ``reason`` is one of ``signature``, ``issuer``,
                ``audience``, ``expired``, ``not_yet_valid`` or ``malformed``.
            UpstreamUnavailable: Signing keys could not be fetched.
        """
        try:
            header = jwt.get_unverified_header(id_token)
        except jwt.DecodeError as exc:
            raise ClaimsInvalid("malformed", "identity token cannot be decoded") from exc
        if header.get("alg") not in _ALGORITHMS:
            raise ClaimsInvalid("signature", f"unsupported algorithm {header.get('alg')!r}")

        key = self._signing_key(header.get("kid"))
        try:
            claims = jwt.decode(
                id_token,
                key,
                algorithms=_ALGORITHMS,
                audience=expected_audience,
                issuer=expected_issuer,
                leeway=self.leeway,
                options={
                    "require": ["exp", "iss", "aud"],
                    "verify_signature": True,
                    "verify_exp": True,
                    "verify_nbf": True,
                    "verify_iat": True,
                    "verify_aud": True,
                    "verify_iss": True,
                },
            )
        except jwt.ExpiredSignatureError as exc:
            raise ClaimsInvalid("expired", "identity token has expired") from exc
        except jwt.ImmatureSignatureError as exc:
            raise ClaimsInvalid("not_yet_valid", "identity token is not yet valid") from exc
        except jwt.InvalidIssuerError as exc:
            raise ClaimsInvalid("issuer", "identity token issuer mismatch") from exc
        except jwt.InvalidAudienceError as exc:
            raise ClaimsInvalid("audience", "identity token audience mismatch") from exc
        except jwt.InvalidSignatureError as exc:
            raise ClaimsInvalid("signature", "identity token signature invalid") from exc
        except jwt.InvalidTokenError as exc:
            raise ClaimsInvalid("malformed", f"identity token rejected: {type(exc).__name__}") from exc

        _LOG.debug("Validated identity token for sub=%s****", str(claims.get("sub", ""))[:8])
        return claims
