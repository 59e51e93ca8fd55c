"""Unit tests for the broker HTTP endpoints and the MCP bearer middleware."""

from __future__ import annotations

import logging
import re
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx
import pytest

from mcp_spec_auth.central_auth.pkce import code_challenge_s256, generate_code_verifier
from mcp_spec_auth.servers.main import create_server

# --------------------------------------------------------------------------- #
# Constants                                                                   #
# --------------------------------------------------------------------------- #
CLIENT_ID = "mcp-inspector"
CLIENT_REDIRECT = "http://localhost:6274/oauth/callback"
GENERIC = "Authentication failed."


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def _hidden(html: str, name: str) -> str:
    match = re.search(rf"name='{name}' value='([^']*)'", html)
    assert match, f"hidden field {name} missing"
    return match.group(1)


# --------------------------------------------------------------------------- #
# Fixtures                                                                    #
# --------------------------------------------------------------------------- #
@pytest.fixture()
def asgi_app(service):
    """Return the Starlette application configured for tests."""
    return create_server(service=service).http_app(transport="streamable-http")


@pytest.fixture()
async def client(asgi_app):
    """Async HTTP client bound to the Starlette app."""
    transport = httpx.ASGITransport(app=asgi_app)
    async with httpx.AsyncClient(transport=transport, base_url="https://test") as ac:
        yield ac


@pytest.fixture()
def verifier() -> str:
    return generate_code_verifier()


async def _authorize(
    client: httpx.AsyncClient, verifier: str, *, headers: dict | None = None, **extra: str
) -> httpx.Response:
    params = {
        "response_type": "code",
        "client_id": CLIENT_ID,
        "redirect_uri": CLIENT_REDIRECT,
        "state": "client-state",
        "scope": "mcp",
        "code_challenge": code_challenge_s256(verifier),
        "code_challenge_method": "S256",
    }
    params.update(extra)
    return await client.get(f"/authorize?{urlencode(params)}", headers=headers)


async def _sign_in(
    client: httpx.AsyncClient, verifier: str, token_endpoint, upstream_tokens, make_id_token
) -> dict:
    page = await _authorize(client, verifier)
    consent = await client.post(
        "/authorize/consent",
        data={
            "auth_txn_id": _hidden(page.text, "auth_txn_id"),
            "consent_token": _hidden(page.text, "consent_token"),
        },
    )
    state = _query(consent.headers["location"])["state"]
    token_endpoint.queue(upstream_tokens(make_id_token()))
    callback = await client.get(f"/callback?{urlencode({'code': 'up-code', 'state': state})}")
    code = _query(callback.headers["location"])["code"]
    resp = await client.post(
        "/token",
        data={
            "grant_type": "authorization_code",
            "client_id": CLIENT_ID,
            "code": code,
            "redirect_uri": CLIENT_REDIRECT,
            "code_verifier": verifier,
        },
    )
    assert resp.status_code == 200
    return resp.json()


# --------------------------------------------------------------------------- #
# /authorize + consent                                                        #
# --------------------------------------------------------------------------- #
@pytest.mark.anyio
async def test_authorize_renders_consent_page(client: httpx.AsyncClient, verifier: str):
    resp = await _authorize(client, verifier)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/html")
    assert resp.headers["cache-control"] == "no-store"
    assert "action='/authorize/consent'" in resp.text
    assert _hidden(resp.text, "consent_token")
    assert CLIENT_REDIRECT in resp.text


@pytest.mark.anyio
async def test_authorize_rejects_repeated_parameters(client: httpx.AsyncClient, verifier: str):
    query = urlencode(
        [
            ("response_type", "code"),
            ("client_id", CLIENT_ID),
            ("redirect_uri", CLIENT_REDIRECT),
            ("redirect_uri", "http://localhost:1/evil"),
        ]
    )
    resp = await client.get(f"/authorize?{query}")
    assert resp.status_code == 400
    assert GENERIC in resp.text
    assert "evil" not in resp.text


@pytest.mark.anyio
async def test_authorize_missing_parameters(client: httpx.AsyncClient):
    resp = await client.get("/authorize?response_type=code")
    assert resp.status_code == 400
    assert GENERIC in resp.text


@pytest.mark.anyio
async def test_consent_redirects_upstream(client: httpx.AsyncClient, verifier: str):
    page = await _authorize(client, verifier)
    resp = await client.post(
        "/authorize/consent",
        data={
            "auth_txn_id": _hidden(page.text, "auth_txn_id"),
            "consent_token": _hidden(page.text, "consent_token"),
        },
    )
    assert resp.status_code == 302
    location = resp.headers["location"]
    assert location.startswith("https://tenant.example.auth0.com/authorize?")
    assert _query(location)["code_challenge_method"] == "S256"


@pytest.mark.anyio
async def test_consent_with_wrong_token(client: httpx.AsyncClient, verifier: str):
    page = await _authorize(client, verifier)
    resp = await client.post(
        "/authorize/consent",
        data={"auth_txn_id": _hidden(page.text, "auth_txn_id"), "consent_token": "guess"},
    )
    assert resp.status_code == 400
    assert GENERIC in resp.text


@pytest.mark.anyio
async def test_authorize_sets_consent_cookie(client: httpx.AsyncClient, verifier: str):
    resp = await _authorize(client, verifier)
    cookie = resp.headers["set-cookie"]
    assert cookie.startswith(f"mcp_consent_{_hidden(resp.text, 'auth_txn_id')}=")
    assert "HttpOnly" in cookie
    assert "Secure" in cookie
    assert "Path=/authorize" in cookie
    assert "samesite=lax" in cookie.lower()


@pytest.mark.anyio
async def test_consent_from_a_fresh_client_is_refused(
    asgi_app, client: httpx.AsyncClient, verifier: str
):
    page = await _authorize(client, verifier)
    form = {
        "auth_txn_id": _hidden(page.text, "auth_txn_id"),
        "consent_token": _hidden(page.text, "consent_token"),
    }
    transport = httpx.ASGITransport(app=asgi_app)
    async with httpx.AsyncClient(transport=transport, base_url="https://test") as other:
        resp = await other.post("/authorize/consent", data=form)
    assert resp.status_code == 400
    assert GENERIC in resp.text

    # the browser that opened the flow can still approve it
    resp = await client.post("/authorize/consent", data=form)
    assert resp.status_code == 302
    assert "mcp_consent_" in resp.headers["set-cookie"]
    assert not client.cookies.get(f"mcp_consent_{form['auth_txn_id']}")


@pytest.mark.anyio
async def test_service_logs_carry_correlation_id(
    client: httpx.AsyncClient, verifier: str, caplog: pytest.LogCaptureFixture
):
    with caplog.at_level(logging.WARNING, logger="mcp-spec-auth.central_auth.service"):
        resp = await _authorize(
            client,
            verifier,
            response_type="token",
            headers={"X-Correlation-ID": "corr-1234abcd"},
        )
    assert resp.status_code == 400
    service_records = [
        r for r in caplog.records if r.name == "mcp-spec-auth.central_auth.service"
    ]
    assert service_records
    assert all(r.correlation_id == "corr-1234abcd" for r in service_records)
    assert "correlation_id=corr-1234abcd" in service_records[-1].getMessage()


# --------------------------------------------------------------------------- #
# /callback                                                                   #
# --------------------------------------------------------------------------- #
@pytest.mark.anyio
async def test_callback_upstream_error_is_not_echoed(client: httpx.AsyncClient):
    resp = await client.get("/callback?error=access_denied&error_description=<script>")
    assert resp.status_code == 400
    assert GENERIC in resp.text
    assert "<script>" not in resp.text


@pytest.mark.anyio
async def test_callback_missing_state(client: httpx.AsyncClient):
    resp = await client.get("/callback?code=abc")
    assert resp.status_code == 400
    assert GENERIC in resp.text


@pytest.mark.anyio
async def test_callback_bad_state(client: httpx.AsyncClient, token_endpoint):
    resp = await client.get("/callback?code=abc&state=forged")
    assert resp.status_code == 400
    assert GENERIC in resp.text
    assert token_endpoint.calls == []


# --------------------------------------------------------------------------- #
# /token                                                                      #
# --------------------------------------------------------------------------- #
@pytest.mark.anyio
async def test_full_flow_over_http(
    client: httpx.AsyncClient, verifier: str, token_endpoint, upstream_tokens, make_id_token
):
    tokens = await _sign_in(client, verifier, token_endpoint, upstream_tokens, make_id_token)
    assert tokens["token_type"] == "bearer"
    assert tokens["expires_in"] == 300
    assert tokens["scope"] == "mcp"
    assert tokens["access_token"] and tokens["refresh_token"]


@pytest.mark.anyio
async def test_token_errors_are_generic(client: httpx.AsyncClient):
    resp = await client.post(
        "/token",
        data={"grant_type": "authorization_code", "client_id": CLIENT_ID, "code": "nope.nope"},
    )
    assert resp.status_code == 400
    assert resp.headers["cache-control"] == "no-store"
    assert resp.json() == {"error": "invalid_grant", "error_description": GENERIC}


@pytest.mark.anyio
async def test_token_rejects_repeated_parameters(client: httpx.AsyncClient):
    resp = await client.post(
        "/token",
        content="grant_type=refresh_token&refresh_token=a.b&refresh_token=c.d",
        headers={"content-type": "application/x-www-form-urlencoded"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_request"


# --------------------------------------------------------------------------- #
# /register + discovery                                                       #
# --------------------------------------------------------------------------- #
@pytest.mark.anyio
async def test_register_client(client: httpx.AsyncClient):
    resp = await client.post(
        "/register", json={"redirect_uris": [CLIENT_REDIRECT], "client_name": "Inspector"}
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["client_id"]
    assert body["redirect_uris"] == [CLIENT_REDIRECT]
    assert body["token_endpoint_auth_method"] == "none"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "payload", [{}, {"redirect_uris": "http://localhost/cb"}, {"redirect_uris": ["ftp://x"]}]
)
async def test_register_client_invalid(client: httpx.AsyncClient, payload: dict):
    resp = await client.post("/register", json=payload)
    assert resp.status_code == 400


@pytest.mark.anyio
async def test_discovery_documents(client: httpx.AsyncClient):
    as_meta = (await client.get("/.well-known/oauth-authorization-server")).json()
    assert as_meta["token_endpoint"] == "https://broker.example.com/token"
    resource = (await client.get("/.well-known/oauth-protected-resource")).json()
    assert resource["authorization_servers"] == ["https://broker.example.com"]


@pytest.mark.anyio
async def test_correlation_id_header(client: httpx.AsyncClient):
    resp = await client.get("/healthz", headers={"X-Correlation-ID": "abcdef123456"})
    assert resp.json() == {"status": "ok"}
    assert resp.headers["x-correlation-id"] == "abcdef123456"

    generated = await client.get("/healthz", headers={"X-Correlation-ID": "bad id\n"})
    assert re.fullmatch(r"[0-9a-f]{32}", generated.headers["x-correlation-id"])


# --------------------------------------------------------------------------- #
# MCP endpoint protection + logout                                            #
# --------------------------------------------------------------------------- #
@pytest.mark.anyio
async def test_mcp_requires_bearer_token(client: httpx.AsyncClient):
    resp = await client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "ping"})
    assert resp.status_code == 401
    challenge = resp.headers["www-authenticate"]
    assert challenge.startswith("Bearer ")
    assert (
        'resource_metadata="https://broker.example.com/.well-known/oauth-protected-resource"'
        in challenge
    )
    assert "invalid_token" not in challenge


@pytest.mark.anyio
async def test_mcp_rejects_unknown_token(client: httpx.AsyncClient):
    resp = await client.post(
        "/mcp",
        json={"jsonrpc": "2.0", "id": 1, "method": "ping"},
        headers={"Authorization": "Bearer forged.token"},
    )
    assert resp.status_code == 401
    assert 'error="invalid_token"' in resp.headers["www-authenticate"]
    assert resp.json()["error_description"] == GENERIC


@pytest.mark.anyio
async def test_logout_endpoint(
    client: httpx.AsyncClient, verifier: str, token_endpoint, upstream_tokens, make_id_token
):
    tokens = await _sign_in(client, verifier, token_endpoint, upstream_tokens, make_id_token)
    auth = {"Authorization": f"Bearer {tokens['access_token']}"}

    assert (await client.post("/logout", headers=auth)).status_code == 204
    assert (await client.post("/logout", headers=auth)).status_code == 401
    resp = await client.post("/mcp", json={}, headers=auth)
    assert resp.status_code == 401
