"""Integration test: full sign-in over HTTP, then an authenticated MCP request.

The upstream IdP is stubbed (token endpoint + JWKS), everything else runs
through the real Starlette application including its lifespan.
"""

from __future__ import annotations

import re
from urllib.parse import parse_qs, urlencode, urlsplit

import pytest
from starlette.testclient import TestClient

from mcp_spec_auth.central_auth.pkce import code_challenge_s256, generate_code_verifier
from mcp_spec_auth.servers.main import create_server

CLIENT_REDIRECT = "http://127.0.0.1:33418/callback"


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def _hidden(html: str, name: str) -> str:
    match = re.search(rf"name='{name}' value='([^']*)'", html)
    assert match
    return match.group(1)


@pytest.mark.integration
@pytest.mark.ci_safe
def test_sign_in_then_call_mcp(service, token_endpoint, upstream_tokens, make_id_token):
    app = create_server(service=service).http_app(transport="streamable-http")
    verifier = generate_code_verifier()

    with TestClient(app, base_url="https://testserver", follow_redirects=False) as client:
        # 1. Dynamic registration
        reg = client.post("/register", json={"redirect_uris": [CLIENT_REDIRECT]})
        assert reg.status_code == 201
        client_id = reg.json()["client_id"]

        # 2. /authorize -> consent page
        page = client.get(
            "/authorize?"
            + urlencode(
                {
                    "response_type": "code",
                    "client_id": client_id,
                    "redirect_uri": CLIENT_REDIRECT,
                    "state": "xyz",
                    "code_challenge": code_challenge_s256(verifier),
                    "code_challenge_method": "S256",
                }
            )
        )
        assert page.status_code == 200

        # 3. Approve -> upstream
        consent = client.post(
            "/authorize/consent",
            data={
                "auth_txn_id": _hidden(page.text, "auth_txn_id"),
                "consent_token": _hidden(page.text, "consent_token"),
            },
        )
        assert consent.status_code == 302
        upstream_state = _query(consent.headers["location"])["state"]

        # 4. Upstream redirects back to the broker
        token_endpoint.queue(upstream_tokens(make_id_token()))
        callback = client.get(
            "/callback?" + urlencode({"code": "upstream-code", "state": upstream_state})
        )
        assert callback.status_code == 302
        client_params = _query(callback.headers["location"])
        assert callback.headers["location"].startswith(CLIENT_REDIRECT)
        assert client_params["state"] == "xyz"

        # 5. Redeem the broker code
        tokens = client.post(
            "/token",
            data={
                "grant_type": "authorization_code",
                "client_id": client_id,
                "code": client_params["code"],
                "redirect_uri": CLIENT_REDIRECT,
                "code_verifier": verifier,
            },
        ).json()

        # 6. The MCP endpoint lets the bearer through to the transport
        mcp = client.get(
            "/mcp", headers={"Authorization": f"Bearer {tokens['access_token']}"}
        )
        assert mcp.status_code != 401
        assert "www-authenticate" not in mcp.headers

        # 7. Forged tokens are still refused
        forged = client.get("/mcp", headers={"Authorization": "Bearer x.y"})
        assert forged.status_code == 401
