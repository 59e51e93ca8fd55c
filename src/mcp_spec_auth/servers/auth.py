"""Browser-facing OAuth endpoints of the authorization broker.

Handlers are intentionally thin:

1. Parse HTTP-layer parameters with one strict normalisation step (a
   parameter supplied twice is rejected, never guessed at).
2. Delegate business logic to ``CentralAuthService`` on a worker thread; the
   service does blocking store and upstream I/O.
3. Return an appropriate Starlette ``Response`` type.

SECURITY NOTE
-------------
• No raw secrets (state, code verifiers, codes, access / refresh tokens, client
  secrets) are ever logged.
• Every failure is reported with the same generic message; the error kind and
  detail are only logged server-side, together with the correlation id.
• Consent is only accepted from the browser holding the HttpOnly consent
  cookie set by ``/authorize`` for that transaction.

This module is HTTP-only and MUST remain free from heavy business logic.
"""

from __future__ import annotations

import html
import logging
from functools import partial
from typing import TYPE_CHECKING, Any, Mapping

import anyio
from starlette.datastructures import FormData, QueryParams
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from mcp_spec_auth.central_auth.consent import ConsentView
from mcp_spec_auth.central_auth.errors import (
    GENERIC_MESSAGE,
    AuthFlowError,
    InvalidClient,
    InvalidRequest,
)
from mcp_spec_auth.central_auth.pkce import generate_opaque_token
from mcp_spec_auth.central_auth.service import AuthorizeRequest, CentralAuthService, TokenRequest

if TYPE_CHECKING:  # pragma: no cover
    from mcp_spec_auth.servers.main import SpecMCP  # circular – only for typing

_LOG = logging.getLogger("mcp-spec-auth.auth.routes")

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}
_CONSENT_COOKIE_PREFIX = "mcp_consent_"
_CONSENT_COOKIE_PATH = "/authorize"


def _html_page(title: str, body: str, status: int = 200) -> HTMLResponse:
    """Return a tiny success / error HTML page."""
    content = (
        "<!doctype html><html lang='en'>"
        "<head><meta charset='utf-8'><title>"
        f"{html.escape(title)}</title></head><body><h1>{html.escape(title)}</h1>"
        f"<p>{html.escape(body)}</p></body></html>"
    )
    return HTMLResponse(content, status_code=status, headers=_NO_STORE)


def _failure_page(status: int = 400) -> HTMLResponse:
    return _html_page("Authorization failed", f"{GENERIC_MESSAGE} Please start again.", status)


def consent_page(view: ConsentView, *, action: str = "/authorize/consent") -> HTMLResponse:
    """Render the consent form for *view*."""
    scopes = "".join(f"<li>{html.escape(s)}</li>" for s in view.scopes) or "<li>basic profile</li>"
    content = (
        "<!doctype html><html lang='en'><head><meta charset='utf-8'>"
        "<title>Authorize access</title></head><body>"
        f"<h1>{html.escape(view.client_name)} wants to access your account</h1>"
        f"<p>After approval you will be redirected to "
        f"<code>{html.escape(view.redirect_uri)}</code>.</p>"
        f"<ul>{scopes}</ul>"
        f"<form method='post' action='{html.escape(action)}'>"
        f"<input type='hidden' name='auth_txn_id' value='{html.escape(view.auth_txn_id)}'>"
        f"<input type='hidden' name='consent_token' value='{html.escape(view.consent_token)}'>"
        "<button type='submit'>Approve</button>"
        "</form></body></html>"
    )
    return HTMLResponse(content, headers={**_NO_STORE, "X-Frame-Options": "DENY"})


def single_param(
    params: QueryParams | FormData | Mapping[str, Any], name: str, *, required: bool = False
) -> str | None:
    """Return the single value of *name*; reject repeated or missing values."""
    values = params.getlist(name) if hasattr(params, "getlist") else (
        [params[name]] if name in params else []
    )
    if len(values) > 1:
        raise InvalidRequest(f"parameter {name!r} given more than once")
    value = values[0] if values else None
    if value is not None and not isinstance(value, str):
        raise InvalidRequest(f"parameter {name!r} must be a string")
    if required and not value:
        raise InvalidRequest(f"parameter {name!r} is required")
    return value or None


def parse_authorize_request(params: QueryParams) -> AuthorizeRequest:
    scope = single_param(params, "scope") or ""
    return AuthorizeRequest(
        client_id=single_param(params, "client_id", required=True) or "",
        redirect_uri=single_param(params, "redirect_uri", required=True) or "",
        response_type=single_param(params, "response_type", required=True) or "",
        scopes=tuple(scope.split()),
        state=single_param(params, "state"),
        code_challenge=single_param(params, "code_challenge"),
        code_challenge_method=single_param(params, "code_challenge_method"),
    )


def parse_token_request(form: FormData) -> TokenRequest:
    return TokenRequest(
        grant_type=single_param(form, "grant_type", required=True) or "",
        client_id=single_param(form, "client_id") or "",
        code=single_param(form, "code"),
        redirect_uri=single_param(form, "redirect_uri"),
        code_verifier=single_param(form, "code_verifier"),
        refresh_token=single_param(form, "refresh_token"),
    )


def consent_cookie_name(auth_txn_id: str) -> str:
    return f"{_CONSENT_COOKIE_PREFIX}{auth_txn_id}"


def bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _log_failure(request: Request, where: str, exc: Exception) -> None:
    correlation_id = getattr(request.state, "correlation_id", "-")
    if isinstance(exc, AuthFlowError):
        _LOG.warning(
            "%s failed kind=%s detail=%s correlation_id=%s",
            where,
            exc.kind,
            exc,
            correlation_id,
        )
    else:
        _LOG.error("%s crashed correlation_id=%s", where, correlation_id, exc_info=exc)


# --------------------------------------------------------------------------- #
# Public API                                                                  #
# --------------------------------------------------------------------------- #
def register_auth_routes(app: "SpecMCP", svc: CentralAuthService) -> None:
    """Attach the broker endpoints to *app*."""

    # ----- GET /authorize ------------------------------------------------ #
    @app.custom_route("/authorize", methods=["GET"])
    async def _authorize(request: Request) -> Response:  # noqa: D401
        try:
            auth_request = parse_authorize_request(request.query_params)
            browser_binding = generate_opaque_token()
            _, view = await anyio.to_thread.run_sync(
                partial(svc.start_authorization, auth_request, browser_binding=browser_binding)
            )
        except Exception as exc:  # broad: mapped to generic failure
            _log_failure(request, "authorize", exc)
            return _failure_page(400 if isinstance(exc, AuthFlowError) else 500)
        response = consent_page(view)
        # ties the consent POST to the browser that opened the transaction
        response.set_cookie(
            consent_cookie_name(view.auth_txn_id),
            browser_binding,
            max_age=svc.config.consent_ttl,
            path=_CONSENT_COOKIE_PATH,
            secure=svc.config.issuer.startswith("https://"),
            httponly=True,
            samesite="lax",
        )
        return response

    # ----- POST /authorize/consent ---------------------------------------- #
    @app.custom_route("/authorize/consent", methods=["POST"])
    async def _consent(request: Request) -> Response:  # noqa: D401
        try:
            form = await request.form()
            auth_txn_id = single_param(form, "auth_txn_id", required=True) or ""
            upstream_url = await anyio.to_thread.run_sync(
                svc.confirm_consent,
                auth_txn_id,
                single_param(form, "consent_token", required=True) or "",
                request.cookies.get(consent_cookie_name(auth_txn_id)),
            )
        except Exception as exc:  # broad: mapped to generic failure
            _log_failure(request, "consent", exc)
            return _failure_page(400 if isinstance(exc, AuthFlowError) else 500)
        response = RedirectResponse(upstream_url, status_code=302, headers=_NO_STORE)
        response.delete_cookie(
            consent_cookie_name(auth_txn_id),
            path=_CONSENT_COOKIE_PATH,
            secure=svc.config.issuer.startswith("https://"),
            httponly=True,
            samesite="lax",
        )
        return response

    # ----- GET /callback --------------------------------------------------- #
    @app.custom_route("/callback", methods=["GET"])
    async def _callback(request: Request) -> Response:  # noqa: D401
        # Provider-side errors (e.g. access_denied) are logged, not echoed
        upstream_error = request.query_params.get("error")
        if upstream_error:
            _LOG.warning(
                "Upstream returned error=%s correlation_id=%s",
                upstream_error,
                getattr(request.state, "correlation_id", "-"),
            )
            return _failure_page(400)
        try:
            result = await anyio.to_thread.run_sync(
                svc.handle_callback,
                single_param(request.query_params, "code", required=True) or "",
                single_param(request.query_params, "state", required=True) or "",
            )
        except Exception as exc:  # broad: mapped to generic failure
            _log_failure(request, "callback", exc)
            return _failure_page(400 if isinstance(exc, AuthFlowError) else 500)
        _LOG.info(
            "Callback completed correlation_id=%s", getattr(request.state, "correlation_id", "-")
        )
        return RedirectResponse(result.redirect_url, status_code=302, headers=_NO_STORE)

    # ----- POST /token ----------------------------------------------------- #
    @app.custom_route("/token", methods=["POST"])
    async def _token(request: Request) -> Response:  # noqa: D401
        try:
            form = await request.form()
            token_response = await anyio.to_thread.run_sync(
                svc.exchange_token, parse_token_request(form)
            )
        except AuthFlowError as exc:
            _log_failure(request, "token", exc)
            status = 401 if isinstance(exc, InvalidClient) else 400
            if exc.retryable:
                status = 503
            return JSONResponse(exc.to_payload(), status_code=status, headers=_NO_STORE)
        except Exception as exc:  # broad: mapped to generic failure
            _log_failure(request, "token", exc)
            return JSONResponse(
                {"error": "server_error", "error_description": GENERIC_MESSAGE},
                status_code=500,
                headers=_NO_STORE,
            )
        return JSONResponse(token_response.to_dict(), headers=_NO_STORE)

    # ----- POST /register -------------------------------------------------- #
    @app.custom_route("/register", methods=["POST"])
    async def _register(request: Request) -> Response:  # noqa: D401
        try:
            payload: Any = await request.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            return JSONResponse({"error": "invalid_client_metadata"}, status_code=400)
        redirect_uris = payload.get("redirect_uris")
        client_name = payload.get("client_name")
        if not isinstance(redirect_uris, list) or not all(
            isinstance(u, str) for u in redirect_uris
        ):
            return JSONResponse({"error": "invalid_redirect_uri"}, status_code=400)
        try:
            client = await anyio.to_thread.run_sync(
                svc.register_client,
                redirect_uris,
                client_name if isinstance(client_name, str) else None,
            )
        except AuthFlowError as exc:
            _log_failure(request, "register", exc)
            return JSONResponse({"error": "invalid_redirect_uri"}, status_code=400)
        return JSONResponse(
            {
                "client_id": client.client_id,
                "client_id_issued_at": client.created_at,
                "client_name": client.client_name,
                "redirect_uris": list(client.redirect_uris),
                "grant_types": ["authorization_code", "refresh_token"],
                "response_types": ["code"],
                "token_endpoint_auth_method": "none",
            },
            status_code=201,
        )

    # ----- POST /logout ---------------------------------------------------- #
    @app.custom_route("/logout", methods=["POST"])
    async def _logout(request: Request) -> Response:  # noqa: D401
        try:
            await anyio.to_thread.run_sync(svc.logout, bearer_token(request))
        except AuthFlowError as exc:
            _log_failure(request, "logout", exc)
            return JSONResponse(exc.to_payload(), status_code=401)
        return Response(status_code=204)

    # ----- discovery ------------------------------------------------------- #
    @app.custom_route("/.well-known/oauth-authorization-server", methods=["GET"])
    async def _as_metadata(request: Request) -> Response:  # noqa: D401
        return JSONResponse(svc.authorization_server_metadata())

    @app.custom_route("/.well-known/oauth-protected-resource", methods=["GET"])
    async def _resource_metadata(request: Request) -> Response:  # noqa: D401
        return JSONResponse(svc.protected_resource_metadata())
