"""Dependency providers giving MCP tools access to the authenticated identity.

``BearerAuthMiddleware`` resolves the broker access token before a request
reaches the MCP transport and stores the result on ``request.state``; the
helpers below read it back inside tool functions.
"""

from __future__ import annotations

import logging

from fastmcp import Context
from fastmcp.server.dependencies import get_http_request
from starlette.requests import Request

from mcp_spec_auth.central_auth.errors import Unauthenticated
from mcp_spec_auth.central_auth.models import SessionProps
from mcp_spec_auth.servers.context import MainAppContext

logger = logging.getLogger("mcp-spec-auth.servers.dependencies")

SESSION_PROPS_KEY = "session_props"
ACCESS_TOKEN_KEY = "broker_access_token"


def _current_request() -> Request:
    try:
        return get_http_request()
    except RuntimeError:
        # stdio transport: there is no HTTP request and therefore no bearer token
        raise Unauthenticated("no HTTP request in context") from None


def get_app_context(ctx: Context) -> MainAppContext:
    """Return the lifespan context created by ``main_lifespan``.

    Raises:
        RuntimeError: If the server lifespan has not run.
    """
    lifespan_ctx_dict = ctx.request_context.lifespan_context  # type: ignore
    app_lifespan_ctx: MainAppContext | None = (
        lifespan_ctx_dict.get("app_lifespan_context")
        if isinstance(lifespan_ctx_dict, dict)
        else None
    )
    if app_lifespan_ctx is None:
        raise RuntimeError("Application context is not available")
    return app_lifespan_ctx


def get_session_props() -> SessionProps:
    """Return the identity bound to the current request.

    Raises:
        Unauthenticated: If the request carries no resolved broker credential.
    """
    request = _current_request()
    props = getattr(request.state, SESSION_PROPS_KEY, None)
    if not isinstance(props, SessionProps):
        logger.debug("get_session_props: no session props on request %s", request.url.path)
        raise Unauthenticated("request is not authenticated")
    return props


def get_access_token() -> str:
    """Return the broker access token the current request was authenticated with."""
    request = _current_request()
    token = getattr(request.state, ACCESS_TOKEN_KEY, None)
    if not token:
        raise Unauthenticated("request is not authenticated")
    return token
