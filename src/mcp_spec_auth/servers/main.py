"""Main FastMCP server setup for the authorization broker."""

from __future__ import annotations

import argparse
import json
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Literal, Optional

import anyio
from fastmcp import Context, FastMCP
from fastmcp.exceptions import ToolError
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from mcp_spec_auth.central_auth.errors import GENERIC_MESSAGE, AuthFlowError, Unauthenticated
from mcp_spec_auth.central_auth.service import CentralAuthService
from mcp_spec_auth.utils.environment import BrokerConfig
from mcp_spec_auth.utils.logging import mask_sensitive, setup_logging

from .auth import register_auth_routes
from .context import MainAppContext
from .correlation import CorrelationIdMiddleware
from .dependencies import (
    ACCESS_TOKEN_KEY,
    SESSION_PROPS_KEY,
    get_access_token,
    get_app_context,
    get_session_props,
)

logger = logging.getLogger("mcp-spec-auth.server.main")

_PUBLIC_CLAIMS = ("sub", "email", "email_verified", "name", "nickname", "picture")


async def health_check(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


@asynccontextmanager
async def main_lifespan(app: FastMCP[MainAppContext]) -> AsyncIterator[dict]:
    logger.info("Authorization broker MCP server lifespan starting...")
    service: CentralAuthService = app.auth_service  # type: ignore[attr-defined]
    app_context = MainAppContext(config=service.config, service=service)
    removed = service.store.cleanup_expired_txns()
    if removed:
        logger.info("Removed %d expired transactions at startup", removed)
    try:
        yield {"app_lifespan_context": app_context}
    except Exception as e:
        logger.error(f"Error during lifespan: {e}", exc_info=True)
        raise
    finally:
        try:
            service.store.cleanup_expired_txns()
        except OSError as e:
            logger.error(f"Error during cleanup: {e}", exc_info=True)
        logger.info("Authorization broker MCP server lifespan shutdown complete.")


class SpecMCP(FastMCP[MainAppContext]):
    """FastMCP server whose MCP endpoint is protected by broker-issued tokens."""

    def __init__(self, service: CentralAuthService, **kwargs: Any) -> None:
        self.auth_service = service
        super().__init__(**kwargs)

    def http_app(
        self,
        path: str | None = None,
        middleware: list[Middleware] | None = None,
        transport: Literal["streamable-http", "sse"] = "streamable-http",
        **kwargs: Any,
    ) -> "Starlette":
        correlation_mw = Middleware(CorrelationIdMiddleware)
        bearer_mw = Middleware(
            BearerAuthMiddleware,
            service=self.auth_service,
            mcp_path=path or "/mcp",
        )
        final_middleware_list = [correlation_mw, bearer_mw]
        if middleware:
            final_middleware_list.extend(middleware)
        app = super().http_app(
            path=path, middleware=final_middleware_list, transport=transport, **kwargs
        )
        return app


class BearerAuthMiddleware:
    """ASGI middleware resolving broker access tokens on the MCP endpoint.

    Requests to the MCP path must carry ``Authorization: Bearer <token>``.
    The resolved :class:`SessionProps` and the token are stored in the request
    state; anything else is answered with ``401`` and a ``WWW-Authenticate``
    header pointing at the protected-resource metadata.
    """

    def __init__(
        self,
        app: ASGIApp,
        service: Optional[CentralAuthService] = None,
        mcp_path: str = "/mcp",
    ) -> None:
        self.app = app
        self.service = service
        self.mcp_path = mcp_path.rstrip("/")
        if self.service is None:
            logger.warning(
                "BearerAuthMiddleware initialized without service. "
                "Every MCP request will be rejected."
            )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        # Pass through non-HTTP requests directly per ASGI spec
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if not self._should_process_auth(scope):
            await self.app(scope, receive, send)
            return

        scope_copy: Scope = dict(scope)
        scope_copy["state"] = dict(scope.get("state") or {})

        async def safe_send(message: Message) -> None:
            try:
                await send(message)
            except (ConnectionResetError, BrokenPipeError) as e:
                # Client disconnected; nothing left to deliver
                logger.debug(
                    f"Client disconnected during response: {type(e).__name__}: {e}"
                )

        token = self._bearer_token(scope_copy)
        if token is None:
            await self._send_unauthorized(safe_send, Unauthenticated(), token_presented=False)
            return

        try:
            if self.service is None:
                raise Unauthenticated("no authorization service configured")
            props = await anyio.to_thread.run_sync(self.service.current_user, token)
        except AuthFlowError as exc:
            logger.warning(
                "MCP request rejected kind=%s detail=%s token=%s",
                exc.kind,
                exc,
                mask_sensitive(token, 6),
            )
            if exc.retryable:
                await self._send_json_error_response(safe_send, 503, exc.to_payload())
            else:
                await self._send_unauthorized(safe_send, exc, token_presented=True)
            return

        scope_copy["state"][SESSION_PROPS_KEY] = props
        scope_copy["state"][ACCESS_TOKEN_KEY] = token
        await self.app(scope_copy, receive, safe_send)

    def _should_process_auth(self, scope: Scope) -> bool:
        request_path = scope.get("path", "").rstrip("/")
        return request_path == self.mcp_path

    @staticmethod
    def _bearer_token(scope: Scope) -> str | None:
        headers = dict(scope.get("headers", []))
        raw = headers.get(b"authorization")
        if not raw:
            return None
        scheme, _, token = raw.decode("latin-1").partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def _www_authenticate(self, token_presented: bool) -> str:
        if self.service is None:
            return "Bearer"
        metadata_url = f"{self.service.config.issuer}/.well-known/oauth-protected-resource"
        value = f'Bearer resource_metadata="{metadata_url}"'
        if token_presented:
            value += ', error="invalid_token"'
        return value

    async def _send_unauthorized(
        self, send: Send, exc: AuthFlowError, *, token_presented: bool
    ) -> None:
        await self._send_json_error_response(
            send,
            401,
            {"error": "invalid_token", "error_description": GENERIC_MESSAGE},
            extra_headers=[
                (b"www-authenticate", self._www_authenticate(token_presented).encode("latin-1"))
            ],
        )

    async def _send_json_error_response(
        self,
        send: Send,
        status_code: int,
        payload: dict[str, str],
        extra_headers: list[tuple[bytes, bytes]] | None = None,
    ) -> None:
        """Send a JSON error response via ASGI protocol.

        Args:
            send: ASGI send callable (should be safe_send wrapper).
            status_code: HTTP status code (e.g., 401).
            payload: JSON body; never contains internal detail.
            extra_headers: Additional raw headers.
        """
        body = json.dumps(payload).encode("utf-8")
        await send(
            {
                "type": "http.response.start",
                "status": status_code,
                "headers": [
                    (b"content-type", b"application/json"),
                    (b"content-length", str(len(body)).encode("ascii")),
                    (b"cache-control", b"no-store"),
                    *(extra_headers or []),
                ],
            }
        )
        await send({"type": "http.response.body", "body": body})


# --------------------------------------------------------------------------- #
# Tools                                                                       #
# --------------------------------------------------------------------------- #
async def whoami(ctx: Context) -> dict[str, Any]:
    """Return the identity of the signed-in user."""
    try:
        props = get_session_props()
    except AuthFlowError:
        raise ToolError(GENERIC_MESSAGE) from None
    return {k: props.claims[k] for k in _PUBLIC_CLAIMS if k in props.claims}


async def logout(ctx: Context) -> dict[str, Any]:
    """Sign out: the current broker tokens stop working immediately."""
    try:
        service = get_app_context(ctx).service
        subject = await anyio.to_thread.run_sync(service.logout, get_access_token())
    except AuthFlowError:
        raise ToolError(GENERIC_MESSAGE) from None
    return {"logged_out": True, "sub": subject}


def create_server(
    config: BrokerConfig | None = None, *, service: CentralAuthService | None = None
) -> SpecMCP:
    """Build the MCP server with broker routes and tools attached."""
    if service is None:
        service = CentralAuthService(config or BrokerConfig.from_env())
    server = SpecMCP(service, name="MCP Authorization Broker", lifespan=main_lifespan)
    register_auth_routes(server, service)
    server.tool(name="whoami", tags={"auth"})(whoami)
    server.tool(name="logout", tags={"auth"})(logout)

    @server.custom_route("/healthz", methods=["GET"], include_in_schema=False)
    async def _health_check_route(request: Request) -> JSONResponse:
        return await health_check(request)

    return server


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run the MCP authorization broker.")
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))
    parser.add_argument(
        "--transport",
        choices=("streamable-http", "sse"),
        default=os.getenv("TRANSPORT", "streamable-http"),
    )
    parser.add_argument("--log-level", default=os.getenv("MCP_LOG_LEVEL", "INFO"))
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    try:
        config = BrokerConfig.from_env()
    except ValueError as exc:
        parser.error(str(exc))
    server = create_server(config)
    logger.info("Starting broker on %s:%s (%s)", args.host, args.port, args.transport)
    server.run(transport=args.transport, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
