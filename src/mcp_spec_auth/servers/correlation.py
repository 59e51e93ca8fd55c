"""Correlation ID middleware for request tracing.

Generates a unique correlation ID per incoming HTTP request, sets it in
``request.state.correlation_id`` and in the auth logging context, and
propagates it to the response headers so that a user-visible generic failure
can be matched with the detailed server-side log line.

Secrets MUST NOT be logged. The correlation ID is a random UUID4 hex string
unless the caller supplied a well-formed one.
"""

from __future__ import annotations

import logging
import re
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from mcp_spec_auth.central_auth.log_utils import bind_correlation_id, reset_correlation_id

_HEADER_NAME = "X-Correlation-ID"
_VALID_ID = re.compile(r"^[A-Za-z0-9_-]{8,64}$")
_logger = logging.getLogger("mcp-spec-auth.correlation")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that attaches a per-request correlation ID."""

    def __init__(self, app: ASGIApp, header_name: str = _HEADER_NAME) -> None:
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        incoming = request.headers.get(self.header_name) or ""
        # Client-supplied ids end up in logs; accept only a safe alphabet
        correlation_id = incoming if _VALID_ID.match(incoming) else uuid.uuid4().hex
        request.state.correlation_id = correlation_id
        _logger.debug(
            "%s %s correlation_id=%s", request.method, request.url.path, correlation_id
        )
        token = bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)
        response.headers[self.header_name] = correlation_id
        return response
