"""Structured logging helpers for broker components.

This module purposefully restricts **which** contextual attributes are attached
to log records in order to avoid accidentally leaking secrets.  All helpers
ONLY inject the following *non-sensitive* fields:

- ``auth_txn_id``    – The authorization transaction identifier (first 6 chars kept)
- ``client_id``      – MCP client the flow belongs to
- ``subject``        – Identity ``sub`` claim (first 8 chars kept)
- ``correlation_id`` – Per-request id set by :class:`CorrelationIdMiddleware`;
  picked up from the current context when not passed explicitly

Usage
-----
>>> from mcp_spec_auth.central_auth.log_utils import get_auth_logger
>>> log = get_auth_logger(
...     base_logger_name="mcp-spec-auth.central_auth.service",
...     auth_txn_id="6f1c0e1e9b2d4c7a",
...     client_id="client-abc",
... )
>>> log.info("Consent granted")

The adapter is a thin wrapper around :class:`logging.LoggerAdapter`; the
:func:`describe` helper renders the injected context into the message so that
it is visible with the default formatter too.
"""

from __future__ import annotations

import logging
from contextvars import ContextVar, Token
from typing import Any, Mapping, MutableMapping

_TRUNCATE = {"auth_txn_id": 6, "subject": 8}
_CORRELATION_ID: ContextVar[str | None] = ContextVar(
    "mcp_spec_auth_correlation_id", default=None
)


class _AuthLoggerAdapter(logging.LoggerAdapter):
    """Inject whitelisted auth context into log records."""

    extra_keys = ("auth_txn_id", "client_id", "subject", "correlation_id")

    def __init__(self, logger: logging.Logger, extra: Mapping[str, Any] | None = None):
        extra_clean: MutableMapping[str, Any] = {}
        for k in self.extra_keys:
            if not extra or extra.get(k) is None:
                continue
            value = str(extra[k])
            if k in _TRUNCATE:
                value = value[: _TRUNCATE[k]]
            extra_clean[k] = value
        super().__init__(logger, extra_clean)

    def process(self, msg: str, kwargs: MutableMapping[str, Any]):
        if "extra" not in kwargs or kwargs["extra"] is None:
            kwargs["extra"] = {}
        # merge but do not overwrite call-site provided extras
        for k, v in self.extra.items():
            kwargs["extra"].setdefault(k, v)
        context = describe(self.extra)
        return (f"{msg} [{context}]" if context else msg), kwargs


def bind_correlation_id(correlation_id: str | None) -> Token:
    """Make *correlation_id* the default for auth loggers in the current context."""
    return _CORRELATION_ID.set(correlation_id)


def reset_correlation_id(token: Token) -> None:
    _CORRELATION_ID.reset(token)


def describe(extra: Mapping[str, Any]) -> str:
    """Render context as ``key=value`` pairs in a stable order."""
    return " ".join(
        f"{k}={extra[k]}" for k in _AuthLoggerAdapter.extra_keys if extra.get(k)
    )


def get_auth_logger(
    *,
    base_logger_name: str = "mcp-spec-auth.central_auth",
    auth_txn_id: str | None = None,
    client_id: str | None = None,
    subject: str | None = None,
    correlation_id: str | None = None,
) -> logging.LoggerAdapter:
    """Return a LoggerAdapter pre-filled with auth context."""
    logger = logging.getLogger(base_logger_name)
    return _AuthLoggerAdapter(
        logger,
        {
            "auth_txn_id": auth_txn_id,
            "client_id": client_id,
            "subject": subject,
            "correlation_id": correlation_id or _CORRELATION_ID.get(),
        },
    )
