"""Logging helpers shared by the server and the broker."""

from __future__ import annotations

import logging
import sys
from typing import TextIO

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def setup_logging(level: int | str = logging.INFO, stream: TextIO | None = None) -> logging.Logger:
    """Configure the ``mcp-spec-auth`` logger hierarchy.

    Args:
        level: Logging level name or number.
        stream: Output stream, defaults to stderr (stdout is reserved for stdio transports).

    Returns:
        The configured package logger.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if not any(getattr(h, "_mcp_spec_auth", False) for h in root_logger.handlers):
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._mcp_spec_auth = True  # type: ignore[attr-defined]
        root_logger.addHandler(handler)

    logger = logging.getLogger("mcp-spec-auth")
    logger.setLevel(level)
    return logger


def mask_sensitive(value: str | None, keep_chars: int = 4) -> str:
    """Mask a secret, keeping only the first *keep_chars* characters.

    Values shorter than twice *keep_chars* are fully masked.
    """
    if not value:
        return ""
    if len(value) <= keep_chars * 2:
        return "*" * len(value)
    return value[:keep_chars] + "*" * (len(value) - keep_chars)
