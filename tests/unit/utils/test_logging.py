"""Logging helpers: secret masking and the auth logger adapter."""

from __future__ import annotations

import io
import logging

import pytest

from mcp_spec_auth.central_auth.log_utils import (
    bind_correlation_id,
    get_auth_logger,
    reset_correlation_id,
)
from mcp_spec_auth.utils.logging import mask_sensitive, setup_logging


@pytest.mark.parametrize(
    ("value", "keep", "expected"),
    [
        (None, 4, ""),
        ("", 4, ""),
        ("short", 4, "*****"),
        ("abcdefghijkl", 4, "abcd********"),
        ("abcdefghijkl", 2, "ab**********"),
    ],
)
def test_mask_sensitive(value: str | None, keep: int, expected: str) -> None:
    assert mask_sensitive(value, keep) == expected


def test_setup_logging_is_idempotent() -> None:
    stream = io.StringIO()
    root = logging.getLogger()
    before = len(root.handlers)
    setup_logging("debug", stream=stream)
    setup_logging("info", stream=stream)
    try:
        assert len(root.handlers) == before + 1
        assert logging.getLogger("mcp-spec-auth").level == logging.INFO
        logging.getLogger("mcp-spec-auth.test").info("hello")
        assert "mcp-spec-auth.test hello" in stream.getvalue()
    finally:
        for handler in list(root.handlers):
            if getattr(handler, "_mcp_spec_auth", False):
                root.removeHandler(handler)


def test_auth_logger_truncates_and_whitelists(caplog: pytest.LogCaptureFixture) -> None:
    log = get_auth_logger(
        base_logger_name="mcp-spec-auth.test.auth",
        auth_txn_id="6f1c0e1e9b2d4c7a",
        client_id="client-abc",
        subject="auth0|1234567890",
    )
    with caplog.at_level(logging.INFO, logger="mcp-spec-auth.test.auth"):
        log.info("Consent granted")
    record = caplog.records[-1]
    assert record.getMessage() == (
        "Consent granted [auth_txn_id=6f1c0e client_id=client-abc subject=auth0|12]"
    )
    assert record.auth_txn_id == "6f1c0e"
    assert not hasattr(record, "correlation_id")


def test_auth_logger_picks_up_bound_correlation_id(caplog: pytest.LogCaptureFixture) -> None:
    token = bind_correlation_id("corr-42")
    try:
        log = get_auth_logger(base_logger_name="mcp-spec-auth.test.auth", client_id="client-abc")
        explicit = get_auth_logger(
            base_logger_name="mcp-spec-auth.test.auth", correlation_id="explicit-id"
        )
    finally:
        reset_correlation_id(token)
    with caplog.at_level(logging.INFO, logger="mcp-spec-auth.test.auth"):
        log.info("Token issued")
        explicit.info("Token issued")
    assert caplog.records[-2].getMessage() == (
        "Token issued [client_id=client-abc correlation_id=corr-42]"
    )
    assert caplog.records[-1].correlation_id == "explicit-id"
    # outside the bound context nothing is attached
    assert "correlation_id" not in get_auth_logger().extra
