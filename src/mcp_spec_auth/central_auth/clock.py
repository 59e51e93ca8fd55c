"""Clock abstraction for testable time handling in the authorization broker.

Every expiry decision in :mod:`mcp_spec_auth.central_auth` (transactions,
broker codes, access/refresh tokens, upstream token sets) depends on an
injected ``Clock`` instead of calling ``time.time()`` directly.  There is no
background scheduler: expiry is evaluated lazily when a record is read.

Example
-------
>>> from mcp_spec_auth.central_auth.clock import default_clock, deadline
>>> deadline(60, clock=lambda: 1000.0)
1060
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Callable protocol returning *seconds* since the UNIX epoch."""

    def __call__(self) -> float: ...


def default_clock() -> float:
    """Wall-clock implementation delegating to ``time.time()``."""
    return time.time()


def now_int(clock: Clock = default_clock) -> int:
    """Return the current time from *clock* truncated to whole seconds."""
    return int(clock())


def deadline(ttl_seconds: int, *, clock: Clock = default_clock) -> int:
    """Return the absolute UNIX timestamp *ttl_seconds* from now."""
    return now_int(clock) + int(ttl_seconds)


def is_past(timestamp: int | float, *, clock: Clock = default_clock) -> bool:
    """Return *True* once *timestamp* has been reached."""
    return clock() >= timestamp
