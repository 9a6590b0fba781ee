"""Clock ports and system adapters.

Two notions of time are used by the service:

* **Monotonic** (:class:`ClockPort`) — TTL expiry in the notification
  cache and uptime in heartbeats.  Immune to NTP adjustments; only
  differences between ``now()`` calls are meaningful (PEP 418).
* **Wall clock** (:data:`WallClock`) — ISO 8601 timestamps carried in
  outbound commands, records and fan-out events.  Always UTC.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

type WallClock = Callable[[], datetime]
"""Callable returning the current aware datetime (UTC)."""


@runtime_checkable
class ClockPort(Protocol):
    """Monotonic clock for TTLs and elapsed-time measurements.

    The default implementation wraps ``time.monotonic()``.  Tests
    inject a deterministic fake clock.
    """

    def now(self) -> float:
        """Return monotonic time in seconds."""
        ...


class SystemClock:
    """Production clock wrapping ``time.monotonic()``."""

    def now(self) -> float:
        return time.monotonic()


def utc_now() -> datetime:
    """Default :data:`WallClock`."""
    return datetime.now(UTC)


def isoformat(clock: WallClock | None = None) -> str:
    """Current wall-clock time from *clock* as an ISO 8601 string."""
    return (clock or utc_now)().isoformat()
