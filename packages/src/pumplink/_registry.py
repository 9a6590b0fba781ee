"""Process-wide per-device state with per-device exclusivity.

:class:`DeviceRegistry` is created once per service and owns, for each
device id seen so far, a :class:`DeviceEntry`:

- an :class:`asyncio.Lock` serialising everything that touches that
  device (inbound message handling, operator commands, subscriptions);
- the in-memory :class:`TelemetrySnapshot`;
- the set of subscriber ids in the device's fan-out group.

There is no global lock: work for different devices proceeds
concurrently, work for the same device runs one step at a time.
Locks are not re-entrant; take them only at the entry points.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any


@dataclass
class TelemetrySnapshot:
    """Most recent telemetry known for a device; lost on restart."""

    capacity: int = 10
    latest_progress: dict[str, Any] | None = None
    latest_status: dict[str, Any] | None = None
    current_infusion: dict[str, Any] | None = None
    last_update: str | None = None
    recent_errors: deque[dict[str, Any]] = field(init=False)

    def __post_init__(self) -> None:
        self.recent_errors = deque(maxlen=self.capacity)

    def record_error(self, error: dict[str, Any]) -> None:
        """Insert *error* at the front (most recent first)."""
        self.recent_errors.appendleft(error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastUpdate": self.last_update,
            "currentInfusion": self.current_infusion,
            "latestProgress": self.latest_progress,
            "latestStatus": self.latest_status,
            "recentErrors": list(self.recent_errors),
        }


@dataclass
class DeviceEntry:
    device_id: str
    snapshot: TelemetrySnapshot
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    subscribers: set[str] = field(default_factory=set)
    sequence: int = 0

    def next_sequence(self) -> int:
        self.sequence += 1
        return self.sequence


class DeviceRegistry:
    """Owner of all :class:`DeviceEntry` objects, keyed by device id."""

    def __init__(self, *, recent_errors: int = 10) -> None:
        self._recent_errors = recent_errors
        self._entries: dict[str, DeviceEntry] = {}
        self._closed = False

    def entry(self, device_id: str) -> DeviceEntry:
        """Return the entry for *device_id*, creating it on first use."""
        if self._closed:
            msg = "DeviceRegistry is closed"
            raise RuntimeError(msg)
        entry = self._entries.get(device_id)
        if entry is None:
            entry = DeviceEntry(
                device_id=device_id,
                snapshot=TelemetrySnapshot(capacity=self._recent_errors),
            )
            self._entries[device_id] = entry
        return entry

    def get(self, device_id: str) -> DeviceEntry | None:
        return self._entries.get(device_id)

    def discard(self, device_id: str) -> bool:
        """Forget an idle entry with no subscribers.

        Returns ``True`` if the entry is gone afterwards.
        """
        entry = self._entries.get(device_id)
        if entry is None:
            return True
        if entry.lock.locked() or entry.subscribers:
            return False
        del self._entries[device_id]
        return True

    @asynccontextmanager
    async def hold(self, device_id: str) -> AsyncIterator[DeviceEntry]:
        """Hold the device's lock for the duration of the block."""
        entry = self.entry(device_id)
        async with entry.lock:
            yield entry

    @property
    def device_ids(self) -> list[str]:
        return list(self._entries)

    def close(self) -> None:
        """Drop all per-device state; further use raises."""
        self._closed = True
        self._entries.clear()
