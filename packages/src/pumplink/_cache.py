"""Notification cache: TTL-bound key/value and list store.

Holds recent device errors (as :class:`Notification` objects) and
per-device presence entries so that viewers joining late can be
replayed what happened in the last few minutes.  Nothing here is
durable; every entry expires on its own.

Key layout::

    notifications:{device}:{notification_id}  <- one notification (TTL)
    errors:{device}                           <- recent errors, newest first
    device:{device}:status                    <- presence (short TTL)

Two adapters satisfy :class:`NotificationCachePort`:

- :class:`InMemoryNotificationCache` — single process, expiry driven
  by an injected monotonic :class:`~pumplink._clock.ClockPort`.
- :class:`RedisNotificationCache` — shared across replicas.  ``redis``
  is imported lazily so the in-memory adapter works without it.

Values must be JSON-serialisable; both adapters store a JSON copy.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from pumplink._clock import ClockPort, SystemClock, WallClock, isoformat

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def notification_key(device_id: str, notification_id: str) -> str:
    return f"notifications:{device_id}:{notification_id}"


def notification_prefix(device_id: str) -> str:
    return f"notifications:{device_id}:"


def errors_key(device_id: str) -> str:
    return f"errors:{device_id}"


def presence_key(device_id: str) -> str:
    return f"device:{device_id}:status"


# ---------------------------------------------------------------------------
# Notification value object
# ---------------------------------------------------------------------------


class Priority(StrEnum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


_SEVERITY_PRIORITY = {"high": Priority.CRITICAL, "medium": Priority.WARNING}

_PRIORITY_TYPE = {
    Priority.CRITICAL: "error",
    Priority.WARNING: "warning",
    Priority.INFO: "info",
}


def priority_for_severity(severity: str | None) -> Priority:
    """high -> critical, medium -> warning, anything else -> info."""
    return _SEVERITY_PRIORITY.get((severity or "").lower(), Priority.INFO)


@dataclass(frozen=True, slots=True)
class Notification:
    """A viewer-facing notification derived from a device error."""

    id: str
    type: str
    priority: Priority
    title: str
    message: str
    timestamp: str
    device_id: str
    raw_data: dict[str, Any]

    @property
    def show_modal(self) -> bool:
        return self.priority is Priority.CRITICAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "priority": str(self.priority),
            "title": self.title,
            "message": self.message,
            "timestamp": self.timestamp,
            "deviceId": self.device_id,
            "rawData": self.raw_data,
        }


def build_notification(
    device_id: str,
    error: Mapping[str, Any],
    *,
    clock: WallClock | None = None,
) -> Notification:
    """Derive a :class:`Notification` from a device error payload."""
    priority = priority_for_severity(error.get("severity"))
    error_type = str(error.get("type") or "device_error")
    title = error_type.replace("_", " ").title()
    return Notification(
        id=uuid.uuid4().hex,
        type=_PRIORITY_TYPE[priority],
        priority=priority,
        title=f"{title} on {device_id}",
        message=str(error.get("message") or title),
        timestamp=str(error.get("timestamp") or isoformat(clock)),
        device_id=device_id,
        raw_data=dict(error),
    )


# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------


@runtime_checkable
class NotificationCachePort(Protocol):
    """TTL key/value + list store."""

    async def put(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Any | None: ...

    async def push_list(
        self,
        key: str,
        value: Any,
        ttl_seconds: int,
        *,
        max_length: int | None = None,
    ) -> None: ...

    async def list_by_prefix(self, prefix: str) -> list[Any]: ...


# ---------------------------------------------------------------------------
# In-memory adapter
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class _Entry:
    value: Any
    expires_at: float


def _json_copy(value: Any) -> Any:
    return json.loads(json.dumps(value))


class InMemoryNotificationCache:
    """Process-local :class:`NotificationCachePort`.

    Expired entries are purged lazily on every access.  Each method
    runs without suspending, so writes to one key never interleave
    under asyncio.
    """

    def __init__(self, clock: ClockPort | None = None) -> None:
        self._clock = clock or SystemClock()
        self._values: dict[str, _Entry] = {}
        self._lists: dict[str, _Entry] = {}

    async def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._values[key] = _Entry(_json_copy(value), self._expiry(ttl_seconds))

    async def get(self, key: str) -> Any | None:
        self._purge()
        entry = self._values.get(key)
        return None if entry is None else _json_copy(entry.value)

    async def push_list(
        self,
        key: str,
        value: Any,
        ttl_seconds: int,
        *,
        max_length: int | None = None,
    ) -> None:
        self._purge()
        entry = self._lists.get(key)
        items: list[Any] = [] if entry is None else entry.value
        items.insert(0, _json_copy(value))
        if max_length is not None:
            del items[max_length:]
        self._lists[key] = _Entry(items, self._expiry(ttl_seconds))

    async def list_by_prefix(self, prefix: str) -> list[Any]:
        """Values under keys starting with *prefix*; list items flattened."""
        self._purge()
        result: list[Any] = []
        for key in sorted(self._values):
            if key.startswith(prefix):
                result.append(_json_copy(self._values[key].value))
        for key in sorted(self._lists):
            if key.startswith(prefix):
                result.extend(_json_copy(self._lists[key].value))
        return result

    def _expiry(self, ttl_seconds: int) -> float:
        return self._clock.now() + ttl_seconds

    def _purge(self) -> None:
        now = self._clock.now()
        for store in (self._values, self._lists):
            for key in [k for k, e in store.items() if e.expires_at <= now]:
                del store[key]


# ---------------------------------------------------------------------------
# Redis adapter
# ---------------------------------------------------------------------------


def _escape_glob(text: str) -> str:
    return "".join(f"\\{ch}" if ch in "*?[]\\" else ch for ch in text)


class RedisNotificationCache:
    """Redis-backed :class:`NotificationCachePort`.

    Args:
        url: Redis URL used to build a client on first use.
        client: Pre-built ``redis.asyncio.Redis`` (created with
            ``decode_responses=True``); takes precedence over *url*.
    """

    def __init__(self, url: str | None = None, *, client: Any = None) -> None:
        if url is None and client is None:
            msg = "RedisNotificationCache needs a url or a client"
            raise ValueError(msg)
        self._url = url
        self._client = client

    def _redis(self) -> Any:
        if self._client is None:
            try:
                import redis.asyncio as aioredis  # noqa: PLC0415
            except ModuleNotFoundError as exc:
                msg = "redis is required to use RedisNotificationCache"
                raise RuntimeError(msg) from exc
            self._client = aioredis.Redis.from_url(self._url, decode_responses=True)
        return self._client

    async def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self._redis().set(key, json.dumps(value), ex=ttl_seconds)

    async def get(self, key: str) -> Any | None:
        raw = await self._redis().get(key)
        return None if raw is None else json.loads(raw)

    async def push_list(
        self,
        key: str,
        value: Any,
        ttl_seconds: int,
        *,
        max_length: int | None = None,
    ) -> None:
        async with self._redis().pipeline(transaction=True) as pipe:
            pipe.lpush(key, json.dumps(value))
            if max_length is not None:
                pipe.ltrim(key, 0, max_length - 1)
            pipe.expire(key, ttl_seconds)
            await pipe.execute()

    async def list_by_prefix(self, prefix: str) -> list[Any]:
        client = self._redis()
        keys = sorted(
            [key async for key in client.scan_iter(match=f"{_escape_glob(prefix)}*")],
        )
        values: list[Any] = []
        lists: list[Any] = []
        for key in keys:
            kind = await client.type(key)
            if kind == "string":
                raw = await client.get(key)
                if raw is not None:
                    values.append(json.loads(raw))
            elif kind == "list":
                lists.extend(json.loads(raw) for raw in await client.lrange(key, 0, -1))
        return values + lists

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
