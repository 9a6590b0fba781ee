"""Real-time fan-out of device events to live viewers.

Each device id has one subscriber group ("room").  A viewer is a
:class:`Subscriber` — an :class:`asyncio.Queue` of :class:`StreamEvent`
objects — and may sit in any number of groups.

Ordering: :meth:`StreamBroker.publish` never suspends.  It updates the
device's telemetry snapshot and puts the event on every subscriber
queue in one step, and is only called while the device's registry lock
is held, so all subscribers of a device observe that device's events in
the order they were processed.

Replay: joining a group sends a ``subscribed`` acknowledgment followed
by the retained snapshot (latest progress, latest status) and whatever
the notification cache still holds for the device (most recent error,
unexpired notifications).  Replayed events carry ``replay=True``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pumplink._cache import (
    NotificationCachePort,
    errors_key,
    notification_prefix,
)
from pumplink._clock import WallClock, isoformat
from pumplink._messages import OFFLINE_STATUSES
from pumplink._models import ManualAction
from pumplink._registry import DeviceEntry, DeviceRegistry
from pumplink._store import RecordStorePort

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    PROGRESS = "progress"
    ERROR = "error"
    NOTIFICATION = "notification"
    STATUS = "status"
    INFUSION_CONFIRMED = "infusionConfirmed"
    INFUSION_COMPLETED = "infusionCompleted"
    ACTION = "action"
    SUBSCRIBED = "subscribed"


INVALID_DEVICE_MESSAGE = "Invalid Device ID"


@dataclass(frozen=True, slots=True)
class StreamEvent:
    """One event as delivered to a viewer."""

    event: EventType
    device_id: str
    data: dict[str, Any]
    sequence: int
    timestamp: str
    replay: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": str(self.event),
            "deviceId": self.device_id,
            "data": self.data,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "replay": self.replay,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class Subscriber:
    """A connected viewer's inbox."""

    subscriber_id: str
    _queue: asyncio.Queue[StreamEvent | None] = field(
        default_factory=asyncio.Queue,
        init=False,
        repr=False,
    )
    closed: bool = field(default=False, init=False)

    def deliver(self, event: StreamEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def drain(self) -> list[StreamEvent]:
        """Return every queued event without waiting."""
        events: list[StreamEvent] = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is not None:
                events.append(event)
        return events

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield events until the subscriber is closed."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)


class StreamBroker:
    """Subscriber groups keyed by device id, with snapshot replay."""

    def __init__(
        self,
        store: RecordStorePort,
        cache: NotificationCachePort,
        registry: DeviceRegistry,
        *,
        clock: WallClock | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._registry = registry
        self._clock = clock
        self._subscribers: dict[str, Subscriber] = {}
        self._live: set[str] = set()

    # -- viewers ------------------------------------------------------------

    def connect(self, subscriber_id: str) -> Subscriber:
        """Return the inbox for *subscriber_id*, creating it if needed."""
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None or subscriber.closed:
            subscriber = Subscriber(subscriber_id)
            self._subscribers[subscriber_id] = subscriber
        return subscriber

    async def subscribe(self, subscriber_id: str, device_id: str) -> bool:
        """Join the device's group and replay its current state.

        An unknown device id is rejected with an ``error`` event sent to
        the subscriber alone; returns ``False`` in that case.
        """
        subscriber = self.connect(subscriber_id)
        if not await self._accept(subscriber, device_id):
            return False
        async with self._registry.hold(device_id) as entry:
            entry.subscribers.add(subscriber_id)
            await self._replay_to(subscriber, entry)
        logger.debug("%s subscribed to %s", subscriber_id, device_id)
        return True

    async def unsubscribe(self, subscriber_id: str, device_id: str) -> None:
        if self._registry.get(device_id) is None:
            return
        async with self._registry.hold(device_id) as entry:
            entry.subscribers.discard(subscriber_id)

    async def disconnect(self, subscriber_id: str) -> None:
        """Leave every group and close the inbox."""
        for device_id in self._registry.device_ids:
            entry = self._registry.get(device_id)
            if entry is not None and subscriber_id in entry.subscribers:
                await self.unsubscribe(subscriber_id, device_id)
        subscriber = self._subscribers.pop(subscriber_id, None)
        if subscriber is not None:
            subscriber.close()

    async def replay(self, subscriber_id: str, device_id: str) -> bool:
        """Send the device's retained state to one subscriber again.

        Unknown devices are rejected as in :meth:`subscribe`.
        """
        subscriber = self.connect(subscriber_id)
        if not await self._accept(subscriber, device_id):
            return False
        async with self._registry.hold(device_id) as entry:
            await self._replay_to(subscriber, entry)
        return True

    # -- fan-out ------------------------------------------------------------

    def publish(
        self,
        device_id: str,
        event_type: EventType,
        payload: Mapping[str, Any],
    ) -> StreamEvent:
        """Update the snapshot and deliver to the device's group.

        Callers hold the device's registry lock.  Publishing to a group
        with no subscribers still updates the snapshot.
        """
        entry = self._registry.entry(device_id)
        data = dict(payload)
        event = self._event(event_type, device_id, data, entry.next_sequence())
        self._retain(entry, event)
        for subscriber_id in entry.subscribers:
            subscriber = self._subscribers.get(subscriber_id)
            if subscriber is not None:
                subscriber.deliver(event)
        return event

    # -- presence -----------------------------------------------------------

    @property
    def live_devices(self) -> list[str]:
        return sorted(self._live)

    def is_device_live(self, device_id: str) -> bool:
        return device_id in self._live

    def device_state(self, device_id: str) -> dict[str, Any]:
        """Current view of one device assembled from its snapshot."""
        entry = self._registry.get(device_id)
        state: dict[str, Any] = {
            "deviceId": device_id,
            "isConnected": self.is_device_live(device_id),
        }
        if entry is None:
            state.update(
                lastUpdate=None,
                currentInfusion=None,
                latestProgress=None,
                latestStatus=None,
                recentErrors=[],
            )
        else:
            state.update(entry.snapshot.to_dict())
        return state

    def close(self) -> None:
        for subscriber in self._subscribers.values():
            subscriber.close()
        self._subscribers.clear()
        self._live.clear()

    # -- internal -----------------------------------------------------------

    async def _accept(self, subscriber: Subscriber, device_id: str) -> bool:
        """Check the device has a record; otherwise tell the subscriber."""
        try:
            device = await self._store.find_device(device_id)
        except Exception:
            logger.exception("Device lookup failed for subscription to %s", device_id)
            device = None
        if device is not None:
            return True
        logger.warning(
            "Rejected %s: unknown device %s",
            subscriber.subscriber_id,
            device_id,
        )
        subscriber.deliver(
            self._event(EventType.ERROR, device_id, {"message": INVALID_DEVICE_MESSAGE}, 0),
        )
        return False

    def _event(
        self,
        event_type: EventType,
        device_id: str,
        data: dict[str, Any],
        sequence: int,
        *,
        replay: bool = False,
    ) -> StreamEvent:
        return StreamEvent(
            event=event_type,
            device_id=device_id,
            data=data,
            sequence=sequence,
            timestamp=isoformat(self._clock),
            replay=replay,
        )

    def _retain(self, entry: DeviceEntry, event: StreamEvent) -> None:
        snapshot = entry.snapshot
        snapshot.last_update = event.timestamp
        data = event.data
        match event.event:
            case EventType.PROGRESS:
                snapshot.latest_progress = data
                self._live.add(entry.device_id)
            case EventType.STATUS:
                snapshot.latest_status = data
                if str(data.get("status", "")).lower() in OFFLINE_STATUSES:
                    self._live.discard(entry.device_id)
                else:
                    self._live.add(entry.device_id)
            case EventType.ERROR:
                snapshot.record_error(data)
            case EventType.INFUSION_CONFIRMED:
                snapshot.current_infusion = data.get("infusion") or data
                self._live.add(entry.device_id)
            case EventType.INFUSION_COMPLETED:
                snapshot.current_infusion = None
            case EventType.ACTION:
                if data.get("action") == ManualAction.STOP:
                    snapshot.current_infusion = None
                elif snapshot.current_infusion is not None:
                    snapshot.current_infusion = {
                        **snapshot.current_infusion,
                        "deviceStatus": data.get("deviceStatus"),
                    }

    async def _replay_to(self, subscriber: Subscriber, entry: DeviceEntry) -> None:
        device_id = entry.device_id
        sequence = entry.sequence
        snapshot = entry.snapshot

        def send(event_type: EventType, data: dict[str, Any]) -> None:
            subscriber.deliver(
                self._event(event_type, device_id, data, sequence, replay=True),
            )

        send(
            EventType.SUBSCRIBED,
            {"deviceId": device_id, "isConnected": self.is_device_live(device_id)},
        )
        if snapshot.latest_progress is not None:
            send(EventType.PROGRESS, snapshot.latest_progress)
        if snapshot.latest_status is not None:
            send(EventType.STATUS, snapshot.latest_status)

        try:
            errors = await self._cache.list_by_prefix(errors_key(device_id))
            notifications = await self._cache.list_by_prefix(notification_prefix(device_id))
        except Exception:
            logger.exception("Notification cache unavailable; replay of %s is partial", device_id)
            return

        # errors:{id} is also a prefix of errors:{id}0 and so on.
        own_errors = [e for e in errors if isinstance(e, dict) and e.get("deviceId") == device_id]
        if own_errors:
            send(EventType.ERROR, own_errors[0])
        for notification in sorted(notifications, key=lambda n: str(n.get("timestamp", ""))):
            send(
                EventType.NOTIFICATION,
                {**notification, "showModal": notification.get("priority") == "critical"},
            )
