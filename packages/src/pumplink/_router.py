"""Inbound message router.

Turns ``{prefix}/{device}/{category}`` MQTT messages into lifecycle
transitions, cache writes and fan-out events.

Parsing happens in :meth:`InboundRouter.route`.  A payload that is not a
JSON object, arrives on an unknown category, or fails validation is
logged and dropped there.  Valid messages go to a per-device mailbox.
Each mailbox has one worker task that handles messages for that device
in arrival order while holding the device's registry lock.  Different
devices are handled concurrently.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from pumplink._broker import EventType, StreamBroker
from pumplink._cache import (
    NotificationCachePort,
    build_notification,
    errors_key,
    notification_key,
    presence_key,
)
from pumplink._clock import WallClock, isoformat
from pumplink._errors import LifecycleError, PersistenceError
from pumplink._lifecycle import LifecycleStateMachine, TransitionOutcome
from pumplink._messages import (
    Completion,
    Confirmation,
    DeviceError,
    InboundCategory,
    ManualActionMessage,
    Progress,
    Status,
    parse_inbound,
)
from pumplink._models import DeviceRecord, InfusionRecord
from pumplink._registry import DeviceRegistry

logger = logging.getLogger(__name__)

_TELEMETRY = frozenset(
    {InboundCategory.PROGRESS, InboundCategory.ERROR, InboundCategory.STATUS},
)


@dataclass
class _Mailbox:
    queue: asyncio.Queue[tuple[InboundCategory, Any]] = field(
        default_factory=asyncio.Queue,
    )
    task: asyncio.Task[None] | None = None


def infusion_view(infusion: InfusionRecord) -> dict[str, Any]:
    """Viewer-facing summary of an infusion record."""
    return {
        "infusionId": infusion.infusion_id,
        "status": str(infusion.status),
        "parameters": infusion.parameters.to_payload(),
        "patientSkipped": infusion.patient_skipped,
        "createdAt": infusion.created_at,
        "confirmedAt": infusion.confirmed_at,
    }


class InboundRouter:
    """Classifies device messages and drives their handlers."""

    def __init__(
        self,
        lifecycle: LifecycleStateMachine,
        broker: StreamBroker,
        cache: NotificationCachePort,
        registry: DeviceRegistry,
        *,
        topic_prefix: str = "devices",
        notification_ttl: int = 300,
        presence_ttl: int = 10,
        recent_errors: int = 10,
        clock: WallClock | None = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._broker = broker
        self._cache = cache
        self._registry = registry
        self._topic_prefix = topic_prefix.rstrip("/")
        self._notification_ttl = notification_ttl
        self._presence_ttl = presence_ttl
        self._recent_errors = recent_errors
        self._clock = clock
        self._mailboxes: dict[str, _Mailbox] = {}
        self._stopped = False

    @property
    def subscriptions(self) -> list[str]:
        """One wildcard filter per inbound category."""
        return [f"{self._topic_prefix}/+/{category}" for category in InboundCategory]

    # -- entry point --------------------------------------------------------

    async def route(self, topic: str, payload: str | bytes) -> bool:
        """Validate a message and queue it for its device.

        Returns ``True`` if the message was queued.
        """
        if self._stopped:
            logger.debug("Router stopped; dropping message on %s", topic)
            return False
        parsed = self._parse_topic(topic)
        if parsed is None:
            logger.warning("Dropping message on unroutable topic %s", topic)
            return False
        device_id, category = parsed

        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Dropping malformed payload on %s", topic)
            return False
        if not isinstance(data, dict):
            logger.warning("Dropping non-object payload on %s", topic)
            return False

        try:
            message = parse_inbound(category, data)
        except ValidationError as exc:
            logger.warning(
                "Dropping invalid %s message from %s: %s",
                category,
                device_id,
                exc.errors(include_url=False),
                extra={"device_id": device_id},
            )
            return False

        self._mailbox(device_id).queue.put_nowait((category, message))
        return True

    async def drain(self) -> None:
        """Wait until every queued message has been handled."""
        await asyncio.gather(*(box.queue.join() for box in list(self._mailboxes.values())))

    async def stop(self, *, drain_timeout: float | None = 5.0) -> None:
        """Refuse new messages, drain queued ones, then cancel the workers.

        Messages still queued after *drain_timeout* seconds are discarded
        with a warning.  ``None`` waits without limit.
        """
        self._stopped = True
        try:
            await asyncio.wait_for(self.drain(), timeout=drain_timeout)
        except TimeoutError:
            pending = sum(box.queue.qsize() for box in self._mailboxes.values())
            logger.warning("Router drain timed out; discarding %d queued message(s)", pending)
        tasks = [box.task for box in self._mailboxes.values() if box.task is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._mailboxes.clear()

    # -- mailboxes ----------------------------------------------------------

    def _parse_topic(self, topic: str) -> tuple[str, InboundCategory] | None:
        prefix = f"{self._topic_prefix}/"
        if not topic.startswith(prefix):
            return None
        parts = topic[len(prefix) :].split("/")
        if len(parts) != 2 or not parts[0]:
            return None
        try:
            return parts[0], InboundCategory(parts[1])
        except ValueError:
            return None

    def _mailbox(self, device_id: str) -> _Mailbox:
        box = self._mailboxes.get(device_id)
        if box is None:
            box = _Mailbox()
            box.task = asyncio.create_task(
                self._worker(device_id, box),
                name=f"pumplink-router-{device_id}",
            )
            self._mailboxes[device_id] = box
        return box

    async def _worker(self, device_id: str, box: _Mailbox) -> None:
        queue = box.queue
        while True:
            category, message = await queue.get()
            known = True
            try:
                async with self._registry.hold(device_id):
                    known = await self._handle(device_id, category, message)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Error handling %s message from %s",
                    category,
                    device_id,
                    extra={"device_id": device_id},
                )
            finally:
                queue.task_done()
            if not known and queue.empty():
                self._retire(device_id, box)
                return

    def _retire(self, device_id: str, box: _Mailbox) -> None:
        """Release the mailbox and registry entry of an unknown device."""
        if self._mailboxes.get(device_id) is box:
            del self._mailboxes[device_id]
        self._registry.discard(device_id)

    # -- handlers -----------------------------------------------------------

    async def _handle(
        self,
        device_id: str,
        category: InboundCategory,
        message: Any,
    ) -> bool:
        """Handle one message; ``False`` if the device has no record."""
        try:
            device = await self._lifecycle.find_device(device_id)
        except PersistenceError:
            if category not in _TELEMETRY:
                logger.warning(
                    "Dropping %s from %s: device record unavailable",
                    category,
                    device_id,
                    exc_info=True,
                )
                return True
            logger.warning(
                "Device record for %s unavailable; streaming %s anyway",
                device_id,
                category,
            )
            device = None
        else:
            if device is None:
                logger.warning(
                    "Dropping %s from unknown device %s",
                    category,
                    device_id,
                    extra={"device_id": device_id},
                )
                return False

        match message:
            case Progress():
                self._on_progress(device_id, device, message)
            case DeviceError():
                await self._on_error(device_id, message)
            case Status():
                await self._on_status(device_id, message)
            case Confirmation():
                await self._on_confirmation(device_id, message)
            case Completion():
                await self._on_completion(device_id, message)
            case ManualActionMessage():
                await self._on_action(device_id, message)
        return True

    def _on_progress(
        self,
        device_id: str,
        device: DeviceRecord | None,
        message: Progress,
    ) -> None:
        if (
            device is not None
            and message.infusion_id is not None
            and message.infusion_id != device.active_infusion
        ):
            logger.info(
                "Dropping stale progress for %s on %s (active %s)",
                message.infusion_id,
                device_id,
                device.active_infusion,
            )
            return
        self._broker.publish(
            device_id,
            EventType.PROGRESS,
            {**message.raw(), "deviceId": device_id, "receivedAt": isoformat(self._clock)},
        )

    async def _on_error(self, device_id: str, message: DeviceError) -> None:
        error = {
            **message.raw(),
            "deviceId": device_id,
            "receivedAt": isoformat(self._clock),
        }
        notification = build_notification(device_id, error, clock=self._clock)
        try:
            await self._cache.put(
                notification_key(device_id, notification.id),
                notification.to_dict(),
                self._notification_ttl,
            )
            await self._cache.push_list(
                errors_key(device_id),
                error,
                self._notification_ttl,
                max_length=self._recent_errors,
            )
        except Exception:
            logger.exception("Failed to cache error from %s", device_id)
        logger.info(
            "Device %s reported %s (%s)",
            device_id,
            message.type,
            message.severity,
            extra={"device_id": device_id},
        )
        self._broker.publish(device_id, EventType.ERROR, error)
        self._broker.publish(
            device_id,
            EventType.NOTIFICATION,
            {**notification.to_dict(), "showModal": notification.show_modal},
        )

    async def _on_status(self, device_id: str, message: Status) -> None:
        received_at = isoformat(self._clock)
        try:
            await self._cache.put(
                presence_key(device_id),
                {
                    "status": message.status,
                    "lastPing": message.last_ping or message.timestamp or received_at,
                },
                self._presence_ttl,
            )
        except Exception:
            logger.exception("Failed to record presence of %s", device_id)
        self._broker.publish(
            device_id,
            EventType.STATUS,
            {**message.raw(), "deviceId": device_id, "receivedAt": received_at},
        )

    async def _on_confirmation(self, device_id: str, message: Confirmation) -> None:
        if message.infusion_id is None or not message.confirmed:
            logger.warning(
                "Ignoring unconfirmed or anonymous confirmation from %s",
                device_id,
            )
            return
        outcome = await self._transition(
            self._lifecycle.on_confirmed(
                device_id,
                message.infusion_id,
                confirmed_at=message.confirmed_at,
            ),
        )
        if outcome is None or not outcome.applied:
            return
        data: dict[str, Any] = {
            "deviceId": device_id,
            "infusionId": message.infusion_id,
            "confirmedAt": message.confirmed_at,
            "parameters": message.parameters,
            "deviceStatus": _status(outcome),
        }
        if outcome.infusion is not None:
            data["infusion"] = infusion_view(outcome.infusion)
        self._broker.publish(device_id, EventType.INFUSION_CONFIRMED, data)

    async def _on_completion(self, device_id: str, message: Completion) -> None:
        if not message.completed:
            logger.info("Ignoring completion with completed=false from %s", device_id)
            return
        outcome = await self._transition(
            self._lifecycle.on_completed(
                device_id,
                summary=message.summary,
                completed_at=message.completed_at or message.timestamp,
                infusion_id=message.infusion_id,
            ),
        )
        if outcome is None or not outcome.applied:
            return
        infusion = outcome.infusion
        self._broker.publish(
            device_id,
            EventType.INFUSION_COMPLETED,
            {
                "deviceId": device_id,
                "infusionId": None if infusion is None else infusion.infusion_id,
                "completedAt": None if infusion is None else infusion.completed_at,
                "summary": message.summary or {},
                "deviceStatus": _status(outcome),
            },
        )

    async def _on_action(self, device_id: str, message: ManualActionMessage) -> None:
        outcome = await self._transition(
            self._lifecycle.on_manual_action(
                device_id,
                message.action,
                infusion_id=message.infusion_id,
                source=message.source,
            ),
        )
        if outcome is None or not outcome.applied:
            return
        self._broker.publish(
            device_id,
            EventType.ACTION,
            {
                "deviceId": device_id,
                "action": str(message.action),
                "source": message.source,
                "infusionId": message.infusion_id,
                "deviceStatus": _status(outcome),
                "timestamp": message.timestamp or isoformat(self._clock),
            },
        )

    async def _transition(
        self, pending: Awaitable[TransitionOutcome]
    ) -> TransitionOutcome | None:
        try:
            return await pending
        except (LifecycleError, PersistenceError) as exc:
            logger.warning("Dropping device event: %s", exc)
            return None


def _status(outcome: TransitionOutcome) -> str | None:
    return None if outcome.device is None else str(outcome.device.status)
