"""Device / infusion lifecycle state machine.

The single place that decides whether a status change is legal and
that writes Device and Infusion records.  Two kinds of input:

**Operator commands** (:meth:`LifecycleStateMachine.request_transition`)
are validated against the device's current status and, when legal,
applied to the record store *before* anything is published::

    start   requires healthy | stopped   -> creates Infusion(created)
    pause   requires running             -> Device paused
    stop    requires running             -> Device stopped, Infusion stopped
    resume  requires paused              -> Device running

A rejected command raises :class:`~pumplink._errors.LifecycleError`
and writes nothing.  Store failures on this path raise
:class:`~pumplink._errors.PersistenceError` so the command is not sent.

**Device events** (confirmation, completion, manual action) are
authoritative for the device's physical state and are not checked
against operator preconditions.  They are idempotent: duplicates and
late events for a terminal infusion return an outcome with
``applied=False`` and are logged, never raised.  A store write that
fails on this path is logged and reported as ``persisted=False`` so
the caller can still stream the event.

Callers must hold the device's registry lock.
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pumplink._clock import WallClock, isoformat
from pumplink._errors import (
    InvalidParameters,
    InvalidStateTransition,
    PersistenceError,
    UnknownDevice,
)
from pumplink._models import (
    ACTIVE_DEVICE_STATUSES,
    Command,
    CommandRecord,
    DeviceRecord,
    DeviceStatus,
    InfusionParameters,
    InfusionRecord,
    InfusionStatus,
    ManualAction,
    PatientSelection,
    patient_selection,
)
from pumplink._store import RecordStorePort

logger = logging.getLogger(__name__)

PRECONDITIONS: dict[Command, frozenset[DeviceStatus]] = {
    Command.START: frozenset({DeviceStatus.HEALTHY, DeviceStatus.STOPPED}),
    Command.STOP: frozenset({DeviceStatus.RUNNING}),
    Command.PAUSE: frozenset({DeviceStatus.RUNNING}),
    Command.RESUME: frozenset({DeviceStatus.PAUSED}),
}


@dataclass(frozen=True, slots=True)
class TransitionOutcome:
    """Result of applying a device-originated event."""

    applied: bool
    reason: str
    device: DeviceRecord | None = None
    infusion: InfusionRecord | None = None
    persisted: bool = True


class LifecycleStateMachine:
    """Validates and applies Device/Infusion transitions."""

    def __init__(
        self,
        store: RecordStorePort,
        *,
        clock: WallClock | None = None,
    ) -> None:
        self._store = store
        self._clock = clock

    # -- operator commands --------------------------------------------------

    async def request_transition(
        self,
        device_id: str,
        command: Command,
        payload: Mapping[str, Any] | None = None,
    ) -> CommandRecord:
        """Validate *command* against the device and apply its record changes.

        For ``start``, *payload* holds ``parameters`` (camelCase infusion
        parameters) and an optional ``patient`` mapping.  For ``stop``
        and ``pause`` an optional ``reason`` (and ``emergency`` for stop)
        is forwarded to the device.

        Raises:
            InvalidParameters: Bad start parameters or empty patient data.
            UnknownDevice: No record for *device_id*.
            InvalidStateTransition: Current status forbids *command*.
            PersistenceError: The record store failed.
        """
        payload = dict(payload or {})
        if command is Command.START:
            raw_parameters = payload.get("parameters")
            if not isinstance(raw_parameters, Mapping):
                msg = "parameters are required to start an infusion"
                raise InvalidParameters(msg, device_id=device_id)
            parameters = InfusionParameters.from_mapping(raw_parameters)
            patient = payload.get("patient")
            if patient is not None and not isinstance(patient, Mapping):
                msg = "patient must be an object"
                raise InvalidParameters(msg, device_id=device_id)
            selection = patient_selection(patient)

        device = await self._require_device(device_id)
        required = PRECONDITIONS[command]
        if device.status not in required:
            logger.info(
                "Rejected %s for %s: status is %s",
                command,
                device_id,
                device.status,
            )
            raise InvalidStateTransition(
                device_id, command.name.lower(), device.status, required
            )

        if command is Command.START:
            return await self._start(device, parameters, selection)
        if command is Command.STOP:
            return await self._stop(
                device,
                reason=str(payload.get("reason") or "manual_stop"),
                emergency=bool(payload.get("emergency", False)),
            )
        if command is Command.PAUSE:
            updated = await self._write_device(device, DeviceStatus.PAUSED, device.active_infusion)
            return CommandRecord(
                device_id=device_id,
                command=command,
                payload={"reason": str(payload.get("reason") or "manual_pause")},
                device_status=updated.status,
                infusion_id=updated.active_infusion,
            )
        updated = await self._write_device(device, DeviceStatus.RUNNING, device.active_infusion)
        return CommandRecord(
            device_id=device_id,
            command=command,
            payload={},
            device_status=updated.status,
            infusion_id=updated.active_infusion,
        )

    async def _start(
        self,
        device: DeviceRecord,
        parameters: InfusionParameters,
        selection: PatientSelection,
    ) -> CommandRecord:
        infusion = InfusionRecord(
            infusion_id=uuid.uuid4().hex,
            device_id=device.device_id,
            parameters=parameters,
            patient=selection,
            created_at=isoformat(self._clock),
        )
        try:
            infusion = await self._store.create_infusion(infusion)
        except Exception as exc:
            msg = f"Failed to create infusion for {device.device_id}"
            raise PersistenceError(msg) from exc
        logger.info(
            "Created infusion %s on %s (patient %s)",
            infusion.infusion_id,
            device.device_id,
            "skipped" if infusion.patient_skipped else "provided",
        )
        return CommandRecord(
            device_id=device.device_id,
            command=Command.START,
            payload={**parameters.to_payload(), "infusionId": infusion.infusion_id},
            device_status=device.status,
            infusion_id=infusion.infusion_id,
        )

    async def _stop(
        self,
        device: DeviceRecord,
        *,
        reason: str,
        emergency: bool,
    ) -> CommandRecord:
        infusion_id = device.active_infusion
        if infusion_id is not None:
            infusion = await self._find_infusion(infusion_id)
            if infusion is not None and not infusion.is_terminal:
                await self._write_infusion(
                    infusion_id,
                    {
                        "status": InfusionStatus.STOPPED,
                        "stopped_at": isoformat(self._clock),
                        "stop_reason": reason,
                    },
                )
        updated = await self._write_device(device, DeviceStatus.STOPPED, None)
        return CommandRecord(
            device_id=device.device_id,
            command=Command.STOP,
            payload={"reason": reason, "emergency": emergency},
            device_status=updated.status,
            infusion_id=infusion_id,
        )

    # -- device events ------------------------------------------------------

    async def on_confirmed(
        self,
        device_id: str,
        infusion_id: str,
        *,
        confirmed_at: str | None = None,
    ) -> TransitionOutcome:
        """Device confirmed it is executing *infusion_id*."""
        device = await self._require_device(device_id)
        infusion = await self._find_infusion(infusion_id)
        if infusion is None or infusion.device_id != device_id:
            return _skipped(
                logging.WARNING,
                f"confirmation for unknown infusion {infusion_id} on {device_id}",
                device,
            )
        if infusion.is_terminal:
            return _skipped(
                logging.INFO,
                f"late confirmation for {infusion.status} infusion {infusion_id}",
                device,
                infusion,
            )
        if (
            infusion.status is InfusionStatus.RUNNING
            and device.active_infusion == infusion_id
            and device.status in ACTIVE_DEVICE_STATUSES
        ):
            return _skipped(
                logging.DEBUG,
                f"duplicate confirmation for infusion {infusion_id}",
                device,
                infusion,
            )
        superseded_ok = True
        if device.active_infusion not in (None, infusion_id):
            logger.warning(
                "Device %s confirmed %s while %s was active; stopping the latter",
                device_id,
                infusion_id,
                device.active_infusion,
            )
            superseded_ok = await self._supersede(device.active_infusion)

        infusion, infusion_ok = await self._apply_infusion(
            infusion,
            status=InfusionStatus.RUNNING,
            confirmed_at=confirmed_at or isoformat(self._clock),
        )
        device, device_ok = await self._apply_device(
            device, DeviceStatus.RUNNING, infusion_id
        )
        logger.info("Infusion %s confirmed running on %s", infusion_id, device_id)
        return TransitionOutcome(
            applied=True,
            reason="confirmed",
            device=device,
            infusion=infusion,
            persisted=infusion_ok and device_ok and superseded_ok,
        )

    async def on_completed(
        self,
        device_id: str,
        *,
        summary: Mapping[str, Any] | None = None,
        completed_at: str | None = None,
        infusion_id: str | None = None,
    ) -> TransitionOutcome:
        """Device reports the active (or named) infusion completed."""
        device = await self._require_device(device_id)
        if infusion_id is not None and device.active_infusion not in (None, infusion_id):
            return _skipped(
                logging.WARNING,
                f"completion for {infusion_id} but {device.active_infusion} is active",
                device,
            )
        target = infusion_id or device.active_infusion
        if target is None:
            return _skipped(
                logging.INFO,
                f"completion on {device_id} without an active infusion",
                device,
            )
        infusion = await self._find_infusion(target)
        if infusion is None or infusion.device_id != device_id:
            return _skipped(
                logging.WARNING,
                f"completion for unknown infusion {target} on {device_id}",
                device,
            )
        if infusion.is_terminal:
            return _skipped(
                logging.INFO,
                f"duplicate completion for {infusion.status} infusion {target}",
                device,
                infusion,
            )

        infusion, infusion_ok = await self._apply_infusion(
            infusion,
            status=InfusionStatus.COMPLETED,
            completed_at=completed_at or isoformat(self._clock),
            summary=dict(summary or {}),
        )
        device, device_ok = await self._apply_device(device, DeviceStatus.HEALTHY, None)
        logger.info("Infusion %s completed on %s", target, device_id)
        return TransitionOutcome(
            applied=True,
            reason="completed",
            device=device,
            infusion=infusion,
            persisted=infusion_ok and device_ok,
        )

    async def on_manual_action(
        self,
        device_id: str,
        action: ManualAction,
        *,
        infusion_id: str | None = None,
        source: str = "device",
    ) -> TransitionOutcome:
        """Apply a pause/resume/stop initiated on the device itself.

        An action naming an infusion other than the device's active one
        is dropped.  Pause and resume need an active infusion to attach
        to; without one they are dropped as well.
        """
        device = await self._require_device(device_id)
        if infusion_id is not None and infusion_id != device.active_infusion:
            return _skipped(
                logging.WARNING,
                f"{action} for {infusion_id} but active infusion is "
                f"{device.active_infusion}",
                device,
            )

        if action is ManualAction.STOP:
            return await self._manual_stop(device, source)

        target = DeviceStatus.PAUSED if action is ManualAction.PAUSE else DeviceStatus.RUNNING
        if device.status is target:
            return _skipped(logging.DEBUG, f"duplicate {action} on {device_id}", device)
        if device.active_infusion is None:
            return _skipped(
                logging.WARNING,
                f"{action} on {device_id} without an active infusion",
                device,
            )
        device, ok = await self._apply_device(device, target, device.active_infusion)
        logger.info("Device %s %s via %s", device_id, action, source)
        return TransitionOutcome(
            applied=True, reason=str(action), device=device, persisted=ok
        )

    async def _manual_stop(self, device: DeviceRecord, source: str) -> TransitionOutcome:
        if device.status is DeviceStatus.STOPPED:
            return _skipped(
                logging.DEBUG, f"duplicate MANUAL_STOP on {device.device_id}", device
            )
        infusion = None
        persisted = True
        if device.active_infusion is not None:
            infusion = await self._find_infusion(device.active_infusion)
            if infusion is not None and not infusion.is_terminal:
                infusion, persisted = await self._apply_infusion(
                    infusion,
                    status=InfusionStatus.STOPPED,
                    stopped_at=isoformat(self._clock),
                    stop_reason=f"manual:{source}",
                )
        device, device_ok = await self._apply_device(device, DeviceStatus.STOPPED, None)
        logger.info("Device %s stopped via %s", device.device_id, source)
        return TransitionOutcome(
            applied=True,
            reason=str(ManualAction.STOP),
            device=device,
            infusion=infusion,
            persisted=persisted and device_ok,
        )

    # -- queries ------------------------------------------------------------

    async def find_device(self, device_id: str) -> DeviceRecord | None:
        """Read the device record.

        Raises:
            PersistenceError: The record store failed.
        """
        try:
            return await self._store.find_device(device_id)
        except Exception as exc:
            msg = f"Failed to read device {device_id}"
            raise PersistenceError(msg) from exc

    async def current_status(self, device_id: str) -> DeviceStatus | None:
        """Best-effort status lookup for command responses."""
        try:
            device = await self.find_device(device_id)
        except PersistenceError:
            logger.warning("Could not read status of %s", device_id, exc_info=True)
            return None
        return None if device is None else device.status

    # -- store helpers ------------------------------------------------------

    async def _require_device(self, device_id: str) -> DeviceRecord:
        device = await self.find_device(device_id)
        if device is None:
            raise UnknownDevice(device_id)
        return device

    async def _find_infusion(self, infusion_id: str) -> InfusionRecord | None:
        try:
            return await self._store.find_infusion(infusion_id)
        except Exception as exc:
            msg = f"Failed to read infusion {infusion_id}"
            raise PersistenceError(msg) from exc

    async def _write_device(
        self,
        device: DeviceRecord,
        status: DeviceStatus,
        active_infusion: str | None,
    ) -> DeviceRecord:
        """Strict device write used on the operator path."""
        expected = dataclasses.replace(
            device, status=status, active_infusion=active_infusion
        )
        try:
            stored = await self._store.update_device(
                device.device_id,
                {"status": status, "active_infusion": active_infusion},
            )
        except Exception as exc:
            msg = f"Failed to update device {device.device_id}"
            raise PersistenceError(msg) from exc
        return stored or expected

    async def _write_infusion(self, infusion_id: str, patch: dict[str, object]) -> None:
        """Strict infusion write used on the operator path."""
        try:
            await self._store.update_infusion(infusion_id, patch)
        except Exception as exc:
            msg = f"Failed to update infusion {infusion_id}"
            raise PersistenceError(msg) from exc

    async def _apply_device(
        self,
        device: DeviceRecord,
        status: DeviceStatus,
        active_infusion: str | None,
    ) -> tuple[DeviceRecord, bool]:
        """Best-effort device write used for device events."""
        expected = dataclasses.replace(
            device, status=status, active_infusion=active_infusion
        )
        try:
            stored = await self._store.update_device(
                device.device_id,
                {"status": status, "active_infusion": active_infusion},
            )
        except Exception:
            logger.exception("Failed to persist device %s -> %s", device.device_id, status)
            return expected, False
        return stored or expected, True

    async def _apply_infusion(
        self,
        infusion: InfusionRecord,
        **changes: Any,
    ) -> tuple[InfusionRecord, bool]:
        """Best-effort infusion write used for device events."""
        expected = dataclasses.replace(infusion, **changes)
        try:
            stored = await self._store.update_infusion(infusion.infusion_id, changes)
        except Exception:
            logger.exception(
                "Failed to persist infusion %s -> %s",
                infusion.infusion_id,
                changes.get("status"),
            )
            return expected, False
        return stored or expected, True

    async def _supersede(self, infusion_id: str) -> bool:
        """Stop an infusion the device has abandoned for a newer one."""
        try:
            previous = await self._store.find_infusion(infusion_id)
        except Exception:
            logger.exception("Failed to read superseded infusion %s", infusion_id)
            return False
        if previous is None or previous.is_terminal:
            return True
        _, ok = await self._apply_infusion(
            previous,
            status=InfusionStatus.STOPPED,
            stopped_at=isoformat(self._clock),
            stop_reason="superseded",
        )
        return ok


def _skipped(
    level: int,
    reason: str,
    device: DeviceRecord | None = None,
    infusion: InfusionRecord | None = None,
) -> TransitionOutcome:
    logger.log(level, "Ignoring %s", reason)
    return TransitionOutcome(applied=False, reason=reason, device=device, infusion=infusion)
