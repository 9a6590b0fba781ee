"""Operator command surface and outbound command publishing.

A command is handled in two steps while the device's registry lock is
held:

1. :meth:`LifecycleStateMachine.request_transition` checks the
   precondition and writes the records (an Infusion is created on
   ``start``);
2. :meth:`CommandDispatcher.dispatch` publishes the command to
   ``{prefix}/{device}/commands``.

The dispatcher never waits for the device.  A publish failure is
reported as ``transport_unavailable``, but the records written in step
1 are kept; a later confirmation reconciles them.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any

from pumplink._clock import WallClock, isoformat
from pumplink._errors import (
    InvalidStateTransition,
    PumplinkError,
    TransportUnavailable,
    build_error_payload,
)
from pumplink._lifecycle import LifecycleStateMachine
from pumplink._messages import OutboundCommand
from pumplink._models import Command, CommandRecord
from pumplink._mqtt import MqttPort
from pumplink._registry import DeviceRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Response to an operator command."""

    success: bool
    device_id: str
    command: str
    device_status: str | None
    command_id: str | None = None
    infusion_id: str | None = None
    error_type: str | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


class CommandDispatcher:
    """Validates operator commands and publishes them to devices."""

    def __init__(
        self,
        mqtt: MqttPort,
        lifecycle: LifecycleStateMachine,
        registry: DeviceRegistry,
        *,
        topic_prefix: str = "devices",
        qos: int = 1,
        clock: WallClock | None = None,
    ) -> None:
        self._mqtt = mqtt
        self._lifecycle = lifecycle
        self._registry = registry
        self._topic_prefix = topic_prefix
        self._qos = qos
        self._clock = clock

    def command_topic(self, device_id: str) -> str:
        return f"{self._topic_prefix}/{device_id}/commands"

    async def dispatch(
        self,
        device_id: str,
        command: Command,
        payload: Mapping[str, Any],
    ) -> str:
        """Publish *command* and return its command id.

        Raises:
            TransportUnavailable: The publish call failed.
        """
        outbound = OutboundCommand(
            command=command,
            payload=dict(payload),
            timestamp=isoformat(self._clock),
        )
        try:
            await self._mqtt.publish(
                self.command_topic(device_id),
                outbound.to_json(),
                qos=self._qos,
                retain=False,
            )
        except Exception as exc:
            logger.warning(
                "Could not publish %s to %s",
                command,
                device_id,
                exc_info=True,
                extra={"device_id": device_id},
            )
            msg = f"Could not deliver {command} to {device_id}: {exc}"
            raise TransportUnavailable(msg) from exc
        logger.info(
            "Sent %s to %s (command %s)",
            command,
            device_id,
            outbound.command_id,
            extra={"device_id": device_id},
        )
        return outbound.command_id

    # -- operator surface ---------------------------------------------------

    async def start_infusion(
        self,
        device_id: str,
        parameters: Mapping[str, Any],
        patient: Mapping[str, Any] | None = None,
    ) -> CommandResult:
        return await self._run(
            device_id,
            Command.START,
            {"parameters": parameters, "patient": patient},
        )

    async def stop_infusion(
        self,
        device_id: str,
        reason: str = "manual_stop",
        *,
        emergency: bool = False,
    ) -> CommandResult:
        return await self._run(
            device_id,
            Command.STOP,
            {"reason": reason, "emergency": emergency},
        )

    async def pause_infusion(
        self,
        device_id: str,
        reason: str = "manual_pause",
    ) -> CommandResult:
        return await self._run(device_id, Command.PAUSE, {"reason": reason})

    async def resume_infusion(self, device_id: str) -> CommandResult:
        return await self._run(device_id, Command.RESUME, {})

    async def _run(
        self,
        device_id: str,
        command: Command,
        payload: Mapping[str, Any],
    ) -> CommandResult:
        record: CommandRecord | None = None
        try:
            async with self._registry.hold(device_id):
                record = await self._lifecycle.request_transition(
                    device_id, command, payload
                )
                command_id = await self.dispatch(device_id, record.command, record.payload)
        except PumplinkError as exc:
            return await self._failure(device_id, command, exc, record)
        return CommandResult(
            success=True,
            device_id=device_id,
            command=str(command),
            device_status=str(record.device_status),
            command_id=command_id,
            infusion_id=record.infusion_id,
        )

    async def _failure(
        self,
        device_id: str,
        command: Command,
        exc: PumplinkError,
        record: CommandRecord | None,
    ) -> CommandResult:
        payload = build_error_payload(exc, device=device_id, clock=self._clock)
        if record is not None:
            status: str | None = str(record.device_status)
        elif isinstance(exc, InvalidStateTransition):
            status = str(exc.current)
        else:
            current = await self._lifecycle.current_status(device_id)
            status = None if current is None else str(current)
        return CommandResult(
            success=False,
            device_id=device_id,
            command=str(command),
            device_status=status,
            infusion_id=None if record is None else record.infusion_id,
            error_type=payload.error_type,
            message=payload.message,
        )
