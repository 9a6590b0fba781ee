"""Error taxonomy and structured error payloads.

Every failure the core reports to a caller is a :class:`PumplinkError`
subclass.  The hierarchy mirrors the ways a command can fail:

* :class:`LifecycleError` — the command was *rejected* (unknown
  device, illegal transition, bad parameters).  Nothing was applied
  and nothing was published.
* :class:`TransportUnavailable` — the command was accepted but the
  service could not even *try* to deliver it.  Durable bookkeeping
  already made is kept.
* :class:`ConnectionLost` — the connection manager gave up
  reconnecting; the service is degraded until restarted.
* :class:`PersistenceError` — a record-store call failed.

:func:`build_error_payload` turns any of these into a machine-readable
payload for the operator-facing command surface.

Payload schema::

    {
        "error_type": "invalid_state_transition",
        "message": "Device PUMP_0001 is healthy; pause requires running",
        "device": "PUMP_0001",
        "timestamp": "2026-02-14T12:34:56+00:00",
        "details": {"current": "healthy", "required": ["running"]}
    }
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field

from pumplink._clock import WallClock, isoformat

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PumplinkError(Exception):
    """Base class for all errors raised by the core."""


class LifecycleError(PumplinkError):
    """A requested transition was rejected before anything was applied."""

    def __init__(self, message: str, *, device_id: str | None = None) -> None:
        super().__init__(message)
        self.device_id = device_id

    @property
    def details(self) -> dict[str, object]:
        return {}


class UnknownDevice(LifecycleError):
    """No record exists for the device id."""

    def __init__(self, device_id: str) -> None:
        super().__init__(f"Unknown device '{device_id}'", device_id=device_id)


class InvalidParameters(LifecycleError):
    """Operator-supplied infusion parameters or patient data are invalid."""


class InvalidStateTransition(LifecycleError):
    """The device's current status does not permit the command."""

    def __init__(
        self,
        device_id: str,
        command: str,
        current: str,
        required: Iterable[str],
    ) -> None:
        self.command = command
        self.current = current
        self.required = tuple(sorted(required))
        super().__init__(
            f"Device {device_id} is {current}; {command} requires "
            f"{' or '.join(self.required)}",
            device_id=device_id,
        )

    @property
    def details(self) -> dict[str, object]:
        return {
            "command": self.command,
            "current": self.current,
            "required": list(self.required),
        }


class TransportUnavailable(PumplinkError):
    """A command could not be handed to the transport."""


class ConnectionLost(PumplinkError):
    """The broker connection could not be re-established."""

    def __init__(self, attempts: int) -> None:
        super().__init__(
            f"MQTT connection lost after {attempts} reconnect attempts",
        )
        self.attempts = attempts


class PersistenceError(PumplinkError):
    """A record-store read or write failed."""


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

DEFAULT_ERROR_TYPES: dict[type[Exception], str] = {
    UnknownDevice: "unknown_device",
    InvalidParameters: "invalid_parameters",
    InvalidStateTransition: "invalid_state_transition",
    TransportUnavailable: "transport_unavailable",
    ConnectionLost: "connection_lost",
    PersistenceError: "persistence_error",
}


@dataclass(frozen=True, slots=True)
class ErrorPayload:
    """Immutable structured error payload."""

    error_type: str
    message: str
    device: str | None
    timestamp: str
    details: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    def to_json(self) -> str:
        """Serialise to a JSON string."""
        return json.dumps(asdict(self))


def build_error_payload(
    error: Exception,
    *,
    error_type_map: dict[type[Exception], str] | None = None,
    device: str | None = None,
    clock: WallClock | None = None,
) -> ErrorPayload:
    """Convert an exception into a structured :class:`ErrorPayload`.

    Looks up the exact class of the exception in *error_type_map*
    (defaulting to :data:`DEFAULT_ERROR_TYPES`); unmapped classes fall
    back to the generic ``"error"`` type.  When *device* is omitted the
    device id carried by a :class:`LifecycleError` is used.
    """
    resolved_map = error_type_map if error_type_map is not None else DEFAULT_ERROR_TYPES
    error_type = resolved_map.get(type(error), "error")
    if device is None and isinstance(error, LifecycleError):
        device = error.device_id
    details = error.details if isinstance(error, LifecycleError) else {}
    return ErrorPayload(
        error_type=error_type,
        message=str(error),
        device=device,
        timestamp=isoformat(clock),
        details=details,
    )
