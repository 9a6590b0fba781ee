"""Domain records and value objects.

Records are frozen dataclasses; the record store hands out copies and
changes are expressed as patches applied with
:func:`dataclasses.replace`.

Device invariant::

    active_infusion is not None  <=>  status in {running, paused}

Infusion status only moves forward::

    created -> running -> stopped | completed

Patient data is an explicit tagged variant — :class:`PatientProvided`
or :class:`PatientSkipped` — never inferred from an optional field.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from pumplink._errors import InvalidParameters

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class DeviceStatus(StrEnum):
    HEALTHY = "healthy"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    DEGRADED = "degraded"


ACTIVE_DEVICE_STATUSES = frozenset({DeviceStatus.RUNNING, DeviceStatus.PAUSED})


class InfusionStatus(StrEnum):
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    COMPLETED = "completed"


TERMINAL_INFUSION_STATUSES = frozenset(
    {InfusionStatus.STOPPED, InfusionStatus.COMPLETED},
)


class Command(StrEnum):
    """Outbound command names understood by the devices."""

    START = "START_INFUSION"
    STOP = "STOP_INFUSION"
    PAUSE = "PAUSE_INFUSION"
    RESUME = "RESUME_INFUSION"


class ManualAction(StrEnum):
    """Actions initiated on the device itself (physical controls)."""

    PAUSE = "MANUAL_PAUSE"
    RESUME = "MANUAL_RESUME"
    STOP = "MANUAL_STOP"


# ---------------------------------------------------------------------------
# Infusion parameters
# ---------------------------------------------------------------------------


def _positive_number(data: Mapping[str, Any], key: str) -> float:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int | float):
        msg = f"{key} is required and must be a number"
        raise InvalidParameters(msg)
    if not math.isfinite(value) or value <= 0:
        msg = f"{key} must be greater than zero"
        raise InvalidParameters(msg)
    return float(value)


@dataclass(frozen=True, slots=True)
class Bolus:
    enabled: bool = False
    volume_ml: float = 0.0


@dataclass(frozen=True, slots=True)
class InfusionParameters:
    """Planned delivery of one infusion."""

    flow_rate_ml_min: float
    planned_time_min: float
    planned_volume_ml: float
    bolus: Bolus = field(default_factory=Bolus)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> InfusionParameters:
        """Build parameters from the operator's camelCase request body.

        Raises:
            InvalidParameters: If a required quantity is missing, not a
                number, or not strictly positive.
        """
        raw_bolus = data.get("bolus") or {}
        if not isinstance(raw_bolus, Mapping):
            msg = "bolus must be an object"
            raise InvalidParameters(msg)
        bolus_volume = raw_bolus.get("volumeMl") or 0
        if isinstance(bolus_volume, bool) or not isinstance(bolus_volume, int | float):
            msg = "bolus.volumeMl must be a number"
            raise InvalidParameters(msg)
        if bolus_volume < 0:
            msg = "bolus.volumeMl must not be negative"
            raise InvalidParameters(msg)
        return cls(
            flow_rate_ml_min=_positive_number(data, "flowRateMlMin"),
            planned_time_min=_positive_number(data, "plannedTimeMin"),
            planned_volume_ml=_positive_number(data, "plannedVolumeMl"),
            bolus=Bolus(
                enabled=bool(raw_bolus.get("enabled", False)),
                volume_ml=float(bolus_volume),
            ),
        )

    def to_payload(self) -> dict[str, object]:
        """Wire representation used in the ``START_INFUSION`` payload."""
        return {
            "flowRateMlMin": self.flow_rate_ml_min,
            "plannedTimeMin": self.planned_time_min,
            "plannedVolumeMl": self.planned_volume_ml,
            "bolus": {
                "enabled": self.bolus.enabled,
                "volumeMl": self.bolus.volume_ml,
            },
        }


# ---------------------------------------------------------------------------
# Patient selection (tagged variant)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PatientProvided:
    """Patient details were entered by the operator."""

    data: Mapping[str, Any]

    def __post_init__(self) -> None:
        if not self.data:
            msg = "patient data is empty; omit it to skip patient details"
            raise InvalidParameters(msg)


@dataclass(frozen=True, slots=True)
class PatientSkipped:
    """The operator explicitly skipped patient details."""


type PatientSelection = PatientProvided | PatientSkipped


def patient_selection(patient: Mapping[str, Any] | None) -> PatientSelection:
    """Map an optional request field onto the tagged variant."""
    if patient is None:
        return PatientSkipped()
    return PatientProvided(data=dict(patient))


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DeviceRecord:
    device_id: str
    location: str = ""
    status: DeviceStatus = DeviceStatus.HEALTHY
    active_infusion: str | None = None

    def __post_init__(self) -> None:
        check_device_invariant(self.status, self.active_infusion)


def check_device_invariant(status: DeviceStatus, active_infusion: str | None) -> None:
    """Raise :class:`ValueError` unless the status/ownership pair is legal."""
    active = status in ACTIVE_DEVICE_STATUSES
    if active != (active_infusion is not None):
        msg = (
            f"Device status {status} with activeInfusion={active_infusion!r} "
            "violates the active-infusion invariant"
        )
        raise ValueError(msg)


@dataclass(frozen=True, slots=True)
class InfusionRecord:
    infusion_id: str
    device_id: str
    parameters: InfusionParameters
    patient: PatientSelection
    created_at: str
    status: InfusionStatus = InfusionStatus.CREATED
    confirmed_at: str | None = None
    stopped_at: str | None = None
    stop_reason: str | None = None
    completed_at: str | None = None
    summary: dict[str, Any] | None = None

    @property
    def patient_skipped(self) -> bool:
        return isinstance(self.patient, PatientSkipped)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INFUSION_STATUSES


@dataclass(frozen=True, slots=True)
class CommandRecord:
    """A validated, already-applied operator command awaiting dispatch."""

    device_id: str
    command: Command
    payload: dict[str, object]
    device_status: DeviceStatus
    infusion_id: str | None = None

    def to_dict(self) -> dict[str, object]:
        return asdict(self)
