"""Wire messages exchanged with the devices.

Inbound payloads are validated with pydantic; each model keeps unknown
fields (``extra="allow"``) so the raw device payload can be streamed
unchanged.  Outbound commands are plain frozen dataclasses.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from pumplink._models import Command, ManualAction

__all__ = [
    "Completion",
    "Confirmation",
    "DeviceError",
    "InboundCategory",
    "ManualActionMessage",
    "OutboundCommand",
    "Progress",
    "Status",
    "parse_inbound",
]


class InboundCategory(StrEnum):
    """Topic suffix of a device-originated message."""

    PROGRESS = "progress"
    ERROR = "error"
    STATUS = "status"
    CONFIRMATION = "infusion"
    COMPLETION = "completion"
    ACTION = "action"


OFFLINE_STATUSES = frozenset({"offline", "degraded"})


class _Inbound(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    timestamp: str | None = None

    def raw(self) -> dict[str, Any]:
        """The payload as received, including unknown fields."""
        return self.model_dump(by_alias=True, exclude_none=True)


class ProgressPercent(BaseModel):
    model_config = ConfigDict(extra="allow")

    time: float | None = None
    volume: float | None = None


class Progress(_Inbound):
    time_remaining_min: float = Field(default=0, alias="timeRemainingMin")
    volume_remaining_ml: float = Field(default=0, alias="volumeRemainingMl")
    infusion_id: str | None = Field(default=None, alias="infusionId")
    progress_percent: ProgressPercent | None = Field(
        default=None, alias="progressPercent"
    )


class DeviceError(_Inbound):
    type: str | None = None
    error_code: str | None = Field(default=None, alias="errorCode")
    severity: str = "low"
    message: str = ""
    details: Any = None

    @model_validator(mode="after")
    def _resolve_type(self) -> DeviceError:
        if self.type is None:
            self.type = self.error_code or "device_error"
        return self


class Status(_Inbound):
    status: str
    last_ping: str | None = Field(default=None, alias="lastPing")


class Confirmation(_Inbound):
    infusion_id: str | None = Field(default=None, alias="infusionId")
    confirmed: bool = False
    confirmed_at: str | None = Field(default=None, alias="confirmedAt")
    parameters: dict[str, Any] | None = None


class Completion(_Inbound):
    completed: bool = False
    completed_at: str | None = Field(default=None, alias="completedAt")
    infusion_id: str | None = Field(default=None, alias="infusionId")
    summary: dict[str, Any] | None = None


class ManualActionMessage(_Inbound):
    action: ManualAction
    source: str = "device"
    infusion_id: str | None = Field(default=None, alias="infusionId")


_MODELS: dict[InboundCategory, type[_Inbound]] = {
    InboundCategory.PROGRESS: Progress,
    InboundCategory.ERROR: DeviceError,
    InboundCategory.STATUS: Status,
    InboundCategory.CONFIRMATION: Confirmation,
    InboundCategory.COMPLETION: Completion,
    InboundCategory.ACTION: ManualActionMessage,
}


def parse_inbound(category: InboundCategory, data: dict[str, Any]) -> _Inbound:
    """Validate *data* as a *category* message.

    Raises:
        pydantic.ValidationError: The payload does not match the model.
    """
    return _MODELS[category].model_validate(data)


@dataclass(frozen=True, slots=True)
class OutboundCommand:
    """A command as published on ``{prefix}/{device}/commands``."""

    command: Command
    payload: dict[str, object]
    timestamp: str
    command_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        return {
            "command": str(self.command),
            "payload": data["payload"],
            "timestamp": self.timestamp,
            "commandId": self.command_id,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())
