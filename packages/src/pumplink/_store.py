"""Record store port and in-process adapter.

The durable store is an external service; the core only relies on
per-document atomicity of the five operations in
:class:`RecordStorePort`.  Patches are mappings of record field names
to new values and are applied whole — a device patch always carries
``status`` and ``active_infusion`` together.

:class:`InMemoryRecordStore` backs tests, dry runs and single-process
deployments.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from pumplink._models import DeviceRecord, InfusionRecord

if TYPE_CHECKING:
    from pumplink._settings import Settings

logger = logging.getLogger(__name__)


@runtime_checkable
class RecordStorePort(Protocol):
    """Durable Device/Infusion records (create/read/update by id)."""

    async def find_device(self, device_id: str) -> DeviceRecord | None: ...

    async def update_device(
        self,
        device_id: str,
        patch: Mapping[str, object],
    ) -> DeviceRecord | None: ...

    async def create_infusion(self, record: InfusionRecord) -> InfusionRecord: ...

    async def update_infusion(
        self,
        infusion_id: str,
        patch: Mapping[str, object],
    ) -> InfusionRecord | None: ...

    async def find_infusion(self, infusion_id: str) -> InfusionRecord | None: ...


class InMemoryRecordStore:
    """Dictionary-backed :class:`RecordStorePort`.

    Records are immutable, so returning the stored instance is as safe
    as returning a copy.  Updates on unknown ids return ``None``.
    """

    def __init__(self, devices: Iterable[DeviceRecord] = ()) -> None:
        self._devices: dict[str, DeviceRecord] = {d.device_id: d for d in devices}
        self._infusions: dict[str, InfusionRecord] = {}

    # -- registration (administrative, not part of the port) ---------------

    def add_device(self, record: DeviceRecord) -> DeviceRecord:
        if record.device_id in self._devices:
            msg = f"Device '{record.device_id}' already exists"
            raise ValueError(msg)
        self._devices[record.device_id] = record
        return record

    def register_device(self, location: str) -> DeviceRecord:
        """Register a new pump with the next ``PUMP_NNNN`` id."""
        device_id = f"PUMP_{len(self._devices) + 1:04d}"
        return self.add_device(DeviceRecord(device_id=device_id, location=location))

    @property
    def devices(self) -> list[DeviceRecord]:
        return list(self._devices.values())

    @property
    def infusions(self) -> list[InfusionRecord]:
        return list(self._infusions.values())

    # -- RecordStorePort ----------------------------------------------------

    async def find_device(self, device_id: str) -> DeviceRecord | None:
        return self._devices.get(device_id)

    async def update_device(
        self,
        device_id: str,
        patch: Mapping[str, object],
    ) -> DeviceRecord | None:
        current = self._devices.get(device_id)
        if current is None:
            return None
        updated = dataclasses.replace(current, **patch)
        self._devices[device_id] = updated
        return updated

    async def create_infusion(self, record: InfusionRecord) -> InfusionRecord:
        if record.infusion_id in self._infusions:
            msg = f"Infusion '{record.infusion_id}' already exists"
            raise ValueError(msg)
        self._infusions[record.infusion_id] = record
        return record

    async def update_infusion(
        self,
        infusion_id: str,
        patch: Mapping[str, object],
    ) -> InfusionRecord | None:
        current = self._infusions.get(infusion_id)
        if current is None:
            return None
        updated = dataclasses.replace(current, **patch)
        self._infusions[infusion_id] = updated
        return updated

    async def find_infusion(self, infusion_id: str) -> InfusionRecord | None:
        return self._infusions.get(infusion_id)


def create_in_memory_store(settings: Settings) -> InMemoryRecordStore:
    """Default record-store factory: seeds ``settings.seed_devices``."""
    store = InMemoryRecordStore()
    for device_id in settings.seed_devices:
        store.add_device(DeviceRecord(device_id=device_id))
    logger.info(
        "Using in-process record store with %d seeded device(s)",
        len(settings.seed_devices),
    )
    return store
