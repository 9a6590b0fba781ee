"""Tests for pumplink._store — record store port and in-memory adapter.

Test Techniques Used:
    - Protocol Conformance: InMemoryRecordStore satisfies RecordStorePort
    - State-based Testing: patches applied, unknown ids return None
    - Specification-based Testing: registration ids, settings seeding
"""

from __future__ import annotations

import pytest

from pumplink._models import (
    DeviceRecord,
    DeviceStatus,
    InfusionParameters,
    InfusionRecord,
    InfusionStatus,
    PatientSkipped,
)
from pumplink._store import InMemoryRecordStore, RecordStorePort, create_in_memory_store
from pumplink.testing import make_settings


def _infusion(infusion_id: str = "inf-1", device_id: str = "PUMP_0001") -> InfusionRecord:
    return InfusionRecord(
        infusion_id=infusion_id,
        device_id=device_id,
        parameters=InfusionParameters(10, 60, 600),
        patient=PatientSkipped(),
        created_at="2026-01-01T00:00:00+00:00",
    )


class TestProtocol:
    """Technique: Protocol Conformance."""

    def test_in_memory_store_satisfies_port(self) -> None:
        assert isinstance(InMemoryRecordStore(), RecordStorePort)


class TestDevices:
    """Device reads and patches.

    Technique: State-based Testing.
    """

    async def test_find_unknown_returns_none(self, record_store: InMemoryRecordStore) -> None:
        assert await record_store.find_device("NOPE") is None

    async def test_update_applies_patch(self, record_store: InMemoryRecordStore) -> None:
        updated = await record_store.update_device(
            "PUMP_0001",
            {"status": DeviceStatus.RUNNING, "active_infusion": "inf-1"},
        )
        assert updated is not None
        assert updated.status is DeviceStatus.RUNNING
        assert updated.location == "ICU-1"
        assert await record_store.find_device("PUMP_0001") == updated

    async def test_update_unknown_returns_none(self, record_store: InMemoryRecordStore) -> None:
        assert await record_store.update_device("NOPE", {"status": DeviceStatus.STOPPED}) is None

    async def test_patch_violating_invariant_is_rejected(
        self,
        record_store: InMemoryRecordStore,
    ) -> None:
        with pytest.raises(ValueError, match="invariant"):
            await record_store.update_device("PUMP_0001", {"status": DeviceStatus.RUNNING})
        device = await record_store.find_device("PUMP_0001")
        assert device is not None
        assert device.status is DeviceStatus.HEALTHY


class TestInfusions:
    """Infusion create/read/update.

    Technique: State-based Testing.
    """

    async def test_create_and_find(self, record_store: InMemoryRecordStore) -> None:
        created = await record_store.create_infusion(_infusion())
        assert await record_store.find_infusion("inf-1") == created

    async def test_duplicate_id_rejected(self, record_store: InMemoryRecordStore) -> None:
        await record_store.create_infusion(_infusion())
        with pytest.raises(ValueError, match="already exists"):
            await record_store.create_infusion(_infusion())

    async def test_update(self, record_store: InMemoryRecordStore) -> None:
        await record_store.create_infusion(_infusion())
        updated = await record_store.update_infusion("inf-1", {"status": InfusionStatus.RUNNING})
        assert updated is not None
        assert updated.status is InfusionStatus.RUNNING

    async def test_update_unknown_returns_none(self, record_store: InMemoryRecordStore) -> None:
        assert await record_store.update_infusion("nope", {}) is None


class TestRegistration:
    """Administrative helpers.

    Technique: Specification-based Testing.
    """

    def test_register_assigns_sequential_ids(self) -> None:
        store = InMemoryRecordStore()
        first = store.register_device("ICU-1")
        second = store.register_device("ICU-2")
        assert (first.device_id, second.device_id) == ("PUMP_0001", "PUMP_0002")
        assert first.status is DeviceStatus.HEALTHY

    def test_add_duplicate_rejected(self) -> None:
        store = InMemoryRecordStore([DeviceRecord("PUMP_0001")])
        with pytest.raises(ValueError, match="already exists"):
            store.add_device(DeviceRecord("PUMP_0001"))

    def test_factory_seeds_from_settings(self) -> None:
        store = create_in_memory_store(make_settings(seed_devices=["A", "B"]))
        assert [d.device_id for d in store.devices] == ["A", "B"]
