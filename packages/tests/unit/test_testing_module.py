"""Tests for pumplink.testing — public test-support utilities.

Test Techniques Used:
    - Identity Testing: re-exports are the private-module objects
    - Protocol Conformance: FakeClock satisfies ClockPort
    - Specification-based Testing: make_settings isolation and defaults
    - Fixture Injection: plugin fixtures available without local definitions
"""

from __future__ import annotations

import pytest

import pumplink._mqtt as mqtt_module
import pumplink.testing as testing
from pumplink._cache import InMemoryNotificationCache
from pumplink._clock import ClockPort
from pumplink._models import DeviceStatus
from pumplink._store import InMemoryRecordStore
from pumplink.testing import FakeClock, ServiceHarness, make_settings


class TestExports:
    """Technique: Identity Testing."""

    def test_all(self) -> None:
        assert set(testing.__all__) == {
            "FakeClock",
            "MockMqttClient",
            "NullMqttClient",
            "ServiceHarness",
            "make_settings",
        }

    def test_doubles_are_the_real_classes(self) -> None:
        assert testing.MockMqttClient is mqtt_module.MockMqttClient
        assert testing.NullMqttClient is mqtt_module.NullMqttClient


class TestFakeClock:
    """Technique: Protocol Conformance."""

    def test_satisfies_clock_port(self) -> None:
        assert isinstance(FakeClock(), ClockPort)

    def test_advance(self) -> None:
        clock = FakeClock(10.0)
        clock.advance(2.5)
        assert clock.now() == 12.5


class TestMakeSettings:
    """Technique: Specification-based Testing."""

    def test_ignores_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PUMPLINK_MQTT__TOPIC_PREFIX", "from-env")
        assert make_settings().mqtt.topic_prefix == "devices"

    def test_heartbeat_disabled_by_default(self) -> None:
        assert make_settings().heartbeat_interval is None
        assert make_settings(heartbeat_interval=5).heartbeat_interval == 5

    def test_nested_overrides(self) -> None:
        settings = make_settings(notifications={"ttl_seconds": 60})
        assert settings.notifications.ttl_seconds == 60


class TestPluginFixtures:
    """Technique: Fixture Injection."""

    async def test_record_store_has_healthy_pump(
        self,
        record_store: InMemoryRecordStore,
    ) -> None:
        device = await record_store.find_device("PUMP_0001")
        assert device is not None
        assert device.status is DeviceStatus.HEALTHY
        assert device.location == "ICU-1"

    async def test_cache_follows_fake_clock(
        self,
        notification_cache: InMemoryNotificationCache,
        fake_clock: FakeClock,
    ) -> None:
        await notification_cache.put("k", 1, ttl_seconds=5)
        fake_clock.advance(5)
        assert await notification_cache.get("k") is None


class TestServiceHarness:
    """Technique: Specification-based Testing."""

    def test_create_registers_devices(self) -> None:
        harness = ServiceHarness.create(devices=["A", "B"], mqtt={"topic_prefix": "ward7"})
        assert [d.device_id for d in harness.store.devices] == ["A", "B"]
        assert harness.settings.mqtt.topic_prefix == "ward7"

    async def test_commands_for_decodes_published_commands(self) -> None:
        async with ServiceHarness.create() as harness:
            result = await harness.dispatcher.start_infusion(
                "PUMP_0001",
                {"flowRateMlMin": 1, "plannedTimeMin": 2, "plannedVolumeMl": 3},
            )
            [command] = harness.commands_for("PUMP_0001")
            assert command["commandId"] == result.command_id
