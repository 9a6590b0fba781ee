"""Test harness wrapping PumpService with pre-configured doubles.

:class:`ServiceHarness` runs the real composition root against a
:class:`MockMqttClient`, an :class:`InMemoryRecordStore`, an
:class:`InMemoryNotificationCache` and a :class:`FakeClock`, so
integration tests drive the service through the same MQTT callbacks
a broker would.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Self

from pumplink._app import PumpService, ServiceContext
from pumplink._broker import StreamBroker
from pumplink._cache import InMemoryNotificationCache
from pumplink._dispatcher import CommandDispatcher
from pumplink._models import DeviceRecord
from pumplink._mqtt import MockMqttClient
from pumplink._settings import Settings
from pumplink._store import InMemoryRecordStore
from pumplink.testing._clock import FakeClock
from pumplink.testing._settings import make_settings


@dataclass
class ServiceHarness:
    """PumpService plus the doubles it runs on.

    Usage::

        async with ServiceHarness.create(devices=["PUMP_0001"]) as harness:
            result = await harness.dispatcher.start_infusion("PUMP_0001", params)
            await harness.deliver("PUMP_0001", "infusion", {...})
    """

    service: PumpService
    mqtt: MockMqttClient
    clock: FakeClock
    settings: Settings
    store: InMemoryRecordStore
    cache: InMemoryNotificationCache
    shutdown_event: asyncio.Event
    _task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)

    @classmethod
    def create(
        cls,
        *,
        devices: Iterable[str] = ("PUMP_0001",),
        version: str = "1.0.0",
        dry_run: bool = False,
        **settings_overrides: Any,
    ) -> Self:
        """Create a harness with fresh doubles and healthy *devices*."""
        clock = FakeClock()
        return cls(
            service=PumpService(version=version, dry_run=dry_run),
            mqtt=MockMqttClient(),
            clock=clock,
            settings=make_settings(**settings_overrides),
            store=InMemoryRecordStore(DeviceRecord(device_id=d) for d in devices),
            cache=InMemoryNotificationCache(clock),
            shutdown_event=asyncio.Event(),
        )

    # -- lifecycle ------------------------------------------------------------

    async def run(self) -> None:
        """Run ``_run_async`` with the harness's doubles until shutdown."""
        await self.service._run_async(
            settings=self.settings,
            shutdown_event=self.shutdown_event,
            mqtt=self.mqtt,
            clock=self.clock,
            store=self.store,
            cache=self.cache,
        )

    async def start(self) -> None:
        """Run the service in the background and wait until it is ready."""
        self._task = asyncio.create_task(self.run())
        ready = asyncio.create_task(self.service.ready.wait())
        done, _ = await asyncio.wait(
            {self._task, ready},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if self._task in done:
            ready.cancel()
            self._task.result()

    async def stop(self) -> None:
        """Trigger shutdown and wait for the service to finish."""
        self.trigger_shutdown()
        if self._task is not None:
            await self._task
            self._task = None

    def trigger_shutdown(self) -> None:
        self.shutdown_event.set()

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # -- access -----------------------------------------------------------------

    @property
    def context(self) -> ServiceContext:
        if self.service.context is None:
            msg = "ServiceHarness has not been started"
            raise RuntimeError(msg)
        return self.service.context

    @property
    def dispatcher(self) -> CommandDispatcher:
        return self.context.dispatcher

    @property
    def broker(self) -> StreamBroker:
        return self.context.broker

    # -- simulation ---------------------------------------------------------------

    async def deliver(
        self,
        device_id: str,
        category: str,
        payload: Mapping[str, Any] | str,
    ) -> None:
        """Deliver a device message and wait until it has been handled."""
        topic = f"{self.settings.mqtt.topic_prefix}/{device_id}/{category}"
        raw = payload if isinstance(payload, str) else json.dumps(payload)
        await self.mqtt.deliver(topic, raw)
        await self.context.router.drain()

    def commands_for(self, device_id: str) -> list[dict[str, Any]]:
        """Decoded commands published to *device_id* so far."""
        topic = f"{self.settings.mqtt.topic_prefix}/{device_id}/commands"
        return [json.loads(payload) for payload, _, _ in self.mqtt.get_messages_for(topic)]
