"""Service composition root.

:class:`PumpService` wires the record store, notification cache, device
registry, lifecycle state machine, stream broker, command dispatcher,
inbound router, MQTT connection manager and health reporter, then runs
until shutdown.

Typical usage::

    @asynccontextmanager
    async def lifespan(ctx: ServiceContext) -> AsyncIterator[None]:
        http = await start_http_api(ctx.dispatcher, ctx.broker)
        yield
        await http.close()

    service = PumpService(version="1.0.0", lifespan=lifespan)
    service.run()

Orchestration order in :meth:`PumpService._run_async`:

1. Bootstrap (settings, logging, store, cache, MQTT).
2. Wire components, subscribe to device channels, connect.
3. Enter lifespan, heartbeat, block until shutdown.
4. Tear down (router workers, lifespan exit, heartbeat offline, MQTT).
"""

from __future__ import annotations

import asyncio
import contextlib
import importlib
import logging
import signal
import sys
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from typing import Any

from pumplink._broker import StreamBroker
from pumplink._cache import (
    InMemoryNotificationCache,
    NotificationCachePort,
    RedisNotificationCache,
)
from pumplink._clock import ClockPort, SystemClock, WallClock
from pumplink._dispatcher import CommandDispatcher
from pumplink._health import ServiceHealthReporter, build_will_config
from pumplink._lifecycle import LifecycleStateMachine
from pumplink._logging import configure_logging
from pumplink._mqtt import (
    MqttClient,
    MqttLifecycle,
    MqttMessageHandler,
    MqttPort,
    NullMqttClient,
)
from pumplink._registry import DeviceRegistry
from pumplink._router import InboundRouter
from pumplink._settings import Settings
from pumplink._store import RecordStorePort

logger = logging.getLogger(__name__)

# Seconds allowed for queued device messages to be handled at shutdown.
ROUTER_DRAIN_TIMEOUT = 5.0

# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServiceContext:
    """Every wired component, handed to the lifespan."""

    settings: Settings
    store: RecordStorePort
    cache: NotificationCachePort
    registry: DeviceRegistry
    lifecycle: LifecycleStateMachine
    broker: StreamBroker
    dispatcher: CommandDispatcher
    router: InboundRouter
    mqtt: MqttPort
    health: ServiceHealthReporter


type LifespanFunc = Callable[[ServiceContext], AbstractAsyncContextManager[None]]
"""Type alias for the lifespan parameter."""


@asynccontextmanager
async def _noop_lifespan(_ctx: ServiceContext) -> AsyncIterator[None]:
    yield


def import_string(dotted_path: str) -> Any:
    """Import an object from a ``module.path:attribute`` string.

    Raises:
        ImportError: If the module cannot be found.
        AttributeError: If the attribute doesn't exist in the module.
        ValueError: If the path doesn't contain exactly one ``:``.
    """
    parts = dotted_path.split(":")
    if len(parts) != 2:  # noqa: PLR2004
        msg = f"Expected 'module.path:attribute', got {dotted_path!r}"
        raise ValueError(msg)

    module_path, attribute = parts
    module = importlib.import_module(module_path)
    return getattr(module, attribute)


def build_service_context(
    settings: Settings,
    *,
    mqtt: MqttPort,
    store: RecordStorePort,
    cache: NotificationCachePort,
    clock: ClockPort,
    wall_clock: WallClock | None = None,
    version: str = "",
) -> ServiceContext:
    """Wire the core components around the given adapters."""
    registry = DeviceRegistry(recent_errors=settings.notifications.recent_errors)
    lifecycle = LifecycleStateMachine(store, clock=wall_clock)
    broker = StreamBroker(store, cache, registry, clock=wall_clock)
    dispatcher = CommandDispatcher(
        mqtt,
        lifecycle,
        registry,
        topic_prefix=settings.mqtt.topic_prefix,
        qos=settings.mqtt.qos,
        clock=wall_clock,
    )
    router = InboundRouter(
        lifecycle,
        broker,
        cache,
        registry,
        topic_prefix=settings.mqtt.topic_prefix,
        notification_ttl=settings.notifications.ttl_seconds,
        presence_ttl=settings.notifications.presence_ttl_seconds,
        recent_errors=settings.notifications.recent_errors,
        clock=wall_clock,
    )

    def connection_state() -> str:
        return str(mqtt.state) if isinstance(mqtt, MqttClient) else "connected"

    health = ServiceHealthReporter(
        mqtt=mqtt,
        service_topic=settings.mqtt.service_topic,
        version=version,
        clock=clock,
        connection_state=connection_state,
        live_devices=lambda: broker.live_devices,
    )
    return ServiceContext(
        settings=settings,
        store=store,
        cache=cache,
        registry=registry,
        lifecycle=lifecycle,
        broker=broker,
        dispatcher=dispatcher,
        router=router,
        mqtt=mqtt,
        health=health,
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class PumpService:
    """Composition root and lifecycle owner of the pumplink core."""

    def __init__(
        self,
        *,
        name: str = "pumplink",
        version: str = "0.0.0",
        description: str = "Infusion pump communication and streaming service",
        settings_class: type[Settings] = Settings,
        lifespan: LifespanFunc | None = None,
        dry_run: bool = False,
    ) -> None:
        """Initialise the service.

        Args:
            name: Service name, used in logs and the MQTT client id.
            version: Version reported in logs and heartbeats.
            description: Shown in the CLI help text.
            settings_class: Settings subclass to instantiate at startup.
            lifespan: Async context manager receiving the
                :class:`ServiceContext`; code before ``yield`` runs
                after wiring, code after ``yield`` at shutdown.
            dry_run: Use :class:`NullMqttClient`; commands are
                recorded but never reach a device.
        """
        self._name = name
        self._version = version
        self._description = description
        self._settings_class = settings_class
        self._lifespan: LifespanFunc = (
            lifespan if lifespan is not None else _noop_lifespan
        )
        self._dry_run = dry_run
        self.context: ServiceContext | None = None
        self.ready = asyncio.Event()

    # --- Lifecycle ---------------------------------------------------------

    def run(
        self,
        *,
        mqtt: MqttPort | None = None,
        settings: Settings | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: ClockPort | None = None,
    ) -> None:
        """Start the service (blocking, synchronous entrypoint)."""
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(
                self._run_async(
                    mqtt=mqtt,
                    settings=settings,
                    shutdown_event=shutdown_event,
                    clock=clock,
                ),
            )

    def cli(self) -> None:
        """Start the service with CLI argument parsing."""
        from pumplink._cli import build_cli

        cli = build_cli(self)
        cli(standalone_mode=True)

    async def _run_async(
        self,
        *,
        mqtt: MqttPort | None = None,
        settings: Settings | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: ClockPort | None = None,
        store: RecordStorePort | None = None,
        cache: NotificationCachePort | None = None,
        wall_clock: WallClock | None = None,
    ) -> None:
        """Async orchestration.

        Every collaborator can be injected for tests; anything not
        injected is built from settings.
        """
        # --- Phase 1: Bootstrap ---
        resolved_settings = settings if settings is not None else self._settings_class()
        configure_logging(
            resolved_settings.logging,
            service=self._name,
            version=self._version,
        )
        resolved_clock = clock if clock is not None else SystemClock()
        resolved_store = store if store is not None else self._create_store(resolved_settings)
        resolved_cache = (
            cache if cache is not None else self._create_cache(resolved_settings, resolved_clock)
        )
        mqtt = self._create_mqtt(mqtt, resolved_settings)

        # --- Phase 2: Wiring ---
        context = build_service_context(
            resolved_settings,
            mqtt=mqtt,
            store=resolved_store,
            cache=resolved_cache,
            clock=resolved_clock,
            wall_clock=wall_clock,
            version=self._version,
        )
        self.context = context
        shutdown_event = self._install_signal_handlers(shutdown_event)

        for topic in context.router.subscriptions:
            await mqtt.subscribe(topic)
        if isinstance(mqtt, MqttMessageHandler):
            mqtt.on_message(context.router.route)
        if isinstance(mqtt, MqttLifecycle):
            await mqtt.start()

        # --- Phase 3: Run ---
        lifespan_cm = self._lifespan(context)
        await lifespan_cm.__aenter__()

        try:
            # The initial heartbeat overwrites a retained Last-Will.
            await context.health.publish_heartbeat()
            tasks = [
                task
                for task in (
                    self._start_heartbeat_task(context.health, resolved_settings),
                    self._start_degraded_watch(mqtt, context.health),
                )
                if task is not None
            ]
            logger.info(
                "%s v%s running (%d subscriptions)",
                self._name,
                self._version,
                len(context.router.subscriptions),
            )
            self.ready.set()

            await shutdown_event.wait()

            # --- Phase 4: Tear down ---
            await self._cancel_tasks(tasks)
            await context.router.stop(drain_timeout=ROUTER_DRAIN_TIMEOUT)
        finally:
            exc_info = sys.exc_info()
            try:
                await lifespan_cm.__aexit__(*exc_info)
            except Exception:
                logger.exception("Lifespan teardown error")
            finally:
                del exc_info

        await context.health.shutdown()

        if isinstance(mqtt, MqttLifecycle):
            await mqtt.stop()

        context.broker.close()
        context.registry.close()
        if isinstance(resolved_cache, RedisNotificationCache):
            await resolved_cache.close()
        self.ready.clear()

        logger.info("Shutdown complete")

    # --- _run_async helpers ------------------------------------------------

    def _create_mqtt(self, mqtt: MqttPort | None, settings: Settings) -> MqttPort:
        """Create the MQTT client, or return the injected one.

        When no ``client_id`` is configured one is generated from the
        service name and a short random suffix.
        """
        if mqtt is not None:
            return mqtt
        if self._dry_run:
            logger.warning("Dry run: commands will not be sent to devices")
            return NullMqttClient()
        mqtt_settings = settings.mqtt
        if not mqtt_settings.client_id:
            mqtt_settings = mqtt_settings.model_copy(
                update={"client_id": f"{self._name}-{uuid.uuid4().hex[:8]}"},
            )
        return MqttClient(
            settings=mqtt_settings,
            will=build_will_config(mqtt_settings.service_topic),
        )

    @staticmethod
    def _create_store(settings: Settings) -> RecordStorePort:
        factory = import_string(settings.record_store)
        store = factory(settings)
        if not isinstance(store, RecordStorePort):
            msg = f"{settings.record_store} did not return a record store"
            raise TypeError(msg)
        return store

    @staticmethod
    def _create_cache(settings: Settings, clock: ClockPort) -> NotificationCachePort:
        url = settings.notifications.redis_url
        if url:
            logger.info("Using Redis notification cache")
            return RedisNotificationCache(url)
        return InMemoryNotificationCache(clock)

    @staticmethod
    def _install_signal_handlers(
        shutdown_event: asyncio.Event | None,
    ) -> asyncio.Event:
        """Install SIGTERM/SIGINT handlers. Returns the shutdown event."""
        if shutdown_event is not None:
            return shutdown_event
        event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, event.set)
        return event

    @classmethod
    def _start_heartbeat_task(
        cls,
        health: ServiceHealthReporter,
        settings: Settings,
    ) -> asyncio.Task[None] | None:
        if settings.heartbeat_interval is None:
            return None
        return asyncio.create_task(
            cls._heartbeat_loop(health, settings.heartbeat_interval),
        )

    @staticmethod
    async def _heartbeat_loop(
        health: ServiceHealthReporter,
        interval: float,
    ) -> None:
        """Sleep, then publish; the first heartbeat is sent at startup."""
        while True:
            await asyncio.sleep(interval)
            await health.publish_heartbeat()

    @staticmethod
    def _start_degraded_watch(
        mqtt: MqttPort,
        health: ServiceHealthReporter,
    ) -> asyncio.Task[None] | None:
        if not isinstance(mqtt, MqttClient):
            return None

        async def watch() -> None:
            failure = await mqtt.wait_lost()
            logger.critical(
                "Service degraded: %s; commands fail until restart (heartbeat: %s)",
                failure,
                health.snapshot().status,
            )

        return asyncio.create_task(watch())

    @staticmethod
    async def _cancel_tasks(tasks: list[asyncio.Task[None]]) -> None:
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(
                result,
                asyncio.CancelledError,
            ):
                logger.error("Task error during shutdown: %s", result)
