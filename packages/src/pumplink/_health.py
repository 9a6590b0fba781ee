"""Service heartbeat and Last-Will for monitoring.

Topic layout::

    {service_topic}/status   ← service heartbeat (retained JSON)

Heartbeat payload schema::

    {
        "status": "online",
        "uptime_s": 3600,
        "version": "0.1.0",
        "connection": "connected",
        "live_devices": ["PUMP_0001", "PUMP_0002"]
    }

``status`` is ``"degraded"`` once the connection manager has given up
reconnecting.  The broker publishes ``"offline"`` on the same topic if
the service disappears without a graceful shutdown (Last-Will).

Heartbeats are retained, QoS 1, and fire-and-forget: publication
failures are logged, never propagated.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field

from pumplink._clock import ClockPort
from pumplink._mqtt import MqttPort, WillConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HeartbeatPayload:
    """Immutable service status snapshot."""

    status: str
    uptime_s: float
    version: str
    connection: str
    live_devices: list[str] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps(asdict(self))


def build_will_config(service_topic: str) -> WillConfig:
    """Create the Last-Will for ``{service_topic}/status``.

    Parameters
    ----------
    service_topic:
        Service-level topic prefix (e.g. ``"pumplink"``).

    Returns
    -------
    WillConfig
        Retained ``"offline"`` at QoS 1.
    """
    return WillConfig(
        topic=f"{service_topic}/status",
        payload="offline",
        qos=1,
        retain=True,
    )


@dataclass
class ServiceHealthReporter:
    """Publishes service heartbeats to MQTT.

    Parameters
    ----------
    mqtt:
        MQTT port used for publishing.
    service_topic:
        Prefix of the status topic.
    version:
        Version string included in heartbeats.
    clock:
        Monotonic clock for uptime measurement.
    connection_state:
        Returns the connection manager's current state name.
    live_devices:
        Returns the ids of devices currently considered live.
    """

    mqtt: MqttPort
    service_topic: str
    version: str
    clock: ClockPort
    connection_state: Callable[[], str] = field(default=lambda: "connected")
    live_devices: Callable[[], list[str]] = field(default=list)
    _start_time: float = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._start_time = self.clock.now()

    @property
    def status_topic(self) -> str:
        return f"{self.service_topic}/status"

    def snapshot(self) -> HeartbeatPayload:
        connection = self.connection_state()
        return HeartbeatPayload(
            status="degraded" if connection == "degraded" else "online",
            uptime_s=self.clock.now() - self._start_time,
            version=self.version,
            connection=connection,
            live_devices=list(self.live_devices()),
        )

    async def publish_heartbeat(self) -> None:
        payload = self.snapshot()
        logger.debug("Publishing heartbeat to %s", self.status_topic)
        await self._safe_publish(self.status_topic, payload.to_json())

    async def shutdown(self) -> None:
        """Publish ``"offline"`` to the status topic."""
        logger.info("Health reporter shutting down, publishing offline")
        await self._safe_publish(self.status_topic, "offline")

    async def _safe_publish(self, topic: str, payload: str) -> None:
        try:
            await self.mqtt.publish(topic, payload, retain=True, qos=1)
        except Exception:
            logger.exception("Failed to publish health to %s", topic)
