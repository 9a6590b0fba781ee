"""The pump transport: an MQTT port and the adapters behind it.

:class:`MqttClient` is the connection manager the service runs in
production.  It owns one long-lived ``aiomqtt`` session at a time and:

- replays the full set of subscription filters, in sorted order, on
  every (re)connect;
- waits ``reconnect_interval * n`` seconds after the n-th consecutive
  failed session;
- gives up after ``max_reconnect_attempts`` consecutive failures,
  moving to ``DEGRADED`` and exposing a
  :class:`~pumplink._errors.ConnectionLost` through :meth:`wait_lost`;
  only a restart leaves that state.

:class:`MockMqttClient` records traffic for tests and
:class:`NullMqttClient` swallows it for ``--dry-run``.  Neither needs
``aiomqtt`` installed; the production adapter imports it on first
connect.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from pumplink._errors import ConnectionLost
from pumplink._settings import MqttSettings

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, str], Awaitable[None]]
"""``await callback(topic, payload)`` for every inbound device message."""

SleepFunc = Callable[[float], Awaitable[None]]


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class WillConfig:
    """Message the broker publishes for us if the service dies uncleanly."""

    topic: str
    payload: str = "offline"
    qos: int = 1
    retain: bool = True


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


@runtime_checkable
class MqttPort(Protocol):
    """What the dispatcher and health reporter need from a transport."""

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None: ...

    async def subscribe(self, topic: str) -> None: ...


@runtime_checkable
class MqttLifecycle(Protocol):
    """Transports that hold a background connection."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


@runtime_checkable
class MqttMessageHandler(Protocol):
    """Transports that push inbound messages to registered callbacks."""

    def on_message(self, callback: MessageCallback) -> None: ...


# ---------------------------------------------------------------------------
# Dry-run and test adapters
# ---------------------------------------------------------------------------


@dataclass
class NullMqttClient:
    """Transport that drops everything; used by ``--dry-run``."""

    async def publish(
        self,
        topic: str,
        payload: str,  # noqa: ARG002
        *,
        retain: bool = False,  # noqa: ARG002
        qos: int = 1,  # noqa: ARG002
    ) -> None:
        logger.debug("Dry run: not publishing to %s", topic)

    async def subscribe(self, topic: str) -> None:
        logger.debug("Dry run: not subscribing to %s", topic)


@dataclass
class MockMqttClient:
    """Records outbound traffic and lets tests inject device messages.

    ``published`` holds ``(topic, payload, retain, qos)`` tuples.
    Setting ``fail_publish`` makes :meth:`publish` raise as a dropped
    broker connection would.
    """

    published: list[tuple[str, str, bool, int]] = field(default_factory=list)
    subscriptions: list[str] = field(default_factory=list)
    fail_publish: bool = False
    _callbacks: list[MessageCallback] = field(default_factory=list, init=False, repr=False)

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        if self.fail_publish:
            msg = "MockMqttClient is not connected"
            raise RuntimeError(msg)
        self.published.append((topic, payload, retain, qos))

    async def subscribe(self, topic: str) -> None:
        self.subscriptions.append(topic)

    def on_message(self, callback: MessageCallback) -> None:
        self._callbacks.append(callback)

    async def deliver(self, topic: str, payload: str) -> None:
        """Feed *payload* to every callback as if a device had sent it."""
        for callback in self._callbacks:
            await callback(topic, payload)

    def get_messages_for(self, topic: str) -> list[tuple[str, bool, int]]:
        """``(payload, retain, qos)`` for each publish to *topic*, oldest first."""
        return [
            (payload, retain, qos)
            for sent_to, payload, retain, qos in self.published
            if sent_to == topic
        ]


# ---------------------------------------------------------------------------
# Connection manager
# ---------------------------------------------------------------------------


def _decode(payload: Any) -> str:
    if isinstance(payload, (bytes, bytearray)):
        return payload.decode("utf-8", errors="replace")
    return str(payload)


@dataclass
class MqttClient:
    """aiomqtt-backed transport with reconnect supervision.

    :meth:`start` and :meth:`stop` connect and disconnect; ``state``,
    :meth:`wait_connected` and :meth:`wait_lost` report health.
    """

    settings: MqttSettings
    will: WillConfig | None = None
    sleep: SleepFunc = field(default=asyncio.sleep, repr=False)

    state: ConnectionState = field(default=ConnectionState.DISCONNECTED, init=False)
    failures: int = field(default=0, init=False)
    failure: ConnectionLost | None = field(default=None, init=False, repr=False)

    _callbacks: list[MessageCallback] = field(default_factory=list, init=False, repr=False)
    _filters: set[str] = field(default_factory=set, init=False, repr=False)
    _client: Any = field(default=None, init=False, repr=False)
    _listen_task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)
    _up: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)
    _lost: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)
    _stopping: bool = field(default=False, init=False, repr=False)

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Send one message on the current session.

        Raises:
            RuntimeError: No session is open (connecting, backing off
                or degraded).
        """
        session = self._client
        if session is None:
            msg = f"MqttClient is not connected (state={self.state})"
            raise RuntimeError(msg)
        await session.publish(topic, payload, retain=retain, qos=qos)
        logger.debug("-> %s (qos=%d retain=%s)", topic, qos, retain)

    async def subscribe(self, topic: str) -> None:
        """Add *topic* to the filters kept across reconnects."""
        self._filters.add(topic)
        if self._client is not None:
            await self._client.subscribe(topic, qos=self.settings.qos)

    def on_message(self, callback: MessageCallback) -> None:
        self._callbacks.append(callback)

    @property
    def subscriptions(self) -> frozenset[str]:
        return frozenset(self._filters)

    @property
    def is_connected(self) -> bool:
        return self._up.is_set()

    async def wait_connected(self) -> None:
        await self._up.wait()

    async def wait_lost(self) -> ConnectionLost:
        """Return once reconnecting has been abandoned."""
        await self._lost.wait()
        assert self.failure is not None
        return self.failure

    def backoff_delay(self, failures: int) -> float:
        return self.settings.reconnect_interval * failures

    async def start(self) -> None:
        if self._listen_task is not None and not self._listen_task.done():
            logger.debug("Connection loop already running")
            return
        self._stopping = False
        self.failures = 0
        self.failure = None
        self._lost.clear()
        self._listen_task = asyncio.create_task(self._connection_loop())

    async def stop(self) -> None:
        """Close the session and end supervision.  Safe to call twice."""
        self._stopping = True
        task, self._listen_task = self._listen_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._client = None
        self._up.clear()
        if self.state is not ConnectionState.DEGRADED:
            self.state = ConnectionState.DISCONNECTED

    def _client_options(self, aiomqtt: Any) -> dict[str, Any]:
        secret = self.settings.password
        last_will = None
        if self.will is not None:
            last_will = aiomqtt.Will(
                topic=self.will.topic,
                payload=self.will.payload,
                qos=self.will.qos,
                retain=self.will.retain,
            )
        return {
            "hostname": self.settings.host,
            "port": self.settings.port,
            "username": self.settings.username,
            "password": secret.get_secret_value() if secret is not None else None,
            "identifier": self.settings.client_id or None,
            "will": last_will,
            "tls_context": ssl.create_default_context() if self.settings.tls else None,
        }

    async def _session(self, client: Any) -> None:
        """Resubscribe, mark the link up, then pump messages until it drops."""
        self._client = client
        try:
            for topic in sorted(self._filters):
                await client.subscribe(topic, qos=self.settings.qos)
            self.failures = 0
            self.state = ConnectionState.CONNECTED
            self._up.set()
            logger.info(
                "Connected to %s:%d, %d filter(s) active",
                self.settings.host,
                self.settings.port,
                len(self._filters),
            )
            async for message in client.messages:
                await self._dispatch(message)
        finally:
            self._up.clear()
            self._client = None

    async def _connection_loop(self) -> None:
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use MqttClient"
            raise RuntimeError(msg) from exc

        while not self._stopping:
            self.state = ConnectionState.CONNECTING
            try:
                async with aiomqtt.Client(**self._client_options(aiomqtt)) as client:
                    await self._session(client)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Broker session ended", exc_info=True)

            if self._stopping:
                return
            self.failures += 1
            if self.failures > self.settings.max_reconnect_attempts:
                self._give_up()
                return
            self.state = ConnectionState.DISCONNECTED
            delay = self.backoff_delay(self.failures)
            logger.warning(
                "Reconnect attempt %d/%d in %.1fs",
                self.failures,
                self.settings.max_reconnect_attempts,
                delay,
            )
            await self.sleep(delay)

    def _give_up(self) -> None:
        self.state = ConnectionState.DEGRADED
        self.failure = ConnectionLost(self.settings.max_reconnect_attempts)
        logger.critical("%s; service is degraded", self.failure)
        self._lost.set()

    async def _dispatch(self, message: Any) -> None:
        topic = str(message.topic)
        if message.payload is None:
            logger.debug("Ignoring empty message on %s", topic)
            return
        payload = _decode(message.payload)
        for callback in self._callbacks:
            try:
                await callback(topic, payload)
            except Exception:
                logger.exception("Inbound handler failed for %s", topic)
