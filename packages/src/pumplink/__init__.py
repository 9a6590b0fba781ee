"""pumplink.

Device communication and real-time streaming core for networked
infusion pumps.
"""

from importlib.metadata import PackageNotFoundError, version

from pumplink._app import LifespanFunc, PumpService, ServiceContext, build_service_context
from pumplink._broker import EventType, StreamBroker, StreamEvent, Subscriber
from pumplink._cache import (
    InMemoryNotificationCache,
    Notification,
    NotificationCachePort,
    Priority,
    RedisNotificationCache,
)
from pumplink._clock import ClockPort, SystemClock
from pumplink._dispatcher import CommandDispatcher, CommandResult
from pumplink._errors import (
    ConnectionLost,
    ErrorPayload,
    InvalidParameters,
    InvalidStateTransition,
    LifecycleError,
    PersistenceError,
    PumplinkError,
    TransportUnavailable,
    UnknownDevice,
    build_error_payload,
)
from pumplink._health import HeartbeatPayload, ServiceHealthReporter, build_will_config
from pumplink._lifecycle import LifecycleStateMachine, TransitionOutcome
from pumplink._logging import JsonFormatter, configure_logging
from pumplink._models import (
    Command,
    DeviceRecord,
    DeviceStatus,
    InfusionParameters,
    InfusionRecord,
    InfusionStatus,
    ManualAction,
    PatientProvided,
    PatientSkipped,
)
from pumplink._mqtt import (
    ConnectionState,
    MessageCallback,
    MockMqttClient,
    MqttClient,
    MqttLifecycle,
    MqttMessageHandler,
    MqttPort,
    NullMqttClient,
    WillConfig,
)
from pumplink._registry import DeviceRegistry
from pumplink._router import InboundRouter
from pumplink._settings import LoggingSettings, MqttSettings, NotificationSettings, Settings
from pumplink._store import InMemoryRecordStore, RecordStorePort

try:
    __version__ = version("pumplink")
except PackageNotFoundError:
    # Editable installs without metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    "__version__",
    # Service
    "LifespanFunc",
    "PumpService",
    "ServiceContext",
    "build_service_context",
    # Core
    "CommandDispatcher",
    "CommandResult",
    "DeviceRegistry",
    "EventType",
    "InboundRouter",
    "LifecycleStateMachine",
    "StreamBroker",
    "StreamEvent",
    "Subscriber",
    "TransitionOutcome",
    # Records
    "Command",
    "DeviceRecord",
    "DeviceStatus",
    "InMemoryRecordStore",
    "InfusionParameters",
    "InfusionRecord",
    "InfusionStatus",
    "ManualAction",
    "PatientProvided",
    "PatientSkipped",
    "RecordStorePort",
    # Cache
    "InMemoryNotificationCache",
    "Notification",
    "NotificationCachePort",
    "Priority",
    "RedisNotificationCache",
    # Clock
    "ClockPort",
    "SystemClock",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # MQTT
    "ConnectionState",
    "MessageCallback",
    "MockMqttClient",
    "MqttClient",
    "MqttLifecycle",
    "MqttMessageHandler",
    "MqttPort",
    "NullMqttClient",
    "WillConfig",
    # Errors
    "ConnectionLost",
    "ErrorPayload",
    "InvalidParameters",
    "InvalidStateTransition",
    "LifecycleError",
    "PersistenceError",
    "PumplinkError",
    "TransportUnavailable",
    "UnknownDevice",
    "build_error_payload",
    # Health
    "HeartbeatPayload",
    "ServiceHealthReporter",
    "build_will_config",
    # Settings
    "LoggingSettings",
    "MqttSettings",
    "NotificationSettings",
    "Settings",
]
