"""Public test-support utilities for pumplink.

Re-exports test doubles and factories so that test suites can import
everything from a single ``pumplink.testing`` namespace instead of
reaching into private modules.

Provided symbols:

- :class:`ServiceHarness` — PumpService wired to in-memory doubles.
- :class:`MockMqttClient` — in-memory MQTT double that records calls.
- :class:`NullMqttClient` — silent no-op MQTT adapter.
- :class:`FakeClock` — deterministic monotonic clock (cache TTLs).
- :func:`make_settings` — factory for ``Settings`` without ``.env`` files.
"""

from pumplink._mqtt import MockMqttClient, NullMqttClient
from pumplink.testing._clock import FakeClock
from pumplink.testing._harness import ServiceHarness
from pumplink.testing._settings import make_settings

__all__ = [
    "FakeClock",
    "MockMqttClient",
    "NullMqttClient",
    "ServiceHarness",
    "make_settings",
]
