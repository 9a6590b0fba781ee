"""Root conftest for pumplink tests."""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest

# Fixtures (mock_mqtt, fake_clock, record_store, notification_cache) come
# from pumplink.testing._plugin; the pytest11 entry point is disabled via
# ``-p no:pumplink`` so coverage sees the first import.
pytest_plugins = ["pumplink.testing._plugin"]


@pytest.fixture(autouse=True)
def _keep_root_handlers() -> Iterator[None]:
    """Undo ``configure_logging()`` calls made by service runs."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)
