"""Tests for pumplink._errors — error taxonomy and payloads.

Test Techniques Used:
    - Specification-based Testing: ErrorPayload construction and serialisation
    - Equivalence Partitioning: each exception class maps to its error type
    - Clock Injection: Deterministic timestamps via injected clock callable
"""

from __future__ import annotations

import json
from dataclasses import FrozenInstanceError
from datetime import UTC, datetime

import pytest

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

FIXED_DT = datetime(2026, 2, 14, 12, 0, 0, tzinfo=UTC)
FIXED_ISO = FIXED_DT.isoformat()


def _fixed_clock() -> datetime:
    return FIXED_DT


class TestHierarchy:
    """Exception hierarchy.

    Technique: Specification-based Testing.
    """

    @pytest.mark.parametrize(
        "exc_type",
        [UnknownDevice, InvalidParameters, InvalidStateTransition],
    )
    def test_rejections_are_lifecycle_errors(self, exc_type: type[Exception]) -> None:
        assert issubclass(exc_type, LifecycleError)

    @pytest.mark.parametrize(
        "exc_type",
        [LifecycleError, TransportUnavailable, ConnectionLost, PersistenceError],
    )
    def test_all_rooted_at_pumplink_error(self, exc_type: type[Exception]) -> None:
        assert issubclass(exc_type, PumplinkError)

    def test_transport_unavailable_is_not_a_rejection(self) -> None:
        assert not issubclass(TransportUnavailable, LifecycleError)


class TestInvalidStateTransition:
    """Current vs. required status carried on the exception.

    Technique: Specification-based Testing.
    """

    def test_names_current_and_required(self) -> None:
        exc = InvalidStateTransition("PUMP_0001", "pause", "healthy", {"running"})
        assert exc.current == "healthy"
        assert exc.required == ("running",)
        assert exc.device_id == "PUMP_0001"
        assert "healthy" in str(exc)
        assert "running" in str(exc)

    def test_required_is_sorted(self) -> None:
        exc = InvalidStateTransition("P", "start", "running", {"stopped", "healthy"})
        assert exc.required == ("healthy", "stopped")

    def test_details(self) -> None:
        exc = InvalidStateTransition("P", "resume", "running", {"paused"})
        assert exc.details == {
            "command": "resume",
            "current": "running",
            "required": ["paused"],
        }


class TestErrorPayload:
    """ErrorPayload value object.

    Technique: Specification-based Testing.
    """

    def test_to_json_round_trips_fields(self) -> None:
        payload = ErrorPayload(
            error_type="unknown_device",
            message="Unknown device 'X'",
            device="X",
            timestamp=FIXED_ISO,
        )
        data = json.loads(payload.to_json())
        assert data == {
            "error_type": "unknown_device",
            "message": "Unknown device 'X'",
            "device": "X",
            "timestamp": FIXED_ISO,
            "details": {},
        }

    def test_frozen(self) -> None:
        payload = ErrorPayload("e", "m", None, FIXED_ISO)
        with pytest.raises(FrozenInstanceError):
            payload.message = "changed"  # type: ignore[misc]


class TestBuildErrorPayload:
    """Exception to payload conversion.

    Technique: Equivalence Partitioning — one case per mapped class.
    """

    @pytest.mark.parametrize(
        ("exc", "expected"),
        [
            (UnknownDevice("P"), "unknown_device"),
            (InvalidParameters("bad"), "invalid_parameters"),
            (InvalidStateTransition("P", "stop", "healthy", {"running"}), "invalid_state_transition"),
            (TransportUnavailable("down"), "transport_unavailable"),
            (ConnectionLost(5), "connection_lost"),
            (PersistenceError("db"), "persistence_error"),
        ],
    )
    def test_error_types(self, exc: Exception, expected: str) -> None:
        assert build_error_payload(exc, clock=_fixed_clock).error_type == expected

    def test_unmapped_exception_is_generic(self) -> None:
        assert build_error_payload(ValueError("x")).error_type == "error"

    def test_device_taken_from_lifecycle_error(self) -> None:
        payload = build_error_payload(UnknownDevice("PUMP_0009"), clock=_fixed_clock)
        assert payload.device == "PUMP_0009"
        assert payload.timestamp == FIXED_ISO

    def test_explicit_device_wins(self) -> None:
        payload = build_error_payload(UnknownDevice("A"), device="B")
        assert payload.device == "B"

    def test_details_from_transition_error(self) -> None:
        exc = InvalidStateTransition("P", "pause", "healthy", {"running"})
        assert build_error_payload(exc).details["current"] == "healthy"

    def test_custom_error_type_map(self) -> None:
        payload = build_error_payload(
            TransportUnavailable("down"),
            error_type_map={TransportUnavailable: "offline"},
        )
        assert payload.error_type == "offline"
