"""Tests for pumplink._clock — monotonic and wall clocks.

Test Techniques Used:
    - Protocol Conformance: SystemClock satisfies ClockPort
    - Specification-based Testing: wall-clock strings are UTC ISO 8601
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

from pumplink._clock import ClockPort, SystemClock, isoformat, utc_now


class TestSystemClock:
    """Technique: Protocol Conformance."""

    def test_satisfies_port(self) -> None:
        assert isinstance(SystemClock(), ClockPort)

    def test_monotonic(self) -> None:
        clock = SystemClock()
        first = clock.now()
        assert clock.now() >= first


class TestWallClock:
    """Technique: Specification-based Testing."""

    def test_utc_now_is_aware(self) -> None:
        assert utc_now().tzinfo is UTC

    def test_isoformat_uses_injected_clock(self) -> None:
        fixed = datetime(2026, 3, 1, 8, 30, tzinfo=UTC)
        assert isoformat(lambda: fixed) == "2026-03-01T08:30:00+00:00"

    def test_isoformat_keeps_offset(self) -> None:
        cet = datetime(2026, 3, 1, 9, 30, tzinfo=timezone(timedelta(hours=1)))
        assert isoformat(lambda: cet).endswith("+01:00")

    def test_isoformat_default_parses(self) -> None:
        assert datetime.fromisoformat(isoformat()).tzinfo is not None
