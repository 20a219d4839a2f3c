"""Tests for worker diagnostics classification and flood detection."""

import pytest

from render_orchestrator.worker.error_classifier import (
    FloodGuard,
    Severity,
    classify_line,
    is_critical_error,
    is_diagnostic,
)


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class TestClassifyLine:
    """Tests for per-line severity."""

    @pytest.mark.parametrize(
        "line",
        [
            "Segmentation fault (core dumped)",
            "Error: No camera found in scene",
            "EXCEPTION_ACCESS_VIOLATION: Access violation",
            "Fatal error: could not allocate",
            "Python Exception in handler",
            "Worker terminated unexpectedly",
            "Writing crash log, possible crash in render",
        ],
    )
    def test_critical(self, line):
        assert is_critical_error(line)
        assert classify_line(line) is Severity.CRITICAL

    def test_case_insensitive(self):
        assert is_critical_error("SEGMENTATION FAULT")

    @pytest.mark.parametrize(
        "line",
        [
            "Warning: unable to open font",
            "Error: Not freed memory blocks: 2",
            "color management error: missing OCIO config",
        ],
    )
    def test_diagnostic(self, line):
        assert is_diagnostic(line)
        assert classify_line(line) is Severity.DIAGNOSTIC

    def test_info(self):
        assert classify_line("Fra:1 Mem:10M | Sample 3/16") is Severity.INFO


class TestFloodGuard:
    """Tests for the rolling-window diagnostic counter."""

    def test_trips_above_threshold_within_window(self):
        clock = FakeClock()
        guard = FloodGuard(threshold=3, window=1.0, clock=clock)

        results = [guard.record() for _ in range(4)]

        assert results == [False, False, False, True]

    def test_old_hits_expire(self):
        clock = FakeClock()
        guard = FloodGuard(threshold=2, window=1.0, clock=clock)

        guard.record()
        guard.record()
        clock.now = 1.5
        assert guard.record() is False
        assert guard.count == 1

    def test_spread_out_lines_never_trip(self):
        clock = FakeClock()
        guard = FloodGuard(threshold=50, window=1.0, clock=clock)
        for i in range(500):
            clock.now = i * 0.1
            assert guard.record() is False
