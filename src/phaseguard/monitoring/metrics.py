# -----------------------------------------------------------------------------
# Metrics collaborators for the trigger monitor.
#
# The monitor never computes metrics itself; once per sampling tick it asks a
# collector for a HealthSnapshot. Two collectors ship here:
#
#   - ProcessMetricsCollector: host memory pressure via psutil, plus an event
#     window the host feeds with errors, successes, crashes and latencies.
#   - StaticMetricsCollector : returns whatever it was last told; for hosts
#     that compute health elsewhere, and for tests.
# -----------------------------------------------------------------------------
from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

import psutil

from phaseguard.core.contracts.trigger import HealthSnapshot


@runtime_checkable
class MetricsCollector(Protocol):
    def collect(self) -> HealthSnapshot: ...


class ProcessMetricsCollector:
    """Memory pressure from psutil plus host-reported error/crash windows.

    Parameters
    ----------
    error_window_seconds:
        Errors older than this no longer count toward the consecutive-error
        run (the default compatibility rule: 3 errors within 60 s).
    crash_window_seconds:
        Sliding window for ``crash_count_in_window`` (1 crash within 300 s).
    custom_signal:
        Optional zero-argument callable sampled once per tick.
    clock:
        Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        *,
        error_window_seconds: float = 60.0,
        crash_window_seconds: float = 300.0,
        custom_signal: Callable[[], float | None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.error_window_seconds = error_window_seconds
        self.crash_window_seconds = crash_window_seconds
        self.custom_signal = custom_signal
        self._clock = clock
        self._lock = threading.Lock()
        self._error_run: deque[float] = deque()
        self._crashes: deque[float] = deque()
        self._latency_ms: float | None = None

    def record_error(self) -> None:
        with self._lock:
            self._error_run.append(self._clock())

    def record_success(self) -> None:
        """A success ends the current run of consecutive errors."""
        with self._lock:
            self._error_run.clear()

    def record_crash(self) -> None:
        with self._lock:
            self._crashes.append(self._clock())

    def record_latency(self, latency_ms: float) -> None:
        with self._lock:
            self._latency_ms = max(0.0, float(latency_ms))

    @staticmethod
    def _trim(events: deque[float], horizon: float) -> None:
        while events and events[0] < horizon:
            events.popleft()

    def collect(self) -> HealthSnapshot:
        now = self._clock()
        with self._lock:
            self._trim(self._error_run, now - self.error_window_seconds)
            self._trim(self._crashes, now - self.crash_window_seconds)
            errors = len(self._error_run)
            crashes = len(self._crashes)
            latency = self._latency_ms

        return HealthSnapshot(
            memory_usage_percent=min(100.0, float(psutil.virtual_memory().percent)),
            consecutive_error_count=errors,
            crash_count_in_window=crashes,
            latency_ms=latency,
            custom_signal=self.custom_signal() if self.custom_signal else None,
        )


class StaticMetricsCollector:
    """Collector that reports a fixed, updatable health sample."""

    def __init__(self, **fields: Any) -> None:
        self._fields: dict[str, Any] = dict(fields)
        self.calls = 0

    def set(self, **fields: Any) -> None:
        self._fields.update(fields)

    def collect(self) -> HealthSnapshot:
        self.calls += 1
        return HealthSnapshot(**self._fields)


__all__ = ["MetricsCollector", "ProcessMetricsCollector", "StaticMetricsCollector"]
