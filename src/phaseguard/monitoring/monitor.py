"""
Trigger monitor: periodic health sampling and trigger evaluation.

Scheduling model
----------------
One background thread, timer driven: it waits ``interval`` seconds, runs one
tick to completion (sample -> evaluate -> hand events to the controller,
including any rollback that causes), then waits again. Ticks therefore never
overlap, and a manual :meth:`TriggerMonitor.tick` racing the loop is
rejected with ``Busy``.

Stopping is refused while a rollback is in progress; ticks are skipped while
the emergency stop is engaged.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence

from phaseguard.core.contracts.trigger import HealthSnapshot, Trigger, TriggerEvent
from phaseguard.core.errors import Busy
from phaseguard.core.settings import get_logger
from phaseguard.monitoring.metrics import MetricsCollector
from phaseguard.monitoring.sources import ThresholdTriggerSource, TriggerSource
from phaseguard.phases.gate import OperationGate

logger = get_logger(__name__)

EventHandler = Callable[[Sequence[TriggerEvent]], object]


class TriggerMonitor:
    """Samples health, evaluates registered triggers, dispatches events."""

    def __init__(
        self,
        metrics: MetricsCollector,
        *,
        handler: EventHandler | None = None,
        interval: float = 30.0,
        gate: OperationGate | None = None,
        halted: Callable[[], bool] | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.metrics = metrics
        self.handler = handler
        self.interval = interval
        self.gate = gate
        self._halted = halted or (lambda: False)
        self._sources: list[TriggerSource] = []
        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.ticks = 0

    # ------------------------------- Registration ---------------------------

    def register_trigger(self, trigger: Trigger) -> ThresholdTriggerSource:
        """Register a declarative trigger; evaluated after earlier registrations."""
        source = ThresholdTriggerSource(trigger)
        self._sources.append(source)
        return source

    def register_source(self, source: TriggerSource) -> None:
        self._sources.append(source)

    @property
    def sources(self) -> tuple[TriggerSource, ...]:
        return tuple(self._sources)

    # ------------------------------- Evaluation -----------------------------

    def sample(self) -> HealthSnapshot:
        return self.metrics.collect()

    def evaluate(self, health: HealthSnapshot) -> list[TriggerEvent]:
        """Return every fired event, in trigger registration order."""
        events: list[TriggerEvent] = []
        for source in self._sources:
            events.extend(source.evaluate(health))
        return events

    def tick(self) -> list[TriggerEvent]:
        """Run one complete sampling tick and return the fired events."""
        if not self._tick_lock.acquire(blocking=False):
            raise Busy("a monitoring tick is already running")
        try:
            if self._halted():
                logger.debug("Emergency stop engaged; skipping health tick")
                return []
            health = self.sample()
            events = self.evaluate(health)
            self.ticks += 1
            if events:
                logger.warning(
                    "%d trigger(s) fired: %s",
                    len(events),
                    ", ".join(f"{e.trigger.kind}/{e.action}={e.observed_value:g}" for e in events),
                )
                if self.handler is not None:
                    self.handler(events)
            return events
        finally:
            self._tick_lock.release()

    # ------------------------------- Loop -----------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="phaseguard-monitor", daemon=True)
        self._thread.start()
        logger.info(
            "Monitoring health every %.1fs with %d trigger source(s)",
            self.interval,
            len(self._sources),
        )

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.tick()
            except Exception:  # keep sampling; the failure is already escalated
                logger.exception("Health tick failed")

    def stop(self, timeout: float | None = None) -> None:
        """Stop the loop after the current tick.

        Raises
        ------
        Busy
            If a rollback is in progress.
        """
        if self.gate is not None and self.gate.is_rollback_in_progress():
            raise Busy("cannot stop monitoring while a rollback is in progress")
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        logger.info("Monitoring stopped after %d tick(s)", self.ticks)


__all__ = ["TriggerMonitor", "EventHandler"]
