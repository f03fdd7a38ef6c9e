"""
Engine: one wired instance of every component for a running process.

Nothing in the package is a module-level singleton. The CLI builds an
:class:`Engine` per invocation and the HTTP app keeps one on ``app.state``;
tests build engines directly around a :class:`MemoryArtifactRegistry` and a
temporary state directory.

Wiring
------
- the registry feeds the validator, the store and the executor;
- the controller owns the store and executor, and the planner drives the
  controller;
- the monitor hands fired events to ``controller.handle_trigger_events``.

One :class:`OperationGate` is shared by the store, the executor and the
controller, and one :class:`EmergencyStop` by the controller and the monitor.
The gate locks ``<state_dir>/phaseguard.lock``, so engines in different
processes over one state directory exclude each other too.
"""

from __future__ import annotations

from dataclasses import dataclass

from phaseguard.artifacts.manifest import load_manifest
from phaseguard.artifacts.registry import ArtifactRegistry, FileArtifactRegistry
from phaseguard.core.contracts.phase import PhaseStatus
from phaseguard.core.contracts.rollback import RollbackOperation
from phaseguard.core.settings import Settings, get_logger
from phaseguard.monitoring.metrics import MetricsCollector, ProcessMetricsCollector
from phaseguard.monitoring.monitor import TriggerMonitor
from phaseguard.monitoring.sources import IntegrityTriggerSource, default_triggers
from phaseguard.phases.controller import PhaseController
from phaseguard.phases.emergency import EmergencyStop
from phaseguard.phases.evolution import EvolutionPlanner
from phaseguard.phases.gate import LOCK_FILE, OperationGate
from phaseguard.phases.journal import RollbackJournal
from phaseguard.phases.rollback import RollbackExecutor
from phaseguard.snapshots.integrity import IntegrityValidator
from phaseguard.snapshots.store import SnapshotStore

logger = get_logger(__name__)

SNAPSHOT_DIR = "snapshots"


@dataclass(slots=True)
class Engine:
    """Container for the components of one engine instance."""

    settings: Settings
    registry: ArtifactRegistry
    gate: OperationGate
    validator: IntegrityValidator
    store: SnapshotStore
    journal: RollbackJournal
    emergency: EmergencyStop
    executor: RollbackExecutor
    controller: PhaseController
    monitor: TriggerMonitor
    planner: EvolutionPlanner
    started: bool = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: ArtifactRegistry | None = None,
        metrics: MetricsCollector | None = None,
        *,
        watch_integrity: bool = False,
    ) -> Engine:
        """Build every component from ``settings``.

        Parameters
        ----------
        registry:
            Artifact collaborator; defaults to a file registry over
            ``settings.manifest_path`` (raises ``ManifestError`` if missing).
        metrics:
            Metrics collaborator; defaults to :class:`ProcessMetricsCollector`.
        watch_integrity:
            Also arm a rollback trigger that fires when tracked artifacts
            diverge from the active phase's snapshot. Leave off for hosts
            that edit artifacts between :meth:`PhaseController.checkpoint`
            and :meth:`PhaseController.advance`.
        """
        state_dir = settings.state_dir
        state_dir.mkdir(parents=True, exist_ok=True)
        if registry is None:
            registry = FileArtifactRegistry(load_manifest(settings.manifest_path))

        gate = OperationGate(state_dir / LOCK_FILE)
        validator = IntegrityValidator(registry, settings.hash_algorithm)
        store = SnapshotStore(state_dir / SNAPSHOT_DIR, registry, validator, gate)
        journal = RollbackJournal(state_dir)
        emergency = EmergencyStop(state_dir)
        executor = RollbackExecutor(store, validator, registry, journal, gate)
        controller = PhaseController(store, executor, emergency, state_dir)

        monitor = TriggerMonitor(
            metrics if metrics is not None else ProcessMetricsCollector(),
            handler=controller.handle_trigger_events,
            interval=settings.monitor_interval,
            gate=gate,
            halted=emergency.is_engaged,
        )
        for trigger in default_triggers():
            monitor.register_trigger(trigger)
        if watch_integrity:
            monitor.register_source(
                IntegrityTriggerSource(validator, lambda: store.get(controller.current_phase))
            )

        planner = EvolutionPlanner(controller, state_dir, settings.max_risk)
        return cls(
            settings=settings,
            registry=registry,
            gate=gate,
            validator=validator,
            store=store,
            journal=journal,
            emergency=emergency,
            executor=executor,
            controller=controller,
            monitor=monitor,
            planner=planner,
        )

    def start(self, *, monitor: bool = False) -> RollbackOperation | None:
        """Initialize the phase state and settle any interrupted rollback.

        Returns the operation produced by recovery, if there was one.
        """
        self.controller.initialize()
        recovered = self.controller.recover_interrupted(self.settings.recovery_policy)
        if monitor:
            self.monitor.start()
        self.started = True
        logger.info(
            "Engine started at phase %d (state dir %s)",
            self.controller.current_phase,
            self.settings.state_dir,
        )
        return recovered

    def status(self) -> PhaseStatus:
        return self.controller.status().model_copy(update={"monitoring": self.monitor.running})

    def prune(self, retain: int | None = None) -> list[str]:
        return self.controller.prune(self.settings.retain if retain is None else retain)

    def shutdown(self) -> None:
        if self.monitor.running:
            self.monitor.stop()
        self.started = False


__all__ = ["Engine", "SNAPSHOT_DIR"]
