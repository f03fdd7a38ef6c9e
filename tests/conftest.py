"""Shared fixtures: an in-memory host system and an engine over a temp state dir.

The host system tracks three artifacts:

- ``config.json``  restorable, changes with every phase upgrade;
- ``flags.toml``   restorable, toggles capabilities;
- ``audit.log``    fingerprint-only (not restorable), append-only by nature.

Phase upgrades are simulated by `upgrade()`, which rewrites the restorable
artifacts and flips component versions / capabilities the way a real host
would between `checkpoint()` and `advance()`.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from phaseguard.artifacts.registry import MemoryArtifactRegistry
from phaseguard.core.settings import Settings
from phaseguard.engine import Engine
from phaseguard.monitoring.metrics import StaticMetricsCollector

BASE_CONFIG = b'{"mode": "basic", "plugins": []}'
BASE_FLAGS = b"plugins = false\n"
BASE_AUDIT = b"boot\n"


@pytest.fixture  # type: ignore[misc]
def registry() -> MemoryArtifactRegistry:
    """A fresh phase-1 host system."""
    return MemoryArtifactRegistry(
        {
            "config.json": BASE_CONFIG,
            "flags.toml": BASE_FLAGS,
            "audit.log": BASE_AUDIT,
        },
        restorable=["config.json", "flags.toml"],
        components={"core": "1.0"},
        capabilities={"basic"},
    )


@pytest.fixture  # type: ignore[misc]
def upgrade(registry: MemoryArtifactRegistry) -> Callable[[int], None]:
    """Return a function that rewrites the host into the shape of ``phase``."""

    def _apply(phase: int) -> None:
        registry.content["config.json"] = (
            f'{{"mode": "phase-{phase}", "plugins": {list(range(phase))}}}'.encode()
        )
        registry.content["flags.toml"] = f"plugins = true\nlevel = {phase}\n".encode()
        registry.components["core"] = f"{phase}.0"
        registry.capabilities.add(f"cap-{phase}")

    return _apply


@pytest.fixture  # type: ignore[misc]
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at an isolated state directory."""
    return Settings(
        environment="test",
        state_dir=tmp_path / "state",
        manifest_path=tmp_path / "phaseguard.json",
        monitor_interval=0.05,
        retain=5,
    )


@pytest.fixture  # type: ignore[misc]
def metrics() -> StaticMetricsCollector:
    """Healthy metrics; tests push bad values with `metrics.set(...)`."""
    return StaticMetricsCollector(
        memory_usage_percent=40.0,
        consecutive_error_count=0,
        crash_count_in_window=0,
    )


@pytest.fixture  # type: ignore[misc]
def engine(
    settings: Settings,
    registry: MemoryArtifactRegistry,
    metrics: StaticMetricsCollector,
) -> Iterator[Engine]:
    """A started engine at phase 1 with its baseline snapshot captured."""
    eng = Engine.from_settings(settings, registry=registry, metrics=metrics)
    eng.start()
    yield eng
    eng.shutdown()


@pytest.fixture  # type: ignore[misc]
def advance_to(engine: Engine, upgrade: Callable[[int], None]) -> Callable[[int], None]:
    """Return a function that walks the engine up to ``phase`` the proper way."""

    def _walk(phase: int) -> None:
        while engine.controller.current_phase < phase:
            nxt = engine.controller.current_phase + 1
            engine.controller.checkpoint()
            upgrade(nxt)
            engine.controller.advance(nxt)

    return _walk
