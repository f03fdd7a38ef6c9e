# scripts/smoke.py
"""
Smoke Test Script for the PhaseGuard engine.

Walks an in-memory host system through a full lifecycle in a throwaway state
directory: baseline, two phase advances, a tampered artifact caught by the
integrity trigger, an automatic rollback, and an emergency stop.

Usage
-----
1. Run against a temporary state directory:
    $ uv run python scripts/smoke.py

2. Keep the state directory for inspection with the CLI afterwards:
    $ uv run python scripts/smoke.py --state-dir .smoke-state
    $ phaseguard --state-dir .smoke-state snapshot list
"""

import argparse
import logging
import sys
import tempfile
import traceback
from pathlib import Path

from dotenv import load_dotenv

from phaseguard.artifacts.registry import MemoryArtifactRegistry
from phaseguard.core.contracts.phase import PhaseEvent
from phaseguard.core.settings import Settings
from phaseguard.engine import Engine
from phaseguard.monitoring.metrics import StaticMetricsCollector

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

# --------------------------------------------------------------------------- #
# Host Data
# --------------------------------------------------------------------------- #
BASELINE = {
    "profile.json": b'{"memory": "basic", "plugins": []}',
    "flags.toml": b"vector_store = false\n",
    "main.py": b"print('phase 1')\n",
}


def upgrade(host: MemoryArtifactRegistry, phase: int) -> None:
    """Rewrite the host the way a real capability upgrade would."""
    host.content["profile.json"] = f'{{"memory": "tier-{phase}"}}'.encode()
    host.content["flags.toml"] = b"vector_store = true\n"
    host.components["memory"] = f"tier-{phase}"
    host.capabilities.add(f"memory-tier-{phase}")


def run(state_dir: Path) -> None:
    host = MemoryArtifactRegistry(
        dict(BASELINE),
        restorable=["profile.json", "flags.toml"],
        components={"memory": "basic"},
        capabilities={"core"},
    )
    metrics = StaticMetricsCollector(memory_usage_percent=35.0)
    settings = Settings(environment="test", state_dir=state_dir, monitor_interval=1.0)
    engine = Engine.from_settings(settings, registry=host, metrics=metrics, watch_integrity=True)

    def on_event(event: PhaseEvent) -> None:
        print(f"  📣 {event.name}: {event.data}")

    engine.controller.subscribe(on_event)
    engine.start()
    print(f"\n🧱 Baseline phase: {engine.controller.current_phase}")

    # 1. Two deliberate advances
    for target in (2, 3):
        engine.controller.checkpoint(f"before phase {target}")
        upgrade(host, target)
        engine.controller.advance(target, f"memory tier {target}")
        print(f"⬆️  Advanced to phase {target}")

    # 2. Tampering is caught on the next tick and undone
    host.content["profile.json"] = b'{"memory": "hijacked"}'
    events = engine.monitor.tick()
    print(f"\n🕵️  Tick fired: {[e.metric for e in events]}")
    print(f"↩️  Now at phase {engine.controller.current_phase}")

    # 3. A crash engages the latch and freezes transitions
    metrics.set(crash_count_in_window=1)
    engine.monitor.tick()
    status = engine.status()
    print(f"\n🛑 Emergency stop: {status.emergency_stop} ({status.emergency_reason})")

    print("\n📜 Rollback journal:")
    for op in engine.journal.operations():
        print(f"  - {op.id}: phase {op.target_phase} success={op.success} ({op.reason})")

    engine.shutdown()


def main() -> None:
    """Execute the smoke test workflow."""
    parser = argparse.ArgumentParser(description="Run PhaseGuard Smoke Test")
    parser.add_argument("--state-dir", "-s", type=str, help="Keep state in this directory")
    args = parser.parse_args()

    try:
        if args.state_dir:
            run(Path(args.state_dir))
        else:
            with tempfile.TemporaryDirectory(prefix="phaseguard-") as tmp:
                run(Path(tmp))
    except Exception as exc:
        print(f"\n❌ Smoke run crashed: {exc}")
        traceback.print_exc()
        return

    print("\n" + "=" * 60)
    print("✅ Smoke run finished")
    print("=" * 60)


if __name__ == "__main__":
    main()
