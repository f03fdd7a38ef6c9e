# src/phaseguard/cli.py
"""
PhaseGuard Command Line Interface (CLI).

This module implements the operator-facing terminal interface using `typer`
and `rich`. Every invocation builds a fresh :class:`~phaseguard.engine.Engine`
from settings (env, `.env`, and the global options below), starts it (which
creates the baseline snapshot on first use and settles any interrupted
rollback), runs one command, and exits.

Exit codes
----------
- ``0``: success.
- ``1``: refused; state unchanged (busy, locked, not found, illegal
  transition, incomplete capture, integrity mismatch on ``verify``).
- ``2``: internal failure; a restore did not take effect and the emergency
  stop is engaged.

Usage
-----
    # Checkpoint, upgrade artifacts by hand, then commit the next phase
    $ phaseguard snapshot create -d "before enabling plugins"
    $ phaseguard phase advance 2

    # Roll back on demand
    $ phaseguard rollback --to 1 --reason "plugin crash loop"

    # Clear the latch after manual inspection
    $ phaseguard emergency-stop clear --operator alice
"""

from __future__ import annotations

import time
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from phaseguard.core.contracts.rollback import Initiator, RollbackOperation
from phaseguard.core.errors import EXIT_INTERNAL, PhaseGuardError
from phaseguard.core.settings import Settings, load_settings
from phaseguard.engine import Engine

# Ensure env vars (like PHASEGUARD_STATE_DIR) are loaded before any logic runs
load_dotenv()

app = typer.Typer(
    help="PhaseGuard: phase snapshots, integrity checks and rollback.",
    rich_markup_mode="markdown",
    no_args_is_help=True,
)
snapshot_app = typer.Typer(help="Capture, list, inspect and prune snapshots.")
phase_app = typer.Typer(help="Inspect and advance the active phase.")
emergency_app = typer.Typer(help="Inspect, engage or clear the emergency stop.")
evolution_app = typer.Typer(help="List and review evolution requests.")
app.add_typer(snapshot_app, name="snapshot")
app.add_typer(phase_app, name="phase")
app.add_typer(emergency_app, name="emergency-stop")
app.add_typer(evolution_app, name="evolution")

console = Console()


# --------------------------------------------------------------------------- #
# Helpers: Engine & Errors
# --------------------------------------------------------------------------- #


def _settings(ctx: typer.Context) -> Settings:
    settings = ctx.obj if isinstance(ctx.obj, Settings) else None
    if settings is None:
        settings = load_settings()
    return settings


@contextmanager
def _engine(ctx: typer.Context, *, watch_integrity: bool = False) -> Iterator[Engine]:
    """
    Helper: Build and start an engine, translating engine errors to exit codes.

    Refusals print their reason and exit with the error's code; anything
    unexpected is reported as an internal failure (exit 2).
    """
    engine: Engine | None = None
    try:
        engine = Engine.from_settings(_settings(ctx), watch_integrity=watch_integrity)
        recovered = engine.start()
        if recovered is not None:
            _render_operation(recovered, title="Recovered interrupted rollback")
        yield engine
    except PhaseGuardError as exc:
        style = "red" if exc.exit_code == EXIT_INTERNAL else "yellow"
        console.print(f"[bold {style}]✗ {exc.kind}:[/bold {style}] {exc.reason}")
        raise typer.Exit(code=exc.exit_code) from exc
    except typer.Exit:
        raise
    except Exception as exc:
        console.print(f"[bold red]✗ internal error:[/bold red] {exc}")
        if ctx.meta.get("verbose"):
            traceback.print_exc()
        raise typer.Exit(code=EXIT_INTERNAL) from exc
    finally:
        if engine is not None:
            engine.shutdown()


def _render_operation(op: RollbackOperation, title: str = "Rollback") -> None:
    """Helper: Show a concluded rollback operation."""
    lines = [
        f"Operation: [bold]{op.id}[/bold]",
        f"Target: phase {op.target_phase} ({op.target_snapshot_id})",
        f"Reason: {op.reason or '-'}  |  Initiator: {op.initiator}",
        f"Restored: {', '.join(op.affected_components) or '-'}",
    ]
    lines.extend(f"[dim]• {note}[/dim]" for note in op.data_loss_notes)
    console.print(
        Panel(
            "\n".join(lines),
            title=f"{title}: {'succeeded' if op.success else 'FAILED'}",
            border_style="green" if op.success else "red",
        )
    )


# --------------------------------------------------------------------------- #
# Global options
# --------------------------------------------------------------------------- #


@app.callback()  # type: ignore[misc]
def main(
    ctx: typer.Context,
    state_dir: Annotated[
        Path | None,
        typer.Option("--state-dir", "-s", help="Override PHASEGUARD_STATE_DIR."),
    ] = None,
    manifest: Annotated[
        Path | None,
        typer.Option("--manifest", "-m", help="Override PHASEGUARD_MANIFEST."),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show full tracebacks for internal errors."),
    ] = False,
) -> None:
    """Resolve settings once for the whole invocation."""
    updates: dict[str, object] = {}
    if state_dir is not None:
        updates["state_dir"] = state_dir
    if manifest is not None:
        updates["manifest_path"] = manifest
    ctx.obj = load_settings().model_copy(update=updates)
    ctx.meta["verbose"] = verbose


# --------------------------------------------------------------------------- #
# Commands: snapshot
# --------------------------------------------------------------------------- #


@snapshot_app.command("create")  # type: ignore[misc]
def snapshot_create(
    ctx: typer.Context,
    description: Annotated[
        str, typer.Option("--description", "-d", help="Free-text label for the checkpoint.")
    ] = "",
) -> None:
    """Capture a pre-transition checkpoint of the current phase."""
    with _engine(ctx) as engine:
        snap = engine.controller.checkpoint(description)
        console.print(
            f"[bold green]✓[/bold green] Captured [bold]{snap.id}[/bold] "
            f"for phase {snap.phase} ({len(snap.fingerprints)} artifacts)"
        )


@snapshot_app.command("list")  # type: ignore[misc]
def snapshot_list(ctx: typer.Context) -> None:
    """List every held snapshot, oldest first."""
    with _engine(ctx) as engine:
        table = Table(title="Snapshots")
        table.add_column("ID", style="cyan")
        table.add_column("Phase", justify="right")
        table.add_column("Created (UTC)")
        table.add_column("Validated")
        table.add_column("Description")
        for snap in engine.store.history():
            table.add_row(
                snap.id,
                str(snap.phase),
                snap.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                "yes" if snap.validated else "",
                snap.description,
            )
        console.print(table)


@snapshot_app.command("show")  # type: ignore[misc]
def snapshot_show(
    ctx: typer.Context,
    key: Annotated[str, typer.Argument(help="Snapshot id, or a phase number.")],
) -> None:
    """Show one snapshot's components, capabilities and fingerprints."""
    with _engine(ctx) as engine:
        lookup: int | str = int(key) if key.isdigit() else key
        snap = engine.store.get(lookup)
        if snap is None:
            console.print(f"[bold yellow]✗ not_found:[/bold yellow] no snapshot for {key}")
            raise typer.Exit(code=1)

        console.rule(f"[bold]{snap.id}[/bold] · phase {snap.phase}")
        console.print(f"Created: {snap.created_at.isoformat()}  Validated: {snap.validated}")
        if snap.description:
            console.print(f"Description: {snap.description}")
        for name, version in sorted(snap.component_versions.items()):
            console.print(f" • component [cyan]{name}[/cyan] = {version}")
        for capability in sorted(snap.enabled_capabilities):
            console.print(f" • capability [magenta]{capability}[/magenta]")
        for name, fingerprint in sorted(snap.fingerprints.items()):
            restorable = "" if name in snap.config_backup else " [dim](fingerprint only)[/dim]"
            console.print(f" • {name}: [dim]{fingerprint}[/dim]{restorable}")


@snapshot_app.command("prune")  # type: ignore[misc]
def snapshot_prune(
    ctx: typer.Context,
    retain: Annotated[
        int | None, typer.Option("--retain", "-r", min=1, help="Override PHASEGUARD_RETAIN.")
    ] = None,
) -> None:
    """Drop the oldest snapshots beyond the retention count."""
    with _engine(ctx) as engine:
        removed = engine.prune(retain)
        console.print(f"[bold green]✓[/bold green] Pruned {len(removed)} snapshot(s)")
        for snapshot_id in removed:
            console.print(f" [dim]- {snapshot_id}[/dim]")


# --------------------------------------------------------------------------- #
# Commands: phase
# --------------------------------------------------------------------------- #


@phase_app.command("status")  # type: ignore[misc]
def phase_status(ctx: typer.Context) -> None:
    """Show the active phase, held phases and the emergency-stop latch."""
    with _engine(ctx) as engine:
        status = engine.status()
        latch = (
            f"[bold red]ENGAGED[/bold red] ({status.emergency_reason})"
            if status.emergency_stop
            else "[green]clear[/green]"
        )
        console.print(
            Panel.fit(
                f"Current phase: [bold cyan]{status.current_phase}[/bold cyan]\n"
                f"Highest phase: {status.highest_phase}\n"
                f"Snapshots for phases: {status.available_phases}\n"
                f"Emergency stop: {latch}",
                title="PhaseGuard",
                border_style="red" if status.emergency_stop else "cyan",
            )
        )


@phase_app.command("advance")  # type: ignore[misc]
def phase_advance(
    ctx: typer.Context,
    target: Annotated[int, typer.Argument(help="Next phase; must be current + 1.")],
    description: Annotated[str, typer.Option("--description", "-d")] = "",
) -> None:
    """Commit the next phase and capture its post-transition snapshot."""
    with _engine(ctx) as engine:
        before = engine.controller.current_phase
        snap = engine.controller.advance(target, description)
        console.print(
            f"[bold green]✓[/bold green] Phase {before} → {target} (snapshot {snap.id})"
        )


# --------------------------------------------------------------------------- #
# Commands: rollback / verify / monitor
# --------------------------------------------------------------------------- #


@app.command()  # type: ignore[misc]
def rollback(
    ctx: typer.Context,
    to: Annotated[int, typer.Option("--to", "-t", help="Phase to restore.")],
    reason: Annotated[str, typer.Option("--reason", "-r", help="Why the rollback is needed.")],
) -> None:
    """Restore an earlier phase from its snapshot (operator-initiated)."""
    with _engine(ctx) as engine:
        op = engine.controller.request_rollback(to, reason, Initiator.OPERATOR)
        _render_operation(op)


@app.command()  # type: ignore[misc]
def verify(
    ctx: typer.Context,
    phase: Annotated[
        int | None, typer.Option("--phase", "-p", help="Phase to check (default: current).")
    ] = None,
) -> None:
    """Check current artifact content against a phase's snapshot."""
    with _engine(ctx) as engine:
        target = engine.controller.current_phase if phase is None else phase
        snap = engine.store.get(target)
        if snap is None:
            console.print(
                f"[bold yellow]✗ not_found:[/bold yellow] no snapshot for phase {target}"
            )
            raise typer.Exit(code=1)
        engine.validator.ensure_valid(snap)
        console.print(
            f"[bold green]✓[/bold green] {len(snap.fingerprints)} artifact(s) match {snap.id}"
        )


@app.command()  # type: ignore[misc]
def monitor(
    ctx: typer.Context,
    ticks: Annotated[
        int, typer.Option("--ticks", "-n", min=0, help="Ticks to run; 0 runs until Ctrl-C.")
    ] = 1,
    watch_integrity: Annotated[
        bool,
        typer.Option("--watch-integrity/--no-watch-integrity", help="Roll back on tampering."),
    ] = False,
) -> None:
    """Sample health and act on fired triggers."""
    with _engine(ctx, watch_integrity=watch_integrity) as engine:
        if ticks == 0:
            engine.monitor.start()
            console.print(
                f"[cyan]Monitoring every {engine.monitor.interval:.0f}s; Ctrl-C to stop.[/cyan]"
            )
            try:
                while engine.monitor.running:
                    time.sleep(0.5)
            except KeyboardInterrupt:
                console.print("\n[dim]Stopping...[/dim]")
            return

        for i in range(ticks):
            if i:
                time.sleep(engine.monitor.interval)
            events = engine.monitor.tick()
            if not events:
                console.print(f"[dim]tick {i + 1}: healthy[/dim]")
            for event in events:
                console.print(
                    f"tick {i + 1}: [yellow]{event.trigger.kind}[/yellow] → "
                    f"{event.action} ({event.metric}={event.observed_value:g})"
                )
        status = engine.status()
        console.print(f"Phase {status.current_phase}; emergency stop: {status.emergency_stop}")


# --------------------------------------------------------------------------- #
# Commands: emergency-stop
# --------------------------------------------------------------------------- #


@emergency_app.command("status")  # type: ignore[misc]
def emergency_status(ctx: typer.Context) -> None:
    """Show whether the latch is engaged and why."""
    with _engine(ctx) as engine:
        marker = engine.emergency.marker()
        if marker is None:
            console.print("[green]Emergency stop is clear.[/green]")
            return
        console.print(
            Panel(
                f"Reason: {marker.reason}\n"
                f"Engaged at: {marker.timestamp.isoformat()}\n"
                f"Last known phase: {marker.last_known_phase}",
                title="EMERGENCY STOP ENGAGED",
                border_style="red",
            )
        )


@emergency_app.command("engage")  # type: ignore[misc]
def emergency_engage(
    ctx: typer.Context,
    reason: Annotated[str, typer.Option("--reason", "-r")],
) -> None:
    """Engage the latch by hand; refuses all transitions until cleared."""
    with _engine(ctx) as engine:
        marker = engine.emergency.engage(reason, engine.controller.current_phase)
        console.print(f"[bold red]Emergency stop engaged:[/bold red] {marker.reason}")


@emergency_app.command("clear")  # type: ignore[misc]
def emergency_clear(
    ctx: typer.Context,
    operator: Annotated[str, typer.Option("--operator", "-o", help="Who is clearing it.")],
) -> None:
    """Disengage the latch after manual intervention."""
    with _engine(ctx) as engine:
        if not engine.emergency.is_engaged():
            console.print("[dim]Emergency stop was not engaged.[/dim]")
            return
        try:
            engine.emergency.disengage(operator)
        except ValueError as exc:
            console.print(f"[bold yellow]✗ refused:[/bold yellow] {exc}")
            raise typer.Exit(code=1) from exc
        console.print(f"[bold green]✓[/bold green] Emergency stop cleared by {operator}")


# --------------------------------------------------------------------------- #
# Commands: evolution
# --------------------------------------------------------------------------- #


@evolution_app.command("list")  # type: ignore[misc]
def evolution_list(ctx: typer.Context) -> None:
    """List filed evolution requests."""
    with _engine(ctx) as engine:
        table = Table(title="Evolution requests")
        for column in ("ID", "Kind", "Risk", "Status", "Executed", "Description"):
            table.add_column(column)
        for req in engine.planner.requests():
            table.add_row(
                req.id,
                req.evolution_kind.value,
                str(req.risk_score),
                req.review_status.value,
                "yes" if req.executed else "",
                req.description,
            )
        console.print(table)


@evolution_app.command("review")  # type: ignore[misc]
def evolution_review(
    ctx: typer.Context,
    request_id: Annotated[str, typer.Argument()],
    reviewer: Annotated[str, typer.Option("--reviewer", "-R")],
    approve: Annotated[bool, typer.Option("--approve/--reject")] = True,
) -> None:
    """Approve or reject a pending (major) evolution request."""
    with _engine(ctx) as engine:
        try:
            req = engine.planner.review(request_id, approve, reviewer)
        except ValueError as exc:
            console.print(f"[bold yellow]✗ refused:[/bold yellow] {exc}")
            raise typer.Exit(code=1) from exc
        console.print(f"[bold green]✓[/bold green] {req.id} {req.review_status.value}")


if __name__ == "__main__":
    app()
