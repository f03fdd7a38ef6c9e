"""
Rollback journal: append-only audit log plus the in-progress marker.

Responsibilities
----------------
- **Begin**: write ``rollback-in-progress.json`` before any artifact is
  touched, so a crash mid-restore is detectable at the next start.
- **Conclude**: append the finished :class:`RollbackOperation` to
  ``rollbacks.jsonl`` (exactly once per attempt) and remove the marker.
- **Read**: list past operations and report an interrupted attempt.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import ValidationError

from phaseguard.core.contracts.rollback import RollbackIntent, RollbackOperation
from phaseguard.core.settings import get_logger
from phaseguard.core.storage import append_line, read_document, read_lines, write_document

logger = get_logger(__name__)

JOURNAL_FILE = "rollbacks.jsonl"
IN_PROGRESS_FILE = "rollback-in-progress.json"


class RollbackJournal:
    """Disk-backed record of restoration attempts."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.state_dir.mkdir(parents=True, exist_ok=True)

    @property
    def journal_path(self) -> Path:
        return self.state_dir / JOURNAL_FILE

    @property
    def in_progress_path(self) -> Path:
        return self.state_dir / IN_PROGRESS_FILE

    def begin(self, intent: RollbackIntent) -> None:
        write_document(self.in_progress_path, intent)

    def conclude(self, operation: RollbackOperation) -> None:
        append_line(self.journal_path, operation)
        self.in_progress_path.unlink(missing_ok=True)

    def incomplete(self) -> RollbackIntent | None:
        """Return the intent of an attempt that never concluded, if any."""
        try:
            raw = read_document(self.in_progress_path)
        except (OSError, ValueError) as exc:
            logger.error("Unreadable in-progress rollback marker: %s", exc)
            return None
        if raw is None:
            return None
        try:
            return RollbackIntent.model_validate(raw)
        except ValidationError as exc:
            logger.error("Malformed in-progress rollback marker: %s", exc)
            return None

    def has_incomplete_marker(self) -> bool:
        return self.in_progress_path.exists()

    def operations(self) -> list[RollbackOperation]:
        ops: list[RollbackOperation] = []
        for record in read_lines(self.journal_path):
            try:
                ops.append(RollbackOperation.model_validate(record))
            except ValidationError:
                logger.warning("Skipping malformed rollback record %s", record.get("id"))
        return ops


__all__ = ["RollbackJournal", "JOURNAL_FILE", "IN_PROGRESS_FILE"]
