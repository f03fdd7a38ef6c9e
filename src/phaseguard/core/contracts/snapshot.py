"""Snapshot contracts: immutable checkpoints and integrity reports.

This module defines three Pydantic v2 models:

- `Snapshot`        : an immutable checkpoint of configuration/capability state.
- `IntegrityReport` : the outcome of re-fingerprinting a snapshot's artifacts.
- `SnapshotSummary` : a payload-free view used by listings (CLI, API).

Immutability
------------
`Snapshot` is frozen. The single permitted change, flipping `validated` once a
rollback *to* the snapshot has been verified, is expressed as a new instance
via :meth:`Snapshot.as_validated`; the store swaps it into its index.

Serialization
-------------
`config_backup` holds raw artifact bytes captured verbatim. In JSON they are
encoded as base64 strings; `enabled_capabilities` is written sorted so the
on-disk body is deterministic.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class Snapshot(BaseModel):
    """Immutable checkpoint of the system's configuration for one phase.

    Fields
    ------
    id : str
        Unique identifier, ``snap-<sequence>-<suffix>``; sequences only grow.
    created_at : datetime
        UTC capture time.
    phase : int
        Phase number this snapshot represents (>= 1).
    component_versions : dict[str, str]
        Component name -> active variant tag at capture time.
    enabled_capabilities : frozenset[str]
        Capability names active at this phase.
    config_backup : dict[str, bytes]
        Restorable artifact name -> payload, captured verbatim.
    fingerprints : dict[str, str]
        Tracked artifact name -> content fingerprint.
    validated : bool
        True once a rollback to this snapshot has been verified.
    """

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64", val_json_bytes="base64")

    id: str
    sequence: int = Field(ge=1, description="Store-assigned creation sequence")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    phase: int = Field(ge=1)
    description: str = ""
    component_versions: dict[str, str] = Field(default_factory=dict)
    enabled_capabilities: frozenset[str] = Field(default_factory=frozenset)
    config_backup: dict[str, bytes] = Field(default_factory=dict)
    fingerprints: dict[str, str] = Field(default_factory=dict)
    validated: bool = False

    @field_serializer("enabled_capabilities")
    def _sorted_capabilities(self, value: frozenset[str]) -> list[str]:
        return sorted(value)

    def as_validated(self) -> Snapshot:
        """Return a copy of this snapshot with ``validated`` set."""
        return self.model_copy(update={"validated": True})

    def summary(self) -> SnapshotSummary:
        """Return the payload-free listing view of this snapshot."""
        return SnapshotSummary(
            id=self.id,
            phase=self.phase,
            created_at=self.created_at,
            description=self.description,
            artifacts=sorted(self.fingerprints),
            validated=self.validated,
        )


class SnapshotSummary(BaseModel):
    """Listing view of a snapshot without configuration payloads."""

    id: str
    phase: int
    created_at: datetime
    description: str
    artifacts: list[str] = Field(default_factory=list)
    validated: bool = False


class IntegrityReport(BaseModel):
    """Outcome of validating a snapshot against current artifact content.

    ``mismatches`` lists every artifact whose current fingerprint differs
    from the recorded one, including artifacts that could not be read;
    ``unreadable`` is the subset that could not be read at all.
    """

    snapshot_id: str
    valid: bool
    mismatches: list[str] = Field(default_factory=list)
    unreadable: list[str] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


__all__ = ["Snapshot", "SnapshotSummary", "IntegrityReport"]
