"""Artifact manifest: what the engine tracks, and how it reads capability state.

The manifest is a small JSON document (default ``phaseguard.json``) that
declares three things:

- **artifacts**: named files the engine fingerprints. Restorable artifacts
  are also captured verbatim into every snapshot's ``config_backup``;
  non-restorable ones (e.g. source files) are only fingerprinted so drift can
  be detected and reported.
- **components**: a version tag per component, chosen by marker files. The
  last variant whose marker exists wins; otherwise the default applies.
- **capabilities**: names enabled unconditionally or when a marker exists.

Example
-------
>>> Manifest.model_validate({
...     "artifacts": [{"name": "profile", "path": "config/profile.json"}],
...     "components": [{"name": "vector_store", "default": "basic",
...                     "variants": [{"version": "chromadb", "marker": "vs/chroma.py"}]}],
...     "capabilities": [{"name": "memory-episodic"}],
... }).artifact_names()
['profile']
"""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, model_validator

from phaseguard.core.errors import ManifestError


class ArtifactSpec(BaseModel):
    name: str = Field(min_length=1)
    path: Path
    restorable: bool = True


class ComponentVariant(BaseModel):
    version: str
    marker: Path


class ComponentSpec(BaseModel):
    name: str = Field(min_length=1)
    default: str
    variants: list[ComponentVariant] = Field(default_factory=list)


class CapabilitySpec(BaseModel):
    name: str = Field(min_length=1)
    marker: Path | None = None


class Manifest(BaseModel):
    """Declarative description of the tracked state of a host system."""

    root: Path = Field(default=Path("."), description="Base for relative paths")
    artifacts: list[ArtifactSpec] = Field(default_factory=list)
    components: list[ComponentSpec] = Field(default_factory=list)
    capabilities: list[CapabilitySpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_names(self) -> Manifest:
        names = [a.name for a in self.artifacts]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"duplicate artifact names: {', '.join(dupes)}")
        return self

    def artifact_names(self) -> list[str]:
        return [a.name for a in self.artifacts]


def load_manifest(path: Path) -> Manifest:
    """Read and validate a manifest file.

    Relative ``root`` values are resolved against the manifest's directory so
    the engine behaves the same whatever the working directory is.

    Raises
    ------
    ManifestError
        If the file is missing, is not JSON, or fails validation.
    """
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ManifestError(f"manifest not found: {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise ManifestError(f"cannot read manifest {path}: {exc}") from exc

    try:
        manifest = Manifest.model_validate(raw)
    except ValidationError as exc:
        raise ManifestError(f"invalid manifest {path}: {exc}") from exc

    if not manifest.root.is_absolute():
        manifest = manifest.model_copy(update={"root": (path.parent / manifest.root).resolve()})
    return manifest


__all__ = [
    "ArtifactSpec",
    "ComponentVariant",
    "ComponentSpec",
    "CapabilitySpec",
    "Manifest",
    "load_manifest",
]
