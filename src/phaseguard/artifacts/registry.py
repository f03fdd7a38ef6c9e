# -----------------------------------------------------------------------------
# Artifact registry: the engine's only window onto host-system state.
#
# The engine never interprets artifact content. A registry hands out opaque
# bytes per declared name, accepts bytes back on restore, and reports which
# component variants and capabilities are active right now.
#
# Two implementations ship here:
#   - FileArtifactRegistry  : files on disk, described by a Manifest
#   - MemoryArtifactRegistry: a dict of payloads, for embedding hosts and tests
#
# Contract for implementers
# -------------------------
#   read(name)  raises KeyError for undeclared names, OSError when unreadable
#   write(name) raises KeyError for undeclared names, OSError when unwritable
# -----------------------------------------------------------------------------
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable

from .manifest import Manifest


@runtime_checkable
class ArtifactRegistry(Protocol):
    """Readable/writable tracked artifacts plus capability introspection."""

    def names(self) -> list[str]: ...

    def restorable_names(self) -> list[str]: ...

    def read(self, name: str) -> bytes: ...

    def write(self, name: str, content: bytes) -> None: ...

    def component_versions(self) -> dict[str, str]: ...

    def enabled_capabilities(self) -> frozenset[str]: ...


class FileArtifactRegistry:
    """Registry backed by files declared in a :class:`Manifest`."""

    def __init__(self, manifest: Manifest) -> None:
        self.manifest = manifest
        self._paths: dict[str, Path] = {
            spec.name: self._resolve(spec.path) for spec in manifest.artifacts
        }
        self._restorable: list[str] = [s.name for s in manifest.artifacts if s.restorable]

    def _resolve(self, path: Path) -> Path:
        return path if path.is_absolute() else self.manifest.root / path

    def path_of(self, name: str) -> Path:
        """Return the on-disk location of artifact ``name``."""
        return self._paths[name]

    def names(self) -> list[str]:
        return list(self._paths)

    def restorable_names(self) -> list[str]:
        return list(self._restorable)

    def read(self, name: str) -> bytes:
        return self._paths[name].read_bytes()

    def write(self, name: str, content: bytes) -> None:
        """Replace artifact ``name`` atomically (temp file + ``os.replace``)."""
        target = self._paths[name]
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(content)
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def component_versions(self) -> dict[str, str]:
        versions: dict[str, str] = {}
        for component in self.manifest.components:
            version = component.default
            for variant in component.variants:
                if self._resolve(variant.marker).exists():
                    version = variant.version
            versions[component.name] = version
        return versions

    def enabled_capabilities(self) -> frozenset[str]:
        return frozenset(
            cap.name
            for cap in self.manifest.capabilities
            if cap.marker is None or self._resolve(cap.marker).exists()
        )


class MemoryArtifactRegistry:
    """Dict-backed registry.

    Useful when the host keeps its configuration in process (feature-flag
    tables, small state documents) and pushes it to the engine directly.
    """

    def __init__(
        self,
        artifacts: Mapping[str, bytes] | None = None,
        *,
        restorable: Iterable[str] | None = None,
        components: Mapping[str, str] | None = None,
        capabilities: Iterable[str] = (),
    ) -> None:
        self.content: dict[str, bytes] = dict(artifacts or {})
        self._restorable = list(restorable) if restorable is not None else list(self.content)
        self.components: dict[str, str] = dict(components or {})
        self.capabilities: set[str] = set(capabilities)

    def names(self) -> list[str]:
        return list(self.content)

    def restorable_names(self) -> list[str]:
        return [n for n in self._restorable if n in self.content]

    def read(self, name: str) -> bytes:
        return self.content[name]

    def write(self, name: str, content: bytes) -> None:
        if name not in self.content:
            raise KeyError(name)
        self.content[name] = bytes(content)

    def component_versions(self) -> dict[str, str]:
        return dict(self.components)

    def enabled_capabilities(self) -> frozenset[str]:
        return frozenset(self.capabilities)


__all__ = ["ArtifactRegistry", "FileArtifactRegistry", "MemoryArtifactRegistry"]
