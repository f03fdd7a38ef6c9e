"""Small disk helpers shared by every persisted engine record.

Two shapes of file are used under the state directory:

- **documents**: one JSON object per file (snapshot bodies, the phase record,
  the emergency-stop marker). Written atomically: temp file in the same
  directory, ``fsync``, then ``os.replace``.
- **logs**: append-only JSON Lines (snapshot index, rollback journal,
  evolution log). One compact object per line; a torn final line left by a
  crash is skipped on read rather than failing the whole file.

Timestamp format
----------------
Models are dumped with ``model_dump(mode="json")`` so datetimes become
ISO-8601 strings in UTC.
"""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from phaseguard.core.settings import get_logger

logger = get_logger(__name__)


def write_document(path: Path, payload: BaseModel | dict[str, Any]) -> Path:
    """Atomically write ``payload`` as pretty JSON to ``path``."""
    data = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    return path


def read_document(path: Path) -> dict[str, Any] | None:
    """Return the JSON object stored at ``path``, or ``None`` if absent."""
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not hold a JSON object")
    return data


def append_line(path: Path, payload: BaseModel | dict[str, Any]) -> None:
    """Append one compact JSON record to the log at ``path`` and fsync it."""
    data = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    with path.open("a", encoding="utf-8") as f:
        f.write(line + "\n")
        f.flush()
        os.fsync(f.fileno())


def read_lines(path: Path) -> Iterator[dict[str, Any]]:
    """Yield every well-formed record of the log at ``path`` in order."""
    if not path.exists():
        return
    with path.open("r", encoding="utf-8") as f:
        for lineno, raw in enumerate(f, start=1):
            raw = raw.strip()
            if not raw:
                continue
            try:
                record = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed record %s:%d", path.name, lineno)
                continue
            if isinstance(record, dict):
                yield record


__all__ = ["write_document", "read_document", "append_line", "read_lines"]
