"""File-backed storage for feature ID mappings and the ID counter.

Two JSON files live in the state directory:

* ``id-mappings.json`` maps each local ID to its serialized FeatureID.
* ``id-counter.json`` holds the last root ID number handed out.

Every call reads from or writes to disk; nothing is cached between calls.
A missing file reads as empty state. Any other read or write failure is
wrapped in StorageError with the offending path.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict

from .errors import StorageError, ValidationError
from .models import FeatureID, IDCounter

MAPPINGS_FILE = "id-mappings.json"
COUNTER_FILE = "id-counter.json"


def validate_state_dir(state_dir: Path | str) -> Path:
    """Reject paths that try to escape upward or carry NUL bytes."""
    raw = os.fspath(state_dir)
    if not raw or not raw.strip():
        raise ValidationError("State directory must be a non-empty path")
    if "\x00" in raw:
        raise ValidationError("Invalid path: contains NUL byte")
    normalized = os.path.normpath(raw)
    if ".." in Path(normalized).parts:
        raise ValidationError(f"Invalid path: potential directory traversal in '{raw}'")
    return Path(normalized)


class IDStore:
    """Read-modify-write access to the ID mapping and counter files."""

    def __init__(self, state_dir: Path | str):
        self.state_dir = validate_state_dir(state_dir)
        self.mappings_path = self.state_dir / MAPPINGS_FILE
        self.counter_path = self.state_dir / COUNTER_FILE

    def load_mappings(self) -> Dict[str, FeatureID]:
        data = self._read_json(self.mappings_path)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise StorageError(f"Failed to load mappings: expected an object in {self.mappings_path}", self.mappings_path)
        try:
            return {local_id: FeatureID.from_dict(entry) for local_id, entry in data.items()}
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageError(f"Failed to load mappings: {exc}", self.mappings_path) from exc

    def save_mappings(self, mappings: Dict[str, FeatureID]) -> None:
        payload = {local_id: feature.to_dict() for local_id, feature in mappings.items()}
        self._write_json(self.mappings_path, payload, "mappings")

    def load_counter(self) -> IDCounter:
        data = self._read_json(self.counter_path)
        if data is None:
            return IDCounter()
        if not isinstance(data, dict):
            raise StorageError(f"Failed to load counter: expected an object in {self.counter_path}", self.counter_path)
        try:
            return IDCounter.from_dict(data)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Failed to load counter: {exc}", self.counter_path) from exc

    def save_counter(self, counter: IDCounter) -> None:
        self._write_json(self.counter_path, counter.to_dict(), "counter")

    # ------------------------------------------------------------------
    # Raw JSON helpers
    # ------------------------------------------------------------------

    def _read_json(self, path: Path):
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"Failed to read {path.name}: {exc}", path) from exc
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise StorageError(f"Failed to parse {path.name}: {exc}", path) from exc

    def _write_json(self, path: Path, payload, label: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Failed to update {label}: {exc}", path) from exc
