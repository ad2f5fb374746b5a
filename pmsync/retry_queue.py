"""Durable queue of PM operations that failed and should be replayed.

The queue is a JSON array in ``.hodge/.pm-queue.json``. A missing file is an
empty queue. Entries are only ever appended on failure and removed when a
replay succeeds.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, List

from .errors import StorageError
from .models import RetryEntry

logger = logging.getLogger("pmsync.retry_queue")

QUEUE_FILE = ".pm-queue.json"


class RetryQueue:
    """File-backed list of ``RetryEntry`` records."""

    def __init__(self, base_path: Path | str = "."):
        self.base_path = Path(base_path)
        self.path = self.base_path / ".hodge" / QUEUE_FILE

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> List[RetryEntry]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageError(f"Failed to read retry queue: {e}", self.path) from e

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise StorageError(f"Failed to parse retry queue: {e}", self.path) from e
        if not isinstance(raw, list):
            raise StorageError("Retry queue must be a JSON array", self.path)
        try:
            return [RetryEntry.from_dict(item) for item in raw]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise StorageError(f"Invalid retry queue entry: {e!r}", self.path) from e

    def save(self, entries: Iterable[RetryEntry]) -> None:
        payload = [entry.to_dict() for entry in entries]
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to update retry queue: {e}", self.path) from e

    def append(self, entry: RetryEntry) -> int:
        """Add one entry and return the new queue length."""
        entries = self.load()
        entries.append(entry)
        self.save(entries)
        logger.info(f"Queued {entry.type} for {entry.feature} ({len(entries)} pending)")
        return len(entries)
