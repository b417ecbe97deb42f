"""
Durable audit sink — JSON-lines file with size-based rotation.

Before every append the current file size is checked; once it reaches the
threshold the file is renamed with a timestamp suffix and only the newest
``retention`` rotated files (by modification time) are kept.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)


class AuditFileSink:
    """Append-only JSON-lines writer for audit records."""

    def __init__(
        self,
        path: str | Path,
        max_bytes: int = 10 * 1024 * 1024,
        retention: int = 5,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.path = Path(path)
        self.max_bytes = max_bytes
        self.retention = retention
        self._now = now
        self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o750)
        logger.info("Persistent audit logging enabled: %s", self.path)

    def write(self, record: dict[str, Any]) -> None:
        """
        Append one record as a JSON line.

        Raises:
            OSError: the file could not be rotated or written.
        """
        self.rotate_if_needed()
        line = json.dumps(record, separators=(",", ":"), default=str)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o640)
        with os.fdopen(fd, "a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def rotate_if_needed(self) -> Path | None:
        """Rotate the active file once it reaches ``max_bytes``; return the rotated path."""
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return None
        if size < self.max_bytes:
            return None

        stamp = self._now().strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        rotated = self.path.with_name(f"{self.path.stem}-{stamp}{self.path.suffix}")
        self.path.rename(rotated)
        logger.info("Audit log rotated: %s", rotated)
        self.prune()
        return rotated

    def rotated_files(self) -> list[Path]:
        """Rotated siblings of the active file, newest first."""
        prefix = f"{self.path.stem}-"
        candidates = [
            p
            for p in self.path.parent.iterdir()
            if p.is_file()
            and p.name != self.path.name
            and p.name.startswith(prefix)
            and p.suffix == self.path.suffix
        ]
        return sorted(candidates, key=lambda p: p.stat().st_mtime, reverse=True)

    def prune(self) -> list[Path]:
        """Delete rotated files beyond the retention count."""
        removed = []
        for stale in self.rotated_files()[self.retention:]:
            stale.unlink()
            removed.append(stale)
            logger.info("Deleted old audit log: %s", stale.name)
        return removed


def read_records(path: str | Path) -> list[dict[str, Any]]:
    """Load every well-formed record from a JSON-lines audit file, oldest first."""
    records = []
    with open(path, encoding="utf-8") as handle:
        for number, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping malformed audit line %d in %s", number, path)
    return records
