"""
Audit Log — bounded, newest-first record of every attempted rank mutation.

Two independent eviction mechanisms bound memory:

1. Capacity — the buffer never holds more than ``max_entries``; inserting
   into a full buffer drops the oldest entry.
2. Age — a periodic sweep drops entries older than ``max_age`` even when
   the buffer is under capacity.

An optional ``AuditFileSink`` receives every entry as a JSON line. Sink
failures are logged and swallowed: durability is best-effort and never
fails or delays the caller. Inside a running event loop the write is
handed to a single background thread, so rotation and pruning never
block request handling; ``flush()`` waits for queued writes.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
from collections import Counter, deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from rankbot.audit.masking import mask_ip
from rankbot.audit.sink import AuditFileSink
from rankbot.schema import AuditEntry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 100
DEFAULT_SWEEP_INTERVAL = 600.0
DEFAULT_MAX_AGE = timedelta(hours=1)
MAX_PAGE_SIZE = 100

_BASE36 = string.digits + string.ascii_lowercase


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def new_entry_id(now: datetime) -> str:
    """Millisecond timestamp in base 36 plus a random suffix."""
    millis = int(now.timestamp() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{_base36(millis)}{suffix}"


@dataclass(frozen=True)
class AuditPage:
    entries: list[AuditEntry]
    total: int
    limit: int
    offset: int

    def to_wire(self) -> dict[str, Any]:
        return {
            "logs": [entry.to_wire() for entry in self.entries],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }


@dataclass(frozen=True)
class AuditStats:
    total: int
    successful: int
    failed: int
    by_action: dict[str, int]

    def to_wire(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "byAction": dict(self.by_action),
        }


class AuditLog:
    """
    In-memory ring buffer of ``AuditEntry`` records, newest first.

    Usage:
        audit = AuditLog(max_entries=100, sink=AuditFileSink("logs/audit.log"))
        audit.start_sweeper()
        audit.add(action="promote", user_id=42, success=True, ip="203.0.113.7")
        page = audit.query(action="promote", limit=20)
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_age: timedelta = DEFAULT_MAX_AGE,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        sink: AuditFileSink | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.max_entries = max_entries
        self.max_age = max_age
        self.sweep_interval = sweep_interval
        self.sink = sink
        self._now = now
        self._entries: deque[AuditEntry] = deque(maxlen=max_entries)
        self._sweeper: asyncio.Task | None = None
        self._writer: ThreadPoolExecutor | None = None
        self._pending: set[asyncio.Future] = set()

    def __len__(self) -> int:
        return len(self._entries)

    # ── Recording ──────────────────────────────────────────────

    def add(
        self,
        action: str,
        success: bool,
        user_id: int | None = None,
        username: str | None = None,
        target_rank: int | None = None,
        old_rank: int | None = None,
        new_rank: int | None = None,
        error: str | None = None,
        ip: str | None = None,
    ) -> AuditEntry:
        """Record one attempted mutation. Never raises on sink failure."""
        now = self._now()
        entry = AuditEntry(
            id=new_entry_id(now),
            timestamp=now,
            action=action,
            user_id=user_id,
            username=username,
            target_rank=target_rank,
            old_rank=old_rank,
            new_rank=new_rank,
            success=success,
            error=error,
            masked_ip=mask_ip(ip),
        )
        self._entries.appendleft(entry)

        if self.sink is not None:
            self._dispatch(entry)
        return entry

    def _dispatch(self, entry: AuditEntry) -> None:
        record = entry.to_wire()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(entry.id, record)
            return
        # One writer thread keeps file order equal to insertion order.
        if self._writer is None:
            self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit-sink")
        future = loop.run_in_executor(self._writer, self._write, entry.id, record)
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)

    def _write(self, entry_id: str, record: dict[str, Any]) -> None:
        try:
            self.sink.write(record)
        except Exception as exc:
            logger.error("Failed to write audit entry %s to disk: %s", entry_id, exc)

    async def flush(self) -> None:
        """Wait for every queued durable write to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    async def close(self) -> None:
        await self.stop_sweeper()
        await self.flush()
        if self._writer is not None:
            self._writer.shutdown(wait=True)
            self._writer = None

    # ── Eviction ───────────────────────────────────────────────

    def sweep(self) -> int:
        """Drop entries older than ``max_age``; return how many were removed."""
        cutoff = self._now() - self.max_age
        before = len(self._entries)
        kept = [entry for entry in self._entries if entry.timestamp > cutoff]
        self._entries = deque(kept, maxlen=self.max_entries)
        removed = before - len(kept)
        if removed:
            logger.info("Cleaned up %d old in-memory audit entries", removed)
        return removed

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="audit-sweeper")

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    # ── Queries ────────────────────────────────────────────────

    def query(
        self,
        action: str | None = None,
        success: bool | None = None,
        user_id: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> AuditPage:
        """Filter the in-memory window and return one page, newest first."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        filtered = [
            entry
            for entry in self._entries
            if (action is None or entry.action == action)
            and (success is None or entry.success == success)
            and (user_id is None or entry.user_id == user_id)
        ]
        return AuditPage(
            entries=filtered[offset:offset + limit],
            total=len(filtered),
            limit=limit,
            offset=offset,
        )

    def get_by_id(self, entry_id: str) -> AuditEntry | None:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        return None

    def recent(self, count: int = 10) -> list[AuditEntry]:
        return list(self._entries)[:count]

    def stats(self) -> AuditStats:
        """Aggregate counts over the in-memory window only."""
        entries = list(self._entries)
        successful = sum(1 for entry in entries if entry.success)
        return AuditStats(
            total=len(entries),
            successful=successful,
            failed=len(entries) - successful,
            by_action=dict(Counter(entry.action for entry in entries)),
        )

    def clear(self) -> None:
        self._entries.clear()
