"""
Tests for the Audit Log.

Validates:
- Capacity trimming keeps the newest entries, newest first
- Age sweep runs independently of capacity
- Query filters, pagination and stats
- Durable sink failures never reach the caller
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from rankbot.audit.log import AuditLog, new_entry_id


class SteppingClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class BrokenSink:
    def __init__(self) -> None:
        self.attempts = 0

    def write(self, record):
        self.attempts += 1
        raise PermissionError("read-only filesystem")


class ListSink:
    def __init__(self) -> None:
        self.records = []
        self.threads = set()

    def write(self, record):
        self.threads.add(threading.get_ident())
        self.records.append(record)


class TestCapacity:
    def test_keeps_100_most_recent_newest_first(self):
        log = AuditLog(max_entries=100)
        for user_id in range(1, 151):
            log.add(action="rank", success=True, user_id=user_id)

        entries = log.recent(1000)
        assert len(log) == 100
        assert [entry.user_id for entry in entries] == list(range(150, 50, -1))

    def test_entry_ids_unique(self):
        log = AuditLog()
        ids = {log.add(action="rank", success=True).id for _ in range(100)}
        assert len(ids) == 100

    def test_entry_id_prefixed_by_timestamp(self):
        earlier = new_entry_id(datetime(2024, 1, 1, tzinfo=timezone.utc))
        later = new_entry_id(datetime(2025, 1, 1, tzinfo=timezone.utc))
        assert len(earlier) == len(later)
        assert earlier[:-6] < later[:-6]


class TestSweep:
    def test_sweep_removes_entries_older_than_an_hour(self):
        clock = SteppingClock()
        log = AuditLog(max_entries=100, now=clock)
        for _ in range(5):
            log.add(action="promote", success=True)
        clock.advance(minutes=50)
        for _ in range(3):
            log.add(action="demote", success=True)

        clock.advance(minutes=15)
        removed = log.sweep()

        assert removed == 5
        assert len(log) == 3
        assert {entry.action for entry in log.recent(10)} == {"demote"}

    def test_sweep_keeps_capacity(self):
        clock = SteppingClock()
        log = AuditLog(max_entries=3, now=clock)
        log.add(action="rank", success=True)
        log.sweep()
        for _ in range(5):
            log.add(action="rank", success=True)
        assert len(log) == 3


class TestQueries:
    def setup_method(self):
        self.log = AuditLog()
        self.log.add(action="rank", success=True, user_id=1)
        self.log.add(action="promote", success=True, user_id=2)
        self.log.add(action="promote", success=False, user_id=2, error="Permission denied")
        self.log.add(action="demote", success=True, user_id=3)

    def test_filter_by_action_and_success(self):
        page = self.log.query(action="promote", success=False)
        assert page.total == 1
        assert page.entries[0].error == "Permission denied"

    def test_filter_by_user(self):
        page = self.log.query(user_id=2)
        assert page.total == 2

    def test_pagination(self):
        page = self.log.query(limit=2, offset=1)
        assert page.total == 4
        assert [entry.action for entry in page.entries] == ["promote", "promote"]

    def test_limit_clamped(self):
        assert self.log.query(limit=1000).limit == 100
        assert self.log.query(limit=0).limit == 1

    def test_stats(self):
        stats = self.log.stats()
        assert (stats.total, stats.successful, stats.failed) == (4, 3, 1)
        assert stats.to_wire()["byAction"] == {"rank": 1, "promote": 2, "demote": 1}

    def test_get_by_id(self):
        entry = self.log.recent(1)[0]
        assert self.log.get_by_id(entry.id) == entry
        assert self.log.get_by_id("missing") is None

    def test_wire_format(self):
        wire = self.log.query(limit=1).to_wire()
        assert set(wire) == {"logs", "total", "limit", "offset"}
        assert wire["logs"][0]["userId"] == 3

    def test_clear(self):
        self.log.clear()
        assert len(self.log) == 0


class TestSink:
    def test_each_entry_written_with_masked_ip(self):
        sink = ListSink()
        log = AuditLog(sink=sink)
        log.add(action="rank", success=True, ip="203.0.113.55")
        assert sink.records[0]["maskedIp"] == "203.0.113.xxx"
        assert "ip" not in sink.records[0]

    def test_sink_failure_swallowed(self):
        sink = BrokenSink()
        log = AuditLog(sink=sink)

        entry = log.add(action="rank", success=True, user_id=1)

        assert sink.attempts == 1
        assert log.recent(1) == [entry]


@pytest.mark.asyncio
class TestSinkInsideEventLoop:
    async def test_writes_run_off_the_loop_thread_in_order(self):
        sink = ListSink()
        log = AuditLog(sink=sink)

        for user_id in range(1, 21):
            log.add(action="rank", success=True, user_id=user_id)
        await log.flush()

        assert [record["userId"] for record in sink.records] == list(range(1, 21))
        assert threading.get_ident() not in sink.threads
        await log.close()

    async def test_broken_sink_never_reaches_caller(self):
        sink = BrokenSink()
        log = AuditLog(sink=sink)

        log.add(action="rank", success=False, user_id=1)
        await log.close()

        assert sink.attempts == 1
        assert len(log) == 1
