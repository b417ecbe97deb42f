"""
Tests for the durable audit sink — JSON lines, rotation and retention.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

from rankbot.audit.sink import AuditFileSink, read_records


class TickingClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class TestAuditFileSink:
    def test_creates_directory_and_appends_lines(self, tmp_path):
        path = tmp_path / "logs" / "audit.log"
        sink = AuditFileSink(path)

        sink.write({"id": "a", "action": "rank", "success": True})
        sink.write({"id": "b", "action": "promote", "success": False})

        assert [record["id"] for record in read_records(path)] == ["a", "b"]

    def test_rotates_once_threshold_reached(self, tmp_path):
        path = tmp_path / "audit.log"
        sink = AuditFileSink(path, max_bytes=64, now=TickingClock())

        for index in range(4):
            sink.write({"id": index, "padding": "x" * 40})

        rotated = sink.rotated_files()
        assert rotated
        assert all(p.name.startswith("audit-") and p.suffix == ".log" for p in rotated)
        assert read_records(path)[-1]["id"] == 3

    def test_prunes_beyond_retention_keeping_newest(self, tmp_path):
        path = tmp_path / "audit.log"
        sink = AuditFileSink(path, max_bytes=1, retention=2, now=TickingClock())

        for index in range(6):
            sink.write({"id": index})
            # retention orders by mtime; pin it to rotation order
            for offset, rotated in enumerate(sorted(sink.rotated_files(), key=lambda p: p.name)):
                os.utime(rotated, (1_000_000 + offset, 1_000_000 + offset))

        rotated = sink.rotated_files()
        assert len(rotated) == 2
        kept_ids = sorted(read_records(p)[0]["id"] for p in rotated)
        assert kept_ids == [3, 4]

    def test_malformed_lines_skipped(self, tmp_path):
        path = tmp_path / "audit.log"
        path.write_text('{"id": 1}\nnot json\n\n{"id": 2}\n', encoding="utf-8")
        assert [record["id"] for record in read_records(path)] == [1, 2]
