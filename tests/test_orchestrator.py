"""
Tests for service wiring and the audit inspection CLI.
"""

from __future__ import annotations

import httpx
import pytest

from rankbot.audit import cli
from rankbot.audit.log import AuditLog
from rankbot.audit.sink import AuditFileSink
from rankbot.config import RankBotSettings
from rankbot.integrations.roblox_client import RobloxClient
from rankbot.orchestrator import RankBotServices


def settings_for(tmp_path, **overrides) -> RankBotSettings:
    values = dict(
        roblox_cookie="cookie",
        roblox_group_id=7,
        api_key="secret",
        min_rank=2,
        max_rank=200,
        undo_expiry_seconds=120,
        audit_log_file_enabled=True,
        audit_log_path=str(tmp_path / "logs" / "audit.log"),
    )
    values.update(overrides)
    return RankBotSettings(**values)


class TestRankBotServices:
    def test_from_settings_wires_components(self, tmp_path):
        services = RankBotServices.from_settings(settings_for(tmp_path))

        assert isinstance(services.platform, RobloxClient)
        assert services.platform.group_id == 7
        assert services.policy.directory is services.directory
        assert services.policy.undo_cache is services.undo_cache
        assert (services.policy.min_rank, services.policy.max_rank) == (2, 200)
        assert services.undo_cache.expiry_seconds == 120
        assert isinstance(services.audit_log.sink, AuditFileSink)
        assert services.api_key == "secret"

    def test_file_sink_optional(self, tmp_path):
        services = RankBotServices.from_settings(
            settings_for(tmp_path, audit_log_file_enabled=False)
        )
        assert services.audit_log.sink is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, tmp_path, platform):
        services = RankBotServices.from_settings(settings_for(tmp_path))
        services.platform = platform
        services.directory.platform = platform
        services.policy.platform = platform
        services.session_monitor.probe = platform.probe_session

        await services.start()
        assert services.directory.loaded
        await services.stop()

        assert platform.closed

    @pytest.mark.asyncio
    async def test_start_survives_malformed_roles_payload(self, tmp_path):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/roles"):
                return httpx.Response(200, text="<html>maintenance</html>")
            return httpx.Response(200, json={})

        services = RankBotServices.from_settings(settings_for(tmp_path))
        platform = RobloxClient(
            cookie="cookie",
            group_id=7,
            resilient=services.resilient,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        services.platform = platform
        services.directory.platform = platform
        services.policy.platform = platform
        services.session_monitor.probe = platform.probe_session

        await services.start()
        assert not services.directory.loaded
        await services.stop()


class TestAuditCli:
    def test_filters_newest_first(self):
        records = [
            {"id": "a", "action": "rank", "success": True},
            {"id": "b", "action": "promote", "success": False},
            {"id": "c", "action": "promote", "success": True},
        ]
        assert [r["id"] for r in cli.filter_records(records)] == ["c", "b", "a"]
        assert [r["id"] for r in cli.filter_records(records, action="promote")] == ["c", "b"]
        assert [r["id"] for r in cli.filter_records(records, failures_only=True)] == ["b"]
        assert [r["id"] for r in cli.filter_records(records, limit=1)] == ["c"]

    def test_render_reads_durable_file(self, tmp_path):
        path = tmp_path / "audit.log"
        log = AuditLog(sink=AuditFileSink(path))
        log.add(action="rank", success=True, user_id=1, old_rank=1, new_rank=10)
        log.add(action="demote", success=False, user_id=2, error="Permission denied")

        assert cli.render(path, action=None, failures_only=False, limit=50) == 2
        assert cli.render(path, action=None, failures_only=True, limit=50) == 1

    def test_missing_file(self, tmp_path):
        assert cli.render(tmp_path / "absent.log", action=None, failures_only=False, limit=10) == 0
