"""
Tests for the Undo Cache — single slot, expiry and revert.
"""

from __future__ import annotations

import pytest

from rankbot.audit.log import AuditLog
from rankbot.errors import NoActionToUndoError, PlatformConnectionError
from rankbot.ranking.directory import RoleDirectory
from rankbot.ranking.policy import RankPolicy
from rankbot.ranking.undo import UndoCache
from rankbot.schema import ByNumber, ById, RankAction


class ManualClock:
    def __init__(self) -> None:
        self.now = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now


async def build(platform, clock):
    directory = RoleDirectory(platform)
    await directory.refresh()
    undo_cache = UndoCache(expiry_seconds=300, clock=clock)
    return RankPolicy(directory, platform, AuditLog(), undo_cache), undo_cache


@pytest.mark.asyncio
class TestUndoCache:
    async def test_immediate_undo_restores_prior_rank(self, platform):
        clock = ManualClock()
        policy, undo_cache = await build(platform, clock)
        await policy.set_rank(ById(20), ByNumber(50))

        payload = await undo_cache.undo(policy)

        assert platform.ranks[20] == 10
        assert payload["undoneAction"] == "rank"
        assert payload["revertedFrom"] == "Sergeant"
        assert payload["revertedTo"] == "Trainee"
        assert payload["newRank"] == 10
        assert undo_cache.get() is None

    async def test_undo_after_expiry_fails(self, platform):
        clock = ManualClock()
        policy, undo_cache = await build(platform, clock)
        await policy.set_rank(ById(20), ByNumber(50))

        clock.now += 301
        with pytest.raises(NoActionToUndoError):
            await undo_cache.undo(policy)
        assert platform.ranks[20] == 50

    async def test_only_latest_change_is_kept(self, platform):
        clock = ManualClock()
        policy, undo_cache = await build(platform, clock)
        await policy.set_rank(ById(20), ByNumber(50))
        await policy.promote(ById(10))

        last = undo_cache.get()
        assert last.type is RankAction.PROMOTE
        assert last.user_id == 10

    async def test_undo_itself_is_not_undoable(self, platform):
        clock = ManualClock()
        policy, undo_cache = await build(platform, clock)
        await policy.set_rank(ById(20), ByNumber(50))

        await undo_cache.undo(policy)

        with pytest.raises(NoActionToUndoError):
            await undo_cache.undo(policy)
        assert policy.audit_log.recent(1)[0].action == "undo"

    async def test_slot_cleared_even_when_revert_fails(self, platform):
        clock = ManualClock()
        policy, undo_cache = await build(platform, clock)
        await policy.set_rank(ById(20), ByNumber(50))
        platform.failing_user_ids.add(20)

        with pytest.raises(PlatformConnectionError):
            await undo_cache.undo(policy)
        assert undo_cache.get() is None

    async def test_scopes_are_independent(self, platform):
        clock = ManualClock()
        policy, undo_cache = await build(platform, clock)
        await policy.set_rank(ById(20), ByNumber(50), undo_scope="alice")
        await policy.set_rank(ById(10), ByNumber(10), undo_scope="bob")

        await undo_cache.undo(policy, scope="alice")

        assert platform.ranks[20] == 10
        assert platform.ranks[10] == 10
        assert undo_cache.get("bob") is not None
