"""
Role Directory — refreshable, immutable snapshot of the group's roles.

A snapshot holds the roles sorted by rank plus rank and lowercase-name
indexes. ``refresh()`` builds a complete new snapshot and swaps it in with a
single assignment, so readers see either the old snapshot or the new one,
never a mixture.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Mapping

from rankbot.errors import DirectoryIntegrityError, NotFoundError
from rankbot.integrations.roblox_client import GroupPlatform
from rankbot.schema import Role

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DirectorySnapshot:
    """One consistent view of the role hierarchy."""

    roles: tuple[Role, ...]
    by_rank: Mapping[int, Role]
    by_name: Mapping[str, Role]
    bot_rank: int
    loaded_at: datetime | None = None
    ranks: tuple[int, ...] = field(default=())

    @classmethod
    def empty(cls) -> "DirectorySnapshot":
        return cls(roles=(), by_rank=MappingProxyType({}), by_name=MappingProxyType({}), bot_rank=0)

    @classmethod
    def build(
        cls,
        roles: list[Role],
        bot_rank: int,
        loaded_at: datetime | None = None,
    ) -> "DirectorySnapshot":
        """
        Index ``roles`` and stamp each with its assignability.

        Raises:
            DirectoryIntegrityError: two roles share a rank.
        """
        ordered = sorted(
            (role.model_copy(update={"can_assign": 0 < role.rank < bot_rank}) for role in roles),
            key=lambda role: role.rank,
        )
        by_rank: dict[int, Role] = {}
        for role in ordered:
            if role.rank in by_rank:
                raise DirectoryIntegrityError(
                    f"Roles '{by_rank[role.rank].name}' and '{role.name}' share rank {role.rank}"
                )
            by_rank[role.rank] = role

        return cls(
            roles=tuple(ordered),
            by_rank=MappingProxyType(by_rank),
            by_name=MappingProxyType({role.name.lower(): role for role in ordered}),
            bot_rank=bot_rank,
            loaded_at=loaded_at,
            ranks=tuple(role.rank for role in ordered),
        )


class RoleDirectory:
    """
    Authoritative in-memory directory of group roles.

    Created empty; populated and replaced only by ``refresh()``. All other
    methods read the current snapshot and never touch the network.

    Usage:
        directory = RoleDirectory(platform)
        await directory.refresh()
        role = directory.get_by_name("Member")
        above = directory.next_assignable_above(role.rank)
    """

    def __init__(self, platform: GroupPlatform) -> None:
        self.platform = platform
        self._snapshot = DirectorySnapshot.empty()

    async def refresh(self, force: bool = True) -> DirectorySnapshot:
        """
        Reload roles and the bot's rank from the platform and swap the snapshot.

        A refresh that yields duplicate ranks is rejected and the previous
        snapshot stays in place.
        """
        roles = await self.platform.fetch_roles(force_refresh=force)
        bot_rank = await self.platform.fetch_bot_rank(force_refresh=force)
        snapshot = DirectorySnapshot.build(roles, bot_rank, loaded_at=datetime.now(timezone.utc))
        self._snapshot = snapshot

        assignable = [role for role in snapshot.roles if role.can_assign]
        logger.info(
            "Role directory refreshed: %d roles, bot rank %d, %d assignable",
            len(snapshot.roles),
            bot_rank,
            len(assignable),
        )
        if not assignable:
            logger.warning("Bot rank %d is too low to assign any role", bot_rank)
        return snapshot

    @property
    def snapshot(self) -> DirectorySnapshot:
        return self._snapshot

    @property
    def loaded(self) -> bool:
        return self._snapshot.loaded_at is not None

    @property
    def bot_rank(self) -> int:
        return self._snapshot.bot_rank

    def roles(self) -> tuple[Role, ...]:
        return self._snapshot.roles

    def assignable_roles(self) -> list[Role]:
        return [role for role in self._snapshot.roles if role.can_assign]

    def get_by_rank(self, rank: int) -> Role:
        role = self._snapshot.by_rank.get(rank)
        if role is None:
            raise NotFoundError(f"No role with rank {rank} exists in the group")
        return role

    def get_by_name(self, name: str) -> Role:
        role = self._snapshot.by_name.get(name.strip().lower())
        if role is None:
            raise NotFoundError(f"No role named '{name}' exists in the group")
        return role

    def name_for_rank(self, rank: int) -> str:
        """Display name for ``rank``; tolerant of ranks missing from the snapshot."""
        role = self._snapshot.by_rank.get(rank)
        if role is not None:
            return role.name
        return "Guest" if rank == 0 else f"Rank {rank}"

    def next_assignable_above(self, rank: int) -> Role | None:
        """Smallest assignable role strictly above ``rank``, or None at the top."""
        snapshot = self._snapshot
        index = bisect.bisect_right(snapshot.ranks, rank)
        for role in snapshot.roles[index:]:
            if role.can_assign:
                return role
        return None

    def next_assignable_below(self, rank: int) -> Role | None:
        """Largest assignable role strictly below ``rank``, or None at the bottom."""
        snapshot = self._snapshot
        index = bisect.bisect_left(snapshot.ranks, rank)
        for role in reversed(snapshot.roles[:index]):
            if role.can_assign:
                return role
        return None
