"""
Shared fixtures — an in-memory stand-in for the group platform.
"""

from __future__ import annotations

from typing import Any

import pytest

from rankbot.errors import NotFoundError, PlatformConnectionError
from rankbot.integrations.roblox_client import SessionProbe
from rankbot.schema import PlatformUser, Role

DEFAULT_RANKS = {0: "Guest", 1: "Member", 10: "Trainee", 50: "Sergeant", 100: "Officer", 150: "Rank Bot", 255: "Owner"}


def make_roles(ranks: dict[int, str] | None = None) -> list[Role]:
    return [
        Role(id=1000 + rank, rank=rank, name=name)
        for rank, name in (ranks or DEFAULT_RANKS).items()
    ]


class FakePlatform:
    """Implements the GroupPlatform protocol over plain dicts."""

    def __init__(self, roles: list[Role] | None = None, bot_rank: int = 150) -> None:
        self.roles = roles if roles is not None else make_roles()
        self.bot_rank = bot_rank
        self.users: dict[int, PlatformUser] = {}
        self.ranks: dict[int, int] = {}
        self.writes: list[tuple[int, int]] = []
        self.failing_user_ids: set[int] = set()
        self.probe_error: Exception | None = None
        self.closed = False

    def add_member(self, user_id: int, username: str, rank: int) -> PlatformUser:
        user = PlatformUser(user_id=user_id, username=username, display_name=username)
        self.users[user_id] = user
        self.ranks[user_id] = rank
        return user

    async def fetch_roles(self, force_refresh: bool = False) -> list[Role]:
        return list(self.roles)

    async def fetch_bot_rank(self, force_refresh: bool = False) -> int:
        return self.bot_rank

    async def fetch_group_info(self, force_refresh: bool = False) -> dict[str, Any]:
        return {"id": 7, "name": "Test Group", "memberCount": len(self.users)}

    async def get_user_rank(self, user_id: int) -> int:
        if user_id not in self.users:
            raise NotFoundError(f"User {user_id} not found")
        return self.ranks.get(user_id, 0)

    async def get_user(self, user_id: int) -> PlatformUser:
        if user_id not in self.users:
            raise NotFoundError(f"User {user_id} not found")
        return self.users[user_id]

    async def resolve_username(self, username: str) -> PlatformUser:
        for user in self.users.values():
            if user.username.lower() == username.lower():
                return user
        raise NotFoundError(f"User '{username}' not found")

    async def set_user_role(self, user_id: int, role_id: int) -> None:
        if user_id in self.failing_user_ids:
            raise PlatformConnectionError("platform unavailable")
        role = next(role for role in self.roles if role.id == role_id)
        self.writes.append((user_id, role_id))
        self.ranks[user_id] = role.rank

    async def probe_session(self, force_refresh: bool = False) -> SessionProbe:
        if self.probe_error is not None:
            raise self.probe_error
        return SessionProbe(user_id=1, username="RankBot", bot_rank=self.bot_rank)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def platform() -> FakePlatform:
    fake = FakePlatform()
    fake.add_member(10, "rookie", 1)
    fake.add_member(20, "trainee_one", 10)
    fake.add_member(30, "sarge", 50)
    fake.add_member(40, "officer", 100)
    fake.add_member(50, "outsider", 0)
    fake.add_member(60, "boss", 255)
    return fake
