"""
RankBot — Roblox group platform integration.

Thin async wrapper over the Roblox users/groups web APIs, authenticated with
the bot account's ``.ROBLOSECURITY`` cookie. Every request runs through the
shared ``ResilientClient`` so timeouts, retries, caching and the health flag
behave identically for all callers.

The platform is the only source of truth for a member's current rank; that
value is never cached here. Role metadata, group info and the bot's own rank
are cached per resource class.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import httpx

from rankbot.errors import (
    NotFoundError,
    PermissionDeniedError,
    PlatformError,
    RankBotError,
    SessionRejectedError,
    ValidationError,
)
from rankbot.integrations.resilient import CacheResource, ResilientClient
from rankbot.schema import PlatformUser, Role

logger = logging.getLogger(__name__)

T = TypeVar("T")

USERS_API = "https://users.roblox.com"
GROUPS_API = "https://groups.roblox.com"
CSRF_HEADER = "x-csrf-token"

# Raised while decoding or unpacking a body the platform should not have sent.
MALFORMED_RESPONSE_ERRORS = (ValueError, KeyError, TypeError, AttributeError, IndexError)


@dataclass(frozen=True)
class SessionProbe:
    """Result of a session health probe against the platform."""

    user_id: int
    username: str
    bot_rank: int


class GroupPlatform(Protocol):
    """The operations the ranking core needs from the membership platform."""

    async def fetch_roles(self, force_refresh: bool = False) -> list[Role]: ...

    async def fetch_bot_rank(self, force_refresh: bool = False) -> int: ...

    async def fetch_group_info(self, force_refresh: bool = False) -> dict[str, Any]: ...

    async def get_user_rank(self, user_id: int) -> int: ...

    async def resolve_username(self, username: str) -> PlatformUser: ...

    async def get_user(self, user_id: int) -> PlatformUser: ...

    async def set_user_role(self, user_id: int, role_id: int) -> None: ...

    async def probe_session(self, force_refresh: bool = False) -> SessionProbe: ...

    async def close(self) -> None: ...


class RobloxClient:
    """
    Async Roblox client for a single group.

    Uses httpx for async HTTP. Pass ``http_client`` to share a connection
    pool or to inject a mock transport.
    """

    def __init__(
        self,
        cookie: str,
        group_id: int,
        resilient: ResilientClient,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        self.group_id = group_id
        self.resilient = resilient
        self._cookie = cookie
        self._timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None
        self._csrf_token: str | None = None
        self._bot_user: PlatformUser | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                cookies={".ROBLOSECURITY": self._cookie},
                headers={"Content-Type": "application/json"},
                timeout=self._timeout,
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Account ────────────────────────────────────────────────

    async def get_authenticated_user(self) -> PlatformUser:
        """The account the session cookie belongs to."""
        return await self._call(
            self._raw_authenticated_user, description="authenticated user lookup"
        )

    async def _raw_authenticated_user(self) -> PlatformUser:
        data = await self._get_json(f"{USERS_API}/v1/users/authenticated")
        user = PlatformUser(
            user_id=int(data["id"]),
            username=data["name"],
            display_name=data.get("displayName", ""),
        )
        self._bot_user = user
        return user

    async def fetch_bot_rank(self, force_refresh: bool = False) -> int:
        """The bot's own rank in the group, cached as a permission fact."""

        async def load() -> int:
            bot = self._bot_user or await self._raw_authenticated_user()
            return await self._raw_user_rank(bot.user_id)

        return await self._cached(
            CacheResource.PERMISSIONS,
            "bot_rank",
            load,
            force_refresh=force_refresh,
            description="bot rank lookup",
        )

    async def probe_session(self, force_refresh: bool = False) -> SessionProbe:
        """Lightweight credential check: who am I, and what rank do I hold?"""

        async def load() -> SessionProbe:
            bot = await self._raw_authenticated_user()
            rank = await self._raw_user_rank(bot.user_id)
            return SessionProbe(user_id=bot.user_id, username=bot.username, bot_rank=rank)

        return await self._cached(
            CacheResource.HEALTH,
            "session",
            load,
            force_refresh=force_refresh,
            description="session probe",
        )

    # ── Group ──────────────────────────────────────────────────

    async def fetch_roles(self, force_refresh: bool = False) -> list[Role]:
        """All roles in the group, as reported by the platform."""

        async def load() -> list[Role]:
            data = await self._get_json(f"{GROUPS_API}/v1/groups/{self.group_id}/roles")
            return [
                Role(
                    id=int(r["id"]),
                    rank=int(r["rank"]),
                    name=r["name"],
                    member_count=int(r.get("memberCount") or 0),
                )
                for r in data.get("roles", [])
            ]

        return await self._cached(
            CacheResource.ROLES,
            f"roles:{self.group_id}",
            load,
            force_refresh=force_refresh,
            description="group roles lookup",
        )

    async def fetch_group_info(self, force_refresh: bool = False) -> dict[str, Any]:
        async def load() -> dict[str, Any]:
            data = await self._get_json(f"{GROUPS_API}/v1/groups/{self.group_id}")
            owner = data.get("owner") or {}
            return {
                "id": data.get("id", self.group_id),
                "name": data.get("name", ""),
                "description": data.get("description", ""),
                "memberCount": data.get("memberCount", 0),
                "owner": {
                    "userId": owner.get("userId"),
                    "username": owner.get("username"),
                }
                if owner
                else None,
                "publicEntryAllowed": data.get("publicEntryAllowed"),
            }

        return await self._cached(
            CacheResource.GROUP,
            f"group:{self.group_id}",
            load,
            force_refresh=force_refresh,
            description="group info lookup",
        )

    # ── Users ──────────────────────────────────────────────────

    async def get_user_rank(self, user_id: int) -> int:
        """A member's current rank; 0 when the user is not in the group."""
        return await self._call(
            lambda: self._raw_user_rank(user_id), description=f"rank lookup for {user_id}"
        )

    async def get_user(self, user_id: int) -> PlatformUser:
        async def attempt() -> PlatformUser:
            data = await self._get_json(f"{USERS_API}/v1/users/{user_id}")
            return PlatformUser(
                user_id=int(data["id"]),
                username=data["name"],
                display_name=data.get("displayName", ""),
            )

        return await self._call(attempt, description=f"user lookup for {user_id}")

    async def resolve_username(self, username: str) -> PlatformUser:
        """Map a username to its account; NotFoundError when nobody owns it."""

        async def attempt() -> PlatformUser:
            client = await self._ensure_client()
            resp = await client.post(
                f"{USERS_API}/v1/usernames/users",
                json={"usernames": [username], "excludeBannedUsers": False},
            )
            resp.raise_for_status()
            matches = resp.json().get("data") or []
            if not matches:
                raise NotFoundError(f"User '{username}' not found")
            match = matches[0]
            return PlatformUser(
                user_id=int(match["id"]),
                username=match["name"],
                display_name=match.get("displayName", ""),
            )

        return await self._call(attempt, description=f"username lookup for {username}")

    # ── Mutation ───────────────────────────────────────────────

    async def set_user_role(self, user_id: int, role_id: int) -> None:
        """Assign ``role_id`` to ``user_id``. Invalidates role and group caches."""
        url = f"{GROUPS_API}/v1/groups/{self.group_id}/users/{user_id}"

        async def attempt() -> None:
            resp = await self._send_with_csrf("PATCH", url, {"roleId": role_id})
            resp.raise_for_status()

        await self._call(
            attempt,
            description=f"role change for {user_id}",
            invalidates=(CacheResource.ROLES, CacheResource.GROUP),
        )
        logger.info("Role %s assigned to user %s in group %s", role_id, user_id, self.group_id)

    async def _send_with_csrf(self, method: str, url: str, payload: dict[str, Any]) -> httpx.Response:
        """
        Send a mutating request, completing the platform's CSRF handshake.

        The first mutation in a session is answered with 403 and a fresh
        token in the ``x-csrf-token`` header; the request is then repeated
        once carrying that token.
        """
        client = await self._ensure_client()
        headers = {CSRF_HEADER: self._csrf_token} if self._csrf_token else {}
        resp = await client.request(method, url, json=payload, headers=headers)

        fresh_token = resp.headers.get(CSRF_HEADER)
        if resp.status_code == 403 and fresh_token and fresh_token != self._csrf_token:
            self._csrf_token = fresh_token
            resp = await client.request(
                method, url, json=payload, headers={CSRF_HEADER: fresh_token}
            )
        return resp

    # ── Internals ──────────────────────────────────────────────

    async def _raw_user_rank(self, user_id: int) -> int:
        client = await self._ensure_client()
        resp = await client.get(f"{GROUPS_API}/v1/users/{user_id}/groups/roles")
        resp.raise_for_status()
        for membership in resp.json().get("data", []):
            if int(membership["group"]["id"]) == self.group_id:
                return int(membership["role"]["rank"])
        return 0

    async def _get_json(self, url: str) -> Any:
        """GET ``url`` once; callers wrap it in the retry policy or a cached loader."""
        client = await self._ensure_client()
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.json()

    async def _call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        description: str,
        invalidates: tuple[CacheResource, ...] = (),
    ) -> T:
        try:
            return await self.resilient.call(
                operation, description=description, invalidates=invalidates
            )
        except httpx.HTTPStatusError as exc:
            raise translate_status_error(exc, description) from exc
        except MALFORMED_RESPONSE_ERRORS as exc:
            raise malformed_response(exc, description) from exc

    async def _cached(
        self,
        resource: CacheResource,
        key: str,
        loader: Callable[[], Awaitable[T]],
        *,
        force_refresh: bool,
        description: str,
    ) -> T:
        try:
            return await self.resilient.cached(
                resource, key, loader, force_refresh=force_refresh, description=description
            )
        except httpx.HTTPStatusError as exc:
            raise translate_status_error(exc, description) from exc
        except MALFORMED_RESPONSE_ERRORS as exc:
            raise malformed_response(exc, description) from exc


def translate_status_error(exc: httpx.HTTPStatusError, description: str) -> RankBotError:
    """Map a non-retryable platform status onto the service error taxonomy."""
    status = exc.response.status_code
    detail = _platform_message(exc.response) or f"HTTP {status}"
    message = f"{description} failed: {detail}"

    if status == 400:
        return ValidationError(message)
    if status == 401:
        return SessionRejectedError(
            f"{description} failed: the bot session cookie was rejected"
        )
    if status == 403:
        return PermissionDeniedError(message)
    if status == 404:
        return NotFoundError(message)
    return PlatformError(message)


def malformed_response(exc: Exception, description: str) -> PlatformError:
    return PlatformError(f"{description} failed: malformed platform response ({exc!r})")


def _platform_message(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    errors = body.get("errors") if isinstance(body, dict) else None
    if errors and isinstance(errors, list):
        return errors[0].get("message")
    return None
