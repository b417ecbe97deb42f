"""
Session Monitor — periodic health probe of the bot account's platform session.

Classifies the session as:

- ``healthy``    probe succeeded and the account can assign at least one role
- ``degraded``   platform reachable, but the account is in trouble (not in the
                 group, or ranked too low to assign anything)
- ``unhealthy``  probe failing, or the session credential was rejected

Each transition into ``unhealthy`` fires one notification. The monitor only
detects and reports; it never renews credentials.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

import httpx

from rankbot.errors import RankBotError, SessionRejectedError
from rankbot.integrations.roblox_client import SessionProbe

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 60.0


class SessionState(str, enum.Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class SessionStatus:
    state: SessionState
    detail: str
    checked_at: datetime | None = None
    bot_user_id: int | None = None
    bot_username: str | None = None
    bot_rank: int | None = None
    consecutive_failures: int = 0

    def to_wire(self) -> dict[str, Any]:
        return {
            "status": self.state.value,
            "detail": self.detail,
            "checkedAt": self.checked_at.isoformat() if self.checked_at else None,
            "botUserId": self.bot_user_id,
            "botUsername": self.bot_username,
            "botRank": self.bot_rank,
            "consecutiveFailures": self.consecutive_failures,
        }


class Notifier(Protocol):
    async def notify(self, status: SessionStatus) -> None: ...


class WebhookNotifier:
    """Posts a Discord-style ``{"content": ...}`` message to an operator webhook."""

    def __init__(self, url: str, http_client: httpx.AsyncClient | None = None) -> None:
        self.url = url
        self._client = http_client

    async def notify(self, status: SessionStatus) -> None:
        content = (
            f"RankBot session is {status.state.value.upper()}: {status.detail}. "
            "Check the bot account cookie and its group rank."
        )
        try:
            if self._client is not None:
                resp = await self._client.post(self.url, json={"content": content})
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    resp = await client.post(self.url, json={"content": content})
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Failed to deliver session alert to webhook: %s", exc)
        else:
            logger.info("Session alert delivered to operator webhook")


class SessionMonitor:
    """
    Runs ``probe`` every ``interval`` seconds and tracks the resulting state.

    Usage:
        monitor = SessionMonitor(platform.probe_session, notifier=WebhookNotifier(url))
        monitor.start()
        ...
        monitor.status.to_wire()
    """

    def __init__(
        self,
        probe: Callable[..., Awaitable[SessionProbe]],
        notifier: Notifier | None = None,
        interval: float = DEFAULT_CHECK_INTERVAL,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.probe = probe
        self.notifier = notifier
        self.interval = interval
        self._now = now
        self._status = SessionStatus(state=SessionState.UNKNOWN, detail="not checked yet")
        self._task: asyncio.Task | None = None

    @property
    def status(self) -> SessionStatus:
        return self._status

    async def check(self) -> SessionStatus:
        """Probe once, classify, and notify on a transition into unhealthy."""
        previous = self._status
        failures = previous.consecutive_failures
        try:
            result = await self.probe(force_refresh=True)
        except SessionRejectedError as exc:
            status = self._unhealthy(f"session credential rejected ({exc.message})", failures)
        except RankBotError as exc:
            status = self._unhealthy(f"probe failed ({exc.message})", failures)
        except Exception as exc:
            logger.exception("Session probe raised an unexpected error")
            status = self._unhealthy(f"probe failed ({exc!r})", failures)
        else:
            status = self._classify(result)

        self._status = status
        if status.state is not previous.state:
            log = logger.warning if status.state is not SessionState.HEALTHY else logger.info
            log("Session state %s -> %s: %s", previous.state.value, status.state.value, status.detail)
            if status.state is SessionState.UNHEALTHY and self.notifier is not None:
                await self.notifier.notify(status)
        return status

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="session-monitor")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.check()
            except Exception:
                logger.exception("Session check crashed; will retry next interval")
            await asyncio.sleep(self.interval)

    def _classify(self, result: SessionProbe) -> SessionStatus:
        if result.bot_rank == 0:
            state, detail = SessionState.DEGRADED, f"{result.username} is not in the group"
        elif result.bot_rank <= 1:
            state, detail = (
                SessionState.DEGRADED,
                f"{result.username} (rank {result.bot_rank}) cannot assign any role",
            )
        else:
            state, detail = SessionState.HEALTHY, f"logged in as {result.username}"
        return SessionStatus(
            state=state,
            detail=detail,
            checked_at=self._now(),
            bot_user_id=result.user_id,
            bot_username=result.username,
            bot_rank=result.bot_rank,
        )

    def _unhealthy(self, detail: str, failures: int) -> SessionStatus:
        last = self._status
        return SessionStatus(
            state=SessionState.UNHEALTHY,
            detail=detail,
            checked_at=self._now(),
            bot_user_id=last.bot_user_id,
            bot_username=last.bot_username,
            bot_rank=last.bot_rank,
            consecutive_failures=failures + 1,
        )
