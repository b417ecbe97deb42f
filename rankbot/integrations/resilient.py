"""
Resilient outbound calls — timeout, retry with backoff, TTL cache, health flag.

Every call RankBot makes to the group platform goes through
``ResilientClient.call``. Each attempt is bounded by a hard timeout; failures
in a fixed whitelist (connection errors, timeouts, 408/429/5xx) are retried
with exponential backoff and random jitter, everything else is raised at
once. The backoff sleep is injected so tests can run the retry loop without
waiting.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, TypeVar

import httpx

from rankbot.errors import PlatformConnectionError, RateLimitedError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class CacheResource(str, enum.Enum):
    """Resource classes with independent cache lifetimes."""

    ROLES = "roles"
    GROUP = "group"
    PERMISSIONS = "permissions"
    HEALTH = "health"


DEFAULT_CACHE_TTLS: dict[CacheResource, float] = {
    CacheResource.ROLES: 300.0,
    CacheResource.GROUP: 600.0,
    CacheResource.PERMISSIONS: 300.0,
    CacheResource.HEALTH: 30.0,
}


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with jitter."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.25
    retryable_statuses: frozenset[int] = RETRYABLE_STATUSES

    def delay_for_attempt(self, attempt_index: int, rand: float) -> float:
        """Delay before retry number ``attempt_index + 1``; ``rand`` is in [0, 1)."""
        delay = min(self.base_delay * (2 ** attempt_index), self.max_delay)
        return min(delay * (1 + self.jitter * rand), self.max_delay)


@dataclass
class CacheEntry:
    key: str
    data: Any
    expiry: float


class TTLCache:
    """Per-resource-class cache; each class expires on its own TTL."""

    def __init__(
        self,
        ttls: dict[CacheResource, float] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttls = dict(DEFAULT_CACHE_TTLS)
        if ttls:
            self.ttls.update(ttls)
        self._clock = clock
        self._entries: dict[CacheResource, dict[str, CacheEntry]] = {
            resource: {} for resource in CacheResource
        }
        self.hits = 0
        self.misses = 0

    def get(self, resource: CacheResource, key: str) -> tuple[bool, Any]:
        entry = self._entries[resource].get(key)
        if entry is None:
            self.misses += 1
            return False, None
        if entry.expiry <= self._clock():
            del self._entries[resource][key]
            self.misses += 1
            return False, None
        self.hits += 1
        return True, entry.data

    def set(self, resource: CacheResource, key: str, data: Any) -> None:
        ttl = self.ttls[resource]
        if ttl <= 0:
            return
        self._entries[resource][key] = CacheEntry(key=key, data=data, expiry=self._clock() + ttl)

    def invalidate(self, *resources: CacheResource) -> None:
        """Drop entries for the given classes, or everything when none given."""
        for resource in resources or tuple(CacheResource):
            self._entries[resource].clear()

    def stats(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "entries": {resource.value: len(items) for resource, items in self._entries.items()},
        }


@dataclass
class CallStats:
    calls: int = 0
    attempts: int = 0
    retries: int = 0
    failures: int = 0
    last_error: str | None = None
    last_failure_at: float | None = None
    by_status: dict[int, int] = field(default_factory=dict)


class ResilientClient:
    """
    Generic wrapper for outbound calls.

    ``operation`` is a zero-argument coroutine factory so each attempt issues
    a fresh request. ``httpx`` errors are classified here; callers may also
    raise ``TransientError`` themselves to opt a failure into the retry path.

    The ``healthy`` flag drops on any connection-class failure (network error
    or timeout) and is restored by the next successful call.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        timeout: float = 15.0,
        cache_ttls: dict[CacheResource, float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self.cache = TTLCache(cache_ttls, clock=clock)
        self.stats = CallStats()
        self._sleep = sleep
        self._clock = clock
        self._rand = rand
        self._healthy = True

    @property
    def healthy(self) -> bool:
        return self._healthy

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        description: str = "platform call",
        invalidates: Iterable[CacheResource] = (),
    ) -> T:
        """
        Run ``operation`` under the retry policy.

        Raises:
            PlatformConnectionError: transient failures outlasted every attempt.
            RateLimitedError: the platform kept answering 429.
            Exception: any non-retryable failure, unchanged.
        """
        self.stats.calls += 1
        last_error: TransientError | None = None

        for attempt in range(self.policy.max_attempts):
            self.stats.attempts += 1
            try:
                result = await asyncio.wait_for(operation(), timeout=self.timeout)
            except asyncio.TimeoutError:
                error = TransientError(
                    f"{description} timed out after {self.timeout:g}s",
                    connection_failure=True,
                )
            except httpx.TimeoutException as exc:
                error = TransientError(f"{description} timed out: {exc}", connection_failure=True)
            except httpx.TransportError as exc:
                error = TransientError(
                    f"{description} could not connect: {exc}", connection_failure=True
                )
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                self._count_status(status)
                if status not in self.policy.retryable_statuses:
                    raise
                error = TransientError(
                    f"{description} returned HTTP {status}",
                    status=status,
                    retry_after=_retry_after(exc.response),
                )
            except TransientError as exc:
                error = exc
            else:
                self._healthy = True
                stale = tuple(invalidates)
                if stale:
                    self.cache.invalidate(*stale)
                return result

            last_error = error
            self._record_failure(error)

            if attempt + 1 >= self.policy.max_attempts:
                break

            self.stats.retries += 1
            delay = self.policy.delay_for_attempt(attempt, self._rand())
            if error.retry_after is not None:
                delay = min(max(delay, error.retry_after), self.policy.max_delay)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description,
                attempt + 1,
                self.policy.max_attempts,
                error.message,
                delay,
            )
            await self._sleep(delay)

        assert last_error is not None
        self.stats.failures += 1
        logger.error(
            "%s failed after %d attempts: %s",
            description,
            self.policy.max_attempts,
            last_error.message,
        )
        if last_error.status == 429:
            raise RateLimitedError(
                f"{description} is being rate limited by the platform",
                retry_after=last_error.retry_after,
            ) from last_error
        raise PlatformConnectionError(
            f"{description} failed after {self.policy.max_attempts} attempts: "
            f"{last_error.message}"
        ) from last_error

    async def cached(
        self,
        resource: CacheResource,
        key: str,
        loader: Callable[[], Awaitable[T]],
        *,
        force_refresh: bool = False,
        description: str | None = None,
    ) -> T:
        """Return a cached value for ``(resource, key)`` or load it through ``call``."""
        if not force_refresh:
            hit, value = self.cache.get(resource, key)
            if hit:
                return value
        value = await self.call(loader, description=description or f"{resource.value} lookup")
        self.cache.set(resource, key, value)
        return value

    def invalidate(self, *resources: CacheResource) -> None:
        self.cache.invalidate(*resources)

    def snapshot(self) -> dict[str, Any]:
        """Health and counters for the detailed health and metrics endpoints."""
        return {
            "healthy": self._healthy,
            "calls": self.stats.calls,
            "attempts": self.stats.attempts,
            "retries": self.stats.retries,
            "failures": self.stats.failures,
            "lastError": self.stats.last_error,
            "statusCodes": {str(code): count for code, count in self.stats.by_status.items()},
            "cache": self.cache.stats(),
        }

    def _record_failure(self, error: TransientError) -> None:
        if error.connection_failure:
            if self._healthy:
                logger.warning("Platform marked unhealthy: %s", error.message)
            self._healthy = False
        self.stats.last_error = error.message
        self.stats.last_failure_at = self._clock()

    def _count_status(self, status: int) -> None:
        self.stats.by_status[status] = self.stats.by_status.get(status, 0) + 1


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None
