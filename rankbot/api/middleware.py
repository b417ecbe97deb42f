"""
HTTP plumbing shared by every route: request ids, request logging,
request counters and the per-client fixed-window rate limiter.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 64


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


# ── Rate limiting ──────────────────────────────────────────────


@dataclass
class _Window:
    started: float
    count: int = 0


class FixedWindowRateLimiter:
    """
    Counts requests per key in fixed windows of ``window_seconds``.

    A key's window starts with its first request; once ``max_requests`` are
    counted, further requests are refused until the window ends.
    """

    def __init__(
        self,
        window_seconds: float = 900.0,
        max_requests: int = 100,
        clock: Callable[[], float] = time.monotonic,
        max_tracked: int = 10_000,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._clock = clock
        self._max_tracked = max_tracked
        self._windows: dict[str, _Window] = {}

    def hit(self, key: str) -> tuple[bool, float]:
        """Count one request; return ``(allowed, seconds_until_reset)``."""
        now = self._clock()
        window = self._windows.get(key)
        if window is None or now - window.started >= self.window_seconds:
            if len(self._windows) >= self._max_tracked:
                self._prune(now)
            window = _Window(started=now)
            self._windows[key] = window

        reset_in = max(0.0, window.started + self.window_seconds - now)
        if window.count >= self.max_requests:
            return False, reset_in
        window.count += 1
        return True, reset_in

    def _prune(self, now: float) -> None:
        expired = [
            key
            for key, window in self._windows.items()
            if now - window.started >= self.window_seconds
        ]
        for key in expired:
            del self._windows[key]


# ── Request counters ───────────────────────────────────────────


@dataclass
class RequestMetrics:
    total: int = 0
    by_status_class: Counter = field(default_factory=Counter)
    by_method: Counter = field(default_factory=Counter)
    total_duration_ms: float = 0.0

    def observe(self, method: str, status: int, duration_ms: float) -> None:
        self.total += 1
        self.by_status_class[f"{status // 100}xx"] += 1
        self.by_method[method] += 1
        self.total_duration_ms += duration_ms

    def snapshot(self) -> dict[str, Any]:
        average = self.total_duration_ms / self.total if self.total else 0.0
        return {
            "total": self.total,
            "byStatus": dict(self.by_status_class),
            "byMethod": dict(self.by_method),
            "averageDurationMs": round(average, 2),
        }


# ── Middleware ─────────────────────────────────────────────────


def install_request_context(app: FastAPI, metrics: RequestMetrics) -> None:
    """Tag each request with an id, log it, and count it."""

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = _request_id(request.headers.get(REQUEST_ID_HEADER))
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        log = structlog.get_logger("rankbot.api")
        log.info(
            "rankbot.api.request",
            method=request.method,
            path=request.url.path,
            client=client_ip(request),
        )

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            response = JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "error": "Internal server error",
                    "message": "An unexpected error occurred",
                },
            )

        duration_ms = (time.perf_counter() - started) * 1000
        metrics.observe(request.method, response.status_code, duration_ms)
        response.headers[REQUEST_ID_HEADER] = request_id
        log.info(
            "rankbot.api.response",
            status=response.status_code,
            duration_ms=round(duration_ms, 1),
        )
        structlog.contextvars.clear_contextvars()
        return response


def _request_id(incoming: str | None) -> str:
    if incoming:
        cleaned = incoming.strip()[:MAX_REQUEST_ID_LENGTH]
        if cleaned:
            return cleaned
    return uuid.uuid4().hex


def retry_after_header(seconds: float | None) -> dict[str, str]:
    if seconds is None:
        return {}
    return {"Retry-After": str(max(1, math.ceil(seconds)))}
