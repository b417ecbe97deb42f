"""
RankBot — HTTP API.

FastAPI application consumed by the chat bot and the game client:

- Health, readiness and session status (unauthenticated)
- Member lookup, single and batched
- Role directory and group info
- Set / promote / demote, by user id or username, plus bulk ranking
- Single-level undo of the most recent change
- Audit log queries, stats and request metrics

Every ``/api`` route requires the shared secret in the ``x-api-key`` header
and is rate limited per client address. Responses use the envelope
``{"success": true, ...payload}`` or
``{"success": false, "error": ..., "message": ...}``.

Usage:
    uvicorn rankbot.api.app:app --port 3000
"""

from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from rankbot.api.middleware import (
    FixedWindowRateLimiter,
    RequestMetrics,
    client_ip,
    install_request_context,
    retry_after_header,
)
from rankbot.errors import (
    AuthenticationRequiredError,
    InvalidApiKeyError,
    NotFoundError,
    RankBotError,
    RateLimitedError,
    ValidationError,
)
from rankbot.orchestrator import RankBotServices, configure_logging
from rankbot.ranking.undo import DEFAULT_SCOPE
from rankbot.ranking.validation import (
    parse_id_list,
    parse_rank_target,
    parse_username_list,
    validate_user_id,
    validate_username,
)
from rankbot.schema import ById, ByUsername, UserRef

logger = logging.getLogger(__name__)

MAX_OPERATOR_ID_LENGTH = 100


# ── Pydantic request models ────────────────────────────────────
#
# Fields stay untyped; rankbot.ranking.validation parses them.


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RankRequest(_Body):
    user_id: Any = Field(default=None, alias="userId")
    username: Any = None
    rank: Any = None
    rank_name: Any = Field(default=None, alias="rankName")


class StepRequest(_Body):
    user_id: Any = Field(default=None, alias="userId")
    username: Any = None


class BulkRankRequest(_Body):
    users: Any = None


# ── Dependencies ───────────────────────────────────────────────


def get_services(request: Request) -> RankBotServices:
    return request.app.state.services


async def enforce_rate_limit(request: Request) -> None:
    limiter: FixedWindowRateLimiter = request.app.state.rate_limiter
    allowed, reset_in = limiter.hit(client_ip(request) or "unknown")
    if not allowed:
        logger.warning("Rate limit exceeded for %s", client_ip(request))
        raise RateLimitedError(
            f"Rate limit exceeded. Limit: {limiter.max_requests} requests per "
            f"{limiter.window_seconds / 60:g} minutes.",
            retry_after=reset_in,
        )


async def require_api_key(
    request: Request,
    x_api_key: str | None = Header(default=None),
) -> None:
    if not x_api_key:
        logger.warning("Request rejected, no API key provided (%s)", client_ip(request))
        raise AuthenticationRequiredError("Please provide an API key in the x-api-key header")

    expected = get_services(request).api_key
    if not expected or not hmac.compare_digest(x_api_key.encode(), expected.encode()):
        logger.warning("Request rejected, invalid API key (%s)", client_ip(request))
        raise InvalidApiKeyError("The provided API key is incorrect")


def undo_scope(x_operator_id: str | None = Header(default=None)) -> str:
    if x_operator_id is None or not x_operator_id.strip():
        return DEFAULT_SCOPE
    return x_operator_id.strip()[:MAX_OPERATOR_ID_LENGTH]


def _ok(payload: dict[str, Any] | None = None, **extra: Any) -> dict[str, Any]:
    return {"success": True, **(payload or {}), **extra}


def _uptime_seconds(services: RankBotServices) -> int:
    return int((datetime.now(timezone.utc) - services.started_at).total_seconds())


# ── Unauthenticated routes ─────────────────────────────────────

public = APIRouter()


@public.get("/health")
async def health(request: Request):
    services = get_services(request)
    return _ok(
        status="ok",
        uptime=_uptime_seconds(services),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@public.get("/ready")
async def ready(request: Request):
    """Ready once roles are loaded and the last platform call succeeded."""
    services = get_services(request)
    loaded = services.directory.loaded
    healthy = services.resilient.healthy
    if loaded and healthy:
        return _ok(ready=True)
    reason = "role directory not loaded" if not loaded else "platform unreachable"
    return JSONResponse(
        status_code=503,
        content={
            "success": False,
            "error": "Service unavailable",
            "message": f"Not ready: {reason}",
            "ready": False,
        },
    )


@public.get("/health/detailed")
async def health_detailed(request: Request):
    services = get_services(request)
    snapshot = services.directory.snapshot
    session = services.session_monitor.status
    return _ok(
        status=session.state.value,
        uptime=_uptime_seconds(services),
        session=session.to_wire(),
        platform=services.resilient.snapshot(),
        directory={
            "loaded": services.directory.loaded,
            "roles": len(snapshot.roles),
            "botRank": snapshot.bot_rank,
            "loadedAt": snapshot.loaded_at.isoformat() if snapshot.loaded_at else None,
        },
        audit={"entries": len(services.audit_log)},
    )


@public.get("/session")
async def session_status(request: Request):
    return _ok(get_services(request).session_monitor.status.to_wire())


# ── Authenticated routes ───────────────────────────────────────

api = APIRouter(
    prefix="/api",
    dependencies=[Depends(enforce_rate_limit), Depends(require_api_key)],
)


# ── Lookups ──


@api.get("/rank/{user_id}")
async def get_rank(user_id: str, services: RankBotServices = Depends(get_services)):
    member = await services.policy.lookup(ById(validate_user_id(user_id)))
    return _ok(member.to_wire())


@api.get("/user/{username}")
async def get_user(username: str, services: RankBotServices = Depends(get_services)):
    member = await services.policy.lookup(ByUsername(validate_username(username)))
    return _ok(member.to_wire())


@api.get("/users/batch")
async def batch_by_ids(
    ids: str = Query(default=""),
    services: RankBotServices = Depends(get_services),
):
    refs = [ById(user_id) for user_id in parse_id_list(ids, services.bulk_max_items)]
    return await _batch_lookup(services, refs)


@api.get("/users/batch/usernames")
async def batch_by_usernames(
    usernames: str = Query(default=""),
    services: RankBotServices = Depends(get_services),
):
    refs = [ByUsername(name) for name in parse_username_list(usernames, services.bulk_max_items)]
    return await _batch_lookup(services, refs)


async def _batch_lookup(services: RankBotServices, refs: list[UserRef]) -> dict[str, Any]:
    users: list[dict[str, Any]] = []
    for ref in refs:
        try:
            member = await services.policy.lookup(ref)
        except RankBotError as exc:
            key, value = ("userId", ref.user_id) if isinstance(ref, ById) else ("username", ref.username)
            users.append({key: value, "found": False, "error": exc.message})
        else:
            users.append({**member.to_wire(), "found": True})
    found = sum(1 for user in users if user["found"])
    return _ok(users=users, total=len(users), found=found)


# ── Roles & group ──


@api.get("/roles")
async def list_roles(
    assignable: bool = False,
    refresh: bool = False,
    services: RankBotServices = Depends(get_services),
):
    if refresh:
        await services.directory.refresh(force=True)
    roles = services.directory.assignable_roles() if assignable else services.directory.roles()
    return _ok(
        roles=[role.to_wire() for role in roles],
        count=len(roles),
        botRank=services.directory.bot_rank,
    )


@api.get("/group")
async def group_info(services: RankBotServices = Depends(get_services)):
    return _ok(group=await services.platform.fetch_group_info())


@api.get("/bot/permissions")
async def bot_permissions(services: RankBotServices = Depends(get_services)):
    probe = await services.platform.probe_session()
    assignable = [
        role
        for role in services.directory.assignable_roles()
        if services.policy.min_rank <= role.rank <= services.policy.max_rank
    ]
    return _ok(
        botUserId=probe.user_id,
        botUsername=probe.username,
        botRank=probe.bot_rank,
        botRankName=services.directory.name_for_rank(probe.bot_rank),
        canRank=bool(assignable),
        minRank=services.policy.min_rank,
        maxRank=services.policy.max_rank,
        assignableRoles=[role.to_wire() for role in assignable],
    )


# ── Mutations ──


@api.post("/rank")
async def set_rank(
    body: RankRequest,
    request: Request,
    scope: str = Depends(undo_scope),
    services: RankBotServices = Depends(get_services),
):
    user = ById(validate_user_id(body.user_id))
    target = parse_rank_target(body.rank, body.rank_name)
    result = await services.policy.set_rank(
        user, target, source_ip=client_ip(request), undo_scope=scope
    )
    return _ok(result.to_wire())


@api.post("/rank/username")
async def set_rank_by_username(
    body: RankRequest,
    request: Request,
    scope: str = Depends(undo_scope),
    services: RankBotServices = Depends(get_services),
):
    user = ByUsername(validate_username(body.username))
    target = parse_rank_target(body.rank, body.rank_name)
    result = await services.policy.set_rank(
        user, target, source_ip=client_ip(request), undo_scope=scope
    )
    return _ok(result.to_wire())


@api.post("/promote")
async def promote(
    body: StepRequest,
    request: Request,
    scope: str = Depends(undo_scope),
    services: RankBotServices = Depends(get_services),
):
    result = await services.policy.promote(
        ById(validate_user_id(body.user_id)), source_ip=client_ip(request), undo_scope=scope
    )
    return _ok(result.to_wire())


@api.post("/promote/username")
async def promote_by_username(
    body: StepRequest,
    request: Request,
    scope: str = Depends(undo_scope),
    services: RankBotServices = Depends(get_services),
):
    result = await services.policy.promote(
        ByUsername(validate_username(body.username)), source_ip=client_ip(request), undo_scope=scope
    )
    return _ok(result.to_wire())


@api.post("/demote")
async def demote(
    body: StepRequest,
    request: Request,
    scope: str = Depends(undo_scope),
    services: RankBotServices = Depends(get_services),
):
    result = await services.policy.demote(
        ById(validate_user_id(body.user_id)), source_ip=client_ip(request), undo_scope=scope
    )
    return _ok(result.to_wire())


@api.post("/demote/username")
async def demote_by_username(
    body: StepRequest,
    request: Request,
    scope: str = Depends(undo_scope),
    services: RankBotServices = Depends(get_services),
):
    result = await services.policy.demote(
        ByUsername(validate_username(body.username)), source_ip=client_ip(request), undo_scope=scope
    )
    return _ok(result.to_wire())


@api.post("/rank/bulk")
async def bulk_rank(
    body: BulkRankRequest,
    request: Request,
    services: RankBotServices = Depends(get_services),
):
    """Per-item failures are reported in ``results``; the call itself succeeds."""
    if not isinstance(body.users, list):
        raise ValidationError("users must be an array")
    result = await services.policy.bulk_rank(body.users, source_ip=client_ip(request))
    return _ok(result.to_wire())


# ── Undo ──


@api.get("/undo")
async def pending_undo(
    scope: str = Depends(undo_scope),
    services: RankBotServices = Depends(get_services),
):
    last = services.undo_cache.get(scope)
    if last is None:
        return _ok(pending=False, action=None)
    return _ok(pending=True, action=last.to_wire())


@api.post("/undo")
async def undo(
    request: Request,
    scope: str = Depends(undo_scope),
    services: RankBotServices = Depends(get_services),
):
    payload = await services.undo_cache.undo(
        services.policy, scope=scope, source_ip=client_ip(request)
    )
    return _ok(payload)


# ── Audit & metrics ──


@api.get("/logs")
async def list_logs(
    action: str | None = None,
    success: bool | None = None,
    user_id: int | None = Query(default=None, alias="userId"),
    limit: int = 50,
    offset: int = 0,
    services: RankBotServices = Depends(get_services),
):
    page = services.audit_log.query(
        action=action, success=success, user_id=user_id, limit=limit, offset=offset
    )
    return _ok(page.to_wire())


@api.get("/logs/{entry_id}")
async def get_log(entry_id: str, services: RankBotServices = Depends(get_services)):
    entry = services.audit_log.get_by_id(entry_id)
    if entry is None:
        raise NotFoundError(f"No audit entry with id {entry_id}")
    return _ok(entry=entry.to_wire())


@api.get("/stats")
async def stats(services: RankBotServices = Depends(get_services)):
    return _ok(services.audit_log.stats().to_wire(), uptime=_uptime_seconds(services))


@api.get("/metrics")
async def metrics(request: Request, services: RankBotServices = Depends(get_services)):
    request_metrics: RequestMetrics = request.app.state.metrics
    return _ok(
        uptime=_uptime_seconds(services),
        requests=request_metrics.snapshot(),
        platform=services.resilient.snapshot(),
        audit=services.audit_log.stats().to_wire(),
        session=services.session_monitor.status.state.value,
    )


# ── Error envelopes ────────────────────────────────────────────


async def handle_rankbot_error(request: Request, exc: RankBotError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    headers = retry_after_header(getattr(exc, "retry_after", None))
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.error, "message": exc.message},
        headers=headers,
    )


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path"))
        problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Validation error",
            "message": "; ".join(problems) or "Invalid request",
        },
    )


async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    error = "Not found" if exc.status_code == 404 else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": error, "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


# ── Application factory ────────────────────────────────────────


def _attach(app: FastAPI, services: RankBotServices) -> None:
    app.state.services = services
    app.state.rate_limiter = FixedWindowRateLimiter(
        window_seconds=services.rate_limit_window_seconds,
        max_requests=services.rate_limit_max_requests,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services from settings unless some were injected, then run them."""
    if app.state.services is None:
        configure_logging()
        _attach(app, RankBotServices.from_settings())
    services: RankBotServices = app.state.services
    await services.start()
    logger.info("RankBot API ready")

    yield

    await services.stop()
    logger.info("RankBot API shut down")


def create_app(services: RankBotServices | None = None) -> FastAPI:
    app = FastAPI(
        title="RankBot",
        description="Group rank management API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = None
    app.state.metrics = RequestMetrics()
    if services is not None:
        _attach(app, services)

    install_request_context(app, app.state.metrics)
    app.add_exception_handler(RankBotError, handle_rankbot_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.include_router(public)
    app.include_router(api)
    return app


app = create_app()
