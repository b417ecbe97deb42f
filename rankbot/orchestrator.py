"""
RankBot — service wiring and lifecycle.

Builds every component from ``RankBotSettings`` in dependency order:

    ResilientClient → RobloxClient → RoleDirectory
    AuditLog (+ AuditFileSink) → UndoCache → RankPolicy
    SessionMonitor (+ WebhookNotifier)

and owns the background tasks (audit sweep, session probe). Components never
read settings themselves; this module is the only place that does.

Run the HTTP service with any ASGI server, e.g.:
    uvicorn rankbot.api.app:app --host 0.0.0.0 --port 3000
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import structlog

from rankbot.audit.log import AuditLog
from rankbot.audit.sink import AuditFileSink
from rankbot.config import RankBotSettings, settings as default_settings
from rankbot.errors import RankBotError
from rankbot.integrations.resilient import CacheResource, ResilientClient, RetryPolicy
from rankbot.integrations.roblox_client import GroupPlatform, RobloxClient
from rankbot.monitor.session import SessionMonitor, WebhookNotifier
from rankbot.ranking.directory import RoleDirectory
from rankbot.ranking.policy import RankPolicy
from rankbot.ranking.undo import UndoCache

logger = logging.getLogger(__name__)


def configure_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """Configure structured logging."""
    level_name = (log_level or default_settings.log_level).upper()
    fmt = log_format or default_settings.log_format
    level = logging.getLevelName(level_name)

    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if fmt != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@dataclass
class RankBotServices:
    """Explicitly constructed container for every long-lived component."""

    platform: GroupPlatform
    resilient: ResilientClient
    directory: RoleDirectory
    audit_log: AuditLog
    undo_cache: UndoCache
    policy: RankPolicy
    session_monitor: SessionMonitor
    api_key: str = ""
    rate_limit_window_seconds: float = 900.0
    rate_limit_max_requests: int = 100
    bulk_max_items: int = 50
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, config: RankBotSettings | None = None) -> "RankBotServices":
        config = config or default_settings
        resilient = ResilientClient(
            policy=RetryPolicy(
                max_attempts=config.retry_max_attempts,
                base_delay=config.retry_base_delay_seconds,
                max_delay=config.retry_max_delay_seconds,
            ),
            timeout=config.request_timeout_seconds,
            cache_ttls={
                CacheResource.ROLES: config.cache_ttl_roles_seconds,
                CacheResource.GROUP: config.cache_ttl_group_seconds,
                CacheResource.PERMISSIONS: config.cache_ttl_permissions_seconds,
                CacheResource.HEALTH: config.cache_ttl_health_seconds,
            },
        )
        platform = RobloxClient(
            cookie=config.roblox_cookie,
            group_id=config.roblox_group_id,
            resilient=resilient,
            timeout=config.request_timeout_seconds,
        )

        sink = None
        if config.audit_log_file_enabled:
            try:
                sink = AuditFileSink(
                    config.audit_log_path,
                    max_bytes=int(config.audit_log_max_size_mb * 1024 * 1024),
                    retention=config.audit_log_retention,
                )
            except OSError as exc:
                logger.error("Could not initialise audit log directory, file logging disabled: %s", exc)

        audit_log = AuditLog(
            max_entries=config.audit_log_max_entries,
            max_age=timedelta(seconds=config.audit_max_age_seconds),
            sweep_interval=config.audit_sweep_interval_seconds,
            sink=sink,
        )
        directory = RoleDirectory(platform)
        undo_cache = UndoCache(expiry_seconds=config.undo_expiry_seconds)
        policy = RankPolicy(
            directory,
            platform,
            audit_log,
            undo_cache,
            min_rank=config.min_rank,
            max_rank=config.max_rank,
            bulk_max_items=config.bulk_max_items,
        )
        notifier = WebhookNotifier(config.alert_webhook_url) if config.alert_webhook_url else None
        monitor = SessionMonitor(
            platform.probe_session,
            notifier=notifier,
            interval=config.session_check_interval_seconds,
        )
        return cls(
            platform=platform,
            resilient=resilient,
            directory=directory,
            audit_log=audit_log,
            undo_cache=undo_cache,
            policy=policy,
            session_monitor=monitor,
            api_key=config.api_key,
            rate_limit_window_seconds=config.rate_limit_window_seconds,
            rate_limit_max_requests=config.rate_limit_max_requests,
            bulk_max_items=config.bulk_max_items,
        )

    async def start(self) -> None:
        """Load the role directory and start background tasks."""
        log = structlog.get_logger()
        log.info("rankbot.services.starting")
        try:
            await self.directory.refresh()
        except RankBotError as exc:
            log.error("rankbot.services.directory_unavailable", error=exc.message)
        self.audit_log.start_sweeper()
        self.session_monitor.start()
        log.info(
            "rankbot.services.running",
            roles=len(self.directory.roles()),
            bot_rank=self.directory.bot_rank,
        )

    async def stop(self) -> None:
        await self.session_monitor.stop()
        await self.audit_log.close()
        await self.platform.close()
        structlog.get_logger().info("rankbot.services.stopped")
