"""RankBot — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class RankBotSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── Roblox platform ────────────────────────────────────────
    roblox_cookie: str = ""
    roblox_group_id: int = 0

    # ── HTTP API ───────────────────────────────────────────────
    api_key: str = ""
    api_host: str = "0.0.0.0"
    api_port: int = 3000

    # ── Rank bounds ────────────────────────────────────────────
    min_rank: int = 1
    max_rank: int = 255

    # ── Outbound call policy ───────────────────────────────────
    request_timeout_seconds: float = 15.0
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 10.0

    cache_ttl_roles_seconds: float = 300.0
    cache_ttl_group_seconds: float = 600.0
    cache_ttl_permissions_seconds: float = 300.0
    cache_ttl_health_seconds: float = 30.0

    # ── Inbound rate limiting ──────────────────────────────────
    rate_limit_window_seconds: float = 900.0
    rate_limit_max_requests: int = 100
    bulk_max_items: int = 50

    # ── Audit log ──────────────────────────────────────────────
    audit_log_max_entries: int = 100
    audit_log_file_enabled: bool = False
    audit_log_path: str = "logs/audit.log"
    audit_log_max_size_mb: float = 10.0
    audit_log_retention: int = 5
    audit_sweep_interval_seconds: float = 600.0
    audit_max_age_seconds: float = 3600.0

    # ── Session monitor ────────────────────────────────────────
    session_check_interval_seconds: float = 60.0
    alert_webhook_url: str = ""

    # ── Undo ───────────────────────────────────────────────────
    undo_expiry_seconds: float = 300.0

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = RankBotSettings()
