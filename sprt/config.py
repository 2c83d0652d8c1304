from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings


def _default_claude_dir() -> Path:
    return Path.home() / ".claude"


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Monitored data directory (stats-cache.json, projects/, rate-limits/)
    claude_dir: Path = _default_claude_dir()

    # Refresh cadence
    rate_limit_freshness_seconds: float = 30.0
    watch_debounce_ms: int = 300
    poll_interval_seconds: float = 10.0
    scan_budget_seconds: float = 0.5  # max wait on the interactive path

    # Sessions
    active_session_minutes: int = 10
    recent_session_hours: int = 48
    max_recent_sessions: int = 20
    max_projects: int = 10

    # Local quota estimation (used only when no remote status is available)
    # Estimated caps, Anthropic doesn't publish exact numbers
    near_limit_threshold: float = 0.8
    session_limit_tokens: int = 15_000_000
    weekly_limit_tokens: int = 150_000_000
    weekly_model_limit_tokens: int = 100_000_000
    session_window_hours: int = 5
    weekly_window_days: int = 7
    weekly_model_family: str = "sonnet"

    # Remote quota status (probe request, read unified rate-limit headers)
    quota_remote_enabled: bool = True
    quota_api_url: str = "https://api.anthropic.com/v1/messages"
    quota_probe_model: str = "claude-sonnet-4-20250514"
    quota_timeout_seconds: float = 10.0

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    # Logging
    log_level: str = "INFO"


settings = Settings()
