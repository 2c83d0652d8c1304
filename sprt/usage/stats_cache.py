"""Reader for ``~/.claude/stats-cache.json``.

Claude Code periodically rewrites this file with pre-aggregated history
(daily activity, per-day model tokens, all-time model usage). It lags behind
the live session logs, most visibly for the current day.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from sprt.usage.errors import DataUnavailableError, StatsCacheParseError
from sprt.usage.models import DailyActivity, DailyModelTokens, LongestSession, ModelTokenUsage

logger = logging.getLogger(__name__)

STATS_CACHE_NAME = "stats-cache.json"


class _CacheModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class DailyActivityRow(_CacheModel):
    date: dt.date
    message_count: int = 0
    session_count: int = 0
    tool_call_count: int = 0


class DailyModelTokensRow(_CacheModel):
    date: dt.date
    tokens_by_model: dict[str, int] = {}


class ModelUsageRow(_CacheModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int | None = None
    cache_creation_input_tokens: int | None = None
    web_search_requests: int | None = None
    cost_usd: float | None = None
    context_window: int | None = None
    max_output_tokens: int | None = None


class LongestSessionRow(_CacheModel):
    session_id: str
    duration: int
    message_count: int
    timestamp: str


class StatsCache(_CacheModel):
    """The stats-cache.json document."""

    version: int | None = None
    last_computed_date: dt.date | None = None
    daily_activity: list[DailyActivityRow] = []
    daily_model_tokens: list[DailyModelTokensRow] = []
    model_usage: dict[str, ModelUsageRow] = {}
    total_sessions: int = 0
    total_messages: int = 0
    longest_session: LongestSessionRow | None = None
    first_session_date: str | None = None
    hour_counts: dict[str, int] | None = None
    total_speculation_time_saved_ms: int | None = None

    def activity(self) -> list[DailyActivity]:
        return [
            DailyActivity(
                date=row.date,
                message_count=row.message_count,
                session_count=row.session_count,
                tool_call_count=row.tool_call_count,
            )
            for row in self.daily_activity
        ]

    def model_tokens_by_date(self) -> list[DailyModelTokens]:
        return [
            DailyModelTokens(date=row.date, tokens_by_model=dict(row.tokens_by_model))
            for row in self.daily_model_tokens
        ]

    def model_totals(self) -> list[ModelTokenUsage]:
        usages = [
            ModelTokenUsage(
                model=model,
                input_tokens=row.input_tokens,
                output_tokens=row.output_tokens,
                cache_read_tokens=row.cache_read_input_tokens or 0,
                cache_creation_tokens=row.cache_creation_input_tokens or 0,
            )
            for model, row in self.model_usage.items()
        ]
        return sorted(usages, key=lambda m: m.total_tokens, reverse=True)

    def longest(self) -> LongestSession | None:
        row = self.longest_session
        if row is None:
            return None
        return LongestSession(
            session_id=row.session_id,
            duration_ms=row.duration,
            message_count=row.message_count,
            timestamp=row.timestamp,
        )


def read_stats_cache(path: Path) -> StatsCache:
    """Parse the snapshot document at ``path``.

    Raises:
        DataUnavailableError: the file does not exist (product never used).
        StatsCacheParseError: the file exists but is unreadable or malformed.
    """
    if not path.exists():
        raise DataUnavailableError(f"No stats cache at {path}", source=str(path))
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise StatsCacheParseError(f"Cannot read {path.name}: {e}", source=str(path)) from e
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise StatsCacheParseError(f"Cannot parse {path.name}: {e}", source=str(path)) from e
    if not isinstance(raw, dict):
        raise StatsCacheParseError(f"Cannot parse {path.name}: not an object", source=str(path))
    try:
        return StatsCache.model_validate(raw)
    except ValidationError as e:
        raise StatsCacheParseError(
            f"Unexpected {path.name} shape: {e.error_count()} errors", source=str(path),
        ) from e
