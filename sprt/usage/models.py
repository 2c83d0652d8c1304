"""Data model shared by the usage engine.

Internal records produced while scanning (``ActivityEvent``, ``Session``,
``WeightedEvent``) are plain dataclasses. Everything handed to callers is a
frozen pydantic model so a refresh cycle can only replace values, never
patch them.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict

# ── Scan records ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ActivityEvent:
    """A single message record parsed from a session log."""

    timestamp: datetime
    role: str  # "user" | "assistant"
    session_id: str
    project: str
    model: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    has_tool_call: bool = False

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_creation_tokens
        )

    @property
    def counts_as_message(self) -> bool:
        """Assistant responses are what the live counters count."""
        return self.role == "assistant"


@dataclass(frozen=True)
class WeightedEvent:
    """A timestamped weight fed to the quota window calculator."""

    timestamp: datetime
    weight: float
    model: str | None = None


@dataclass
class Session:
    """Contiguous run of events sharing a session id."""

    session_id: str
    project: str
    started_at: datetime
    last_activity: datetime
    message_count: int = 0

    @property
    def duration(self) -> timedelta:
        return self.last_activity - self.started_at

    def is_active(self, now: datetime, threshold: timedelta) -> bool:
        return now - self.last_activity <= threshold


# ── Outward views ────────────────────────────────────────────────────────────


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class TokenUsage(_Frozen):
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_creation: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output + self.cache_read + self.cache_creation


class DailyActivity(_Frozen):
    date: dt.date
    message_count: int = 0
    session_count: int = 0
    tool_call_count: int = 0


class ModelTokenUsage(_Frozen):
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_creation_tokens
        )


class DailyModelTokens(_Frozen):
    date: dt.date
    tokens_by_model: dict[str, int] = {}


class LongestSession(_Frozen):
    session_id: str
    duration_ms: int
    message_count: int
    timestamp: str


class ClaimStatus(str, Enum):
    NORMAL = "normal"
    NEAR_LIMIT = "near_limit"
    EXHAUSTED = "exhausted"
    UNKNOWN = "unknown"


class UsageClaim(_Frozen):
    """Current state of one quota window.

    ``utilization`` is not clamped: 1.2 means 20% over the ceiling. Use
    ``quota.display_percent`` for anything shown to a user.
    """

    utilization: float
    reset: datetime | None = None
    status: ClaimStatus = ClaimStatus.UNKNOWN


class SnapshotSource(str, Enum):
    REMOTE = "remote"
    EVENT_LOG = "event_log"
    LOCAL_ESTIMATE = "local_estimate"


class RateLimitSnapshot(_Frozen):
    five_hour: UsageClaim | None = None
    seven_day: UsageClaim | None = None
    seven_day_model: UsageClaim | None = None
    status: str = "unknown"
    representative_claim: str | None = None
    overage_status: str | None = None
    overage_disabled_reason: str | None = None
    overage_reset: datetime | None = None
    fallback_percentage: float | None = None
    source: SnapshotSource = SnapshotSource.REMOTE
    checked_at: datetime

    def claims(self) -> dict[str, UsageClaim]:
        named = {
            "five_hour": self.five_hour,
            "seven_day": self.seven_day,
            "seven_day_model": self.seven_day_model,
        }
        return {k: v for k, v in named.items() if v is not None}


class RateLimitResult(_Frozen):
    """A snapshot plus whether it had to be served stale."""

    snapshot: RateLimitSnapshot
    stale: bool = False
    error: str | None = None


class RealtimeStats(_Frozen):
    last_activity: datetime | None = None
    today_messages: int = 0
    today_tokens: TokenUsage = TokenUsage()
    week_messages: int = 0
    week_tokens: TokenUsage = TokenUsage()
    active_sessions: int = 0
    plan_type: str = "unknown"
    rate_limit_tier: str = "unknown"
    today_model_tokens: dict[str, int] = {}
    week_model_tokens: dict[str, int] = {}


class SessionInfo(_Frozen):
    session_id: str
    project: str
    message_count: int
    started_at: datetime
    last_active: datetime
    duration_seconds: int
    active: bool


class ProjectUsage(_Frozen):
    project: str
    session_count: int
    total_messages: int


class DataStatus(str, Enum):
    OK = "ok"
    NO_DATA = "no_data"
    ERROR = "error"
    PENDING = "pending"


class ScanSummary(_Frozen):
    files_scanned: int = 0
    files_skipped: int = 0
    malformed_lines: int = 0
    unreadable_files: int = 0


class MergedStats(_Frozen):
    status: DataStatus = DataStatus.OK
    error: str | None = None
    last_computed_date: dt.date | None = None
    daily_activity: list[DailyActivity] = []
    daily_model_tokens: list[DailyModelTokens] = []
    model_usage: list[ModelTokenUsage] = []
    total_sessions: int = 0
    total_messages: int = 0
    first_session_date: str | None = None
    longest_session: LongestSession | None = None
    hour_counts: dict[str, int] = {}
    scan: ScanSummary = ScanSummary()


@dataclass(frozen=True)
class UsageView:
    """Everything one refresh cycle produced, swapped in as a unit."""

    merged: MergedStats
    realtime: RealtimeStats
    sessions: list[SessionInfo] = field(default_factory=list)
    projects: list[ProjectUsage] = field(default_factory=list)
    computed_at: datetime | None = None

    @classmethod
    def pending(cls) -> UsageView:
        return cls(merged=MergedStats(status=DataStatus.PENDING), realtime=RealtimeStats())
