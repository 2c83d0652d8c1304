from sprt.usage.aggregator import RealtimeAggregator, merge_daily_activity
from sprt.usage.errors import (
    DataUnavailableError,
    ParseError,
    QuotaSourceError,
    QuotaTimeoutError,
    UsageDataError,
)
from sprt.usage.log_reader import SessionLogReader
from sprt.usage.models import (
    ActivityEvent,
    DailyActivity,
    MergedStats,
    ProjectUsage,
    RateLimitResult,
    RateLimitSnapshot,
    RealtimeStats,
    SessionInfo,
    UsageClaim,
    UsageView,
)
from sprt.usage.rate_limits import RateLimitTracker
from sprt.usage.service import UsageService, build_service, compute_display_label
from sprt.usage.stats_cache import read_stats_cache
from sprt.usage.watcher import ChangeWatcher, Debouncer

__all__ = [
    "ActivityEvent",
    "ChangeWatcher",
    "DailyActivity",
    "DataUnavailableError",
    "Debouncer",
    "MergedStats",
    "ParseError",
    "ProjectUsage",
    "QuotaSourceError",
    "QuotaTimeoutError",
    "RateLimitResult",
    "RateLimitSnapshot",
    "RateLimitTracker",
    "RealtimeAggregator",
    "RealtimeStats",
    "SessionInfo",
    "SessionLogReader",
    "UsageClaim",
    "UsageDataError",
    "UsageService",
    "UsageView",
    "build_service",
    "compute_display_label",
    "merge_daily_activity",
    "read_stats_cache",
]
