"""Realtime aggregation — live session logs reconciled with the stats cache.

Each refresh reads the (cheap) snapshot cache, scans only session files that
changed since the previous refresh, and rebuilds today / this-week totals
from the events retained for the rolling week. The result is one UsageView
built off to the side; nothing already handed out is modified.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from pathlib import Path

from sprt.usage.errors import DataUnavailableError, ParseError
from sprt.usage.log_reader import SessionLogReader
from sprt.usage.models import (
    ActivityEvent,
    DailyActivity,
    DailyModelTokens,
    DataStatus,
    MergedStats,
    ProjectUsage,
    RealtimeStats,
    ScanSummary,
    Session,
    SessionInfo,
    TokenUsage,
    UsageView,
    WeightedEvent,
)
from sprt.usage.quota_client import read_credentials
from sprt.usage.stats_cache import STATS_CACHE_NAME, StatsCache, read_stats_cache

logger = logging.getLogger(__name__)

SERIES_DAYS = 7


# ── Reconciliation ───────────────────────────────────────────────────────────


def _max_row(a: DailyActivity, b: DailyActivity) -> DailyActivity:
    return DailyActivity(
        date=a.date,
        message_count=max(a.message_count, b.message_count),
        session_count=max(a.session_count, b.session_count),
        tool_call_count=max(a.tool_call_count, b.tool_call_count),
    )


def merge_daily_activity(
    history: list[DailyActivity],
    live_today: DailyActivity | None,
    today: dt.date,
    days: int = SERIES_DAYS,
) -> list[DailyActivity]:
    """Merge the live row for ``today`` into the last ``days`` days of history.

    The cache is an incomplete earlier count of the same day, so the two are
    reconciled with a field-wise max and never added. The result is sorted
    by date with one row per date.
    """
    start = today - timedelta(days=days - 1)
    by_date: dict[dt.date, DailyActivity] = {}
    for row in history:
        if not start <= row.date <= today:
            continue
        existing = by_date.get(row.date)
        by_date[row.date] = row if existing is None else _max_row(existing, row)

    has_live = live_today is not None and (
        live_today.message_count or live_today.session_count or live_today.tool_call_count
    )
    if has_live:
        existing = by_date.get(today)
        by_date[today] = live_today if existing is None else _max_row(existing, live_today)

    return [by_date[d] for d in sorted(by_date)]


def merge_daily_model_tokens(
    history: list[DailyModelTokens],
    live_today: dict[str, int],
    today: dt.date,
    days: int = SERIES_DAYS,
) -> list[DailyModelTokens]:
    """Same reconciliation as merge_daily_activity, per model."""
    start = today - timedelta(days=days - 1)
    by_date: dict[dt.date, dict[str, int]] = {}
    for row in history:
        if not start <= row.date <= today:
            continue
        models = by_date.setdefault(row.date, {})
        for model, tokens in row.tokens_by_model.items():
            models[model] = max(models.get(model, 0), tokens)
    if live_today:
        models = by_date.setdefault(today, {})
        for model, tokens in live_today.items():
            models[model] = max(models.get(model, 0), tokens)
    return [DailyModelTokens(date=d, tokens_by_model=by_date[d]) for d in sorted(by_date)]


@dataclass
class _TokenAcc:
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_creation: int = 0

    def add(self, e: ActivityEvent) -> None:
        self.input += e.input_tokens
        self.output += e.output_tokens
        self.cache_read += e.cache_read_tokens
        self.cache_creation += e.cache_creation_tokens

    def freeze(self) -> TokenUsage:
        return TokenUsage(
            input=self.input,
            output=self.output,
            cache_read=self.cache_read,
            cache_creation=self.cache_creation,
        )


# ── Aggregator ───────────────────────────────────────────────────────────────


class RealtimeAggregator:
    """Keeps the rolling week of session events and folds them into views."""

    def __init__(
        self,
        claude_dir: Path,
        *,
        active_threshold: timedelta = timedelta(minutes=10),
        recent_window: timedelta = timedelta(hours=48),
        max_recent_sessions: int = 20,
        max_projects: int = 10,
        week: timedelta = timedelta(days=7),
        tz: tzinfo | None = None,
    ) -> None:
        self.claude_dir = claude_dir
        self.reader = SessionLogReader(claude_dir / "projects")
        self.active_threshold = active_threshold
        self.recent_window = recent_window
        self.max_recent_sessions = max_recent_sessions
        self.max_projects = max_projects
        self.week = week
        self._tz = tz  # None = local time, which is what "today" means to the user
        self._events_by_file: dict[Path, list[ActivityEvent]] = {}
        self._sessions: dict[Path, Session] = {}
        self._weighted: tuple[WeightedEvent, ...] = ()
        self._lock = threading.Lock()

    @property
    def stats_cache_path(self) -> Path:
        return self.claude_dir / STATS_CACHE_NAME

    def weighted_events(self) -> tuple[WeightedEvent, ...]:
        """Assistant token usage within the rolling week, as quota weights."""
        return self._weighted

    def refresh(self, now: datetime | None = None) -> UsageView:
        """Run one refresh cycle and return the view it produced."""
        now = now or datetime.now(timezone.utc)
        with self._lock:
            cache, status, error = self._load_cache()
            self._scan(now)
            view = self._build_view(now, cache, status, error)
            self._weighted = tuple(
                WeightedEvent(timestamp=e.timestamp, weight=float(e.total_tokens), model=e.model)
                for events in self._events_by_file.values()
                for e in events
                if e.counts_as_message
            )
        return view

    # -- internals -------------------------------------------------------------

    def _load_cache(self) -> tuple[StatsCache | None, DataStatus, str | None]:
        try:
            return read_stats_cache(self.stats_cache_path), DataStatus.OK, None
        except DataUnavailableError as e:
            logger.debug("%s", e)
            return None, DataStatus.NO_DATA, str(e)
        except ParseError as e:
            logger.warning("Stats cache unusable: %s", e)
            return None, DataStatus.ERROR, str(e)

    def _scan(self, now: datetime) -> None:
        cutoff = now - self.week
        reader = self.reader
        for batch in reader.iter_batches(modified_after=cutoff.timestamp()):
            if batch.reset:
                self._events_by_file.pop(batch.path, None)
                self._sessions.pop(batch.path, None)
            if not batch.events:
                continue
            retained = self._events_by_file.setdefault(batch.path, [])
            retained.extend(e for e in batch.events if e.timestamp > cutoff)
            self._update_session(batch.path, batch.session_id, batch.project, batch.events)

        # files that were deleted since the last scan
        for path in list(self._events_by_file.keys() | self._sessions.keys()):
            if path not in reader.last_scan.seen:
                self._events_by_file.pop(path, None)
                self._sessions.pop(path, None)
                reader.forget(path)

        for path, events in list(self._events_by_file.items()):
            kept = [e for e in events if e.timestamp > cutoff]
            if kept:
                self._events_by_file[path] = kept
            else:
                del self._events_by_file[path]

        for path, session in list(self._sessions.items()):
            if session.last_activity <= cutoff:
                del self._sessions[path]

    def _update_session(
        self,
        path: Path,
        session_id: str,
        project: str,
        events: list[ActivityEvent],
    ) -> None:
        first = min(e.timestamp for e in events)
        last = max(e.timestamp for e in events)
        session = self._sessions.get(path)
        if session is None:
            self._sessions[path] = Session(
                session_id=session_id,
                project=project,
                started_at=first,
                last_activity=last,
                message_count=len(events),
            )
            return
        session.started_at = min(session.started_at, first)
        session.last_activity = max(session.last_activity, last)
        session.message_count += len(events)

    def _local_date(self, ts: datetime) -> dt.date:
        return ts.astimezone(self._tz).date()

    def _build_view(
        self,
        now: datetime,
        cache: StatsCache | None,
        status: DataStatus,
        error: str | None,
    ) -> UsageView:
        today = self._local_date(now)
        week_start = now - self.week

        today_messages = week_messages = today_tool_calls = 0
        today_tokens, week_tokens = _TokenAcc(), _TokenAcc()
        today_models: dict[str, int] = defaultdict(int)
        week_models: dict[str, int] = defaultdict(int)
        today_sessions: set[str] = set()

        for events in self._events_by_file.values():
            for e in events:
                is_today = self._local_date(e.timestamp) == today
                if is_today:
                    today_sessions.add(e.session_id)
                if not e.counts_as_message or e.timestamp <= week_start:
                    continue
                model = e.model or "unknown"
                week_messages += 1
                week_tokens.add(e)
                week_models[model] += e.total_tokens
                if is_today:
                    today_messages += 1
                    today_tokens.add(e)
                    today_models[model] += e.total_tokens
                    if e.has_tool_call:
                        today_tool_calls += 1

        sessions = sorted(self._sessions.values(), key=lambda s: s.last_activity, reverse=True)
        active_count = sum(1 for s in sessions if s.is_active(now, self.active_threshold))
        last_activity = sessions[0].last_activity if sessions else None
        credentials = read_credentials(self.claude_dir)

        realtime = RealtimeStats(
            last_activity=last_activity,
            today_messages=today_messages,
            today_tokens=today_tokens.freeze(),
            week_messages=week_messages,
            week_tokens=week_tokens.freeze(),
            active_sessions=active_count,
            plan_type=credentials.plan_type,
            rate_limit_tier=credentials.rate_limit_tier,
            today_model_tokens=dict(today_models),
            week_model_tokens=dict(week_models),
        )

        live_today = DailyActivity(
            date=today,
            message_count=today_messages,
            session_count=len(today_sessions),
            tool_call_count=today_tool_calls,
        )
        merged = self._merge(cache, status, error, live_today, dict(today_models), today)

        recent_cutoff = now - self.recent_window
        session_rows = [
            SessionInfo(
                session_id=s.session_id,
                project=s.project,
                message_count=s.message_count,
                started_at=s.started_at,
                last_active=s.last_activity,
                duration_seconds=int(s.duration.total_seconds()),
                active=s.is_active(now, self.active_threshold),
            )
            for s in sessions
            if s.last_activity >= recent_cutoff
        ][: self.max_recent_sessions]

        return UsageView(
            merged=merged,
            realtime=realtime,
            sessions=session_rows,
            projects=self._project_rows(sessions),
            computed_at=now,
        )

    def _project_rows(self, sessions: list[Session]) -> list[ProjectUsage]:
        """Sessions and messages per project over the rolling week, busiest first."""
        totals: dict[str, list[int]] = defaultdict(lambda: [0, 0])
        for s in sessions:
            totals[s.project][0] += 1
            totals[s.project][1] += s.message_count
        rows = [
            ProjectUsage(project=project, session_count=count, total_messages=messages)
            for project, (count, messages) in totals.items()
        ]
        rows.sort(key=lambda p: (-p.total_messages, p.project))
        return rows[: self.max_projects]

    def _merge(
        self,
        cache: StatsCache | None,
        status: DataStatus,
        error: str | None,
        live_today: DailyActivity,
        live_models: dict[str, int],
        today: dt.date,
    ) -> MergedStats:
        scan = self.reader.last_scan
        summary = ScanSummary(
            files_scanned=scan.files_scanned,
            files_skipped=scan.files_skipped,
            malformed_lines=scan.malformed_lines,
            unreadable_files=len(scan.errors),
        )
        if cache is None:
            return MergedStats(
                status=status,
                error=error,
                daily_activity=merge_daily_activity([], live_today, today),
                daily_model_tokens=merge_daily_model_tokens([], live_models, today),
                scan=summary,
            )

        return MergedStats(
            status=DataStatus.OK,
            last_computed_date=cache.last_computed_date,
            daily_activity=merge_daily_activity(cache.activity(), live_today, today),
            daily_model_tokens=merge_daily_model_tokens(cache.model_tokens_by_date(), live_models, today),
            model_usage=cache.model_totals(),
            total_sessions=cache.total_sessions,
            total_messages=cache.total_messages,
            first_session_date=cache.first_session_date,
            longest_session=cache.longest(),
            hour_counts=dict(cache.hour_counts or {}),
            scan=summary,
        )
