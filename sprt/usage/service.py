"""Query facade — the boundary the UI talks to.

Two producers ask for refreshes: the change watcher (from its own thread)
and the poll loop. Both go through ``request_refresh()``, which coalesces
into a single in-flight refresh task; callers that arrive while it runs
await that same task instead of starting another scan.

Scans run in a thread pool. A caller waits at most ``scan_budget`` seconds
and otherwise gets the last complete view, so a large first scan never
freezes the UI.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any

from sprt.config import Settings
from sprt.usage.aggregator import RealtimeAggregator
from sprt.usage.models import (
    MergedStats,
    ProjectUsage,
    RateLimitResult,
    RealtimeStats,
    SessionInfo,
    UsageView,
)
from sprt.usage.quota import FIVE_HOUR, display_percent
from sprt.usage.quota_client import QuotaStatusClient
from sprt.usage.rate_limit_log import RateLimitLogReader
from sprt.usage.rate_limits import QuotaLimits, RateLimitTracker
from sprt.usage.watcher import ChangeWatcher

logger = logging.getLogger(__name__)

ChangeListener = Callable[[UsageView], Any]

# Poll backoff while the rate-limit source is failing
_MAX_POLL_INTERVAL = 300.0
_BACKOFF_FACTOR = 2.0


def compute_display_label(
    rate_limits: RateLimitResult | None,
    realtime: RealtimeStats | None,
    now: datetime,
    window: timedelta = FIVE_HOUR,
) -> str:
    """Compact label for an always-visible surface (menu bar / tray).

    Prefers the 5-hour claim; without one, shows how far the 5-hour window
    has moved on since the last activity, or REST when idle.
    """
    if rate_limits is not None and rate_limits.snapshot.five_hour is not None:
        utilization = rate_limits.snapshot.five_hour.utilization
        return "FULL" if utilization >= 1.0 else f"{display_percent(utilization)}%"
    if realtime is None or realtime.last_activity is None:
        return "REST"
    elapsed = (now - realtime.last_activity) / window
    return "REST" if elapsed >= 1.0 else f"{round(elapsed * 100)}%"


class UsageService:
    """Single-flight access to usage views and rate limits."""

    def __init__(
        self,
        aggregator: RealtimeAggregator,
        tracker: RateLimitTracker,
        *,
        watcher_factory: Callable[[Callable[[], None]], ChangeWatcher] | None = None,
        poll_interval: float = 10.0,
        scan_budget: float = 0.5,
    ) -> None:
        self.aggregator = aggregator
        self.tracker = tracker
        self.poll_interval = poll_interval
        self.scan_budget = scan_budget
        self.watcher = watcher_factory(self.request_refresh) if watcher_factory else None
        self._executor = _new_executor()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._view: UsageView | None = None
        self._refresh_task: asyncio.Task[UsageView] | None = None
        self._refresh_requested = False
        self._rate_task: asyncio.Task[RateLimitResult] | None = None
        self._rate_forcing = False
        self._rate_force_requested = False
        self._poll_task: asyncio.Task[None] | None = None
        self._running = False
        self._listeners: list[ChangeListener] = []
        self._display_label = ""
        self.consecutive_failures = 0
        self.current_interval = poll_interval

    # -- lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Start the poll loop and the change watcher."""
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._running = True
        self._poll_task = asyncio.create_task(self._poll_loop(), name="sprt-poll")
        if self.watcher is not None:
            await self._loop.run_in_executor(None, self.watcher.start)
        logger.info("Usage service started (poll=%ss, budget=%ss)", self.poll_interval, self.scan_budget)

    async def stop(self) -> None:
        self._running = False
        if self.watcher is not None:
            self.watcher.stop()
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
        for task in (self._refresh_task, self._rate_task):
            if task is not None and not task.done():
                await asyncio.gather(task, return_exceptions=True)
        self._executor.shutdown(wait=False)
        # fresh pool so the service can be started again
        self._executor = _new_executor()
        logger.info("Usage service stopped")

    # -- change signal ---------------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def request_refresh(self) -> None:
        """Ask for a refresh. Safe to call from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._on_change_signal)

    # -- queries ---------------------------------------------------------------

    async def get_view(self) -> UsageView:
        """The current view, refreshed first if it has aged past the poll interval."""
        self._loop = self._loop or asyncio.get_running_loop()
        view = self._view
        if view is not None and not self._is_outdated(view):
            return view
        task = self._schedule_refresh()
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.scan_budget)
        except asyncio.TimeoutError:
            logger.debug("Refresh still running after %.2fs, serving previous view", self.scan_budget)
            return self._view or UsageView.pending()

    async def refresh(self) -> UsageView:
        """Refresh and wait for the result, however long the scan takes."""
        self._loop = self._loop or asyncio.get_running_loop()
        return await asyncio.shield(self._schedule_refresh())

    async def get_merged_stats(self) -> MergedStats:
        return (await self.get_view()).merged

    async def get_realtime_stats(self) -> RealtimeStats:
        return (await self.get_view()).realtime

    async def get_active_sessions(self) -> list[SessionInfo]:
        return (await self.get_view()).sessions

    async def get_project_usage(self) -> list[ProjectUsage]:
        return (await self.get_view()).projects

    async def get_rate_limits(self, force: bool = False) -> RateLimitResult:
        """Current rate limits; concurrent callers share one in-flight query.

        Raises:
            DataUnavailableError: no answer could be produced and none is cached.
        """
        self._loop = self._loop or asyncio.get_running_loop()
        return await asyncio.shield(self._schedule_rate_limits(force))

    # -- display label ---------------------------------------------------------

    @property
    def display_label(self) -> str:
        return self._display_label

    def set_display_label(self, label: str) -> None:
        self._display_label = label

    def suggested_display_label(self, now: datetime | None = None) -> str:
        view = self._view
        return compute_display_label(
            self.tracker.cached,
            view.realtime if view is not None else None,
            now or datetime.now(timezone.utc),
        )

    # -- internals -------------------------------------------------------------

    def _is_outdated(self, view: UsageView) -> bool:
        if view.computed_at is None:
            return True
        age = datetime.now(timezone.utc) - view.computed_at
        return age.total_seconds() >= self.poll_interval

    def _on_change_signal(self) -> None:
        self._schedule_refresh(rescan=True)
        self._schedule_rate_limits(False).add_done_callback(_log_background_failure)

    def _schedule_refresh(self, rescan: bool = False) -> asyncio.Task[UsageView]:
        """Return the in-flight refresh task, starting one if none is running.

        Queries simply join a running refresh. A change signal (``rescan``)
        arriving mid-scan also asks for one more pass, since the files may
        have changed after the scan read them.
        """
        task = self._refresh_task
        if task is not None and not task.done():
            if rescan:
                self._refresh_requested = True
            return task
        self._refresh_task = asyncio.get_running_loop().create_task(self._run_refresh())
        return self._refresh_task

    async def _run_refresh(self) -> UsageView:
        loop = asyncio.get_running_loop()
        while True:
            self._refresh_requested = False
            try:
                view = await loop.run_in_executor(self._executor, self.aggregator.refresh)
            except Exception:
                logger.exception("Usage refresh failed")
                return self._view or UsageView.pending()
            self._view = view
            self._notify(view)
            # requests that arrived mid-scan collapse into one more pass
            if not self._refresh_requested:
                return view

    def _schedule_rate_limits(self, force: bool) -> asyncio.Task[RateLimitResult]:
        """Return the in-flight rate-limit task, starting one if none is running.

        A forced call that finds an unforced query running asks for one
        forced pass after it; everyone waiting gets that pass's answer.
        """
        task = self._rate_task
        if task is not None and not task.done():
            if force and not self._rate_forcing:
                self._rate_force_requested = True
            return task
        self._rate_forcing = force
        self._rate_force_requested = False
        self._rate_task = asyncio.get_running_loop().create_task(self._run_rate_limits(force))
        return self._rate_task

    async def _run_rate_limits(self, force: bool) -> RateLimitResult:
        loop = asyncio.get_running_loop()
        while True:
            try:
                result = await loop.run_in_executor(self._executor, self.tracker.get_rate_limits, force)
            except Exception as e:
                if not self._rate_force_requested:
                    raise
                logger.debug("Rate-limit query failed, running the requested forced pass: %s", e)
            else:
                if not self._rate_force_requested:
                    return result
            force = self._rate_forcing = True
            self._rate_force_requested = False

    def _notify(self, view: UsageView) -> None:
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:
                logger.exception("Change listener error")

    async def _poll_loop(self) -> None:
        """Polling loop; backs off while the rate-limit source keeps failing."""
        while self._running:
            self._schedule_refresh(rescan=True)
            await self._poll_rate_limits()
            await asyncio.sleep(self.current_interval)

    async def _poll_rate_limits(self) -> None:
        try:
            result = await asyncio.shield(self._schedule_rate_limits(False))
            error = result.error if result.stale else None
        except Exception as e:
            error = str(e)

        if error is None:
            if self.consecutive_failures:
                logger.info("Rate limits reachable again after %d failed polls", self.consecutive_failures)
            self.consecutive_failures = 0
            self.current_interval = self.poll_interval
            return

        # Exponential backoff: base * factor^(failures-1), capped
        self.consecutive_failures += 1
        self.current_interval = min(
            self.poll_interval * (_BACKOFF_FACTOR ** (self.consecutive_failures - 1)),
            max(_MAX_POLL_INTERVAL, self.poll_interval),
        )
        logger.debug(
            "Rate-limit poll failed (%d consecutive), next poll in %.0fs: %s",
            self.consecutive_failures, self.current_interval, error,
        )


def _new_executor() -> ThreadPoolExecutor:
    return ThreadPoolExecutor(max_workers=2, thread_name_prefix="sprt-refresh")


def _log_background_failure(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Background rate-limit refresh failed: %s", exc)


def build_service(settings: Settings) -> UsageService:
    """Wire the engine components from settings."""
    claude_dir = settings.claude_dir
    aggregator = RealtimeAggregator(
        claude_dir,
        active_threshold=timedelta(minutes=settings.active_session_minutes),
        recent_window=timedelta(hours=settings.recent_session_hours),
        max_recent_sessions=settings.max_recent_sessions,
        max_projects=settings.max_projects,
        week=timedelta(days=settings.weekly_window_days),
    )
    client = None
    if settings.quota_remote_enabled:
        client = QuotaStatusClient(
            claude_dir,
            url=settings.quota_api_url,
            probe_model=settings.quota_probe_model,
            timeout=settings.quota_timeout_seconds,
            near_limit=settings.near_limit_threshold,
        )
    tracker = RateLimitTracker(
        client=client,
        event_log=RateLimitLogReader(claude_dir / "rate-limits", settings.near_limit_threshold),
        events_provider=aggregator.weighted_events,
        limits=QuotaLimits(
            session_tokens=settings.session_limit_tokens,
            weekly_tokens=settings.weekly_limit_tokens,
            weekly_model_tokens=settings.weekly_model_limit_tokens,
            session_window=timedelta(hours=settings.session_window_hours),
            weekly_window=timedelta(days=settings.weekly_window_days),
            model_family=settings.weekly_model_family,
            near_limit=settings.near_limit_threshold,
        ),
        freshness=timedelta(seconds=settings.rate_limit_freshness_seconds),
    )
    return UsageService(
        aggregator,
        tracker,
        watcher_factory=lambda on_change: ChangeWatcher(
            claude_dir, on_change, debounce_seconds=settings.watch_debounce_ms / 1000,
        ),
        poll_interval=settings.poll_interval_seconds,
        scan_budget=settings.scan_budget_seconds,
    )
