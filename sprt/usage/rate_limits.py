"""Rate limit tracking with a short-lived cache.

The UI polls every few seconds but a remote quota query costs a request,
so answers are cached for ``freshness`` and re-derived only when forced,
when the cache is older than that, or when a cached claim has reset.

Sources, in order: the remote quota status (when configured), the newest
recorded snapshot in the rate-limit event logs, and finally a local
estimate from session-log token counts.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sprt.usage.errors import DataUnavailableError, QuotaSourceError, QuotaSourceNotConfigured
from sprt.usage.models import (
    ClaimStatus,
    RateLimitResult,
    RateLimitSnapshot,
    SnapshotSource,
    UsageClaim,
    WeightedEvent,
)
from sprt.usage.quota import NEAR_LIMIT_THRESHOLD, estimate_claim, snapshot_needs_refresh
from sprt.usage.quota_client import QuotaStatusClient
from sprt.usage.rate_limit_log import RateLimitLogReader

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaLimits:
    """Estimated caps for local estimation (Anthropic doesn't publish exact numbers)."""

    session_tokens: int = 15_000_000
    weekly_tokens: int = 150_000_000
    weekly_model_tokens: int = 100_000_000
    session_window: timedelta = timedelta(hours=5)
    weekly_window: timedelta = timedelta(days=7)
    model_family: str = "sonnet"
    near_limit: float = NEAR_LIMIT_THRESHOLD


def _overall_status(claims: dict[str, UsageClaim]) -> tuple[str, str | None]:
    if not claims:
        return "unknown", None
    name, worst = max(claims.items(), key=lambda kv: kv[1].utilization)
    if worst.status == ClaimStatus.EXHAUSTED:
        return "rejected", name
    if worst.status == ClaimStatus.NEAR_LIMIT:
        return "allowed_warning", name
    return "allowed", name


def estimate_snapshot(
    events: Iterable[WeightedEvent],
    now: datetime,
    limits: QuotaLimits = QuotaLimits(),
) -> RateLimitSnapshot:
    """Derive all three claims from local events. Display-only fallback."""
    events = list(events)
    family = limits.model_family.lower()
    model_events = [e for e in events if family in (e.model or "").lower()]

    claims = {
        "five_hour": estimate_claim(
            events, limits.session_window, now, limits.session_tokens, limits.near_limit,
        ),
        "seven_day": estimate_claim(
            events, limits.weekly_window, now, limits.weekly_tokens, limits.near_limit,
        ),
        "seven_day_model": estimate_claim(
            model_events, limits.weekly_window, now, limits.weekly_model_tokens, limits.near_limit,
        ),
    }
    status, representative = _overall_status(claims)
    return RateLimitSnapshot(
        **claims,
        status=status,
        representative_claim=representative,
        source=SnapshotSource.LOCAL_ESTIMATE,
        checked_at=now,
    )


class RateLimitTracker:
    """Holds the last rate-limit answer and decides when to recompute it."""

    def __init__(
        self,
        *,
        client: QuotaStatusClient | None = None,
        event_log: RateLimitLogReader | None = None,
        events_provider: Callable[[], Iterable[WeightedEvent]] | None = None,
        limits: QuotaLimits = QuotaLimits(),
        freshness: timedelta = timedelta(seconds=30),
    ) -> None:
        self.client = client
        self.event_log = event_log
        self.events_provider = events_provider
        self.limits = limits
        self.freshness = freshness
        self._lock = threading.Lock()
        self._result: RateLimitResult | None = None
        self._result_at: datetime | None = None
        self._good: RateLimitSnapshot | None = None

    @property
    def cached(self) -> RateLimitResult | None:
        return self._result

    def cached_utilization(self) -> float | None:
        """5-hour utilization from the cache, without triggering a query."""
        result = self._result
        if result is None or result.snapshot.five_hour is None:
            return None
        return result.snapshot.five_hour.utilization

    def get_rate_limits(self, force: bool = False, now: datetime | None = None) -> RateLimitResult:
        """Return current rate limits, recomputing only when needed.

        Raises:
            DataUnavailableError: the remote query failed and nothing is cached.
        """
        now = now or datetime.now(timezone.utc)
        with self._lock:
            if not force and self._is_fresh(now):
                return self._result  # type: ignore[return-value]

            try:
                snapshot = self._derive(now)
            except QuotaSourceError as e:
                self._result_at = now
                if self._good is None:
                    self._result = None
                    raise DataUnavailableError(
                        f"Rate limits unavailable: {e}", source=e.source or "remote",
                    ) from e
                logger.warning("Quota status query failed, serving cached answer: %s", e)
                self._result = RateLimitResult(snapshot=self._good, stale=True, error=str(e))
                return self._result

            self._good = snapshot
            self._result = RateLimitResult(snapshot=snapshot)
            self._result_at = now
            return self._result

    # -- internals -------------------------------------------------------------

    def _is_fresh(self, now: datetime) -> bool:
        if self._result is None or self._result_at is None:
            return False
        if snapshot_needs_refresh(self._result.snapshot, now):
            return False
        return now - self._result_at < self.freshness

    def _derive(self, now: datetime) -> RateLimitSnapshot:
        if self.client is not None:
            try:
                return self.client.fetch()
            except QuotaSourceNotConfigured as e:
                logger.debug("Remote quota status not configured: %s", e)

        if self.event_log is not None:
            recorded = self.event_log.latest()
            if recorded is not None and not snapshot_needs_refresh(recorded, now):
                return recorded

        events = self.events_provider() if self.events_provider is not None else ()
        return estimate_snapshot(events, now, self.limits)
