"""Quota window arithmetic.

Pure functions, no I/O: decide whether a claim still holds at ``now`` and,
when no remote status exists, estimate a claim from timestamped weights.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

from sprt.usage.models import ClaimStatus, RateLimitSnapshot, UsageClaim, WeightedEvent

NEAR_LIMIT_THRESHOLD = 0.8

FIVE_HOUR = timedelta(hours=5)
SEVEN_DAY = timedelta(days=7)


def classify(utilization: float, near_limit: float = NEAR_LIMIT_THRESHOLD) -> ClaimStatus:
    if utilization >= 1.0:
        return ClaimStatus.EXHAUSTED
    if utilization >= near_limit:
        return ClaimStatus.NEAR_LIMIT
    return ClaimStatus.NORMAL


def status_from_remote(
    tag: str | None,
    utilization: float,
    near_limit: float = NEAR_LIMIT_THRESHOLD,
) -> ClaimStatus:
    """Combine the remote status tag with the utilization-derived status.

    The remote tag can only make the status worse: ``rejected`` is
    exhausted whatever the number says.
    """
    local = classify(utilization, near_limit)
    if tag == "rejected":
        return ClaimStatus.EXHAUSTED
    if tag == "allowed_warning" and local == ClaimStatus.NORMAL:
        return ClaimStatus.NEAR_LIMIT
    return local


def display_percent(utilization: float) -> int:
    """Utilization as a whole percentage, capped to 0..100 for display."""
    return round(min(max(utilization, 0.0), 1.0) * 100)


def claim_is_valid(claim: UsageClaim, now: datetime) -> bool:
    """A claim holds until its reset instant; an unknown reset never expires it."""
    return claim.reset is None or claim.reset > now


def snapshot_needs_refresh(snapshot: RateLimitSnapshot, now: datetime) -> bool:
    return any(not claim_is_valid(c, now) for c in snapshot.claims().values())


def events_in_window(
    events: Iterable[WeightedEvent],
    window: timedelta,
    now: datetime,
) -> list[WeightedEvent]:
    start = now - window
    return [e for e in events if start < e.timestamp <= now]


def estimate_claim(
    events: Iterable[WeightedEvent],
    window: timedelta,
    now: datetime,
    ceiling: float,
    near_limit: float = NEAR_LIMIT_THRESHOLD,
) -> UsageClaim:
    """Estimate a rolling-window claim from local events.

    Utilization is consumed weight over ``ceiling`` and is not capped at 1.0.
    The window resets when its earliest event slides out of it.
    """
    if ceiling <= 0:
        return UsageClaim(utilization=0.0, reset=None, status=ClaimStatus.UNKNOWN)

    in_window = events_in_window(events, window, now)
    consumed = sum(max(e.weight, 0.0) for e in in_window)
    utilization = max(0.0, consumed / ceiling)
    reset = min(e.timestamp for e in in_window) + window if in_window else None
    return UsageClaim(
        utilization=utilization,
        reset=reset,
        status=classify(utilization, near_limit),
    )


def format_duration(seconds: int) -> str:
    """Format seconds into a human-readable duration like '2h 13m' or '6d 4h'."""
    if seconds <= 0:
        return "now"
    days = seconds // 86400
    hours = (seconds % 86400) // 3600
    minutes = (seconds % 3600) // 60
    if days > 0:
        return f"{days}d {hours}h" if hours else f"{days}d"
    if hours > 0:
        return f"{hours}h {minutes}m" if minutes else f"{hours}h"
    return f"{minutes}m"


def resets_in(claim: UsageClaim, now: datetime) -> str:
    if claim.reset is None:
        return "unknown"
    return format_duration(int((claim.reset - now).total_seconds()))
