"""Reader for recorded quota-status snapshots.

``~/.claude/rate-limits/**/*.jsonl`` holds one line per observed quota
status, appended whenever a client saw fresh unified rate-limit headers.
The newest line across all files is the best local answer when no remote
query can be made.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from sprt.usage.log_reader import iter_complete_lines, parse_timestamp
from sprt.usage.models import RateLimitSnapshot, SnapshotSource, UsageClaim
from sprt.usage.quota import NEAR_LIMIT_THRESHOLD, status_from_remote

logger = logging.getLogger(__name__)

# record key -> snapshot field
_CLAIM_KEYS = {
    "five_hour": "five_hour",
    "seven_day": "seven_day",
    "seven_day_sonnet": "seven_day_model",
}


def _instant(value: Any) -> datetime | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return parse_timestamp(value)


def _claim(raw: Any, near_limit: float) -> UsageClaim | None:
    if not isinstance(raw, dict):
        return None
    utilization = raw.get("utilization")
    if not isinstance(utilization, (int, float)) or isinstance(utilization, bool):
        return None
    return UsageClaim(
        utilization=float(utilization),
        reset=_instant(raw.get("reset")),
        status=status_from_remote(raw.get("status"), float(utilization), near_limit),
    )


def parse_entry(entry: dict[str, Any], near_limit: float = NEAR_LIMIT_THRESHOLD) -> RateLimitSnapshot | None:
    checked_at = parse_timestamp(entry.get("timestamp"))
    if checked_at is None:
        return None
    claims = {}
    for key, field_name in _CLAIM_KEYS.items():
        claim = _claim(entry.get(key), near_limit)
        if claim is not None:
            claims[field_name] = claim
    if not claims:
        return None
    return RateLimitSnapshot(
        **claims,
        status=entry.get("status") or "unknown",
        representative_claim=entry.get("representative_claim"),
        overage_status=entry.get("overage_status"),
        overage_disabled_reason=entry.get("overage_disabled_reason"),
        overage_reset=_instant(entry.get("overage_reset")),
        source=SnapshotSource.EVENT_LOG,
        checked_at=checked_at,
    )


class RateLimitLogReader:
    """Finds the newest recorded snapshot, re-reading only files that changed."""

    def __init__(self, log_dir: Path, near_limit: float = NEAR_LIMIT_THRESHOLD) -> None:
        self.log_dir = log_dir
        self._near_limit = near_limit
        self._latest_by_file: dict[Path, tuple[int, int, RateLimitSnapshot | None]] = {}
        self.malformed_lines = 0

    def latest(self) -> RateLimitSnapshot | None:
        if not self.log_dir.exists():
            return None
        newest: RateLimitSnapshot | None = None
        for path in self.log_dir.rglob("*.jsonl"):
            snapshot = self._latest_in(path)
            if snapshot is not None and (newest is None or snapshot.checked_at > newest.checked_at):
                newest = snapshot
        return newest

    def _latest_in(self, path: Path) -> RateLimitSnapshot | None:
        try:
            st = path.stat()
        except OSError:
            return None
        cached = self._latest_by_file.get(path)
        if cached is not None and cached[:2] == (st.st_mtime_ns, st.st_size):
            return cached[2]

        newest: RateLimitSnapshot | None = None
        try:
            for raw, _ in iter_complete_lines(path):
                line = raw.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except (json.JSONDecodeError, UnicodeDecodeError):
                    self.malformed_lines += 1
                    continue
                if not isinstance(entry, dict):
                    self.malformed_lines += 1
                    continue
                try:
                    snapshot = parse_entry(entry, self._near_limit)
                except (ValidationError, ValueError, OverflowError, OSError) as e:
                    # wrong-typed field or a timestamp out of range
                    logger.debug("Skipping rate-limit record in %s: %s", path.name, e)
                    self.malformed_lines += 1
                    continue
                if snapshot is not None and (newest is None or snapshot.checked_at >= newest.checked_at):
                    newest = snapshot
        except OSError as e:
            logger.debug("Could not read %s: %s", path, e)
            return None

        self._latest_by_file[path] = (st.st_mtime_ns, st.st_size, newest)
        return newest
