"""httpx-based client for the remote quota status.

Anthropic reports subscription quota state in ``anthropic-ratelimit-unified-*``
response headers. A 1-token probe request with the Claude Code OAuth token
is the cheapest way to read them.

All methods return typed snapshots or raise QuotaSourceNotConfigured /
QuotaTimeoutError / QuotaSourceError.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import httpx

from sprt.usage.errors import QuotaSourceError, QuotaSourceNotConfigured, QuotaTimeoutError
from sprt.usage.models import RateLimitSnapshot, SnapshotSource, UsageClaim
from sprt.usage.quota import NEAR_LIMIT_THRESHOLD, status_from_remote

logger = logging.getLogger(__name__)

CREDENTIALS_NAME = ".credentials.json"
_HEADER_PREFIX = "anthropic-ratelimit-unified-"

# claim field -> header infix
_CLAIM_HEADERS = {
    "five_hour": "5h",
    "seven_day": "7d",
    "seven_day_model": "7d_sonnet",
}


@dataclass(frozen=True)
class Credentials:
    access_token: str | None = None
    plan_type: str = "unknown"
    rate_limit_tier: str = "unknown"


def read_credentials(claude_dir: Path) -> Credentials:
    """Read the OAuth token and plan info from .credentials.json."""
    creds_path = claude_dir / CREDENTIALS_NAME
    try:
        with open(creds_path, "r", encoding="utf-8") as f:
            creds = json.load(f)
    except (OSError, json.JSONDecodeError):
        return Credentials()
    oauth = creds.get("claudeAiOauth") if isinstance(creds, dict) else None
    if not isinstance(oauth, dict):
        return Credentials()
    return Credentials(
        access_token=oauth.get("accessToken") or None,
        plan_type=oauth.get("subscriptionType") or "unknown",
        rate_limit_tier=oauth.get("rateLimitTier") or "unknown",
    )


def _float(headers: Mapping[str, str], name: str) -> float | None:
    value = headers.get(_HEADER_PREFIX + name)
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _instant(headers: Mapping[str, str], name: str) -> datetime | None:
    seconds = _float(headers, name)
    if seconds is None:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        logger.debug("Ignoring out-of-range %s header: %s", name, seconds)
        return None


def parse_unified_headers(
    headers: Mapping[str, str],
    checked_at: datetime,
    near_limit: float = NEAR_LIMIT_THRESHOLD,
) -> RateLimitSnapshot:
    """Build a snapshot from unified rate-limit response headers."""
    claims: dict[str, UsageClaim] = {}
    for field_name, infix in _CLAIM_HEADERS.items():
        utilization = _float(headers, f"{infix}-utilization")
        if utilization is None:
            continue
        claims[field_name] = UsageClaim(
            utilization=utilization,
            reset=_instant(headers, f"{infix}-reset"),
            status=status_from_remote(
                headers.get(f"{_HEADER_PREFIX}{infix}-status"), utilization, near_limit,
            ),
        )

    return RateLimitSnapshot(
        **claims,
        status=headers.get(_HEADER_PREFIX + "status", "unknown"),
        representative_claim=headers.get(_HEADER_PREFIX + "representative-claim"),
        overage_status=headers.get(_HEADER_PREFIX + "overage-status"),
        overage_disabled_reason=headers.get(_HEADER_PREFIX + "overage-disabled-reason"),
        overage_reset=_instant(headers, "overage-reset"),
        fallback_percentage=_float(headers, "fallback-percentage"),
        source=SnapshotSource.REMOTE,
        checked_at=checked_at,
    )


class QuotaStatusClient:
    """Synchronous httpx client for the remote quota status."""

    def __init__(
        self,
        claude_dir: Path,
        url: str = "https://api.anthropic.com/v1/messages",
        probe_model: str = "claude-sonnet-4-20250514",
        timeout: float = 10.0,
        near_limit: float = NEAR_LIMIT_THRESHOLD,
    ) -> None:
        self._claude_dir = claude_dir
        self._url = url
        self._probe_model = probe_model
        self._timeout = timeout
        self._near_limit = near_limit

    def _headers(self) -> dict[str, str]:
        token = read_credentials(self._claude_dir).access_token
        if not token:
            raise QuotaSourceNotConfigured(
                "No Claude Code login found", source=str(self._claude_dir / CREDENTIALS_NAME),
            )
        return {
            "Authorization": f"Bearer {token}",
            "anthropic-version": "2023-06-01",
            "anthropic-beta": "oauth-2025-04-20",
            "content-type": "application/json",
        }

    def fetch(self) -> RateLimitSnapshot:
        """POST a 1-token probe and read the quota headers off the response."""
        headers = self._headers()
        try:
            with httpx.Client(timeout=self._timeout) as client:
                resp = client.post(
                    self._url,
                    headers=headers,
                    json={
                        "model": self._probe_model,
                        "max_tokens": 1,
                        "messages": [{"role": "user", "content": "."}],
                    },
                )
        except httpx.TimeoutException as e:
            raise QuotaTimeoutError("Quota status request timed out", source="remote") from e
        except httpx.HTTPError as e:
            raise QuotaSourceError(f"Quota status request failed: {e}", source="remote") from e

        snapshot = parse_unified_headers(
            resp.headers, datetime.now(timezone.utc), self._near_limit,
        )
        # 429 responses still carry the headers; only fail when nothing came back
        if resp.status_code >= 400 and not snapshot.claims():
            raise QuotaSourceError(
                f"Quota status request returned {resp.status_code}", source="remote",
            )
        return snapshot
