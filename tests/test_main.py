"""Tests for the ``sprt status`` command."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from rich.console import Console

import sprt.main as cli
from sprt.usage.models import (
    ClaimStatus,
    MergedStats,
    ProjectUsage,
    RateLimitResult,
    RateLimitSnapshot,
    RealtimeStats,
    SnapshotSource,
    TokenUsage,
    UsageClaim,
    UsageView,
)


def _view() -> UsageView:
    return UsageView(
        merged=MergedStats(),
        realtime=RealtimeStats(
            today_messages=12,
            today_tokens=TokenUsage(input=1000, output=234),
            week_messages=40,
            week_tokens=TokenUsage(input=12000, output=3000, cache_read=500),
            active_sessions=1,
        ),
        projects=[ProjectUsage(project="-home-me-app", session_count=3, total_messages=57)],
        computed_at=datetime.now(timezone.utc),
    )


def _limits() -> RateLimitResult:
    now = datetime.now(timezone.utc)
    return RateLimitResult(snapshot=RateLimitSnapshot(
        five_hour=UsageClaim(utilization=0.83, reset=now + timedelta(hours=2), status=ClaimStatus.NEAR_LIMIT),
        seven_day=UsageClaim(utilization=0.4, status=ClaimStatus.NORMAL),
        source=SnapshotSource.EVENT_LOG,
        checked_at=now,
    ))


@pytest.fixture
def recorded(monkeypatch) -> Console:
    console = Console(record=True, width=120)
    monkeypatch.setattr(cli, "console", console)
    return console


def _stub_collect(monkeypatch, result) -> list[bool]:
    forces: list[bool] = []

    async def collect(force: bool):
        forces.append(force)
        return result

    monkeypatch.setattr(cli, "_collect", collect)
    return forces


class TestStatus:
    def test_prints_activity_and_limits(self, monkeypatch, recorded) -> None:
        forces = _stub_collect(monkeypatch, (_view(), _limits(), None))
        cli.run_status(force=True)

        out = recorded.export_text()
        assert forces == [True]
        assert "1,234" in out
        assert "15,500" in out
        assert "Session (5h)" in out
        assert "83%" in out
        assert "near_limit" in out
        assert "event_log" in out
        assert "-home-me-app" in out
        assert "57" in out

    def test_limits_unavailable(self, monkeypatch, recorded) -> None:
        _stub_collect(monkeypatch, (_view(), None, "Rate limits unavailable: timed out"))
        cli.run_status()

        out = recorded.export_text()
        assert "1,234" in out
        assert "timed out" in out

    def test_pending_view(self, monkeypatch, recorded) -> None:
        _stub_collect(monkeypatch, (UsageView.pending(), None, "no data"))
        cli.run_status()
        assert "REST" in recorded.export_text()

    def test_stale_limits_are_flagged(self, monkeypatch, recorded) -> None:
        stale = RateLimitResult(snapshot=_limits().snapshot, stale=True, error="connection refused")
        _stub_collect(monkeypatch, (_view(), stale, None))
        cli.run_status()
        assert "Showing cached limits: connection refused" in recorded.export_text()


class TestMain:
    def test_status_command(self, monkeypatch) -> None:
        calls: list[bool] = []
        monkeypatch.setattr(cli, "run_status", lambda force=False: calls.append(force))
        monkeypatch.setattr("sys.argv", ["sprt", "status", "--force"])
        cli.main()
        assert calls == [True]

    def test_no_command_exits(self, monkeypatch) -> None:
        monkeypatch.setattr("sys.argv", ["sprt"])
        with pytest.raises(SystemExit):
            cli.main()
