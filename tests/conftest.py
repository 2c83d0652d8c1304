"""Shared test fixtures."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest


# -- Fixtures ------------------------------------------------------------------


@pytest.fixture
def claude_dir(tmp_path: Path) -> Path:
    """An empty fake ~/.claude with a projects/ directory."""
    root = tmp_path / ".claude"
    (root / "projects").mkdir(parents=True)
    return root


@pytest.fixture
def stats_cache_doc() -> dict[str, Any]:
    """A stats-cache.json document as Claude Code writes it."""
    return {
        "version": 2,
        "lastComputedDate": "2026-02-18",
        "dailyActivity": [
            {"date": "2026-02-10", "messageCount": 7, "sessionCount": 1, "toolCallCount": 2},
            {"date": "2026-02-17", "messageCount": 30, "sessionCount": 3, "toolCallCount": 11},
            {"date": "2026-02-19", "messageCount": 40, "sessionCount": 2, "toolCallCount": 9},
        ],
        "dailyModelTokens": [
            {"date": "2026-02-19", "tokensByModel": {"claude-sonnet-4-6": 1000}},
        ],
        "modelUsage": {
            "claude-sonnet-4-6": {
                "inputTokens": 100,
                "outputTokens": 200,
                "cacheReadInputTokens": 3000,
                "cacheCreationInputTokens": 400,
            },
            "claude-opus-4-6": {"inputTokens": 10, "outputTokens": 20},
        },
        "totalSessions": 12,
        "totalMessages": 420,
        "longestSession": {
            "sessionId": "long-1",
            "duration": 7_200_000,
            "messageCount": 90,
            "timestamp": "2026-02-01T09:00:00Z",
        },
        "firstSessionDate": "2026-01-05T08:00:00Z",
        "hourCounts": {"9": 12, "14": 30},
    }


@pytest.fixture
def write_stats_cache(claude_dir: Path):
    def _write(doc: dict[str, Any] | str) -> Path:
        path = claude_dir / "stats-cache.json"
        path.write_text(doc if isinstance(doc, str) else json.dumps(doc), encoding="utf-8")
        return path
    return _write
