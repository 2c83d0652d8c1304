"""Builders for fake Claude Code session logs."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


NOW = datetime(2026, 2, 19, 12, 0, 0, tzinfo=timezone.utc)


def iso(ts: datetime) -> str:
    return ts.isoformat().replace("+00:00", "Z")


def user_entry(ts: datetime, session_id: str = "sess-1", text: str = "hello") -> dict[str, Any]:
    return {
        "type": "user",
        "message": {"role": "user", "content": text},
        "timestamp": iso(ts),
        "sessionId": session_id,
    }


def assistant_entry(
    ts: datetime,
    session_id: str = "sess-1",
    model: str = "claude-sonnet-4-6",
    input_tokens: int = 100,
    output_tokens: int = 50,
    cache_read: int = 0,
    cache_creation: int = 0,
    message_id: str | None = None,
    request_id: str | None = None,
    tool_call: bool = False,
) -> dict[str, Any]:
    content: list[dict[str, Any]] = [{"type": "text", "text": "ok"}]
    if tool_call:
        content.append({"type": "tool_use", "id": "tu_1", "name": "Read", "input": {}})
    message: dict[str, Any] = {
        "role": "assistant",
        "model": model,
        "content": content,
        "usage": {
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "cache_read_input_tokens": cache_read,
            "cache_creation_input_tokens": cache_creation,
        },
    }
    if message_id:
        message["id"] = message_id
    entry: dict[str, Any] = {
        "type": "assistant",
        "message": message,
        "timestamp": iso(ts),
        "sessionId": session_id,
    }
    if request_id:
        entry["requestId"] = request_id
    return entry


def write_jsonl(path: Path, entries: list[dict[str, Any]], append: bool = False) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a" if append else "w", encoding="utf-8") as f:
        for entry in entries:
            f.write(json.dumps(entry) + "\n")
    return path
