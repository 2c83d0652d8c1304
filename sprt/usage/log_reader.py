"""Incremental reader for Claude Code session logs.

Claude Code appends one JSON record per line to
``~/.claude/projects/<project>/<session>.jsonl`` while a session runs. The
writer is another process, so any scan can race with an append: only
newline-terminated lines are consumed and the byte offset after the last
complete line is remembered per file. The next scan resumes from there and
picks up the rest of a half-written record once it is finished.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sprt.usage.models import ActivityEvent

logger = logging.getLogger(__name__)

_SKIP_DIR_PARTS = {"tool-results"}


@dataclass
class FileWatermark:
    """How far a file has been consumed, and what it looked like then."""

    mtime_ns: int
    size: int
    offset: int = 0
    seen_ids: set[str] = field(default_factory=set)


@dataclass
class ScanStats:
    """Counters for one scan pass. Problems are counted here, never raised."""

    files_scanned: int = 0
    files_skipped: int = 0
    malformed_lines: int = 0
    errors: dict[str, str] = field(default_factory=dict)
    seen: set[Path] = field(default_factory=set)  # every session file present


@dataclass
class FileBatch:
    """New events read from one file during a scan."""

    path: Path
    session_id: str
    project: str
    events: list[ActivityEvent]
    reset: bool = False  # file shrank; previously read events are void
    mtime: float = 0.0


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed) into an aware UTC datetime."""
    if not isinstance(value, str) or not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def iter_complete_lines(path: Path, offset: int = 0) -> Iterator[tuple[bytes, int]]:
    """Yield ``(line, end_offset)`` for each newline-terminated line after ``offset``.

    A trailing line without a newline is still being written and is not
    yielded; ``end_offset`` of the last yielded line is where to resume.
    """
    with open(path, "rb") as f:
        f.seek(offset)
        position = offset
        for line in f:
            if not line.endswith(b"\n"):
                return
            position += len(line)
            yield line, position


def _has_tool_call(content: Any) -> bool:
    if not isinstance(content, list):
        return False
    return any(isinstance(b, dict) and b.get("type") == "tool_use" for b in content)


def _token(usage: dict[str, Any], key: str) -> int:
    value = usage.get(key, 0) or 0
    return value if isinstance(value, int) else 0


def parse_record(
    entry: dict[str, Any],
    session_id: str,
    project: str,
) -> ActivityEvent | None:
    """Turn one decoded log record into an ActivityEvent.

    Returns None for records that are not messages (summaries, snapshots,
    meta entries) or lack a usable timestamp.
    """
    role = entry.get("type")
    if role not in ("user", "assistant"):
        return None
    if entry.get("isMeta"):
        return None

    timestamp = parse_timestamp(entry.get("timestamp"))
    if timestamp is None:
        return None

    message = entry.get("message")
    if not isinstance(message, dict):
        message = {}

    sid = entry.get("sessionId") or session_id

    if role == "user":
        return ActivityEvent(
            timestamp=timestamp,
            role="user",
            session_id=sid,
            project=project,
        )

    usage = message.get("usage")
    if not isinstance(usage, dict):
        return None
    model = message.get("model")
    if model == "<synthetic>":
        return None

    return ActivityEvent(
        timestamp=timestamp,
        role="assistant",
        session_id=sid,
        project=project,
        model=model if isinstance(model, str) else None,
        input_tokens=_token(usage, "input_tokens"),
        output_tokens=_token(usage, "output_tokens"),
        cache_read_tokens=_token(usage, "cache_read_input_tokens"),
        cache_creation_tokens=_token(usage, "cache_creation_input_tokens"),
        has_tool_call=_has_tool_call(message.get("content")),
    )


def _dedupe_key(entry: dict[str, Any]) -> str | None:
    message = entry.get("message")
    message_id = message.get("id") if isinstance(message, dict) else None
    request_id = entry.get("requestId")
    if message_id and request_id:
        return f"{message_id}:{request_id}"
    return None


class SessionLogReader:
    """Scans a projects directory, re-reading only what changed since last time."""

    def __init__(self, projects_dir: Path) -> None:
        self.projects_dir = projects_dir
        self._watermarks: dict[Path, FileWatermark] = {}
        self.last_scan = ScanStats()

    def session_files(self) -> list[Path]:
        if not self.projects_dir.exists():
            return []
        try:
            files = list(self.projects_dir.rglob("*.jsonl"))
        except OSError as e:
            logger.debug("Could not list %s: %s", self.projects_dir, e)
            return []
        return [p for p in files if not _SKIP_DIR_PARTS.intersection(p.parts)]

    def _project_of(self, path: Path) -> str:
        try:
            parts = path.relative_to(self.projects_dir).parts
        except ValueError:
            return ""
        return parts[0] if len(parts) > 1 else ""

    def iter_batches(self, modified_after: float | None = None) -> Iterator[FileBatch]:
        """Yield new events per changed file.

        Args:
            modified_after: Skip files whose mtime (epoch seconds) is not
                            newer than this. None scans every file.
        """
        stats = ScanStats()
        self.last_scan = stats

        for path in self.session_files():
            try:
                st = path.stat()
            except OSError as e:
                stats.errors[str(path)] = str(e)
                continue
            stats.seen.add(path)

            if modified_after is not None and st.st_mtime <= modified_after:
                stats.files_skipped += 1
                continue

            mark = self._watermarks.get(path)
            if mark is not None and mark.mtime_ns == st.st_mtime_ns and mark.size == st.st_size:
                stats.files_skipped += 1
                continue

            reset = False
            if mark is None or st.st_size < mark.offset:
                reset = mark is not None
                mark = FileWatermark(mtime_ns=st.st_mtime_ns, size=st.st_size)

            project = self._project_of(path)
            events = self._read_new_events(path, mark, project, stats)

            mark.mtime_ns = st.st_mtime_ns
            mark.size = st.st_size
            self._watermarks[path] = mark
            stats.files_scanned += 1

            yield FileBatch(
                path=path,
                session_id=path.stem,
                project=project,
                events=events,
                reset=reset,
                mtime=st.st_mtime,
            )

        if stats.malformed_lines or stats.errors:
            logger.debug(
                "Session scan: %d files read, %d malformed lines, %d unreadable",
                stats.files_scanned, stats.malformed_lines, len(stats.errors),
            )

    def iter_events(self, modified_after: float | None = None) -> Iterator[ActivityEvent]:
        """Lazy stream of new ActivityEvents across all changed session files."""
        for batch in self.iter_batches(modified_after):
            yield from batch.events

    def forget(self, path: Path) -> None:
        """Drop the watermark for ``path`` so the next scan reads it from the start."""
        self._watermarks.pop(path, None)

    def tracked_files(self) -> list[Path]:
        return list(self._watermarks)

    # -- internals -------------------------------------------------------------

    def _read_new_events(
        self,
        path: Path,
        mark: FileWatermark,
        project: str,
        stats: ScanStats,
    ) -> list[ActivityEvent]:
        events: list[ActivityEvent] = []
        try:
            for raw, end in iter_complete_lines(path, mark.offset):
                mark.offset = end
                line = raw.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except (json.JSONDecodeError, UnicodeDecodeError):
                    stats.malformed_lines += 1
                    continue
                if not isinstance(entry, dict):
                    stats.malformed_lines += 1
                    continue

                key = _dedupe_key(entry)
                if key is not None:
                    if key in mark.seen_ids:
                        continue
                    mark.seen_ids.add(key)

                event = parse_record(entry, path.stem, project)
                if event is not None:
                    events.append(event)
        except OSError as e:
            logger.debug("Could not read %s: %s", path, e)
            stats.errors[str(path)] = str(e)
        return events
