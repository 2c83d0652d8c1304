"""Tests for the incremental session log reader."""

from __future__ import annotations

import json
import os
from datetime import timedelta, timezone
from pathlib import Path

from logfiles import NOW, assistant_entry, user_entry, write_jsonl
from sprt.usage.log_reader import (
    SessionLogReader,
    iter_complete_lines,
    parse_record,
    parse_timestamp,
)


def _session_path(claude_dir: Path, name: str = "sess-1", project: str = "-home-me-app") -> Path:
    return claude_dir / "projects" / project / f"{name}.jsonl"


def _bump_mtime(path: Path) -> None:
    st = path.stat()
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))


# -- parse_timestamp / parse_record ---------------------------------------------


class TestParseTimestamp:
    def test_z_suffix(self) -> None:
        ts = parse_timestamp("2026-02-19T10:00:05.000Z")
        assert ts is not None
        assert ts.tzinfo == timezone.utc
        assert ts.hour == 10 and ts.second == 5

    def test_offset_is_normalized_to_utc(self) -> None:
        ts = parse_timestamp("2026-02-19T12:00:00+02:00")
        assert ts is not None
        assert ts.hour == 10

    def test_garbage(self) -> None:
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(None) is None
        assert parse_timestamp(12345) is None


class TestParseRecord:
    def test_assistant_tokens(self) -> None:
        entry = assistant_entry(NOW, input_tokens=100, output_tokens=300, cache_read=2000, cache_creation=500)
        event = parse_record(entry, "fallback", "proj")
        assert event is not None
        assert event.role == "assistant"
        assert event.session_id == "sess-1"
        assert event.project == "proj"
        assert event.model == "claude-sonnet-4-6"
        assert event.total_tokens == 2900
        assert event.counts_as_message

    def test_user_has_no_tokens(self) -> None:
        event = parse_record(user_entry(NOW), "fallback", "proj")
        assert event is not None
        assert event.role == "user"
        assert event.total_tokens == 0
        assert not event.counts_as_message

    def test_session_id_falls_back_to_file_stem(self) -> None:
        entry = user_entry(NOW)
        del entry["sessionId"]
        event = parse_record(entry, "from-file", "proj")
        assert event is not None
        assert event.session_id == "from-file"

    def test_tool_use_block(self) -> None:
        event = parse_record(assistant_entry(NOW, tool_call=True), "s", "p")
        assert event is not None
        assert event.has_tool_call

    def test_skips_non_messages(self) -> None:
        assert parse_record({"type": "summary", "summary": "x"}, "s", "p") is None
        meta = user_entry(NOW)
        meta["isMeta"] = True
        assert parse_record(meta, "s", "p") is None

    def test_skips_synthetic_and_usage_less(self) -> None:
        synthetic = assistant_entry(NOW, model="<synthetic>")
        assert parse_record(synthetic, "s", "p") is None
        no_usage = assistant_entry(NOW)
        del no_usage["message"]["usage"]
        assert parse_record(no_usage, "s", "p") is None

    def test_missing_timestamp(self) -> None:
        entry = assistant_entry(NOW)
        del entry["timestamp"]
        assert parse_record(entry, "s", "p") is None


# -- iter_complete_lines -------------------------------------------------------


class TestCompleteLines:
    def test_partial_trailing_line_is_held_back(self, tmp_path: Path) -> None:
        path = tmp_path / "log.jsonl"
        path.write_bytes(b'{"a": 1}\n{"b": 2}\n{"c": ')
        lines = list(iter_complete_lines(path))
        assert [line for line, _ in lines] == [b'{"a": 1}\n', b'{"b": 2}\n']
        assert lines[-1][1] == len(b'{"a": 1}\n{"b": 2}\n')

    def test_resume_from_offset(self, tmp_path: Path) -> None:
        path = tmp_path / "log.jsonl"
        path.write_bytes(b'{"a": 1}\n{"b": 2}\n')
        lines = list(iter_complete_lines(path, offset=len(b'{"a": 1}\n')))
        assert [line for line, _ in lines] == [b'{"b": 2}\n']


# -- SessionLogReader -----------------------------------------------------------


class TestSessionLogReader:
    def test_reads_events_and_project(self, claude_dir: Path) -> None:
        path = write_jsonl(_session_path(claude_dir), [
            user_entry(NOW),
            assistant_entry(NOW + timedelta(seconds=5)),
        ])
        reader = SessionLogReader(claude_dir / "projects")
        batches = list(reader.iter_batches())
        assert len(batches) == 1
        batch = batches[0]
        assert batch.path == path
        assert batch.session_id == "sess-1"
        assert batch.project == "-home-me-app"
        assert [e.role for e in batch.events] == ["user", "assistant"]
        assert reader.last_scan.files_scanned == 1

    def test_zero_records_is_not_an_error(self, claude_dir: Path) -> None:
        reader = SessionLogReader(claude_dir / "projects")
        assert list(reader.iter_events()) == []
        assert reader.last_scan.files_scanned == 0
        assert reader.last_scan.errors == {}

    def test_missing_projects_dir(self, tmp_path: Path) -> None:
        reader = SessionLogReader(tmp_path / "nope")
        assert list(reader.iter_events()) == []

    def test_malformed_lines_are_counted_and_skipped(self, claude_dir: Path) -> None:
        path = _session_path(claude_dir)
        path.parent.mkdir(parents=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(json.dumps(user_entry(NOW)) + "\n")
            f.write("{not json\n")
            f.write("[1, 2, 3]\n")
            f.write("\n")
            f.write(json.dumps(assistant_entry(NOW)) + "\n")
        reader = SessionLogReader(claude_dir / "projects")
        events = list(reader.iter_events())
        assert len(events) == 2
        assert reader.last_scan.malformed_lines == 2

    def test_partial_line_completed_later(self, claude_dir: Path) -> None:
        path = _session_path(claude_dir)
        path.parent.mkdir(parents=True)
        full = json.dumps(assistant_entry(NOW)) + "\n"
        path.write_text(json.dumps(user_entry(NOW)) + "\n" + full[:20], encoding="utf-8")

        reader = SessionLogReader(claude_dir / "projects")
        first = list(reader.iter_events())
        assert [e.role for e in first] == ["user"]
        assert reader.last_scan.malformed_lines == 0

        with open(path, "a", encoding="utf-8") as f:
            f.write(full[20:])
        _bump_mtime(path)
        second = list(reader.iter_events())
        assert [e.role for e in second] == ["assistant"]
        assert reader.last_scan.malformed_lines == 0

    def test_incremental_reads_only_new_lines(self, claude_dir: Path) -> None:
        path = write_jsonl(_session_path(claude_dir), [user_entry(NOW), assistant_entry(NOW)])
        reader = SessionLogReader(claude_dir / "projects")
        assert len(list(reader.iter_events())) == 2

        write_jsonl(path, [assistant_entry(NOW + timedelta(minutes=1))], append=True)
        _bump_mtime(path)
        new = list(reader.iter_events())
        assert len(new) == 1
        assert new[0].timestamp == NOW + timedelta(minutes=1)

    def test_unchanged_file_is_skipped(self, claude_dir: Path) -> None:
        write_jsonl(_session_path(claude_dir), [user_entry(NOW)])
        reader = SessionLogReader(claude_dir / "projects")
        list(reader.iter_batches())
        assert list(reader.iter_batches()) == []
        assert reader.last_scan.files_skipped == 1

    def test_truncated_file_is_reread_from_start(self, claude_dir: Path) -> None:
        path = write_jsonl(_session_path(claude_dir), [
            user_entry(NOW), assistant_entry(NOW), assistant_entry(NOW),
        ])
        reader = SessionLogReader(claude_dir / "projects")
        list(reader.iter_batches())

        write_jsonl(path, [user_entry(NOW + timedelta(minutes=2))])
        _bump_mtime(path)
        batches = list(reader.iter_batches())
        assert len(batches) == 1
        assert batches[0].reset
        assert len(batches[0].events) == 1

    def test_duplicate_message_ids_are_counted_once(self, claude_dir: Path) -> None:
        dup = assistant_entry(NOW, message_id="msg_1", request_id="req_1")
        write_jsonl(_session_path(claude_dir), [dup, dup, assistant_entry(NOW, message_id="msg_2", request_id="req_2")])
        reader = SessionLogReader(claude_dir / "projects")
        assert len(list(reader.iter_events())) == 2

    def test_modified_after_skips_old_files(self, claude_dir: Path) -> None:
        path = write_jsonl(_session_path(claude_dir), [user_entry(NOW)])
        reader = SessionLogReader(claude_dir / "projects")
        assert list(reader.iter_batches(modified_after=path.stat().st_mtime + 10)) == []
        assert reader.last_scan.files_skipped == 1
        assert path in reader.last_scan.seen

    def test_tool_results_are_ignored(self, claude_dir: Path) -> None:
        write_jsonl(claude_dir / "projects" / "p" / "tool-results" / "x.jsonl", [user_entry(NOW)])
        reader = SessionLogReader(claude_dir / "projects")
        assert reader.session_files() == []

    def test_forget_rereads(self, claude_dir: Path) -> None:
        path = write_jsonl(_session_path(claude_dir), [user_entry(NOW)])
        reader = SessionLogReader(claude_dir / "projects")
        list(reader.iter_events())
        assert reader.tracked_files() == [path]
        reader.forget(path)
        assert len(list(reader.iter_events())) == 1
