"""Change watcher — one coalesced "data changed" signal per burst of writes.

An actively streaming session appends to its log many times per second.
Filesystem events feed a Debouncer: the first event moves it to PENDING and
starts a timer, every further event restarts the timer, and only when the
timer runs out is the callback invoked, once, before returning to IDLE.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from sprt.usage.stats_cache import STATS_CACHE_NAME

logger = logging.getLogger(__name__)

_WATCHED_EVENTS = {EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED}


class DebounceState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"


class Debouncer:
    """Collapses bursts of ``trigger()`` calls into a single callback."""

    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self._state = DebounceState.IDLE
        self._timer: threading.Timer | None = None
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def state(self) -> DebounceState:
        return self._state

    def trigger(self) -> None:
        """Record a change; (re)start the quiet-period timer."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            self._state = DebounceState.PENDING
            self._timer = threading.Timer(self.delay, self._fire, args=(self._generation,))
            self._timer.daemon = True
            self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._generation += 1
            self._state = DebounceState.IDLE

    def _fire(self, generation: int) -> None:
        with self._lock:
            # a timer cancelled after it started running must not emit
            if generation != self._generation or self._state != DebounceState.PENDING:
                return
            self._state = DebounceState.IDLE
            self._timer = None
        try:
            self.callback()
        except Exception:
            logger.exception("Change callback error")


def is_relevant_path(path: str | bytes) -> bool:
    """Session/rate-limit logs and the stats cache; everything else is noise."""
    name = os.path.basename(os.fsdecode(path))
    return name == STATS_CACHE_NAME or name.endswith(".jsonl")


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, debouncer: Debouncer) -> None:
        super().__init__()
        self._debouncer = debouncer

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in _WATCHED_EVENTS or event.is_directory:
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        if any(p and is_relevant_path(p) for p in paths):
            self._debouncer.trigger()


class ChangeWatcher:
    """Watches the Claude data directory and emits debounced change signals."""

    def __init__(
        self,
        claude_dir: Path,
        on_change: Callable[[], None],
        debounce_seconds: float = 0.3,
    ) -> None:
        self.claude_dir = claude_dir
        self.debouncer = Debouncer(debounce_seconds, on_change)
        self._handler = _ChangeHandler(self.debouncer)
        self._observer: Observer | None = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        """Start the observer thread on whichever data directories exist."""
        if self._observer is not None:
            return
        if not self.claude_dir.exists():
            logger.info("Not watching %s: directory does not exist", self.claude_dir)
            return

        observer = Observer()
        observer.schedule(self._handler, str(self.claude_dir), recursive=False)
        watched = [self.claude_dir.name]
        for sub in ("projects", "rate-limits"):
            path = self.claude_dir / sub
            if path.is_dir():
                observer.schedule(self._handler, str(path), recursive=True)
                watched.append(sub)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info(
            "Change watcher started on %s (debounce=%.0fms)",
            ", ".join(watched), self.debouncer.delay * 1000,
        )

    def stop(self) -> None:
        self.debouncer.cancel()
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        logger.info("Change watcher stopped")
