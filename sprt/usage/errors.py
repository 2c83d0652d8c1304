"""Error kinds raised by the usage engine.

Per-record and per-file problems never surface as exceptions; they are
absorbed into scan counters. These classes mark the conditions a caller
has to tell apart to render a useful message.
"""

from __future__ import annotations


class UsageDataError(Exception):
    """Base class; ``source`` names the file or quota the error is about."""

    def __init__(self, message: str, source: str | None = None) -> None:
        self.source = source
        super().__init__(message)


class DataUnavailableError(UsageDataError):
    """Raised when a data source does not exist yet (product never used / not logged in)."""


class ParseError(UsageDataError):
    """Raised when a data source exists but cannot be parsed."""


class StatsCacheParseError(ParseError):
    """Raised when stats-cache.json is malformed."""


class QuotaSourceError(UsageDataError):
    """Raised when the remote quota-status query fails."""


class QuotaSourceNotConfigured(QuotaSourceError):
    """Raised when no remote quota source is available (no credentials)."""


class QuotaTimeoutError(QuotaSourceError):
    """Raised when the remote quota-status query exceeds its deadline."""
