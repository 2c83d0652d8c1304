"""sprt — Claude Code usage telemetry and rate-limit monitor."""

__version__ = "0.1.0"
