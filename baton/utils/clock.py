"""Centralised clock helpers — single source of truth for 'now'.

Budget windows, checkpoint timestamps and task records all read time from
here, so tests can patch one function instead of every datetime.now() call.
"""

from __future__ import annotations

from datetime import datetime, timezone


def now_utc() -> datetime:
    """Return the current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)

