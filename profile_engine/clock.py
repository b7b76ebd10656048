"""
Clock abstractions for deterministic behavior.

Notes
-----
Engine code must not access wall-clock time directly. Callers provide a Clock.
This enables deterministic tests, journals, and run identifiers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

ISO_8601_UTC_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class Clock(Protocol):
    """A source of time for deterministic behavior."""

    def now(self) -> datetime:
        """
        Return the current time.

        Returns
        -------
        datetime
            A timezone-aware datetime.
        """
        ...


@dataclass(frozen=True, slots=True)
class SystemClock:
    """Clock that returns the current system time in UTC."""

    def now(self) -> datetime:
        """Return the current system time as an aware UTC datetime."""
        return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class FixedClock:
    """Clock that always returns a fixed time (useful for tests)."""

    fixed_time: datetime

    def now(self) -> datetime:
        """Return the fixed time, assuming UTC when it is naive."""
        if self.fixed_time.tzinfo is None:
            return self.fixed_time.replace(tzinfo=timezone.utc)
        return self.fixed_time


def format_utc(dt: datetime) -> str:
    """
    Serialize a datetime as a UTC ISO-8601 string with a `Z` suffix.

    Raises
    ------
    ValueError
        If `dt` is naive (has no timezone).
    """
    if dt.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return dt.astimezone(timezone.utc).strftime(ISO_8601_UTC_FORMAT)
