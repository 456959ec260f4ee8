"""
clock.py - Time sources

Every component reads time through a Clock so tests and simulations can drive
logical time explicitly, the same way the ledger's advance_time() does.
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Read-only time source."""

    def now(self) -> datetime:
        """Return the current time."""
        ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """
    Logical clock that only moves when told to.

    Time can only move forward, never backward.

    Example:
        clock = ManualClock(datetime(2025, 1, 1))
        clock.advance_time(datetime(2025, 1, 3))
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)

    def now(self) -> datetime:
        return self._current_time

    @property
    def current_time(self) -> datetime:
        return self._current_time

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the logical clock to a new time.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    def advance_by(self, delta) -> datetime:
        """Advance by a timedelta and return the new time."""
        self.advance_time(self._current_time + delta)
        return self._current_time
