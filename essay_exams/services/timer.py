"""
Exam countdown.

Everything here is a pure function of ``(end_time, now)`` so that the
server, the client display and the tests agree on the same numbers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

ENDING_SOON = timedelta(minutes=5)


def remaining_time(end_time: datetime, now: datetime) -> timedelta:
    """Time left until ``end_time``, never negative."""
    return max(end_time - now, timedelta(0))


def format_remaining(remaining: timedelta) -> str:
    """Format as HH:MM:SS (hours may exceed 24)."""
    total = int(remaining.total_seconds())
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


@dataclass(frozen=True)
class Countdown:
    end_time: datetime
    now: datetime

    @property
    def remaining(self) -> timedelta:
        return remaining_time(self.end_time, self.now)

    @property
    def display(self) -> str:
        return format_remaining(self.remaining)

    @property
    def expired(self) -> bool:
        return self.remaining == timedelta(0)

    @property
    def ending_soon(self) -> bool:
        """True in the last five minutes, before expiry."""
        return not self.expired and self.remaining < ENDING_SOON

    def to_dict(self) -> dict:
        return {
            "remaining_seconds": int(self.remaining.total_seconds()),
            "display": self.display,
            "ending_soon": self.ending_soon,
            "expired": self.expired,
        }


class AutoSubmitTrigger:
    """Fires once, the first time it is polled at or after expiry."""

    def __init__(self, end_time: datetime):
        self.end_time = end_time
        self._fired = False

    @property
    def fired(self) -> bool:
        return self._fired

    def fire(self, now: datetime) -> bool:
        if self._fired or not Countdown(self.end_time, now).expired:
            return False
        self._fired = True
        return True
