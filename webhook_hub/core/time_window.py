"""
Replay protection: is a provider timestamp inside the tolerance window?

The window is symmetric, so it rejects both replays of old deliveries and
timestamps pushed into the future by clock skew.
"""
import time
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class TimeWindowResult:
    valid: bool
    error: str | None = None


class TimeWindowValidator:
    """Validate Unix timestamps against a tolerance (seconds)"""

    def __init__(
        self,
        tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    def is_valid(self, timestamp: int | None, tolerance: int | None = None) -> bool:
        """True when ``|now - timestamp| <= tolerance``"""
        if timestamp is None:
            return False
        limit = self.tolerance_seconds if tolerance is None else tolerance
        return abs(self._now() - int(timestamp)) <= limit

    def validate(self, timestamp: int | None, tolerance: int | None = None) -> TimeWindowResult:
        """Same decision as is_valid, with a reason suitable for logs"""
        if timestamp is None:
            return TimeWindowResult(False, "Timestamp is missing")

        limit = self.tolerance_seconds if tolerance is None else tolerance
        age = self._now() - int(timestamp)

        if age > limit:
            return TimeWindowResult(False, "Timestamp is too old (expired)")
        if age < -limit:
            return TimeWindowResult(False, "Timestamp is too far in the future (not yet valid)")
        return TimeWindowResult(True)

    def is_too_old(self, timestamp: int | None) -> bool:
        if timestamp is None:
            return False
        return (self._now() - int(timestamp)) > self.tolerance_seconds

    def is_too_new(self, timestamp: int | None) -> bool:
        if timestamp is None:
            return False
        return (int(timestamp) - self._now()) > self.tolerance_seconds

    def age(self, timestamp: int | None) -> int | None:
        """Seconds since ``timestamp`` (negative when it lies in the future)"""
        if timestamp is None:
            return None
        return self._now() - int(timestamp)
