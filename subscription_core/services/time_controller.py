"""Service clock with fast-forward support.

Responsibilities:
- Provide the current time to the subscription service and scheduler
- Advance time (days, hours, minutes, seconds) for tests and local runs
- Notify listeners (the expiration scheduler) so jobs that became due fire

The clock runs at real speed; advancing adds a fixed offset.
"""

import threading
import time
from typing import Callable, List

from subscription_core.logging_config import get_logger

logger = get_logger(__name__)

MILLIS_PER_SECOND = 1000
MILLIS_PER_MINUTE = 60 * MILLIS_PER_SECOND
MILLIS_PER_HOUR = 60 * MILLIS_PER_MINUTE
MILLIS_PER_DAY = 24 * MILLIS_PER_HOUR


def _real_time_millis() -> int:
    return int(time.time() * 1000)


class TimeController:
    """Offset clock shared by the subscription service and the scheduler.

    Listeners are called with the new current time (millis) after every
    change of the offset.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._time_offset_millis = 0
        self._listeners: List[Callable[[int], None]] = []

    def get_current_time_millis(self) -> int:
        """Get the current service time in milliseconds."""
        with self._lock:
            return _real_time_millis() + self._time_offset_millis

    def to_real_time_millis(self, service_time_millis: int) -> int:
        """Convert a service instant to the wall-clock instant it corresponds to."""
        with self._lock:
            return service_time_millis - self._time_offset_millis

    @property
    def offset_millis(self) -> int:
        with self._lock:
            return self._time_offset_millis

    def add_listener(self, listener: Callable[[int], None]) -> None:
        """Register a callback invoked after the clock moves."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[int], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def advance_time(
            self,
            days: int = 0,
            hours: int = 0,
            minutes: int = 0,
            seconds: int = 0,
    ) -> dict:
        """Advance the clock.

        Args:
            days: number of days to advance
            hours: number of hours to advance
            minutes: number of minutes to advance
            seconds: number of seconds to advance

        Returns:
            Dictionary with old_time_millis, new_time_millis and
            time_advanced_millis

        Raises:
            ValueError: if any value is negative
        """
        if days < 0 or hours < 0 or minutes < 0 or seconds < 0:
            raise ValueError("Cannot advance time backwards, negative values are not allowed")

        millis_to_advance = (
            days * MILLIS_PER_DAY
            + hours * MILLIS_PER_HOUR
            + minutes * MILLIS_PER_MINUTE
            + seconds * MILLIS_PER_SECOND
        )

        with self._lock:
            old_time = self.get_current_time_millis()
            self._time_offset_millis += millis_to_advance
            new_time = old_time + millis_to_advance

        if millis_to_advance:
            logger.info(
                "time_advanced",
                old_time_millis=old_time,
                new_time_millis=new_time,
                days=days,
                hours=hours,
                minutes=minutes,
                seconds=seconds,
            )
            self._notify(new_time)

        return {
            "old_time_millis": old_time,
            "new_time_millis": new_time,
            "time_advanced_millis": millis_to_advance,
        }

    def set_time(self, timestamp_millis: int) -> dict:
        """Jump the clock to a specific instant.

        Raises:
            ValueError: If timestamp is before the current time
        """
        with self._lock:
            old_time = self.get_current_time_millis()
            if timestamp_millis < old_time:
                raise ValueError(
                    f"cannot set time backwards, current: {old_time}, requested: {timestamp_millis}"
                )
            self._time_offset_millis += timestamp_millis - old_time

        logger.info("time_set", old_time_millis=old_time, new_time_millis=timestamp_millis)
        self._notify(timestamp_millis)

        return {
            "old_time_millis": old_time,
            "new_time_millis": timestamp_millis,
        }

    def reset_time(self) -> dict:
        """Reset the clock back to real time."""
        with self._lock:
            old_time = self.get_current_time_millis()
            self._time_offset_millis = 0
            new_time = _real_time_millis()

        logger.info("time_reset", old_time_millis=old_time, new_time_millis=new_time)
        self._notify(new_time)

        return {
            "old_time_millis": old_time,
            "new_time_millis": new_time,
        }

    def _notify(self, current_time_millis: int) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(current_time_millis)
