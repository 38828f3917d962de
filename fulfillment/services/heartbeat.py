"""Liveness of the verification device, inferred from its polling."""

import time
from typing import Callable


class HeartbeatMonitor:
    """
    TTL check on the device's last poll. The device is never heard saying goodbye,
    so "disconnected" only means no poll within the threshold.
    """

    def __init__(self, threshold_seconds: float = 30.0, clock: Callable[[], float] = time.time) -> None:
        self.threshold_seconds = threshold_seconds
        self._clock = clock
        self.last_poll_at: float | None = None
        self._last_observed = False

    def is_connected(self, threshold_seconds: float | None = None) -> bool:
        if self.last_poll_at is None:
            return False
        threshold = self.threshold_seconds if threshold_seconds is None else threshold_seconds
        return self._clock() - self.last_poll_at < threshold

    def record_poll(self) -> bool:
        """Store the poll time. Returns True when this poll reconnects the device."""
        was_connected = self.is_connected()
        self.last_poll_at = self._clock()
        self._last_observed = True
        return not was_connected

    def check_transition(self) -> bool | None:
        """New connection state if it changed since the previous check or poll, else None."""
        connected = self.is_connected()
        if connected == self._last_observed:
            return None
        self._last_observed = connected
        return connected

    def snapshot(self) -> dict:
        return {
            "connected": self.is_connected(),
            "last_poll_at": self.last_poll_at,
            "threshold_seconds": self.threshold_seconds,
        }
