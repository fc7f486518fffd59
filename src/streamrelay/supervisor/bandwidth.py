from collections import deque
from time import time
from typing import Optional

from streamrelay.misc.functions import to_kbps


class BandwidthMeter:
    """
    Sliding-window throughput measurement.

    Byte counts are collected in one-second buckets; only the buckets within
    the last `window` seconds are considered for the current rate.
    """
    window: int
    total_bytes: int
    _buckets: deque[list[int]]  # [second, bytes]

    def __init__(self, window: int = 10) -> None:
        self.window = max(window, 1)
        self.total_bytes = 0
        self._buckets = deque(maxlen=self.window)

    def add(self, num_bytes: int, now: Optional[float] = None) -> None:
        second = int(time() if now is None else now)
        self.total_bytes += num_bytes
        if self._buckets and self._buckets[-1][0] == second:
            self._buckets[-1][1] += num_bytes
        else:
            self._buckets.append([second, num_bytes])

    def kbps(self, now: Optional[float] = None) -> float:
        """
        Returns the average rate over the buckets still inside the window.

        The time span is measured from the start of the oldest bucket and
        is at least one second.
        """
        now = time() if now is None else now
        oldest_allowed = int(now) - self.window + 1
        recent = [(sec, num) for sec, num in self._buckets if sec >= oldest_allowed]
        if not recent:
            return 0.
        timespan = max(now - recent[0][0], 1.)
        return to_kbps(sum(num for _, num in recent), timespan)
