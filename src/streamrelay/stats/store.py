from __future__ import annotations
from abc import ABC, abstractmethod
from collections import deque
from threading import RLock
from typing import Optional

from streamrelay.api.models import StreamStat


__all__ = [
    'StatsStore',
    'MemoryStatsStore',
]


class StatsStore(ABC):
    """Append-only time series of `StreamStat` records."""

    @abstractmethod
    def append(self, stat: StreamStat) -> None:
        ...

    @abstractmethod
    def history(self, stream_id: Optional[str] = None, since: float = 0.) -> list[StreamStat]:
        """
        Returns the records recorded at or after `since`, oldest first.

        If `stream_id` is omitted, records of all streams are returned.
        """

    @abstractmethod
    def prune(self, before: float) -> int:
        """Deletes all records older than `before`; returns how many."""

    @abstractmethod
    def __len__(self) -> int:
        ...


class MemoryStatsStore(StatsStore):
    _series: dict[str, deque[StreamStat]]

    def __init__(self) -> None:
        self._lock = RLock()
        self._series = {}

    def append(self, stat: StreamStat) -> None:
        with self._lock:
            self._series.setdefault(stat.stream_id, deque()).append(stat)

    def history(self, stream_id: Optional[str] = None, since: float = 0.) -> list[StreamStat]:
        with self._lock:
            if stream_id is not None:
                series = [self._series.get(stream_id, deque())]
            else:
                series = list(self._series.values())
            stats = [stat for records in series for stat in records if stat.recorded_at >= since]
        stats.sort(key=lambda stat: stat.recorded_at)
        return stats

    def prune(self, before: float) -> int:
        removed = 0
        with self._lock:
            for stream_id, records in list(self._series.items()):
                # Records are appended in chronological order.
                while records and records[0].recorded_at < before:
                    records.popleft()
                    removed += 1
                if not records:
                    del self._series[stream_id]
        return removed

    def __len__(self) -> int:
        with self._lock:
            return sum(len(records) for records in self._series.values())
