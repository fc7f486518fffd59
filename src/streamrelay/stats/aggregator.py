from __future__ import annotations
import logging
from collections import defaultdict
from time import time
from typing import Optional

from streamrelay import settings
from streamrelay.api.models import (
    GlobalStats,
    HourlyStats,
    PeakMetrics,
    StreamStat,
    SystemStats,
)
from streamrelay.buffers import BufferStore
from streamrelay.misc.constants import MEGA, SECONDS_PER_DAY, SECONDS_PER_HOUR
from streamrelay.misc.functions import run_in_default_executor
from streamrelay.models import SessionStatus
from streamrelay.session.registry import SessionRegistry
from streamrelay.session.stream import StreamSession
from .store import StatsStore
from .system import read_load_average, read_meminfo, read_uptime


__all__ = ['StatsAggregator']

log = logging.getLogger(__name__)


class StatsAggregator:
    """Produces the summary views of a node and records the stats history."""
    registry: SessionRegistry
    store: StatsStore
    buffer_store: BufferStore
    started_at: float

    def __init__(
        self,
        registry: SessionRegistry,
        store: StatsStore,
        buffer_store: BufferStore,
    ) -> None:
        self.registry = registry
        self.store = store
        self.buffer_store = buffer_store
        self.started_at = time()

    async def snapshot(self, stream_id: str) -> StreamStat:
        """
        Pulls the current process metrics of a session and records them.

        The session's live metrics are updated along the way.

        Raises:
            `SessionNotFound` if no such session is in the registry.
        """
        return await self._snapshot(self.registry.get(stream_id))

    async def _snapshot(self, session: StreamSession) -> StreamStat:
        if session.handle is not None and session.status is SessionStatus.active:
            metrics = await self.registry.supervisor.metrics(session.handle)
            session.record_metrics(
                metrics.bandwidth_kbps,
                metrics.bytes_transferred,
                metrics.buffer_size,
            )
        stat = StreamStat(
            stream_id=session.stream_id,
            recorded_at=time(),
            client_count=session.client_count,
            bandwidth_kbps=session.bandwidth_kbps,
            bytes_transferred=session.bytes_transferred,
            buffer_size=session.buffer_size,
        )
        self.store.append(stat)
        return stat

    async def snapshot_all(self) -> list[StreamStat]:
        """Records a snapshot of every active session."""
        stats = []
        for session in self.registry.iter_sessions():
            if session.status is SessionStatus.active:
                stats.append(await self._snapshot(session))
        log.debug(f"Recorded {len(stats)} stream snapshots")
        return stats

    def current_summary(self) -> GlobalStats:
        """Aggregates over the sessions currently in the registry only."""
        total_streams = active_streams = total_clients = 0
        total_bandwidth = 0.
        for session in self.registry.iter_sessions():
            total_streams += 1
            if session.status is not SessionStatus.active:
                continue
            active_streams += 1
            total_clients += session.client_count
            total_bandwidth += session.bandwidth_kbps
        return GlobalStats(
            total_streams=total_streams,
            active_streams=active_streams,
            total_clients=total_clients,
            total_bandwidth=round(total_bandwidth, 2),
            avg_clients_per_stream=round(total_clients / active_streams, 2) if active_streams else 0.,
            avg_bandwidth_per_stream=round(total_bandwidth / active_streams, 2) if active_streams else 0.,
            timestamp=time(),
        )

    def peak_metrics(self, stream_id: Optional[str] = None, hours: float = 24) -> PeakMetrics:
        """
        Peak and average values over the last `hours` of recorded history.

        Without a `stream_id`, every record of every stream is a data point.
        """
        stats = self.store.history(stream_id, since=time() - hours * SECONDS_PER_HOUR)
        if not stats:
            return PeakMetrics()
        return PeakMetrics(
            peak_clients=max(stat.client_count for stat in stats),
            peak_bandwidth=max(stat.bandwidth_kbps for stat in stats),
            avg_clients=round(sum(stat.client_count for stat in stats) / len(stats), 2),
            avg_bandwidth=round(sum(stat.bandwidth_kbps for stat in stats) / len(stats), 2),
            total_data_points=len(stats),
        )

    def hourly(self, stream_id: Optional[str] = None, hours: float = 24) -> list[HourlyStats]:
        """Per-hour aggregates of the recorded history, oldest hour first."""
        buckets: dict[float, list[StreamStat]] = defaultdict(list)
        for stat in self.store.history(stream_id, since=time() - hours * SECONDS_PER_HOUR):
            hour = stat.recorded_at - stat.recorded_at % SECONDS_PER_HOUR
            buckets[hour].append(stat)
        output = []
        for hour in sorted(buckets):
            stats = buckets[hour]
            output.append(HourlyStats(
                hour=hour,
                avg_clients=round(sum(s.client_count for s in stats) / len(stats), 2),
                max_clients=max(s.client_count for s in stats),
                avg_bandwidth=round(sum(s.bandwidth_kbps for s in stats) / len(stats), 2),
                max_bandwidth=max(s.bandwidth_kbps for s in stats),
                data_points=len(stats),
            ))
        return output

    def prune(self, retention_days: Optional[float] = None) -> int:
        """Deletes history older than the retention window."""
        if retention_days is None:
            retention_days = settings.stats.retention_days
        removed = self.store.prune(time() - retention_days * SECONDS_PER_DAY)
        if removed:
            log.info(f"Pruned {removed} stats records older than {retention_days} days")
        return removed

    async def system_stats(self) -> SystemStats:
        summary = self.current_summary()
        memory = await run_in_default_executor(read_meminfo)
        host_uptime = await run_in_default_executor(read_uptime)
        relay_processes = sum(
            1 for session in self.registry.iter_sessions()
            if session.handle is not None and self.registry.supervisor.is_running(session.handle)
        )
        return SystemStats(
            **summary.model_dump(),
            relay_processes=relay_processes,
            buffer_usage_mb=round(await self.buffer_store.get_total_usage() / MEGA, 2),
            buffer_free_space_mb=round(await self.buffer_store.get_free_space(), 2),
            memory_total_mb=None if memory is None else round(memory.total_mb, 2),
            memory_available_mb=None if memory is None else round(memory.available_mb, 2),
            memory_usage_percent=None if memory is None else memory.usage_percent,
            load_average=read_load_average(),
            host_uptime_seconds=host_uptime,
            node_uptime_seconds=round(time() - self.started_at, 3),
        )
