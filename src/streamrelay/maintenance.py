from __future__ import annotations
import logging
from typing import Optional

from streamrelay import settings
from streamrelay.api.models import CleanupReport
from streamrelay.buffers import BufferStore
from streamrelay.misc.constants import MEGA
from streamrelay.misc.periodic import Periodic
from streamrelay.models import SessionStatus, StreamFormat
from streamrelay.session.registry import SessionRegistry
from streamrelay.stats.aggregator import StatsAggregator


__all__ = ['Maintenance']

log = logging.getLogger(__name__)


class Maintenance:
    """
    Background jobs of a relay node that run independent of requests.

    - the cleanup sweep (client expiry, orphans, idle sessions, buffers)
    - stats snapshots of all active sessions
    - pruning of the stats history
    """
    registry: SessionRegistry
    stats: StatsAggregator
    buffer_store: BufferStore

    def __init__(
        self,
        registry: SessionRegistry,
        stats: StatsAggregator,
        buffer_store: BufferStore,
    ) -> None:
        self.registry = registry
        self.stats = stats
        self.buffer_store = buffer_store
        self._sweep_periodic: Periodic[[]] = Periodic(self.sweep)
        self._snapshot_periodic: Periodic[[]] = Periodic(self.stats.snapshot_all)
        self._prune_periodic: Periodic[[]] = Periodic(self.prune_stats)
        for periodic in self._periodics:
            periodic.survive_errors = True

    @property
    def _periodics(self) -> tuple[Periodic[[]], ...]:
        return self._sweep_periodic, self._snapshot_periodic, self._prune_periodic

    @property
    def is_running(self) -> bool:
        return any(periodic.is_running for periodic in self._periodics)

    def start(self) -> None:
        self._sweep_periodic(settings.sessions.cleanup_interval_sec)
        self._snapshot_periodic(settings.stats.snapshot_interval_sec)
        self._prune_periodic(settings.stats.prune_interval_sec, call_immediately=True)
        log.info("Maintenance jobs started")

    async def stop(self) -> None:
        for periodic in self._periodics:
            if periodic.is_running:
                await periodic.stop()

    async def sweep(self, grace_seconds: Optional[float] = None) -> CleanupReport:
        """
        One full cleanup run.

        Expires timed out clients, lets the registry remove orphaned, failed
        and idle sessions, and then tidies up the buffer directory.
        """
        clients_expired = self.registry.expire_clients()
        report = await self.registry.cleanup_inactive(grace_seconds)
        report.clients_expired = clients_expired
        await self.tidy_buffers(report)
        return report

    async def tidy_buffers(self, report: Optional[CleanupReport] = None) -> CleanupReport:
        """
        Removes buffer data that is no longer needed.

        Directories of unknown sessions and stale temporary files are deleted,
        the segments of HLS sessions are pruned according to their audience,
        and if a total size limit is configured, buffers are trimmed starting
        with the least recently active session.
        """
        report = report or CleanupReport()
        sessions = [
            session for session in self.registry.iter_sessions()
            if session.status is not SessionStatus.stopped
        ]
        report.buffer_dirs_removed = await self.buffer_store.remove_orphaned_dirs(
            {session.stream_id for session in sessions}
        )
        report.temp_files_removed = await self.buffer_store.remove_temp_files(
            settings.buffer.temp_file_max_age_sec
        )
        hls_sessions = [
            session for session in sessions
            if session.source.format is StreamFormat.hls and session.status is SessionStatus.active
        ]
        for session in hls_sessions:
            report.segments_removed += await self.buffer_store.prune_segments(
                session.stream_id,
                self.buffer_store.optimal_segment_count(session.client_count),
            )
        if settings.buffer.max_total_mb > 0:
            hls_sessions.sort(key=lambda session: session.last_activity)
            report.segments_removed += await self.buffer_store.trim(
                [session.stream_id for session in hls_sessions],
                int(settings.buffer.max_total_mb * MEGA),
            )
        return report

    async def prune_stats(self) -> int:
        return self.stats.prune()
