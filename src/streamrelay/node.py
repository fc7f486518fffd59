from __future__ import annotations
import logging
from collections.abc import AsyncIterator
from typing import Any, Optional

from aiohttp.web_app import Application, AppKey

from streamrelay import settings
from streamrelay.buffers import BufferStore
from streamrelay.maintenance import Maintenance
from streamrelay.session.registry import SessionRegistry
from streamrelay.session.store import MemorySessionStore, SessionStore
from streamrelay.stats.aggregator import StatsAggregator
from streamrelay.stats.store import MemoryStatsStore, StatsStore
from streamrelay.supervisor.base import ProcessSupervisor
from streamrelay.supervisor.ffmpeg import FFmpegSupervisor


__all__ = [
    'NODE_KEY',
    'RelayNode',
]

log = logging.getLogger(__name__)


class RelayNode:
    """
    Wires the components of a relay node together.

    Every collaborator can be injected; anything omitted is built from the
    global settings with the in-memory stores and the FFmpeg supervisor.
    """
    buffer_store: BufferStore
    supervisor: ProcessSupervisor[Any]
    registry: SessionRegistry
    stats: StatsAggregator
    maintenance: Maintenance

    def __init__(
        self,
        *,
        session_store: Optional[SessionStore] = None,
        stats_store: Optional[StatsStore] = None,
        buffer_store: Optional[BufferStore] = None,
        supervisor: Optional[ProcessSupervisor[Any]] = None,
    ) -> None:
        if buffer_store is None:
            buffer_store = BufferStore(settings.buffer.path)
        if supervisor is None:
            supervisor = FFmpegSupervisor(buffer_store)
        if session_store is None:
            session_store = MemorySessionStore()
        if stats_store is None:
            stats_store = MemoryStatsStore()
        self.buffer_store = buffer_store
        self.supervisor = supervisor
        self.registry = SessionRegistry(session_store, self.supervisor)
        self.stats = StatsAggregator(self.registry, stats_store, self.buffer_store)
        self.maintenance = Maintenance(self.registry, self.stats, self.buffer_store)

    async def app_context(self, _app: Application) -> AsyncIterator[None]:
        """
        Starts the background jobs and stops everything on shutdown.

        Can be used in the `.cleanup_ctx` list of the `aiohttp.Application`.
        """
        self.buffer_store.ensure_root()
        self.maintenance.start()
        yield
        await self.maintenance.stop()
        await self.registry.close()


NODE_KEY = AppKey("relay_node", RelayNode)
