from typing import Any, Optional
from urllib.parse import urlencode

from streamrelay import settings
from streamrelay.client import Client
from streamrelay.models import StreamFormat, StreamSource
from .models import (
    CleanupReport,
    CleanupRequest,
    GlobalStats,
    HealthStatus,
    SessionInfo,
    SessionList,
    StopAllResponse,
    StopResponse,
    StreamStatsResponse,
    SystemStats,
)


class RelayClient(Client):
    """Talks to the admin API of the local relay node."""

    async def get_health(self) -> tuple[int, HealthStatus]:
        return await self.request(
            "GET",
            settings.make_url("/api/health"),
            return_model=HealthStatus,
        )

    async def get_global_stats(self) -> tuple[int, GlobalStats]:
        return await self.request(
            "GET",
            settings.make_url("/api/stats/global"),
            return_model=GlobalStats,
        )

    async def get_system_stats(self) -> tuple[int, SystemStats]:
        return await self.request(
            "GET",
            settings.make_url("/api/stats/system"),
            return_model=SystemStats,
        )

    async def get_streams(self) -> Optional[list[SessionInfo]]:
        """
        Makes a GET request to the node's streams endpoint.

        Returns the list of sessions, if a 200 response is received,
        otherwise `None`.
        """
        status, ret = await self.request(
            "GET",
            settings.make_url("/api/streams"),
            return_model=SessionList,
        )
        if status == 200:
            return ret.streams
        return None

    async def get_stream(self, stream_id: str) -> tuple[int, SessionInfo]:
        return await self.request(
            "GET",
            settings.make_url(f"/api/streams/{stream_id}"),
            return_model=SessionInfo,
        )

    async def create_stream(
        self,
        url: str,
        stream_format: StreamFormat = StreamFormat.ts,
        **kwargs: Any,
    ) -> tuple[int, SessionInfo]:
        """Makes a POST request to get or create the session for `url`."""
        return await self.request(
            "POST",
            settings.make_url("/api/streams"),
            data=StreamSource(url=url, format=stream_format, **kwargs),
            return_model=SessionInfo,
        )

    async def get_stream_stats(self, stream_id: str, hours: float = 24) -> tuple[int, StreamStatsResponse]:
        return await self.request(
            "GET",
            settings.make_url(f"/api/streams/{stream_id}/stats?{urlencode({'hours': hours})}"),
            return_model=StreamStatsResponse,
        )

    async def stop_stream(self, stream_id: str) -> tuple[int, StopResponse]:
        """Makes a POST request to stop a session, even if clients are attached."""
        return await self.request(
            "POST",
            settings.make_url(f"/api/streams/{stream_id}/stop"),
            return_model=StopResponse,
        )

    async def stop_all_streams(self) -> tuple[int, StopAllResponse]:
        return await self.request(
            "POST",
            settings.make_url("/api/streams/stop-all"),
            return_model=StopAllResponse,
        )

    async def restart_stream(self, stream_id: str) -> tuple[int, SessionInfo]:
        return await self.request(
            "POST",
            settings.make_url(f"/api/streams/{stream_id}/restart"),
            return_model=SessionInfo,
        )

    async def cleanup(self, grace_seconds: Optional[float] = None) -> tuple[int, CleanupReport]:
        return await self.request(
            "POST",
            settings.make_url("/api/cleanup"),
            data=CleanupRequest(grace_seconds=grace_seconds),
            return_model=CleanupReport,
        )
