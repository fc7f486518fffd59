from typing import Literal, Optional

from pydantic import ConfigDict, Field

from streamrelay.models import (
    BaseModel,
    BaseRequestModel,
    BaseResponseModel,
    ClientStatus,
    Content,
    SessionStatus,
    StreamFormat,
)


__all__ = [
    'ClientInfo',
    'SessionInfo',
    'SessionList',
    'StreamStat',
    'GlobalStats',
    'SystemStats',
    'PeakMetrics',
    'HourlyStats',
    'StreamStatsResponse',
    'StopResponse',
    'StopAllResponse',
    'CleanupRequest',
    'CleanupReport',
    'HealthStatus',
]


class ClientInfo(BaseModel):
    client_id: str
    ip_address: str
    user_agent: Optional[str] = None
    status: ClientStatus
    connected_at: float
    last_activity: float
    duration_seconds: float
    bytes_received: int
    bandwidth_kbps: float


class SessionInfo(BaseResponseModel):
    stream_id: str
    source_key: str
    source_url: str
    current_url: Optional[str] = None
    format: StreamFormat
    status: SessionStatus
    content: Optional[Content] = None
    client_count: int
    peak_clients: int
    bandwidth_kbps: float
    avg_bandwidth: float
    bytes_transferred: int
    buffer_size: int
    started_at: float
    last_activity: float
    uptime_seconds: float
    spawn_attempts: int
    failover_attempts: int = 0
    error_message: Optional[str] = None
    clients: list[ClientInfo] = []


class SessionList(BaseResponseModel):
    streams: list[SessionInfo]


class StreamStat(BaseResponseModel):
    stream_id: str
    recorded_at: float
    client_count: int
    bandwidth_kbps: float
    bytes_transferred: int
    buffer_size: int


class GlobalStats(BaseResponseModel):
    total_streams: int = Field(description="Number of sessions known to the registry")
    active_streams: int = Field(description="Number of sessions currently relaying")
    total_clients: int = Field(description="Number of connected clients")
    total_bandwidth: float = Field(description="Combined upstream bandwidth in kbit/s")
    avg_clients_per_stream: float = 0.
    avg_bandwidth_per_stream: float = 0.
    timestamp: float


class SystemStats(GlobalStats):
    relay_processes: int = Field(description="Number of running relay processes")
    buffer_usage_mb: float = Field(description="Disk space used by stream buffers")
    buffer_free_space_mb: float = Field(description="Free disk space at the buffer path")
    memory_total_mb: Optional[float] = None
    memory_available_mb: Optional[float] = None
    memory_usage_percent: Optional[float] = None
    load_average: Optional[float] = Field(default=None, description="1-minute load average")
    host_uptime_seconds: Optional[float] = None
    node_uptime_seconds: float = Field(description="Seconds since the node was started")


class PeakMetrics(BaseModel):
    peak_clients: int = 0
    peak_bandwidth: float = 0.
    avg_clients: float = 0.
    avg_bandwidth: float = 0.
    total_data_points: int = 0


class HourlyStats(BaseModel):
    hour: float  # start of the hour as a Unix timestamp
    avg_clients: float
    max_clients: int
    avg_bandwidth: float
    max_bandwidth: float
    data_points: int


class StreamStatsResponse(BaseResponseModel):
    stream_id: Optional[str] = None
    hours: float
    peak: PeakMetrics
    hourly: list[HourlyStats]


class StopResponse(BaseResponseModel):
    stream_id: str
    stopped: bool


class StopAllResponse(BaseResponseModel):
    stopped: int


class CleanupRequest(BaseRequestModel):
    grace_seconds: Optional[float] = Field(default=None, ge=0)


class CleanupReport(BaseResponseModel):
    model_config = ConfigDict(validate_assignment=True)

    stopped: list[str] = []
    orphaned: list[str] = []
    failed: list[str] = []
    clients_expired: int = 0
    buffer_dirs_removed: int = 0
    segments_removed: int = 0
    temp_files_removed: int = 0

    @property
    def total_removed(self) -> int:
        return len(self.stopped) + len(self.orphaned) + len(self.failed)


class HealthStatus(BaseResponseModel):
    status: Literal['ok', 'degraded']
    version: str
    active_streams: int
    failed_streams: int
    buffer_free_space_mb: float
    problems: list[str] = []
