from __future__ import annotations
import secrets
from typing import Any, ClassVar, Optional

from streamrelay.api.models import ClientInfo, SessionInfo
from streamrelay.misc.functions import md5_hex, to_kbps
from streamrelay.models import ClientStatus, SessionStatus, StreamSource
from .exceptions import InvalidStatusTransition


__all__ = [
    'SessionClient',
    'StreamSession',
    'new_stream_id',
    'default_client_id',
]


def new_stream_id() -> str:
    """Returns a fresh, URL- and path-safe stream ID."""
    return f"relay_{secrets.token_hex(8)}"


def default_client_id(stream_id: str, ip_address: str, user_agent: Optional[str]) -> str:
    """
    Returns a deterministic client ID for a viewer of a stream.

    Requests from the same address and user agent map onto the same client.
    """
    return f"{stream_id}_{md5_hex(ip_address, user_agent or '')}"


class SessionClient:
    """One downstream consumer attached to a `StreamSession`."""
    client_id: str
    stream_id: str
    ip_address: str
    user_agent: Optional[str]
    status: ClientStatus
    connected_at: float
    last_activity: float
    disconnected_at: Optional[float]
    bytes_received: int

    def __init__(
        self,
        client_id: str,
        stream_id: str,
        ip_address: str,
        user_agent: Optional[str] = None,
        *,
        now: float,
    ) -> None:
        self.client_id = client_id
        self.stream_id = stream_id
        self.ip_address = ip_address
        self.user_agent = user_agent
        self.status = ClientStatus.connected
        self.connected_at = now
        self.last_activity = now
        self.disconnected_at = None
        self.bytes_received = 0

    def __repr__(self) -> str:
        return f"<SessionClient {self.client_id} {self.status.value}>"

    @property
    def is_connected(self) -> bool:
        return self.status is ClientStatus.connected

    def touch(self, now: float, bytes_sent: int = 0) -> None:
        self.last_activity = now
        self.bytes_received += bytes_sent

    def disconnect(self, now: float) -> None:
        self.status = ClientStatus.disconnected
        self.disconnected_at = now

    def idle_seconds(self, now: float) -> float:
        return max(now - self.last_activity, 0.)

    def duration(self, now: float) -> float:
        end = self.disconnected_at if self.disconnected_at is not None else now
        return max(end - self.connected_at, 0.)

    def info(self, now: float) -> ClientInfo:
        duration = self.duration(now)
        return ClientInfo(
            client_id=self.client_id,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            status=self.status,
            connected_at=self.connected_at,
            last_activity=self.last_activity,
            duration_seconds=round(duration, 3),
            bytes_received=self.bytes_received,
            bandwidth_kbps=round(to_kbps(self.bytes_received, duration), 2),
        )


class StreamSession:
    """
    One outbound relay of a source, shared by all of its clients.

    Only the registry owning a session should mutate it.
    """
    TRANSITIONS: ClassVar[dict[SessionStatus, frozenset[SessionStatus]]] = {
        SessionStatus.starting: frozenset({
            SessionStatus.active,
            SessionStatus.stopped,
            SessionStatus.error,
        }),
        SessionStatus.active: frozenset({
            SessionStatus.stopped,
            SessionStatus.error,
        }),
        SessionStatus.stopped: frozenset({SessionStatus.error}),
        SessionStatus.error: frozenset({SessionStatus.error}),
    }

    stream_id: str
    source: StreamSource
    status: SessionStatus
    handle: Optional[Any]  # whatever the process supervisor hands out
    error_message: Optional[str]
    spawn_attempts: int
    url_index: int
    failover_attempts: int
    started_at: float
    last_activity: float
    peak_clients: int
    bandwidth_kbps: float
    avg_bandwidth: float
    bytes_transferred: int
    buffer_size: int
    _clients: dict[str, SessionClient]
    _bandwidth_samples: int

    def __init__(self, stream_id: str, source: StreamSource, *, now: float) -> None:
        self.stream_id = stream_id
        self.source = source
        self.status = SessionStatus.starting
        self.handle = None
        self.error_message = None
        self.spawn_attempts = 0
        self.url_index = 0
        self.failover_attempts = 0
        self.started_at = now
        self.last_activity = now
        self.peak_clients = 0
        self.bandwidth_kbps = 0.
        self.avg_bandwidth = 0.
        self.bytes_transferred = 0
        self.buffer_size = 0
        self._clients = {}
        self._bandwidth_samples = 0

    def __repr__(self) -> str:
        return f"<StreamSession {self.stream_id} {self.status.value} clients={self.client_count}>"

    @property
    def source_key(self) -> str:
        return self.source.source_key

    @property
    def current_url(self) -> str:
        return self.source.urls[self.url_index]

    @property
    def current_source(self) -> StreamSource:
        """The source with the URL currently relayed in place of the primary one."""
        if self.url_index == 0:
            return self.source
        return self.source.model_copy(update={"url": self.current_url, "failover_urls": []})

    @property
    def has_failover(self) -> bool:
        return self.url_index + 1 < len(self.source.urls)

    @property
    def is_live(self) -> bool:
        """Whether new clients may still be attached."""
        return self.status in (SessionStatus.starting, SessionStatus.active)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def clients(self) -> list[SessionClient]:
        return list(self._clients.values())

    def get_client(self, client_id: str) -> Optional[SessionClient]:
        return self._clients.get(client_id)

    def set_status(self, new_status: SessionStatus) -> None:
        if new_status not in self.TRANSITIONS[self.status]:
            raise InvalidStatusTransition(self, new_status)
        self.status = new_status

    def fail(self, reason: str) -> None:
        """Moves the session into the `error` state (allowed from any state)."""
        self.set_status(SessionStatus.error)
        self.error_message = reason

    def add_client(self, client: SessionClient, now: float) -> None:
        self._clients[client.client_id] = client
        self.peak_clients = max(self.peak_clients, self.client_count)
        self.last_activity = now

    def remove_client(self, client_id: str, now: float) -> Optional[SessionClient]:
        client = self._clients.pop(client_id, None)
        if client is None:
            return None
        client.disconnect(now)
        self.last_activity = now
        return client

    def remove_all_clients(self, now: float) -> list[SessionClient]:
        removed = [
            self.remove_client(client_id, now)
            for client_id in list(self._clients.keys())
        ]
        return [client for client in removed if client is not None]

    def touch(self, now: float) -> None:
        self.last_activity = now

    def idle_seconds(self, now: float) -> float:
        """Seconds without any client; zero while clients are attached."""
        if self._clients:
            return 0.
        return max(now - self.last_activity, 0.)

    def uptime(self, now: float) -> float:
        return max(now - self.started_at, 0.)

    def record_metrics(
        self,
        bandwidth_kbps: float,
        bytes_transferred: int,
        buffer_size: int,
    ) -> None:
        """Stores the latest process metrics and updates the running average."""
        self.bandwidth_kbps = bandwidth_kbps
        self.bytes_transferred = bytes_transferred
        self.buffer_size = buffer_size
        self._bandwidth_samples += 1
        self.avg_bandwidth += (bandwidth_kbps - self.avg_bandwidth) / self._bandwidth_samples

    def info(self, now: float, *, with_clients: bool = True) -> SessionInfo:
        return SessionInfo(
            stream_id=self.stream_id,
            source_key=self.source_key,
            source_url=self.source.url,
            current_url=self.current_url,
            format=self.source.format,
            status=self.status,
            content=self.source.content,
            client_count=self.client_count,
            peak_clients=self.peak_clients,
            bandwidth_kbps=round(self.bandwidth_kbps, 2),
            avg_bandwidth=round(self.avg_bandwidth, 2),
            bytes_transferred=self.bytes_transferred,
            buffer_size=self.buffer_size,
            started_at=self.started_at,
            last_activity=self.last_activity,
            uptime_seconds=round(self.uptime(now), 3),
            spawn_attempts=self.spawn_attempts,
            failover_attempts=self.failover_attempts,
            error_message=self.error_message,
            clients=[client.info(now) for client in self._clients.values()] if with_clients else [],
        )
