from __future__ import annotations
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Generic, Optional, TypeVar

from streamrelay.models import BaseModel, StreamSource


__all__ = [
    'ProcessMetrics',
    'ProcessSupervisor',
]

H = TypeVar('H')


class ProcessMetrics(BaseModel):
    bandwidth_kbps: float = 0.
    bytes_transferred: int = 0
    buffer_size: int = 0


class ProcessSupervisor(ABC, Generic[H]):
    """
    Lifecycle management of the processes feeding relay sessions.

    The handle type `H` is opaque to the registry; it is only ever passed
    back into the supervisor that created it.
    """

    @abstractmethod
    async def start(self, stream_id: str, source: StreamSource) -> H:
        """
        Launches the process relaying `source` for the session `stream_id`.

        Raises:
            `ProcessSpawnFailure` if the process could not be started or
            exited right away.
        """

    @abstractmethod
    def is_running(self, handle: H) -> bool:
        ...

    @abstractmethod
    async def stop(self, handle: H) -> None:
        """
        Terminates the process; does nothing if it is not running anymore.

        Raises:
            `ProcessStopFailure` if the process refuses to exit.
        """

    @abstractmethod
    def current_bandwidth(self, handle: H) -> float:
        """Returns the current upstream bandwidth in kbit/s."""

    @abstractmethod
    async def metrics(self, handle: H) -> ProcessMetrics:
        ...

    @abstractmethod
    def subscribe(self, handle: H) -> AsyncIterator[bytes]:
        """Yields the relayed output from the most recent buffered data onwards."""

    def returncode(self, handle: H) -> Optional[int]:
        return None
