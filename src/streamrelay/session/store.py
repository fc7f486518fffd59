from __future__ import annotations
from abc import ABC, abstractmethod
from collections.abc import Iterator
from threading import RLock
from typing import Optional

from .stream import StreamSession


__all__ = [
    'SessionStore',
    'MemorySessionStore',
]


class SessionStore(ABC):
    """
    Storage interface for the sessions of a registry.

    Keeps sessions by `stream_id` and maintains an index from the source key
    to the session currently serving it. Implementations must make every
    single method call atomic; compound operations are coordinated by the
    registry.
    """

    @abstractmethod
    def get(self, stream_id: str) -> Optional[StreamSession]:
        ...

    @abstractmethod
    def find_by_source(self, source_key: str) -> Optional[StreamSession]:
        ...

    @abstractmethod
    def add(self, session: StreamSession) -> None:
        """Adds the session; it replaces any session indexed under its source key."""

    @abstractmethod
    def remove(self, stream_id: str) -> Optional[StreamSession]:
        """Removes and returns the session; returns `None` if it was unknown."""

    @abstractmethod
    def all(self) -> list[StreamSession]:
        """Returns a snapshot list of all sessions."""

    def __iter__(self) -> Iterator[StreamSession]:
        return iter(self.all())

    def __len__(self) -> int:
        return len(self.all())

    def __contains__(self, stream_id: object) -> bool:
        return isinstance(stream_id, str) and self.get(stream_id) is not None


class MemorySessionStore(SessionStore):
    """Process-local session store guarded by a re-entrant lock."""
    _sessions: dict[str, StreamSession]
    _by_source: dict[str, str]

    def __init__(self) -> None:
        self._lock = RLock()
        self._sessions = {}
        self._by_source = {}

    def get(self, stream_id: str) -> Optional[StreamSession]:
        with self._lock:
            return self._sessions.get(stream_id)

    def find_by_source(self, source_key: str) -> Optional[StreamSession]:
        with self._lock:
            stream_id = self._by_source.get(source_key)
            if stream_id is None:
                return None
            return self._sessions.get(stream_id)

    def add(self, session: StreamSession) -> None:
        with self._lock:
            self._sessions[session.stream_id] = session
            self._by_source[session.source_key] = session.stream_id

    def remove(self, stream_id: str) -> Optional[StreamSession]:
        with self._lock:
            session = self._sessions.pop(stream_id, None)
            if session is None:
                return None
            if self._by_source.get(session.source_key) == stream_id:
                del self._by_source[session.source_key]
            return session

    def all(self) -> list[StreamSession]:
        with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
