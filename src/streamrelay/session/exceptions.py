from __future__ import annotations
from typing import TYPE_CHECKING

from streamrelay.exceptions import StreamRelayException
if TYPE_CHECKING:
    from streamrelay.models import SessionStatus
    from .stream import StreamSession


class SessionError(StreamRelayException):
    pass


class SessionNotFound(SessionError):
    def __init__(self, stream_id: str) -> None:
        self.stream_id = stream_id
        super().__init__(f"Unknown stream {stream_id}")


class SessionNotActive(SessionError):
    def __init__(self, session: StreamSession) -> None:
        self.stream_id = session.stream_id
        super().__init__(
            f"Stream {session.stream_id} is {session.status.value}"
        )


class SessionFailed(SessionError):
    def __init__(self, session: StreamSession) -> None:
        self.stream_id = session.stream_id
        super().__init__(
            f"Stream {session.stream_id} for {session.source_key} failed "
            f"and must be stopped or restarted: {session.error_message}"
        )


class InvalidStatusTransition(SessionError):
    def __init__(
        self,
        session: StreamSession,
        new_status: SessionStatus,
    ) -> None:
        super().__init__(
            f"Stream {session.stream_id} cannot go from "
            f"{session.status.value} to {new_status.value}"
        )


class StreamLimitReached(SessionError):
    def __init__(self, provider: str, limit: int) -> None:
        self.provider = provider
        self.limit = limit
        super().__init__(f"Provider {provider} already has {limit} streams")
