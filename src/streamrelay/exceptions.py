from typing import Optional as _Optional


class StreamRelayException(Exception):
    pass


class SupervisorError(StreamRelayException):
    """Base class for errors concerning supervised relay processes"""
    def __init__(self, stream_id: str, reason: str) -> None:
        self.stream_id = stream_id
        self.reason = reason
        super().__init__(f"{stream_id}: {reason}")


class ProcessSpawnFailure(SupervisorError):
    pass


class ProcessStopFailure(SupervisorError):
    pass


class OrphanProcess(SupervisorError):
    def __init__(self, stream_id: str, returncode: _Optional[int] = None) -> None:
        self.returncode = returncode
        super().__init__(
            stream_id,
            f"relay process died unnoticed ({returncode=})",
        )


class RoutingError(StreamRelayException):
    pass


class InvalidRouteSignature(RoutingError):
    pass


class HTTPClientError(StreamRelayException):
    pass


class NoRunningTask(StreamRelayException):
    pass
