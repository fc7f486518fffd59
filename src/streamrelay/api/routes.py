from logging import getLogger
from pathlib import Path
from secrets import token_hex
from time import time
from typing import Optional

from aiohttp.web_exceptions import (
    HTTPBadRequest,
    HTTPFound,
    HTTPNotFound,
    HTTPServiceUnavailable,
)
from aiohttp.web_fileresponse import FileResponse
from aiohttp.web_request import Request
from aiohttp.web_response import Response, StreamResponse
from aiohttp.web_routedef import RouteTableDef
from pydantic import ValidationError

from streamrelay import __version__, settings
from streamrelay.exceptions import ProcessSpawnFailure, SupervisorError
from streamrelay.misc.constants import (
    HLS_PLAYLIST_CONTENT_TYPE,
    HLS_PLAYLIST_NAME,
    HLS_SEGMENT_SUFFIX,
    MPEGTS_CONTENT_TYPE,
)
from streamrelay.models import SessionStatus, StreamFormat, StreamSource
from streamrelay.node import NODE_KEY, RelayNode
from streamrelay.session.exceptions import SessionError, SessionFailed, SessionNotFound, StreamLimitReached
from streamrelay.session.stream import StreamSession, default_client_id
from streamrelay.web import ensure_json_body
from .models import (
    CleanupRequest,
    HealthStatus,
    SessionList,
    StopAllResponse,
    StopResponse,
    StreamStatsResponse,
)


log = getLogger(__name__)

routes = RouteTableDef()


def get_node(request: Request) -> RelayNode:
    return request.app[NODE_KEY]


def get_session_or_404(request: Request) -> StreamSession:
    try:
        return get_node(request).registry.get(request.match_info["stream_id"])
    except SessionNotFound as e:
        log.info(str(e))
        raise HTTPNotFound() from e


def get_hours_param(request: Request, default: float = 24.) -> float:
    try:
        hours = float(request.query.get("hours", default))
    except ValueError:
        raise HTTPBadRequest(text="Invalid value for `hours`")
    if hours <= 0:
        raise HTTPBadRequest(text="`hours` must be positive")
    return hours


async def get_or_create_or_503(node: RelayNode, source: StreamSource) -> StreamSession:
    try:
        return await node.registry.get_or_create(source)
    except (ProcessSpawnFailure, SessionFailed, StreamLimitReached) as e:
        log.warning(f"Cannot serve {source.source_key}: {e}")
        raise HTTPServiceUnavailable(text=str(e)) from e


#########################
# Client-facing routes: #
#########################

@routes.get(r'/stream')
async def get_stream(request: Request) -> StreamResponse:
    """
    Serves a source to a client, starting the relay if necessary.

    All clients requesting the same source share one relay session.
    MPEG-TS is streamed back directly for as long as the client stays
    connected and the session is alive; for HLS the client is redirected
    to the session's playlist.

    Raises:
        `HTTPBadRequest` (400)
            if the query parameters do not describe a valid source
        `HTTPFound` (302)
            redirecting to the playlist, if the HLS format was requested
        `HTTPServiceUnavailable` (503)
            if the relay process could not be started or the session
            went away before the client could be attached
    """
    try:
        source = StreamSource.from_query(request.query)
    except ValidationError as e:
        log.info(f"Invalid stream request: {e}")
        raise HTTPBadRequest(text="Invalid stream parameters") from e
    node = get_node(request)
    session = await get_or_create_or_503(node, source)
    ip_address = request.remote or "unknown"
    user_agent = request.headers.get("User-Agent")
    if source.format is StreamFormat.hls:
        attach_or_503(node, session, ip_address, user_agent)
        raise HTTPFound(f"/hls/{session.stream_id}/{HLS_PLAYLIST_NAME}")
    # Every byte stream connection is a consumer of its own.
    client_id = f"{default_client_id(session.stream_id, ip_address, user_agent)}_{token_hex(4)}"
    attach_or_503(node, session, ip_address, user_agent, client_id)
    try:
        return await relay_byte_stream(request, node, session, client_id)
    finally:
        node.registry.detach_client(session.stream_id, client_id)


def attach_or_503(
    node: RelayNode,
    session: StreamSession,
    ip_address: str,
    user_agent: Optional[str],
    client_id: Optional[str] = None,
) -> None:
    try:
        node.registry.attach_client(session.stream_id, ip_address, user_agent, client_id)
    except SessionError as e:
        log.info(f"Cannot attach client: {e}")
        raise HTTPServiceUnavailable(text=str(e)) from e


async def relay_byte_stream(
    request: Request,
    node: RelayNode,
    session: StreamSession,
    client_id: str,
) -> StreamResponse:
    """
    Writes the session's output to the client until either of them is gone.

    If the output ends while the client is still attached, the registry is
    asked to fail over to another source, and relaying continues from the
    replacement process.
    """
    if session.handle is None:
        raise HTTPServiceUnavailable()
    registry = node.registry
    response = StreamResponse(headers={
        "Content-Type": MPEGTS_CONTENT_TYPE,
        "Cache-Control": "no-cache",
    })
    await response.prepare(request)
    handle = session.handle
    try:
        while handle is not None:
            async for chunk in registry.supervisor.subscribe(handle):
                await response.write(chunk)
                if not registry.touch_client(session.stream_id, client_id, len(chunk)):
                    handle = None  # detached by cleanup or the session went away
                    break
            else:
                handle = await registry.recover(session.stream_id, handle)
    except ConnectionResetError:
        log.info(f"Client {client_id} disconnected")
        return response
    except (SupervisorError, ValueError) as e:
        log.warning(f"Output of {session.stream_id} for client {client_id} ended: {e}")
    await response.write_eof()
    return response


@routes.get(r'/hls/{stream_id}/{file_name}')
async def get_hls_file(request: Request) -> FileResponse:
    """
    Serves the playlist or a segment of an HLS session.

    Each request counts as activity of the requesting client;
    a client that had already been expired is attached again.

    Raises:
        `HTTPNotFound` (404)
            if the session or the file does not exist
    """
    session = get_session_or_404(request)
    file_name = request.match_info["file_name"]
    suffix = Path(file_name).suffix
    if file_name.startswith(".") or suffix not in (".m3u8", HLS_SEGMENT_SUFFIX):
        raise HTTPNotFound()
    node = get_node(request)
    path = Path(node.buffer_store.session_dir(session.stream_id), file_name)
    if not path.is_file():
        raise HTTPNotFound()
    try:
        client = node.registry.attach_client(
            session.stream_id,
            request.remote or "unknown",
            request.headers.get("User-Agent"),
        )
    except SessionError as e:
        raise HTTPNotFound() from e
    if suffix == HLS_SEGMENT_SUFFIX:
        node.registry.touch_client(session.stream_id, client.client_id, path.stat().st_size)
        content_type = MPEGTS_CONTENT_TYPE
    else:
        content_type = HLS_PLAYLIST_CONTENT_TYPE
    return FileResponse(path, headers={
        "Content-Type": content_type,
        "Cache-Control": "no-cache",
    })


######################
# Admin-only routes: #
######################

@routes.get(r'/api/health')
async def get_health(request: Request) -> Response:
    node = get_node(request)
    summary = node.stats.current_summary()
    failed = sum(
        1 for session in node.registry.iter_sessions()
        if session.status is SessionStatus.error
    )
    free_space = await node.buffer_store.get_free_space()
    problems = []
    if failed:
        problems.append(f"{failed} stream(s) in error state")
    if free_space < settings.buffer.min_free_space_mb:
        problems.append(f"Only {free_space:.0f} MB free at buffer path")
    if not node.maintenance.is_running:
        problems.append("Maintenance jobs are not running")
    return HealthStatus(
        status="degraded" if problems else "ok",
        version=__version__,
        active_streams=summary.active_streams,
        failed_streams=failed,
        buffer_free_space_mb=round(free_space, 2),
        problems=problems,
    ).json_response()


@routes.get(r'/api/stats/global')
async def get_global_stats(request: Request) -> Response:
    return get_node(request).stats.current_summary().json_response()


@routes.get(r'/api/stats/system')
async def get_system_stats(request: Request) -> Response:
    return (await get_node(request).stats.system_stats()).json_response()


@routes.get(r'/api/streams')
async def list_streams(request: Request) -> Response:
    now = time()
    streams = [
        session.info(now, with_clients=False)
        for session in get_node(request).registry.iter_sessions()
    ]
    streams.sort(key=lambda info: info.started_at)
    return SessionList(streams=streams).json_response()


@routes.post(r'/api/streams')
@ensure_json_body
async def create_stream(request: Request, data: StreamSource) -> Response:
    """Gets or creates the session for a source without attaching a client."""
    session = await get_or_create_or_503(get_node(request), data)
    return session.info(time()).json_response()


@routes.post(r'/api/streams/stop-all')
async def stop_all_streams(request: Request) -> Response:
    stopped = await get_node(request).registry.stop_all()
    log.info(f"Stopped {stopped} streams on request")
    return StopAllResponse(stopped=stopped).json_response()


@routes.get(r'/api/streams/{stream_id}')
async def get_stream_info(request: Request) -> Response:
    return get_session_or_404(request).info(time()).json_response()


@routes.get(r'/api/streams/{stream_id}/stats')
async def get_stream_stats(request: Request) -> Response:
    session = get_session_or_404(request)
    hours = get_hours_param(request)
    stats = get_node(request).stats
    return StreamStatsResponse(
        stream_id=session.stream_id,
        hours=hours,
        peak=stats.peak_metrics(session.stream_id, hours),
        hourly=stats.hourly(session.stream_id, hours),
    ).json_response()


@routes.post(r'/api/streams/{stream_id}/stop')
async def stop_stream(request: Request) -> Response:
    """
    Stops a session and removes it from the registry.

    Attached clients are disconnected. Whether to stop a watched stream
    is for the caller to decide.

    Raises:
        `HTTPNotFound` (404)
            if the session does not exist
    """
    session = get_session_or_404(request)
    if session.client_count:
        log.info(f"Stopping {session.stream_id} with {session.client_count} client(s) attached")
    stopped = await get_node(request).registry.stop(session.stream_id)
    return StopResponse(stream_id=session.stream_id, stopped=stopped).json_response()


@routes.post(r'/api/streams/{stream_id}/restart')
async def restart_stream(request: Request) -> Response:
    session = get_session_or_404(request)
    try:
        new_session = await get_node(request).registry.restart(session.stream_id)
    except SessionNotFound as e:
        raise HTTPNotFound() from e
    except (ProcessSpawnFailure, SessionFailed, StreamLimitReached) as e:
        raise HTTPServiceUnavailable(text=str(e)) from e
    return new_session.info(time()).json_response()


@routes.post(r'/api/cleanup')
@ensure_json_body
async def run_cleanup(request: Request, data: CleanupRequest) -> Response:
    report = await get_node(request).maintenance.sweep(data.grace_seconds)
    return report.json_response()


@routes.get(r'/api/stats/history')
async def get_history(request: Request) -> Response:
    """Aggregated stats over all streams of the last `hours`."""
    hours = get_hours_param(request)
    stats = get_node(request).stats
    return StreamStatsResponse(
        hours=hours,
        peak=stats.peak_metrics(None, hours),
        hourly=stats.hourly(None, hours),
    ).json_response()

