from __future__ import annotations
import asyncio
import logging
from asyncio.subprocess import PIPE, Process
from collections import deque
from collections.abc import AsyncIterator
from contextlib import suppress
from pathlib import Path
from subprocess import DEVNULL
from time import time
from typing import Optional

from streamrelay import settings
from streamrelay.buffers import BufferStore
from streamrelay.exceptions import ProcessSpawnFailure, ProcessStopFailure
from streamrelay.misc.constants import HLS_PLAYLIST_NAME, HLS_SEGMENT_SUFFIX
from streamrelay.misc.functions import create_user_subprocess, run_in_default_executor
from streamrelay.misc.task_manager import TaskManager
from streamrelay.models import StreamFormat, StreamSource
from .bandwidth import BandwidthMeter
from .base import ProcessMetrics, ProcessSupervisor
from .chunk_buffer import ChunkBuffer


__all__ = [
    'FFmpegProcess',
    'FFmpegSupervisor',
    'build_ffmpeg_args',
]

log = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20


def build_ffmpeg_args(source: StreamSource, output_dir: Optional[Path] = None) -> list[str]:
    """
    Returns the FFmpeg arguments for relaying `source` without transcoding.

    MPEG-TS output goes to stdout; HLS output is written as a playlist with
    rotating segments into `output_dir`, which is required for that format.
    """
    args = ['-hide_banner', '-loglevel', 'error']
    args += ['-err_detect', 'ignore_err', '-ignore_unknown']
    args += ['-fflags', '+nobuffer+igndts', '-flags', 'low_delay']
    if source.url.startswith(('http://', 'https://')):
        args += ['-user_agent', source.user_agent or settings.supervisor.user_agent]
        args += [
            '-multiple_requests', '1',
            '-reconnect_on_network_error', '1',
            '-reconnect_on_http_error', '5xx,4xx',
            '-reconnect_streamed', '1',
            '-reconnect_delay_max', '5',
        ]
    args += list(settings.supervisor.extra_input_args)
    args += ['-i', source.url, '-c', 'copy']
    if source.format is StreamFormat.ts:
        args += ['-f', 'mpegts', 'pipe:1']
        return args
    if output_dir is None:
        raise ValueError("HLS output requires an output directory")
    args += [
        '-f', 'hls',
        '-hls_time', str(settings.supervisor.hls_time),
        '-hls_list_size', str(settings.supervisor.hls_list_size),
        '-hls_flags', 'delete_segments',
        str(Path(output_dir, HLS_PLAYLIST_NAME)),
    ]
    return args


class FFmpegProcess:
    """Handle of one FFmpeg relay process and its output bookkeeping."""
    stream_id: str
    format: StreamFormat
    process: Process
    started_at: float
    meter: BandwidthMeter
    buffer: Optional[ChunkBuffer]
    output_dir: Optional[Path]
    stderr_tail: deque[str]
    _seen_segments: dict[str, int]
    _tasks: list[asyncio.Task[None]]

    def __init__(
        self,
        stream_id: str,
        format_: StreamFormat,
        process: Process,
        *,
        buffer: Optional[ChunkBuffer] = None,
        output_dir: Optional[Path] = None,
    ) -> None:
        self.stream_id = stream_id
        self.format = format_
        self.process = process
        self.started_at = time()
        self.meter = BandwidthMeter(settings.supervisor.bandwidth_window_sec)
        self.buffer = buffer
        self.output_dir = output_dir
        self.stderr_tail = deque(maxlen=STDERR_TAIL_LINES)
        self._seen_segments = {}
        self._tasks = []

    def __repr__(self) -> str:
        return f"<FFmpegProcess {self.stream_id} pid={self.pid}>"

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def stderr(self) -> str:
        return "\n".join(self.stderr_tail)

    def scan_segments(self) -> int:
        """
        Accounts for HLS segments that appeared since the last scan.

        Returns the combined size in bytes of all segments present.
        """
        assert self.output_dir is not None
        present = {}
        for file_path in self.output_dir.glob(f"*{HLS_SEGMENT_SUFFIX}"):
            try:
                present[file_path.name] = file_path.stat().st_size
            except FileNotFoundError:
                continue
        for name, size in present.items():
            if name not in self._seen_segments:
                self.meter.add(size)
        self._seen_segments = present
        return sum(present.values())


class FFmpegSupervisor(ProcessSupervisor[FFmpegProcess]):
    """Runs one FFmpeg process per relay session."""

    def __init__(self, buffer_store: BufferStore) -> None:
        self.buffer_store = buffer_store

    async def start(self, stream_id: str, source: StreamSource) -> FFmpegProcess:
        output_dir = None
        if source.format is StreamFormat.hls:
            output_dir = self.buffer_store.create_session_dir(stream_id)
        args = build_ffmpeg_args(source, output_dir)
        log.debug(f"Starting FFmpeg for {stream_id}: {' '.join(args)}")
        try:
            process = await create_user_subprocess(
                settings.supervisor.binary_ffmpeg,
                *args,
                sudo_user=settings.supervisor.check_user,
                stdout=PIPE if source.format is StreamFormat.ts else DEVNULL,
                stderr=PIPE,
            )
        except OSError as e:
            raise ProcessSpawnFailure(stream_id, f"{e.__class__.__name__}: {e}") from e
        handle = FFmpegProcess(
            stream_id,
            source.format,
            process,
            buffer=ChunkBuffer(settings.supervisor.max_buffered_chunks) if output_dir is None else None,
            output_dir=output_dir,
        )
        handle._tasks.append(TaskManager.fire_and_forget(
            self._collect_stderr(handle),
            name=f"ffmpeg-stderr-{stream_id}",
        ))
        if handle.buffer is not None:
            handle._tasks.append(TaskManager.fire_and_forget(
                self._pump(handle),
                name=f"ffmpeg-pump-{stream_id}",
            ))
        try:
            await asyncio.wait_for(process.wait(), settings.supervisor.startup_check_sec)
        except asyncio.TimeoutError:
            log.info(f"FFmpeg for {stream_id} running with PID {process.pid}")
            return handle
        except BaseException:
            # Nobody gets the handle, so nobody else would ever stop the process.
            log.warning(f"Start of FFmpeg for {stream_id} interrupted; stopping PID {process.pid}")
            try:
                await self.stop(handle)
            except ProcessStopFailure as e:
                log.error(str(e))
            raise
        # Let the collector catch the last words of the process.
        await asyncio.wait(handle._tasks[:1], timeout=1.)
        await self._release(handle)
        raise ProcessSpawnFailure(
            stream_id,
            f"FFmpeg exited with code {process.returncode}: {handle.stderr or 'no output'}",
        )

    async def _collect_stderr(self, handle: FFmpegProcess) -> None:
        stream = handle.process.stderr
        assert stream is not None
        while line := await stream.readline():
            text = line.decode(errors="replace").rstrip()
            handle.stderr_tail.append(text)
            log.debug(f"FFmpeg {handle.stream_id}: {text}")

    async def _pump(self, handle: FFmpegProcess) -> None:
        """Moves the process output into the chunk buffer until EOF."""
        stream = handle.process.stdout
        assert stream is not None and handle.buffer is not None
        try:
            while chunk := await stream.read(settings.supervisor.read_chunk_size):
                handle.meter.add(len(chunk))
                await handle.buffer.put(chunk)
        finally:
            await handle.buffer.close()
        log.info(f"Output of {handle.stream_id} ended after {handle.meter.total_bytes} bytes")

    def is_running(self, handle: FFmpegProcess) -> bool:
        return handle.process.returncode is None

    def returncode(self, handle: FFmpegProcess) -> Optional[int]:
        return handle.process.returncode

    async def stop(self, handle: FFmpegProcess) -> None:
        """Sends SIGTERM, then SIGKILL if the process does not exit in time."""
        process = handle.process
        if process.returncode is None:
            with suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), settings.supervisor.terminate_timeout_sec)
            except asyncio.TimeoutError:
                log.warning(f"FFmpeg for {handle.stream_id} ignored SIGTERM; killing it")
                with suppress(ProcessLookupError):
                    process.kill()
                try:
                    await asyncio.wait_for(process.wait(), settings.supervisor.terminate_timeout_sec)
                except asyncio.TimeoutError:
                    raise ProcessStopFailure(
                        handle.stream_id,
                        f"PID {process.pid} survived SIGKILL",
                    ) from None
        await self._release(handle)
        log.info(f"FFmpeg for {handle.stream_id} stopped (code {process.returncode})")

    async def _release(self, handle: FFmpegProcess) -> None:
        for task in handle._tasks:
            task.cancel()
        handle._tasks.clear()
        if handle.buffer is not None and not handle.buffer.closed:
            await handle.buffer.close()
        if handle.output_dir is not None:
            await self.buffer_store.remove(handle.stream_id)

    def current_bandwidth(self, handle: FFmpegProcess) -> float:
        return handle.meter.kbps()

    async def metrics(self, handle: FFmpegProcess) -> ProcessMetrics:
        if handle.output_dir is not None:
            buffer_size = await run_in_default_executor(handle.scan_segments)
        else:
            assert handle.buffer is not None
            buffer_size = handle.buffer.size
        return ProcessMetrics(
            bandwidth_kbps=round(handle.meter.kbps(), 2),
            bytes_transferred=handle.meter.total_bytes,
            buffer_size=buffer_size,
        )

    async def subscribe(self, handle: FFmpegProcess) -> AsyncIterator[bytes]:
        if handle.buffer is None:
            raise ValueError(f"{handle.stream_id} is not relayed as a byte stream")
        async for chunk in handle.buffer.iter_chunks():
            yield chunk
