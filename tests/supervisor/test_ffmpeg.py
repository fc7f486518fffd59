import asyncio
from pathlib import Path
from shutil import rmtree
from tempfile import mkdtemp
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import AsyncMock, MagicMock, patch

from tests.silent_log import SilentLogMixin
from streamrelay import settings
from streamrelay.buffers import BufferStore
from streamrelay.exceptions import ProcessSpawnFailure, ProcessStopFailure
from streamrelay.models import StreamFormat, StreamSource
from streamrelay.supervisor import ffmpeg
from streamrelay.supervisor.chunk_buffer import ChunkBuffer


async def wait_forever() -> int:
    await asyncio.sleep(3600)
    return 0


def make_process(stdout: bytes = b"", stderr: bytes = b"", eof: bool = True) -> MagicMock:
    """Mocked `asyncio.subprocess.Process` with real stream readers."""
    process = MagicMock(pid=4321, returncode=None)
    process.stdout, process.stderr = asyncio.StreamReader(), asyncio.StreamReader()
    process.stdout.feed_data(stdout)
    process.stderr.feed_data(stderr)
    if eof:
        process.stdout.feed_eof()
        process.stderr.feed_eof()
    process.wait = wait_forever
    return process


class BuildFFmpegArgsTestCase(TestCase):
    def test_ts(self) -> None:
        source = StreamSource(url="http://example.com/live.ts", user_agent="Player/1.0")
        args = ffmpeg.build_ffmpeg_args(source)
        self.assertListEqual(["-f", "mpegts", "pipe:1"], args[-3:])
        self.assertIn("-reconnect_streamed", args)
        self.assertEqual("Player/1.0", args[args.index("-user_agent") + 1])
        self.assertEqual(source.url, args[args.index("-i") + 1])
        self.assertEqual("copy", args[args.index("-c") + 1])

    def test_non_http_source(self) -> None:
        source = StreamSource(url="rtmp://example.com/app/key")
        args = ffmpeg.build_ffmpeg_args(source)
        self.assertNotIn("-user_agent", args)
        self.assertNotIn("-reconnect_streamed", args)

    def test_default_user_agent(self) -> None:
        args = ffmpeg.build_ffmpeg_args(StreamSource(url="https://example.com/a"))
        self.assertEqual(settings.supervisor.user_agent, args[args.index("-user_agent") + 1])

    def test_extra_input_args(self) -> None:
        with patch.object(settings.supervisor, "extra_input_args", ["-rw_timeout", "5000000"]):
            args = ffmpeg.build_ffmpeg_args(StreamSource(url="https://example.com/a"))
        self.assertLess(args.index("-rw_timeout"), args.index("-i"))

    def test_hls(self) -> None:
        source = StreamSource(url="http://example.com/live.ts", format=StreamFormat.hls)
        with self.assertRaises(ValueError):
            ffmpeg.build_ffmpeg_args(source)
        args = ffmpeg.build_ffmpeg_args(source, Path("/tmp/x"))
        self.assertEqual("hls", args[args.index("-f") + 1])
        self.assertEqual("delete_segments", args[args.index("-hls_flags") + 1])
        self.assertEqual(str(settings.supervisor.hls_time), args[args.index("-hls_time") + 1])
        self.assertEqual("/tmp/x/playlist.m3u8", args[-1])


class FFmpegProcessTestCase(TestCase):
    def test_scan_segments(self) -> None:
        test_dir = Path(mkdtemp(prefix="streamrelay_test"))
        try:
            handle = ffmpeg.FFmpegProcess("relay_a", StreamFormat.hls, MagicMock(), output_dir=test_dir)
            Path(test_dir, "seg0.ts").write_bytes(b"x" * 100)
            Path(test_dir, "playlist.m3u8").write_text("#EXTM3U")
            self.assertEqual(100, handle.scan_segments())
            self.assertEqual(100, handle.meter.total_bytes)
            Path(test_dir, "seg1.ts").write_bytes(b"x" * 50)
            # Known segments are not counted twice
            self.assertEqual(150, handle.scan_segments())
            self.assertEqual(150, handle.meter.total_bytes)
            Path(test_dir, "seg0.ts").unlink()
            self.assertEqual(50, handle.scan_segments())
            self.assertEqual(150, handle.meter.total_bytes)
        finally:
            rmtree(test_dir)

    def test_stderr(self) -> None:
        handle = ffmpeg.FFmpegProcess("relay_a", StreamFormat.ts, MagicMock(pid=1))
        handle.stderr_tail.extend(["a", "b"])
        self.assertEqual("a\nb", handle.stderr)
        self.assertEqual(1, handle.pid)


class FFmpegSupervisorTestCase(SilentLogMixin, IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.test_dir = Path(mkdtemp(prefix="streamrelay_test"))
        self.supervisor = ffmpeg.FFmpegSupervisor(BufferStore(self.test_dir))
        self.source = StreamSource(url="http://example.com/live.ts")
        self.hls_source = StreamSource(url="http://example.com/live.ts", format=StreamFormat.hls)
        patcher = patch.object(settings.supervisor, "startup_check_sec", 0.01)
        patcher.start()
        self.addCleanup(patcher.stop)
        patcher = patch.object(settings.supervisor, "terminate_timeout_sec", 0.01)
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self) -> None:
        rmtree(self.test_dir, ignore_errors=True)

    @patch.object(ffmpeg, "create_user_subprocess", new_callable=AsyncMock)
    async def test_start_ts(self, mock_create_subprocess: AsyncMock) -> None:
        mock_create_subprocess.return_value = process = make_process(b"\x47" * 188, eof=False)
        handle = await self.supervisor.start("relay_a", self.source)
        self.assertIs(process, handle.process)
        self.assertIsInstance(handle.buffer, ChunkBuffer)
        self.assertIsNone(handle.output_dir)
        self.assertTrue(self.supervisor.is_running(handle))
        self.assertIsNone(self.supervisor.returncode(handle))
        call_args = mock_create_subprocess.await_args
        self.assertEqual(settings.supervisor.binary_ffmpeg, call_args.args[0])
        self.assertEqual(asyncio.subprocess.PIPE, call_args.kwargs["stdout"])
        self.assertEqual(asyncio.subprocess.PIPE, call_args.kwargs["stderr"])

        # Pumped output reaches subscribers
        await asyncio.sleep(0.01)
        subscription = self.supervisor.subscribe(handle)
        self.assertEqual(b"\x47" * 188, await subscription.__anext__())
        metrics = await self.supervisor.metrics(handle)
        self.assertEqual(188, metrics.bytes_transferred)
        self.assertEqual(188, metrics.buffer_size)
        self.assertGreater(self.supervisor.current_bandwidth(handle), 0)

        # Stopping ends the subscription
        async def terminate() -> None:
            process.returncode = -15
        process.wait = AsyncMock(side_effect=terminate)
        await self.supervisor.stop(handle)
        process.terminate.assert_called_once_with()
        process.kill.assert_not_called()
        self.assertTrue(handle.buffer.closed)
        self.assertListEqual([], [chunk async for chunk in subscription])
        self.assertListEqual([], handle._tasks)

    @patch.object(ffmpeg, "create_user_subprocess", new_callable=AsyncMock)
    async def test_start_hls(self, mock_create_subprocess: AsyncMock) -> None:
        mock_create_subprocess.return_value = process = make_process(eof=False)
        handle = await self.supervisor.start("relay_b", self.hls_source)
        self.assertIsNone(handle.buffer)
        self.assertEqual(Path(self.test_dir, "relay_b"), handle.output_dir)
        self.assertTrue(handle.output_dir.is_dir())
        self.assertEqual(asyncio.subprocess.DEVNULL, mock_create_subprocess.await_args.kwargs["stdout"])
        Path(handle.output_dir, "seg0.ts").write_bytes(b"x" * 10)
        metrics = await self.supervisor.metrics(handle)
        self.assertEqual(10, metrics.buffer_size)
        self.assertEqual(10, metrics.bytes_transferred)
        with self.assertRaises(ValueError):
            await self.supervisor.subscribe(handle).__anext__()

        process.wait = AsyncMock(return_value=0)
        await self.supervisor.stop(handle)
        self.assertFalse(handle.output_dir.exists())

    @patch.object(ffmpeg, "create_user_subprocess", new_callable=AsyncMock)
    async def test_start_exits_right_away(self, mock_create_subprocess: AsyncMock) -> None:
        process = make_process(stderr=b"Connection refused\n")
        process.returncode = 1
        process.wait = AsyncMock(return_value=1)
        mock_create_subprocess.return_value = process
        with self.assertRaises(ProcessSpawnFailure) as ctx:
            await self.supervisor.start("relay_c", self.hls_source)
        self.assertEqual("relay_c", ctx.exception.stream_id)
        self.assertIn("code 1", str(ctx.exception))
        self.assertIn("Connection refused", str(ctx.exception))
        self.assertFalse(Path(self.test_dir, "relay_c").exists())

    @patch.object(ffmpeg, "create_user_subprocess", new_callable=AsyncMock)
    async def test_start_cancelled(self, mock_create_subprocess: AsyncMock) -> None:
        process = make_process(eof=False)

        async def wait() -> int:
            while not process.terminate.called:
                await asyncio.sleep(0.005)
            process.returncode = -15
            return -15
        process.wait = wait
        mock_create_subprocess.return_value = process
        with patch.object(settings.supervisor, "startup_check_sec", 10):
            task = asyncio.create_task(self.supervisor.start("relay_h", self.hls_source))
            await asyncio.sleep(0.05)
            self.assertTrue(Path(self.test_dir, "relay_h").is_dir())
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task
        process.terminate.assert_called_once_with()
        process.kill.assert_not_called()
        self.assertEqual(-15, process.returncode)
        self.assertFalse(Path(self.test_dir, "relay_h").exists())

    @patch.object(ffmpeg, "create_user_subprocess", new_callable=AsyncMock)
    async def test_start_binary_missing(self, mock_create_subprocess: AsyncMock) -> None:
        mock_create_subprocess.side_effect = FileNotFoundError("ffmpeg")
        with self.assertRaises(ProcessSpawnFailure) as ctx:
            await self.supervisor.start("relay_d", self.source)
        self.assertIn("FileNotFoundError", ctx.exception.reason)

    async def test_stop_kills_stubborn_process(self) -> None:
        process = make_process()
        handle = ffmpeg.FFmpegProcess("relay_e", StreamFormat.ts, process, buffer=ChunkBuffer())
        calls = []

        async def wait() -> int:
            if process.kill.called:
                process.returncode = -9
                return -9
            calls.append("wait")
            await asyncio.sleep(3600)
            return 0
        process.wait = wait
        await self.supervisor.stop(handle)
        process.terminate.assert_called_once_with()
        process.kill.assert_called_once_with()
        self.assertListEqual(["wait"], calls)
        self.assertTrue(handle.buffer.closed)

    async def test_stop_survivor(self) -> None:
        process = make_process()
        handle = ffmpeg.FFmpegProcess("relay_f", StreamFormat.ts, process, buffer=ChunkBuffer())
        with self.assertRaises(ProcessStopFailure) as ctx:
            await self.supervisor.stop(handle)
        self.assertIn("4321", str(ctx.exception))
        process.kill.assert_called_once_with()

    async def test_stop_already_exited(self) -> None:
        process = make_process()
        process.returncode = 0
        handle = ffmpeg.FFmpegProcess("relay_g", StreamFormat.ts, process, buffer=ChunkBuffer())
        self.assertFalse(self.supervisor.is_running(handle))
        self.assertEqual(0, self.supervisor.returncode(handle))
        await self.supervisor.stop(handle)
        process.terminate.assert_not_called()
        self.assertTrue(handle.buffer.closed)
