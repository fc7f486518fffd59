from asyncio import CancelledError, create_task, gather, sleep
from unittest import IsolatedAsyncioTestCase
from unittest.mock import AsyncMock, call, patch

from tests.fakes import FakeSupervisor
from tests.silent_log import SilentLogMixin
from streamrelay.exceptions import ProcessSpawnFailure
from streamrelay.models import ClientStatus, Episode, SessionStatus, StreamFormat, StreamSource
from streamrelay.session.exceptions import SessionFailed, SessionNotActive, SessionNotFound, StreamLimitReached
from streamrelay.session.registry import SessionRegistry
from streamrelay.session.store import MemorySessionStore


SOURCE = StreamSource(url="http://example.com/live.ts")
OTHER_SOURCE = StreamSource(url="http://example.com/other.ts")
HLS_SOURCE = StreamSource(url=SOURCE.url, format=StreamFormat.hls)
BACKUP_URLS = ["http://backup-1.example.com/live.ts", "http://backup-2.example.com/live.ts"]
FAILOVER_SOURCE = StreamSource(url=SOURCE.url, failover_urls=BACKUP_URLS)


class SessionRegistryTestCase(SilentLogMixin, IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.supervisor = FakeSupervisor()
        self.store = MemorySessionStore()
        self.registry = SessionRegistry(
            self.store,
            self.supervisor,
            max_tries=3,
            retry_delay=0,
            grace_period=60,
            client_timeout=120,
        )

    def test___init__defaults(self) -> None:
        registry = SessionRegistry(MemorySessionStore(), self.supervisor)
        self.assertGreaterEqual(registry.max_tries, 1)
        self.assertIs(self.supervisor, registry.supervisor)
        self.assertEqual(0, len(registry))
        registry = SessionRegistry(MemorySessionStore(), self.supervisor, max_tries=0)
        self.assertGreaterEqual(registry.max_tries, 1)

    async def test_get_or_create(self) -> None:
        session = await self.registry.get_or_create(SOURCE)
        self.assertEqual(SessionStatus.active, session.status)
        self.assertEqual(1, session.spawn_attempts)
        self.assertIs(self.supervisor.processes[0], session.handle)
        self.assertIn(session.stream_id, self.registry)
        self.assertIs(session, self.registry.get(session.stream_id))

        # Same source, same session:
        self.assertIs(session, await self.registry.get_or_create(SOURCE))
        self.assertIs(session, await self.registry.get_or_create(
            StreamSource(url=" http://example.com/live.ts ")
        ))
        self.assertEqual(1, self.supervisor.start_calls)

        # Different source, different session:
        other = await self.registry.get_or_create(OTHER_SOURCE)
        self.assertIsNot(session, other)
        self.assertEqual(2, len(self.registry))

    async def test_get_or_create_content_is_part_of_the_key(self) -> None:
        session = await self.registry.get_or_create(SOURCE)
        tagged = StreamSource(url=SOURCE.url, content=Episode(model_id=7))
        other = await self.registry.get_or_create(tagged)
        self.assertIsNot(session, other)
        self.assertEqual(tagged.source_key, other.source_key)

    async def test_get_or_create_format_is_part_of_the_key(self) -> None:
        session = await self.registry.get_or_create(SOURCE)
        hls_session = await self.registry.get_or_create(HLS_SOURCE)
        self.assertIsNot(session, hls_session)
        self.assertEqual(2, self.supervisor.start_calls)
        self.assertIs(hls_session, await self.registry.get_or_create(HLS_SOURCE))
        self.assertEqual(StreamFormat.ts, session.handle.source.format)
        self.assertEqual(StreamFormat.hls, hls_session.handle.source.format)

    async def test_get_or_create_concurrent(self) -> None:
        self.supervisor.start_delay = 0.01
        sessions = await gather(*(self.registry.get_or_create(SOURCE) for _ in range(10)))
        self.assertEqual(1, len({id(session) for session in sessions}))
        self.assertEqual(1, self.supervisor.start_calls)
        self.assertEqual(1, len(self.registry))

    async def test_get_or_create_retries(self) -> None:
        self.supervisor.fail_times = 2
        with patch("streamrelay.session.registry.sleep", new_callable=AsyncMock) as mock_sleep:
            session = await self.registry.get_or_create(SOURCE)
        self.assertEqual(SessionStatus.active, session.status)
        self.assertEqual(3, session.spawn_attempts)
        self.assertEqual(3, self.supervisor.start_calls)
        mock_sleep.assert_has_awaits([call(0), call(0)])

    async def test_get_or_create_spawn_failure(self) -> None:
        self.supervisor.fail_times = 5
        with self.assertRaises(ProcessSpawnFailure):
            await self.registry.get_or_create(SOURCE)
        self.assertEqual(3, self.supervisor.start_calls)
        session, = self.registry.iter_sessions()
        self.assertEqual(SessionStatus.error, session.status)
        self.assertIn("3 attempts", session.error_message)

        # The failed session blocks its source until it is cleaned up.
        with self.assertRaises(SessionFailed):
            await self.registry.get_or_create(SOURCE)
        self.assertEqual(3, self.supervisor.start_calls)

        report = await self.registry.cleanup_inactive()
        self.assertListEqual([session.stream_id], report.failed)
        self.assertEqual(0, len(self.registry))

        # Two more failures left; the third attempt succeeds.
        new_session = await self.registry.get_or_create(SOURCE)
        self.assertEqual(SessionStatus.active, new_session.status)
        self.assertNotEqual(session.stream_id, new_session.stream_id)

    async def test_get_or_create_replaces_stopped_session(self) -> None:
        session = await self.registry.get_or_create(SOURCE)
        session.set_status(SessionStatus.stopped)
        new_session = await self.registry.get_or_create(SOURCE)
        self.assertIsNot(session, new_session)
        self.assertNotIn(session.stream_id, self.registry)
        self.assertEqual(1, len(self.registry))

    async def test_get_or_create_cancelled(self) -> None:
        self.supervisor.start_delay = 10
        task = create_task(self.registry.get_or_create(SOURCE))
        await sleep(0.01)
        self.assertEqual(1, len(self.registry))
        task.cancel()
        with self.assertRaises(CancelledError):
            await task
        self.assertEqual(0, len(self.registry))

    def test_get_unknown(self) -> None:
        with self.assertRaises(SessionNotFound):
            self.registry.get("relay_nope")

    async def test_attach_and_detach(self) -> None:
        session = await self.registry.get_or_create(SOURCE)
        clients = [
            self.registry.attach_client(session.stream_id, f"10.0.0.{i}", "VLC")
            for i in range(25)
        ]
        self.assertEqual(25, session.client_count)
        self.assertEqual(25, session.peak_clients)
        for client in clients:
            self.assertIs(client, self.registry.detach_client(session.stream_id, client.client_id))
            self.assertEqual(ClientStatus.disconnected, client.status)
        self.assertEqual(0, session.client_count)
        self.assertEqual(25, session.peak_clients)

        # Detaching is idempotent:
        self.assertIsNone(self.registry.detach_client(session.stream_id, clients[0].client_id))
        self.assertIsNone(self.registry.detach_client("relay_nope", clients[0].client_id))

    async def test_attach_same_client_twice(self) -> None:
        session = await self.registry.get_or_create(SOURCE)
        client = self.registry.attach_client(session.stream_id, "10.0.0.1", "VLC")
        again = self.registry.attach_client(session.stream_id, "10.0.0.1", "VLC")
        self.assertIs(client, again)
        self.assertEqual(1, session.client_count)
        explicit = self.registry.attach_client(session.stream_id, "10.0.0.1", "VLC", client_id="x")
        self.assertEqual("x", explicit.client_id)
        self.assertEqual(2, session.client_count)

    async def test_attach_errors(self) -> None:
        with self.assertRaises(SessionNotFound):
            self.registry.attach_client("relay_nope", "10.0.0.1")
        session = await self.registry.get_or_create(SOURCE)
        session.fail("boom")
        with self.assertRaises(SessionNotActive):
            self.registry.attach_client(session.stream_id, "10.0.0.1")
        self.assertEqual(0, session.client_count)

    async def test_touch_client(self) -> None:
        session = await self.registry.get_or_create(SOURCE)
        client = self.registry.attach_client(session.stream_id, "10.0.0.1")
        self.assertTrue(self.registry.touch_client(session.stream_id, client.client_id, 100))
        self.assertTrue(self.registry.touch_client(session.stream_id, client.client_id, 50))
        self.assertEqual(150, client.bytes_received)
        self.assertFalse(self.registry.touch_client(session.stream_id, "unknown", 1))
        self.assertFalse(self.registry.touch_client("relay_nope", client.client_id, 1))

    async def test_stop(self) -> None:
        session = await self.registry.get_or_create(SOURCE)
        client = self.registry.attach_client(session.stream_id, "10.0.0.1")
        self.assertTrue(await self.registry.stop(session.stream_id))
        self.assertEqual(SessionStatus.stopped, session.status)
        self.assertEqual(ClientStatus.disconnected, client.status)
        self.assertEqual(0, session.client_count)
        self.assertFalse(session.handle.running)
        self.assertNotIn(session.stream_id, self.registry)

        # Stopping is idempotent:
        self.assertFalse(await self.registry.stop(session.stream_id))
        self.assertEqual(1, self.supervisor.stop_calls)

        # The source can be served again by a new session:
        new_session = await self.registry.get_or_create(SOURCE)
        self.assertNotEqual(session.stream_id, new_session.stream_id)

    async def test_stop_unkillable(self) -> None:
        session = await self.registry.get_or_create(SOURCE)
        self.supervisor.unkillable = True
        self.assertFalse(await self.registry.stop(session.stream_id))
        self.assertEqual(SessionStatus.error, session.status)
        self.assertIn("still alive", session.error_message)
        self.assertIn(session.stream_id, self.registry)

        report = await self.registry.cleanup_inactive()
        self.assertListEqual([session.stream_id], report.failed)
        self.assertNotIn(session.stream_id, self.registry)

    async def test_restart(self) -> None:
        session = await self.registry.get_or_create(SOURCE)
        new_session = await self.registry.restart(session.stream_id)
        self.assertNotEqual(session.stream_id, new_session.stream_id)
        self.assertEqual(session.source_key, new_session.source_key)
        self.assertEqual(SessionStatus.active, new_session.status)
        self.assertNotIn(session.stream_id, self.registry)
        with self.assertRaises(SessionNotFound):
            await self.registry.restart(session.stream_id)

    async def test_restart_failed_session(self) -> None:
        self.supervisor.fail_times = 3
        with self.assertRaises(ProcessSpawnFailure):
            await self.registry.get_or_create(SOURCE)
        session, = self.registry.iter_sessions()
        new_session = await self.registry.restart(session.stream_id)
        self.assertEqual(SessionStatus.active, new_session.status)
        self.assertEqual(1, len(self.registry))

    async def test_stop_all_and_close(self) -> None:
        await self.registry.get_or_create(SOURCE)
        await self.registry.get_or_create(OTHER_SOURCE)
        self.assertEqual(2, await self.registry.stop_all())
        self.assertEqual(0, len(self.registry))
        self.assertEqual(0, await self.registry.stop_all())
        await self.registry.get_or_create(SOURCE)
        await self.registry.close()
        self.assertEqual(0, len(self.registry))

    async def test_expire_clients(self) -> None:
        session = await self.registry.get_or_create(SOURCE)
        stale = self.registry.attach_client(session.stream_id, "10.0.0.1")
        fresh = self.registry.attach_client(session.stream_id, "10.0.0.2")
        stale.last_activity -= 121
        self.assertEqual(1, self.registry.expire_clients())
        self.assertIsNone(session.get_client(stale.client_id))
        self.assertIs(fresh, session.get_client(fresh.client_id))
        self.assertEqual(0, self.registry.expire_clients())
        fresh.last_activity -= 11
        self.assertEqual(1, self.registry.expire_clients(timeout=10))

    async def test_cleanup_inactive_respects_clients_and_grace(self) -> None:
        watched = await self.registry.get_or_create(SOURCE)
        idle = await self.registry.get_or_create(OTHER_SOURCE)
        self.registry.attach_client(watched.stream_id, "10.0.0.1")

        # Nothing is old enough yet:
        report = await self.registry.cleanup_inactive()
        self.assertEqual(0, report.total_removed)

        watched.last_activity -= 1000
        idle.last_activity -= 61
        report = await self.registry.cleanup_inactive()
        self.assertListEqual([idle.stream_id], report.stopped)
        self.assertEqual(SessionStatus.stopped, idle.status)
        self.assertNotIn(idle.stream_id, self.registry)
        # A session with clients is never removed, even with zero grace.
        report = await self.registry.cleanup_inactive(grace_seconds=0)
        self.assertEqual(0, report.total_removed)
        self.assertIn(watched.stream_id, self.registry)

    async def test_cleanup_inactive_idempotent(self) -> None:
        session = await self.registry.get_or_create(SOURCE)
        report = await self.registry.cleanup_inactive(grace_seconds=0)
        self.assertListEqual([session.stream_id], report.stopped)
        report = await self.registry.cleanup_inactive(grace_seconds=0)
        self.assertEqual(0, report.total_removed)
        self.assertEqual(1, self.supervisor.stop_calls)

    async def test_cleanup_inactive_skips_starting(self) -> None:
        self.supervisor.start_delay = 0.05
        task = create_task(self.registry.get_or_create(SOURCE))
        await sleep(0.01)
        session, = self.registry.iter_sessions()
        self.assertEqual(SessionStatus.starting, session.status)
        report = await self.registry.cleanup_inactive(grace_seconds=0)
        self.assertEqual(0, report.total_removed)
        self.assertIs(session, await task)
        self.assertEqual(SessionStatus.active, session.status)

    async def test_orphans(self) -> None:
        session = await self.registry.get_or_create(SOURCE)
        healthy = await self.registry.get_or_create(OTHER_SOURCE)
        client = self.registry.attach_client(session.stream_id, "10.0.0.1")
        self.registry.attach_client(healthy.stream_id, "10.0.0.1")
        session.handle.die(returncode=-9)
        with self.assertLogs("streamrelay.session.registry", "WARNING") as log_ctx:
            report = await self.registry.cleanup_inactive()
        self.assertIn("returncode=-9", log_ctx.output[0])
        self.assertListEqual([session.stream_id], report.orphaned)
        self.assertListEqual([], report.stopped)
        self.assertEqual(SessionStatus.error, session.status)
        self.assertEqual(ClientStatus.disconnected, client.status)
        self.assertNotIn(session.stream_id, self.registry)
        self.assertIn(healthy.stream_id, self.registry)

        self.assertListEqual([], await self.registry.reap_orphans())

    async def test_get_or_create_fails_over(self) -> None:
        self.supervisor.dead_urls = {SOURCE.url}
        session = await self.registry.get_or_create(FAILOVER_SOURCE)
        self.assertEqual(SessionStatus.active, session.status)
        self.assertEqual(4, session.spawn_attempts)
        self.assertEqual(1, session.failover_attempts)
        self.assertEqual(BACKUP_URLS[0], session.current_url)
        self.assertEqual(BACKUP_URLS[0], session.handle.source.url)
        self.assertEqual([], session.handle.source.failover_urls)
        # The session is still found by its primary source.
        self.assertIs(session, await self.registry.get_or_create(FAILOVER_SOURCE))
        info = session.info(0.)
        self.assertEqual(SOURCE.url, info.source_url)
        self.assertEqual(BACKUP_URLS[0], info.current_url)
        self.assertEqual(1, info.failover_attempts)

    async def test_get_or_create_all_sources_fail(self) -> None:
        self.supervisor.dead_urls = {SOURCE.url, *BACKUP_URLS}
        with self.assertRaises(ProcessSpawnFailure):
            await self.registry.get_or_create(FAILOVER_SOURCE)
        self.assertEqual(9, self.supervisor.start_calls)
        session, = self.registry.iter_sessions()
        self.assertEqual(SessionStatus.error, session.status)
        self.assertEqual(2, session.failover_attempts)
        self.assertIn("9 attempts", session.error_message)

    async def test_orphan_fails_over_while_watched(self) -> None:
        session = await self.registry.get_or_create(FAILOVER_SOURCE)
        client = self.registry.attach_client(session.stream_id, "10.0.0.1")
        dead = session.handle
        dead.die(returncode=1)
        self.assertListEqual([], await self.registry.reap_orphans())
        self.assertEqual(SessionStatus.active, session.status)
        self.assertIs(self.supervisor.processes[1], session.handle)
        self.assertEqual(BACKUP_URLS[0], session.handle.source.url)
        self.assertEqual(session.stream_id, session.handle.stream_id)
        self.assertIs(client, session.get_client(client.client_id))
        self.assertEqual(1, session.failover_attempts)
        self.assertIs(session, self.registry.get(session.stream_id))

        # Second failover, then nothing is left:
        session.handle.die()
        self.assertListEqual([], await self.registry.reap_orphans())
        self.assertEqual(BACKUP_URLS[1], session.current_url)
        session.handle.die()
        self.assertListEqual([session.stream_id], await self.registry.reap_orphans())
        self.assertEqual(SessionStatus.error, session.status)
        self.assertEqual(ClientStatus.disconnected, client.status)

    async def test_orphan_without_clients_does_not_fail_over(self) -> None:
        session = await self.registry.get_or_create(FAILOVER_SOURCE)
        session.handle.die()
        self.assertListEqual([session.stream_id], await self.registry.reap_orphans())
        self.assertEqual(0, session.failover_attempts)
        self.assertEqual(1, self.supervisor.start_calls)

    async def test_orphan_failover_exhausted(self) -> None:
        session = await self.registry.get_or_create(FAILOVER_SOURCE)
        self.registry.attach_client(session.stream_id, "10.0.0.1")
        self.supervisor.dead_urls = set(BACKUP_URLS)
        session.handle.die()
        self.assertListEqual([session.stream_id], await self.registry.reap_orphans())
        self.assertEqual(SessionStatus.error, session.status)
        self.assertIn("All failover sources failed", session.error_message)
        self.assertNotIn(session.stream_id, self.registry)

    async def test_recover(self) -> None:
        session = await self.registry.get_or_create(FAILOVER_SOURCE)
        first = session.handle
        new_handle = await self.registry.recover(session.stream_id, first)
        self.assertIs(session.handle, new_handle)
        self.assertIsNot(first, new_handle)
        self.assertFalse(first.running)
        # Another relay of the same process gets the replacement without a new start:
        self.assertIs(new_handle, await self.registry.recover(session.stream_id, first))
        self.assertEqual(2, self.supervisor.start_calls)

        self.assertIsNone(await self.registry.recover("relay_nope", first))
        await self.registry.stop(session.stream_id)
        self.assertIsNone(await self.registry.recover(session.stream_id, new_handle))

    async def test_recover_without_failover(self) -> None:
        session = await self.registry.get_or_create(SOURCE)
        self.assertIsNone(await self.registry.recover(session.stream_id, session.handle))
        self.assertEqual(SessionStatus.active, session.status)
        self.assertEqual(1, self.supervisor.start_calls)

    async def test_stream_limits(self) -> None:
        self.registry.stream_limits = {"acme": 2, "free": 0}
        sources = [
            StreamSource(url=f"http://acme.example.com/{i}.ts", provider="acme")
            for i in range(3)
        ]
        first = await self.registry.get_or_create(sources[0])
        await self.registry.get_or_create(sources[1])
        # Asking for a running source again is always fine:
        self.assertIs(first, await self.registry.get_or_create(sources[0]))
        with self.assertRaises(StreamLimitReached) as ctx:
            await self.registry.get_or_create(sources[2])
        self.assertEqual(("acme", 2), (ctx.exception.provider, ctx.exception.limit))
        self.assertEqual({"acme": 2}, self.registry.provider_counts())
        self.assertEqual(2, len(self.registry))

        # Other providers, unlimited providers and sources without one are not affected:
        for i in range(3):
            await self.registry.get_or_create(StreamSource(url=f"http://free.example.com/{i}.ts", provider="free"))
            await self.registry.get_or_create(StreamSource(url=f"http://other.example.com/{i}.ts", provider="other"))
        await self.registry.get_or_create(OTHER_SOURCE)

        await self.registry.stop(first.stream_id)
        session = await self.registry.get_or_create(sources[2])
        self.assertEqual(SessionStatus.active, session.status)

    async def test_stream_limits_concurrent(self) -> None:
        self.registry.stream_limits = {"acme": 1}
        self.supervisor.start_delay = 0.01
        results = await gather(
            *(self.registry.get_or_create(StreamSource(url=f"http://acme.example.com/{i}.ts", provider="acme"))
              for i in range(3)),
            return_exceptions=True,
        )
        self.assertEqual(1, sum(1 for result in results if not isinstance(result, Exception)))
        self.assertEqual(2, sum(1 for result in results if isinstance(result, StreamLimitReached)))
        self.assertEqual(1, self.supervisor.start_calls)

    async def test_stop_racing_get_or_create(self) -> None:
        session = await self.registry.get_or_create(SOURCE)
        self.supervisor.stop_delay = 0.02
        stopped, new_session = await gather(
            self.registry.stop(session.stream_id),
            self.registry.get_or_create(SOURCE),
        )
        self.assertTrue(stopped)
        self.assertEqual(SessionStatus.stopped, session.status)
        self.assertNotEqual(session.stream_id, new_session.stream_id)
        self.assertEqual(SessionStatus.active, new_session.status)
        self.assertNotIn(session.stream_id, self.registry)
        self.assertIs(new_session, self.registry.get(new_session.stream_id))

    async def test_attach_racing_stop(self) -> None:
        session = await self.registry.get_or_create(SOURCE)
        self.supervisor.stop_delay = 0.05
        task = create_task(self.registry.stop(session.stream_id))
        await sleep(0.01)
        # Still in the registry, but no longer accepting clients:
        self.assertIn(session.stream_id, self.registry)
        with self.assertRaises(SessionNotActive):
            self.registry.attach_client(session.stream_id, "10.0.0.1")
        self.assertTrue(await task)
        self.assertEqual(0, session.client_count)
        with self.assertRaises(SessionNotFound):
            self.registry.attach_client(session.stream_id, "10.0.0.1")
