from __future__ import annotations
import logging
from asyncio import sleep
from collections.abc import Iterator
from time import time
from typing import Any, Optional

from streamrelay import settings
from streamrelay.api.models import CleanupReport
from streamrelay.exceptions import OrphanProcess, ProcessSpawnFailure, ProcessStopFailure
from streamrelay.misc.keyed_lock import KeyedLock
from streamrelay.models import SessionStatus, StreamSource
from streamrelay.supervisor.base import ProcessSupervisor
from .exceptions import SessionFailed, SessionNotActive, SessionNotFound, StreamLimitReached
from .store import SessionStore
from .stream import SessionClient, StreamSession, default_client_id, new_stream_id


__all__ = ['SessionRegistry']

log = logging.getLogger(__name__)


class SessionRegistry:
    """
    Maps stream IDs to sessions and guarantees one live relay per source.

    Creating and tearing down sessions is serialized per source key;
    attaching and detaching clients only touches in-memory state and never
    waits for the process supervisor.
    """
    _store: SessionStore
    _supervisor: ProcessSupervisor[Any]
    _source_locks: KeyedLock[str]

    def __init__(
        self,
        store: SessionStore,
        supervisor: ProcessSupervisor[Any],
        *,
        max_tries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        grace_period: Optional[float] = None,
        client_timeout: Optional[float] = None,
        stream_limits: Optional[dict[str, int]] = None,
    ) -> None:
        """
        Args:
            store:
                Where the sessions are kept
            supervisor:
                Starts and stops the processes backing the sessions
            max_tries (optional):
                Spawn attempts per session before giving up;
                defaults to the `sessions.max_spawn_tries` setting.
            retry_delay (optional):
                Seconds to wait between spawn attempts;
                defaults to the `sessions.spawn_retry_delay_sec` setting.
            grace_period (optional):
                Seconds a session without clients is kept around;
                defaults to the `sessions.grace_period_sec` setting.
            client_timeout (optional):
                Seconds without activity after which a client is expired;
                defaults to the `sessions.client_timeout_sec` setting.
            stream_limits (optional):
                Maximum number of live sessions per source provider; a limit
                of zero or less means unlimited. Defaults to the
                `sessions.stream_limits` setting.
        """
        self._store = store
        self._supervisor = supervisor
        self._source_locks = KeyedLock()
        self.max_tries = max(max_tries or settings.sessions.max_spawn_tries, 1)
        self.retry_delay = settings.sessions.spawn_retry_delay_sec if retry_delay is None else retry_delay
        self.grace_period = settings.sessions.grace_period_sec if grace_period is None else grace_period
        self.client_timeout = settings.sessions.client_timeout_sec if client_timeout is None else client_timeout
        self.stream_limits = dict(settings.sessions.stream_limits if stream_limits is None else stream_limits)

    @property
    def supervisor(self) -> ProcessSupervisor[Any]:
        return self._supervisor

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, stream_id: object) -> bool:
        return stream_id in self._store

    def iter_sessions(self) -> Iterator[StreamSession]:
        return iter(self._store.all())

    def get(self, stream_id: str) -> StreamSession:
        """
        Returns the session with the given ID.

        Raises:
            `SessionNotFound` if no such session is in the registry.
        """
        session = self._store.get(stream_id)
        if session is None:
            raise SessionNotFound(stream_id)
        return session

    async def get_or_create(self, source: StreamSource) -> StreamSession:
        """
        Returns the live session serving `source`, creating it if necessary.

        Concurrent callers asking for the same source all receive the same
        session; only the first one launches a process.

        Raises:
            `SessionFailed` if the session for that source is in the error
            state and has not been stopped or restarted since.
            `StreamLimitReached` if the provider of the source already has
            as many live sessions as it is allowed.
            `ProcessSpawnFailure` if a new session could not be started
            within `max_tries` attempts; the session is then left in the
            error state.
        """
        async with self._source_locks(source.source_key):
            session = self._store.find_by_source(source.source_key)
            if session is not None:
                if session.is_live:
                    return session
                if session.status is SessionStatus.error:
                    raise SessionFailed(session)
                # A stopped session must not linger, but never hand it out.
                self._store.remove(session.stream_id)
            # No await between counting and adding the new session.
            self._check_stream_limit(source)
            session = StreamSession(new_stream_id(), source, now=time())
            self._store.add(session)
            log.info(f"Created stream {session.stream_id} for {session.source_key}")
            try:
                await self._spawn(session)
            except ProcessSpawnFailure:
                raise
            except BaseException:
                # Cancelled or unexpected error; nothing was started.
                self._store.remove(session.stream_id)
                raise
            return session

    def _check_stream_limit(self, source: StreamSource) -> None:
        if source.provider is None:
            return
        limit = self.stream_limits.get(source.provider, 0)
        if limit <= 0:
            return
        if self.provider_counts().get(source.provider, 0) >= limit:
            raise StreamLimitReached(source.provider, limit)

    def provider_counts(self) -> dict[str, int]:
        """Returns the number of live sessions per provider."""
        counts: dict[str, int] = {}
        for session in self._store.all():
            provider = session.source.provider
            if provider is not None and session.is_live:
                counts[provider] = counts.get(provider, 0) + 1
        return counts

    async def _spawn(self, session: StreamSession) -> None:
        try:
            session.handle = await self._start_process(session)
        except ProcessSpawnFailure as e:
            session.fail(f"Failed to start after {session.spawn_attempts} attempts: {e.reason}")
            log.error(session.error_message)
            raise
        session.set_status(SessionStatus.active)
        session.touch(time())
        log.info(f"Stream {session.stream_id} is active")

    async def _start_process(self, session: StreamSession, first_index: int = 0) -> Any:
        """
        Starts a process for the session's source URLs beginning at `first_index`.

        Each URL gets up to `max_tries` attempts before the next one is tried.
        Returns the handle of the started process; raises the last
        `ProcessSpawnFailure` if every URL failed.
        """
        urls = session.source.urls
        last_error: Optional[ProcessSpawnFailure] = None
        for index in range(first_index, len(urls)):
            if index != session.url_index:
                session.url_index = index
                session.failover_attempts += 1
                log.warning(f"Stream {session.stream_id} fails over to source #{index}")
            for attempt in range(1, self.max_tries + 1):
                session.spawn_attempts += 1
                try:
                    return await self._supervisor.start(session.stream_id, session.current_source)
                except ProcessSpawnFailure as e:
                    last_error = e
                    log.warning(f"Spawn attempt {attempt}/{self.max_tries} for source #{index} failed: {e}")
                if attempt < self.max_tries or index + 1 < len(urls):
                    await sleep(self.retry_delay)
        assert last_error is not None
        raise last_error

    async def _failover(self, session: StreamSession) -> bool:
        """
        Replaces the session's process with one for its next failover URL.

        Must be called while holding the lock of the session's source key.
        Clients and stream ID stay the same. If none of the remaining URLs
        can be started, the session is put into the error state.

        Returns:
            `True` if a new process is running for the session.
        """
        if not session.has_failover:
            return False
        if session.handle is not None:
            try:
                await self._supervisor.stop(session.handle)
            except ProcessStopFailure as e:
                log.error(f"Could not stop failed process of {session.stream_id}: {e}")
            session.handle = None
        try:
            session.handle = await self._start_process(session, session.url_index + 1)
        except ProcessSpawnFailure as e:
            session.fail(f"All failover sources failed: {e.reason}")
            log.error(session.error_message)
            return False
        session.touch(time())
        log.info(f"Stream {session.stream_id} now relays {session.current_url}")
        return True

    async def recover(self, stream_id: str, handle: Any) -> Optional[Any]:
        """
        Called when the output of the process behind `handle` ended early.

        If the session is still live, its process is replaced with one for
        the next failover URL, unless that already happened.

        Returns:
            The handle to continue relaying from or `None`, if the stream
            is over.
        """
        session = self._store.get(stream_id)
        if session is None:
            return None
        async with self._source_locks(session.source_key):
            if self._store.get(stream_id) is not session or not session.is_live:
                return None
            if session.handle is not handle:
                return session.handle
            if await self._failover(session):
                return session.handle
            return None

    def attach_client(
        self,
        stream_id: str,
        ip_address: str,
        user_agent: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> SessionClient:
        """
        Attaches a new client to the session.

        If the `client_id` is already attached, that client is returned.

        Raises:
            `SessionNotFound` if no such session is in the registry.
            `SessionNotActive` if the session is being stopped or has failed.
        """
        session = self.get(stream_id)
        if not session.is_live:
            raise SessionNotActive(session)
        now = time()
        if client_id is None:
            client_id = default_client_id(stream_id, ip_address, user_agent)
        client = session.get_client(client_id)
        if client is not None:
            client.touch(now)
            session.touch(now)
            return client
        client = SessionClient(client_id, stream_id, ip_address, user_agent, now=now)
        session.add_client(client, now)
        log.info(f"Client {client_id} attached to {stream_id} (clients: {session.client_count})")
        return client

    def detach_client(self, stream_id: str, client_id: str) -> Optional[SessionClient]:
        """
        Detaches the client from the session; does nothing if not attached.

        Returns:
            The detached client or `None`, if no client was detached.
        """
        session = self._store.get(stream_id)
        if session is None:
            return None
        client = session.remove_client(client_id, time())
        if client is not None:
            log.info(f"Client {client_id} detached from {stream_id} (clients: {session.client_count})")
        return client

    def touch_client(self, stream_id: str, client_id: str, bytes_sent: int = 0) -> bool:
        """
        Records activity of an attached client.

        Returns:
            `False` if the session or the client is unknown.
        """
        session = self._store.get(stream_id)
        if session is None:
            return False
        client = session.get_client(client_id)
        if client is None:
            return False
        now = time()
        client.touch(now, bytes_sent)
        session.touch(now)
        return True

    async def stop(self, stream_id: str) -> bool:
        """
        Stops the session's process and removes the session.

        Returns:
            `True` if the session was stopped and removed; `False` if it did
            not exist (anymore) or its process could not be stopped, in
            which case it is left in the error state.
        """
        session = self._store.get(stream_id)
        if session is None:
            return False
        async with self._source_locks(session.source_key):
            if self._store.get(stream_id) is not session:
                return False
            return await self._teardown(session)

    async def _teardown(self, session: StreamSession) -> bool:
        """Must be called while holding the lock of the session's source key."""
        now = time()
        if session.status is not SessionStatus.error:
            session.set_status(SessionStatus.stopped)
        session.remove_all_clients(now)
        if session.handle is not None:
            try:
                await self._supervisor.stop(session.handle)
            except ProcessStopFailure as e:
                session.fail(str(e))
                log.error(f"Could not stop stream {session.stream_id}: {e}")
                return False
        self._store.remove(session.stream_id)
        log.info(f"Stream {session.stream_id} stopped and removed ({session.status.value})")
        return True

    async def restart(self, stream_id: str) -> StreamSession:
        """
        Stops the session and creates a new one for the same source.

        Raises:
            `SessionNotFound` if no such session is in the registry.
            `ProcessSpawnFailure` if the new session could not be started.
        """
        session = self.get(stream_id)
        await self.stop(stream_id)
        if self._store.get(stream_id) is session:
            # Could not be stopped; get rid of the record anyway.
            self._store.remove(stream_id)
        return await self.get_or_create(session.source)

    async def stop_all(self) -> int:
        """Stops every session; returns the number of sessions stopped."""
        stopped = 0
        for session in self._store.all():
            if await self.stop(session.stream_id):
                stopped += 1
        return stopped

    async def close(self) -> None:
        num_stopped = await self.stop_all()
        log.info(f"Session registry closed; stopped {num_stopped} streams")

    def expire_clients(self, timeout: Optional[float] = None) -> int:
        """
        Detaches all clients without activity for `timeout` seconds.

        Returns:
            The number of clients detached.
        """
        timeout = self.client_timeout if timeout is None else timeout
        now = time()
        expired = 0
        for session in self._store.all():
            for client in session.clients:
                if client.idle_seconds(now) > timeout:
                    session.remove_client(client.client_id, now)
                    log.info(f"Client {client.client_id} timed out")
                    expired += 1
        return expired

    async def reap_orphans(self) -> list[str]:
        """
        Removes active sessions whose process is no longer running.

        A session that still has clients and a failover URL left is switched
        over to that URL instead. Every other one of those sessions is forced
        into the error state before its clients are released and the session
        is removed.

        Returns:
            The IDs of the sessions that were removed.
        """
        orphaned = []
        for session in self._store.all():
            if session.status is not SessionStatus.active or session.handle is None:
                continue
            if self._supervisor.is_running(session.handle):
                continue
            async with self._source_locks(session.source_key):
                if self._store.get(session.stream_id) is not session:
                    continue
                if session.status is not SessionStatus.active:
                    continue
                # A relay may have failed over while we waited for the lock.
                if session.handle is None or self._supervisor.is_running(session.handle):
                    continue
                error = OrphanProcess(
                    session.stream_id,
                    self._supervisor.returncode(session.handle),
                )
                log.warning(str(error))
                if session.client_count > 0 and await self._failover(session):
                    continue
                if session.status is not SessionStatus.error:
                    session.fail(str(error))
                await self._teardown(session)
                self._store.remove(session.stream_id)
                orphaned.append(session.stream_id)
        return orphaned

    async def cleanup_inactive(self, grace_seconds: Optional[float] = None) -> CleanupReport:
        """
        Removes orphaned, failed and idle sessions.

        A healthy session is only stopped, if it has no clients and its last
        activity is at least `grace_seconds` ago. Sessions that are still
        starting are left alone. Calling this repeatedly is safe.

        Args:
            grace_seconds (optional):
                Defaults to the registry's grace period.

        Returns:
            A report listing the IDs of the removed sessions.
        """
        grace = self.grace_period if grace_seconds is None else grace_seconds
        report = CleanupReport()
        report.orphaned = await self.reap_orphans()
        now = time()
        for session in self._store.all():
            if session.status is SessionStatus.error:
                async with self._source_locks(session.source_key):
                    if self._store.get(session.stream_id) is not session:
                        continue
                    await self._teardown(session)
                    self._store.remove(session.stream_id)
                    report.failed.append(session.stream_id)
                continue
            if session.status is not SessionStatus.active:
                continue
            if session.client_count > 0 or session.idle_seconds(now) < grace:
                continue
            async with self._source_locks(session.source_key):
                # State may have changed while waiting for the lock.
                if self._store.get(session.stream_id) is not session:
                    continue
                if session.client_count > 0 or session.idle_seconds(time()) < grace:
                    continue
                if await self._teardown(session):
                    report.stopped.append(session.stream_id)
        if report.total_removed:
            log.info(
                f"Cleanup removed {len(report.stopped)} idle, "
                f"{len(report.orphaned)} orphaned and {len(report.failed)} failed streams"
            )
        return report
