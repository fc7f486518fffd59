from __future__ import annotations
import logging
import shutil
from collections.abc import Collection
from pathlib import Path
from time import time

from streamrelay import settings
from streamrelay.misc.constants import HLS_SEGMENT_SUFFIX, MEGA
from streamrelay.misc.functions import (
    get_directory_size,
    get_free_disk_space,
    run_in_default_executor,
)
from streamrelay.types import PathT


__all__ = ['BufferStore']

log = logging.getLogger(__name__)

TEMP_FILE_SUFFIX = '.tmp'


class BufferStore:
    """
    Directory tree holding the on-disk buffers of the relay sessions.

    Every session gets its own sub-directory named after its stream ID.
    Blocking filesystem work is delegated to the default executor.
    """
    root: Path

    def __init__(self, root: PathT) -> None:
        self.root = Path(root)

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def session_dir(self, stream_id: str) -> Path:
        if len(Path(stream_id).parts) != 1 or stream_id in ('.', '..'):
            raise ValueError(f"'{stream_id}' is not a valid stream ID")
        return Path(self.root, stream_id)

    def create_session_dir(self, stream_id: str) -> Path:
        path = self.session_dir(stream_id)
        path.mkdir(parents=True, exist_ok=True)
        return path

    async def get_free_space(self) -> float:
        """Free disk space at the buffer path in MB."""
        self.ensure_root()
        return await get_free_disk_space(self.root)

    async def get_usage(self, stream_id: str) -> int:
        """Bytes occupied by the buffer of one session."""
        return await run_in_default_executor(get_directory_size, self.session_dir(stream_id))

    async def get_total_usage(self) -> int:
        """Bytes occupied by all buffers."""
        return await run_in_default_executor(get_directory_size, self.root)

    async def get_total_usage_mb(self) -> float:
        return await self.get_total_usage() / MEGA

    async def remove(self, stream_id: str) -> bool:
        """Deletes the session's buffer directory; returns `False` if it did not exist."""
        path = self.session_dir(stream_id)
        if not path.exists():
            return False
        await run_in_default_executor(shutil.rmtree, path, True)
        log.debug(f"Removed buffer directory {path}")
        return True

    def _list_dirs(self) -> list[Path]:
        if not self.root.is_dir():
            return []
        return [path for path in self.root.iterdir() if path.is_dir()]

    async def find_orphaned_dirs(self, known_stream_ids: Collection[str]) -> list[Path]:
        """Returns the buffer directories that belong to no known session."""
        dirs = await run_in_default_executor(self._list_dirs)
        return [path for path in dirs if path.name not in known_stream_ids]

    async def remove_orphaned_dirs(self, known_stream_ids: Collection[str]) -> int:
        removed = 0
        for path in await self.find_orphaned_dirs(known_stream_ids):
            log.info(f"Removing orphaned buffer directory {path}")
            await run_in_default_executor(shutil.rmtree, path, True)
            removed += 1
        return removed

    @staticmethod
    def optimal_segment_count(client_count: int) -> int:
        """
        Number of segments worth keeping for a session with that many clients.

        More clients are more likely to lag behind, so the buffer grows with
        the audience up to a fixed maximum.
        """
        extra = min(
            settings.buffer.segments_per_client * max(client_count, 0),
            settings.buffer.max_extra_segments,
        )
        return settings.buffer.base_segments + extra

    def _list_segments(self, stream_id: str) -> list[Path]:
        path = self.session_dir(stream_id)
        if not path.is_dir():
            return []
        segments = []
        for file_path in path.glob(f"*{HLS_SEGMENT_SUFFIX}"):
            try:
                segments.append((file_path.stat().st_mtime, file_path))
            except FileNotFoundError:
                continue
        return [file_path for _, file_path in sorted(segments)]

    def _delete_files(self, paths: list[Path]) -> int:
        deleted = 0
        for file_path in paths:
            try:
                file_path.unlink()
            except FileNotFoundError:
                continue
            deleted += 1
        return deleted

    async def prune_segments(self, stream_id: str, keep: int) -> int:
        """
        Deletes all but the `keep` newest segments of a session.

        Returns:
            The number of segment files deleted.
        """
        segments = await run_in_default_executor(self._list_segments, stream_id)
        surplus = segments[:max(len(segments) - max(keep, 0), 0)]
        if not surplus:
            return 0
        deleted = await run_in_default_executor(self._delete_files, surplus)
        log.debug(f"Pruned {deleted} segments of {stream_id}")
        return deleted

    async def trim(self, stream_ids_by_priority: list[str], target_bytes: int) -> int:
        """
        Halves session buffers until the total usage is below `target_bytes`.

        Args:
            stream_ids_by_priority:
                Sessions in the order they should be trimmed;
                the first ones lose their segments first.
            target_bytes:
                Total usage to get below

        Returns:
            The number of segment files deleted.
        """
        deleted = 0
        for stream_id in stream_ids_by_priority:
            if await self.get_total_usage() <= target_bytes:
                break
            segments = await run_in_default_executor(self._list_segments, stream_id)
            deleted += await self.prune_segments(stream_id, len(segments) // 2)
        return deleted

    def _list_stale_temp_files(self, max_age: float) -> list[Path]:
        if not self.root.is_dir():
            return []
        threshold = time() - max_age
        stale = []
        for file_path in self.root.rglob(f"*{TEMP_FILE_SUFFIX}"):
            try:
                if file_path.is_file() and file_path.stat().st_mtime < threshold:
                    stale.append(file_path)
            except FileNotFoundError:
                continue
        return stale

    async def remove_temp_files(self, max_age: float) -> int:
        """Deletes temporary files older than `max_age` seconds."""
        stale = await run_in_default_executor(self._list_stale_temp_files, max_age)
        return await run_in_default_executor(self._delete_files, stale)
