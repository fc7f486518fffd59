from __future__ import annotations
from asyncio import Condition
from collections import deque
from collections.abc import AsyncIterator


class ChunkBuffer:
    """
    Bounded, sequence-numbered buffer of output chunks for fan-out.

    A single producer appends chunks; any number of readers follow along
    at their own pace. When a reader falls behind by more than the buffer
    size, the oldest chunks are simply gone and the reader continues with
    the oldest chunk still available.
    """
    max_chunks: int
    _chunks: deque[tuple[int, bytes]]
    _next_seq: int
    _closed: bool
    _size: int

    def __init__(self, max_chunks: int = 50) -> None:
        self.max_chunks = max(max_chunks, 1)
        self._chunks = deque()
        self._next_seq = 0
        self._closed = False
        self._size = 0
        self._condition = Condition()

    def __len__(self) -> int:
        return len(self._chunks)

    @property
    def size(self) -> int:
        """Number of bytes currently buffered."""
        return self._size

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_seq(self) -> int:
        """Sequence number of the newest chunk; -1 if none was ever added."""
        return self._next_seq - 1

    async def put(self, chunk: bytes) -> None:
        async with self._condition:
            if self._closed:
                raise RuntimeError("Buffer is closed")
            self._chunks.append((self._next_seq, chunk))
            self._size += len(chunk)
            self._next_seq += 1
            while len(self._chunks) > self.max_chunks:
                _, dropped = self._chunks.popleft()
                self._size -= len(dropped)
            self._condition.notify_all()

    async def close(self) -> None:
        async with self._condition:
            self._closed = True
            self._condition.notify_all()

    async def read_after(self, seq: int) -> list[tuple[int, bytes]]:
        """
        Waits for and returns all buffered chunks newer than `seq`.

        Returns an empty list only once the buffer is closed and no newer
        chunks are left.
        """
        async with self._condition:
            await self._condition.wait_for(
                lambda: self._closed or self._next_seq - 1 > seq
            )
            return [(num, chunk) for num, chunk in self._chunks if num > seq]

    async def iter_chunks(self, backlog: bool = True) -> AsyncIterator[bytes]:
        """
        Yields chunks until the buffer is closed.

        Args:
            backlog (optional):
                If `True` (default), iteration starts with the oldest chunk
                still buffered, which lets a new reader start playback right
                away; otherwise only chunks added later are yielded.
        """
        seq = -1 if backlog else self.last_seq
        while True:
            chunks = await self.read_after(seq)
            if not chunks:
                return
            for seq, chunk in chunks:
                yield chunk
