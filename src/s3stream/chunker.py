"""Lazy fixed-size chunking of upload sources of unknown length."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from typing import Any, BinaryIO, Union

from s3stream.errors import InvalidArgumentError

UploadSource = Union[
    bytes, bytearray, memoryview, str, Iterable[bytes], AsyncIterable[bytes], BinaryIO
]

# Returned by next() once a sync iterable is used up
_EXHAUSTED = object()


def _check_source(source: Any) -> None:
    if isinstance(source, (bytes, bytearray, memoryview, str)):
        return
    if hasattr(source, "__aiter__") or hasattr(source, "read") or hasattr(source, "__iter__"):
        return
    raise InvalidArgumentError(f"Unsupported upload source type: {type(source).__name__}")


def _as_bytes(piece: Any) -> bytes | memoryview:
    if isinstance(piece, str):
        return piece.encode("utf-8")
    return piece


async def _iter_source(source: Any, read_size: int) -> AsyncIterator[bytes | memoryview]:
    """Adapt any supported source to an async iterator of byte pieces."""
    if isinstance(source, str):
        source = source.encode("utf-8")
    if isinstance(source, (bytes, bytearray, memoryview)):
        view = memoryview(source)
        for start in range(0, len(view), read_size):
            yield view[start : start + read_size]
    elif hasattr(source, "__aiter__"):
        iterator = source.__aiter__()
        try:
            async for piece in iterator:
                yield _as_bytes(piece)
        finally:
            # async for does not close the source when the upload is abandoned
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
    elif hasattr(source, "read"):
        while True:
            piece = await asyncio.to_thread(source.read, read_size)
            if not piece:
                break
            yield _as_bytes(piece)
    else:
        iterator = iter(source)
        while True:
            piece = await asyncio.to_thread(next, iterator, _EXHAUSTED)
            if piece is _EXHAUSTED:
                break
            yield _as_bytes(piece)


class StreamChunker:
    """Splits an upload source into chunks of ``part_size`` bytes.

    The source is pulled lazily, one piece at a time, so at most one chunk
    plus one source piece is held in memory. The first chunk is always
    produced, even for an empty source, so an empty object still gets
    uploaded.

    File objects and sync iterables are read in a worker thread, so a slow
    source only suspends the task reading it.

    Attributes:
        part_size: Maximum size of each chunk.
        part_number: Number of chunks handed out so far.
        exhausted: True once the source has reported end of data.
    """

    def __init__(self, source: UploadSource, part_size: int) -> None:
        _check_source(source)
        self.part_size = part_size
        self.part_number = 0
        self.exhausted = False
        self._pieces = _iter_source(source, part_size)
        self._pending = bytearray()

    async def _pull(self) -> None:
        """Append one source piece to the pending buffer."""
        try:
            piece = await self._pieces.__anext__()
        except StopAsyncIteration:
            self.exhausted = True
            return
        self._pending += piece

    async def next_chunk(self) -> bytes | None:
        """Return the next chunk, or None once the source is used up."""
        while len(self._pending) < self.part_size and not self.exhausted:
            await self._pull()
        if not self._pending and self.part_number > 0:
            return None
        chunk = bytes(self._pending[: self.part_size])
        del self._pending[: self.part_size]
        self.part_number += 1
        return chunk

    async def has_more(self) -> bool:
        """Check whether another chunk follows, keeping any byte read."""
        while not self._pending and not self.exhausted:
            await self._pull()
        return bool(self._pending)

    async def aclose(self) -> None:
        """Release the underlying source iterator."""
        await self._pieces.aclose()
        self._pending.clear()

    def __aiter__(self) -> "StreamChunker":
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.next_chunk()
        if chunk is None:
            raise StopAsyncIteration
        return chunk
