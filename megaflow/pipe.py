from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from typing import AsyncIterator, Awaitable, BinaryIO, Callable, Protocol, TypeVar


DEFAULT_PIPE_CAPACITY = 256 * 1024
CHUNK_SIZE = 64 * 1024
PROGRESS_INTERVAL = 0.1
T = TypeVar("T")


class AsyncReader(Protocol):
    async def read(self, size: int = -1) -> bytes: ...


class AsyncWriter(Protocol):
    async def write(self, data: bytes) -> None: ...


class _PipeState:
    def __init__(self, capacity: int) -> None:
        self.buffer = bytearray()
        self.capacity = capacity
        self.closed = False
        self.error: BaseException | None = None
        self.bytes_read = 0
        self.bytes_written = 0
        self.changed = asyncio.Condition()


class PipeReader:
    def __init__(self, state: _PipeState) -> None:
        self._state = state

    @property
    def bytes_read(self) -> int:
        return self._state.bytes_read

    async def read(self, size: int = -1) -> bytes:
        state = self._state
        async with state.changed:
            await state.changed.wait_for(
                lambda: state.buffer or state.closed or state.error is not None
            )
            if state.error is not None:
                raise state.error
            if not state.buffer:
                return b""
            if size < 0 or size >= len(state.buffer):
                size = len(state.buffer)
            data = bytes(state.buffer[:size])
            del state.buffer[:size]
            state.bytes_read += len(data)
            state.changed.notify_all()
            return data

    async def abort(self, exc: BaseException) -> None:
        """Fail the writing side, eg. when the local file cannot be written."""
        async with self._state.changed:
            if self._state.error is None:
                self._state.error = exc
            self._state.changed.notify_all()


class PipeWriter:
    def __init__(self, state: _PipeState) -> None:
        self._state = state

    @property
    def bytes_written(self) -> int:
        return self._state.bytes_written

    async def write(self, data: bytes) -> None:
        state = self._state
        view = memoryview(data)
        while view:
            async with state.changed:
                await state.changed.wait_for(
                    lambda: len(state.buffer) < state.capacity or state.error is not None
                )
                if state.error is not None:
                    raise state.error
                if state.closed:
                    raise BrokenPipeError("write to a closed pipe")
                room = state.capacity - len(state.buffer)
                state.buffer.extend(view[:room])
                state.bytes_written += min(room, len(view))
                view = view[room:]
                state.changed.notify_all()

    async def close(self) -> None:
        async with self._state.changed:
            self._state.closed = True
            self._state.changed.notify_all()

    async def abort(self, exc: BaseException) -> None:
        async with self._state.changed:
            if self._state.error is None:
                self._state.error = exc
            self._state.changed.notify_all()


def pipe(capacity: int = DEFAULT_PIPE_CAPACITY) -> tuple[PipeReader, PipeWriter]:
    """Bounded in-memory byte pipe: writes suspend while full, reads while empty."""
    if capacity < 1:
        raise ValueError("pipe capacity must be positive")
    state = _PipeState(capacity)
    return PipeReader(state), PipeWriter(state)


class LocalFileReader:
    """Reads a local binary file off the event loop, counting bytes read."""

    def __init__(self, file_obj: BinaryIO) -> None:
        self._file = file_obj
        self.bytes_read = 0

    async def read(self, size: int = -1) -> bytes:
        data = await asyncio.to_thread(self._file.read, CHUNK_SIZE if size < 0 else size)
        self.bytes_read += len(data)
        return data


async def copy_stream(reader: AsyncReader, writer: AsyncWriter) -> int:
    copied = 0
    while True:
        chunk = await reader.read(CHUNK_SIZE)
        if not chunk:
            return copied
        await writer.write(chunk)
        copied += len(chunk)


async def copy_to_file(reader: AsyncReader, path: Path) -> int:
    copied = 0
    with path.open("wb") as fh:
        while True:
            chunk = await reader.read(CHUNK_SIZE)
            if not chunk:
                break
            await asyncio.to_thread(fh.write, chunk)
            copied += len(chunk)
    return copied


@contextlib.asynccontextmanager
async def report_progress(
    position: Callable[[], int],
    callback: Callable[[int], None] | None,
    *,
    interval: float = PROGRESS_INTERVAL,
) -> AsyncIterator[None]:
    """Sample ``position()`` every ``interval`` seconds instead of on every chunk."""
    if callback is None:
        yield
        return

    async def _tick() -> None:
        last = -1
        while True:
            await asyncio.sleep(interval)
            current = position()
            if current != last:
                callback(current)
                last = current

    ticker = asyncio.create_task(_tick())
    try:
        yield
    finally:
        ticker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await ticker
        callback(position())


async def join_transfer(network: Awaitable[T], disk: Awaitable[object]) -> T:
    """Await both sides of a transfer; the first failure cancels the other side."""
    tasks = [asyncio.ensure_future(network), asyncio.ensure_future(disk)]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return tasks[0].result()
