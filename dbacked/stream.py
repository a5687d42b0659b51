"""
Fan-out Stream
One producer, several independently paced readers over a bounded byte buffer

Every reader sees the exact same byte sequence. The producer blocks once it is
`capacity` bytes ahead of the slowest reader, readers block until data arrives,
so the whole backup is never held in memory.
"""

import hashlib
import logging
import threading
from collections import deque
from typing import Deque, Dict, Iterable, Optional, Tuple

from .exceptions import StreamAbortedError

logger = logging.getLogger(__name__)

READ_SIZE = 1024 * 1024  # 1MB


class FanOutBuffer:
    """Bounded buffer shared by one writer and a fixed set of readers"""

    def __init__(self, capacity: int):
        """
        Args:
            capacity: Max bytes buffered ahead of the slowest reader
        """
        if capacity <= 0:
            raise ValueError("capacity must be positive")

        self.capacity = capacity
        self._cond = threading.Condition()
        self._chunks: Deque[Tuple[int, bytes]] = deque()  # (start offset, data)
        self._end = 0  # total bytes written
        self._positions: Dict[str, int] = {}
        self._closed = False
        self._error: Optional[BaseException] = None

    # ========================================================================
    # READERS
    # ========================================================================

    def reader(self, name: str) -> "StreamReader":
        """Register a reader, must happen before the first write"""
        with self._cond:
            if self._end:
                raise RuntimeError("Readers must be registered before writing")
            if name in self._positions:
                raise ValueError(f"Reader {name} already registered")
            self._positions[name] = 0
        return StreamReader(self, name)

    # ========================================================================
    # WRITER
    # ========================================================================

    def write(self, data: bytes) -> None:
        """
        Append bytes, blocking while the buffer is full

        A single write larger than the capacity is accepted once every reader
        has caught up.
        """
        if not data:
            return

        data = bytes(data)
        with self._cond:
            if self._closed:
                raise RuntimeError("Write after close")

            while not self._error and self._buffered() and self._buffered() + len(data) > self.capacity:
                self._cond.wait()
            self._raise_if_aborted()

            self._chunks.append((self._end, data))
            self._end += len(data)
            self._cond.notify_all()

    def close(self) -> None:
        """Signal end of stream"""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def abort(self, error: BaseException) -> None:
        """Fail the writer and every reader, first error wins"""
        with self._cond:
            if self._error is None:
                self._error = error
                logger.debug(f"Stream aborted: {error!r}")
            self._chunks.clear()
            self._cond.notify_all()

    @property
    def bytes_written(self) -> int:
        return self._end

    # ========================================================================
    # INTERNALS (called with the condition held)
    # ========================================================================

    def _buffered(self) -> int:
        if not self._positions:
            return 0
        return self._end - min(self._positions.values())

    def _raise_if_aborted(self) -> None:
        if self._error is not None:
            raise StreamAbortedError(
                f"Stream aborted: {self._error}",
                code=getattr(self._error, "code", None)
            ) from self._error

    def _read(self, name: str, size: int) -> bytes:
        with self._cond:
            while True:
                self._raise_if_aborted()
                position = self._positions[name]
                if position < self._end:
                    break
                if self._closed:
                    return b""
                self._cond.wait()

            pieces = []
            wanted = size
            for start, data in self._chunks:
                if start + len(data) <= position:
                    continue
                offset = position - start
                piece = data[offset:offset + wanted]
                pieces.append(piece)
                position += len(piece)
                wanted -= len(piece)
                if not wanted:
                    break

            self._positions[name] = position
            self._trim()
            self._cond.notify_all()
            return b"".join(pieces)

    def _trim(self) -> None:
        """Drop chunks every reader is done with"""
        lowest = min(self._positions.values()) if self._positions else self._end
        while self._chunks and self._chunks[0][0] + len(self._chunks[0][1]) <= lowest:
            self._chunks.popleft()


class StreamReader:
    """One reader's view of a FanOutBuffer"""

    def __init__(self, buffer: FanOutBuffer, name: str):
        self._buffer = buffer
        self.name = name
        self.bytes_read = 0

    def read(self, size: int = READ_SIZE) -> bytes:
        """
        Read up to `size` bytes

        Returns:
            At least one byte, or b"" at end of stream

        Raises:
            StreamAbortedError: If the stream was aborted
        """
        data = self._buffer._read(self.name, size)
        self.bytes_read += len(data)
        return data

    def read_exactly(self, size: int) -> bytes:
        """Read `size` bytes, fewer only at end of stream"""
        pieces = []
        remaining = size
        while remaining:
            data = self.read(remaining)
            if not data:
                break
            pieces.append(data)
            remaining -= len(data)
        return b"".join(pieces)

    def abort(self, error: BaseException) -> None:
        self._buffer.abort(error)


def pump(chunks: Iterable[bytes], buffer: FanOutBuffer, header: bytes = b"") -> None:
    """
    Feed a buffer from an iterable, then close it

    Any failure, including one from the source iterable, aborts the buffer
    so the readers stop instead of waiting forever.
    """
    try:
        buffer.write(header)
        for chunk in chunks:
            buffer.write(chunk)
        buffer.close()
    except StreamAbortedError:
        # a reader failed first, it reports the error
        pass
    except Exception as e:
        logger.error(f"Producer failed: {e}")
        buffer.abort(e)


def hash_stream(reader: StreamReader, algorithm: str = "md5") -> str:
    """
    Hash everything a reader receives until end of stream

    Returns:
        Hex digest
    """
    digest = hashlib.new(algorithm)
    while True:
        data = reader.read()
        if not data:
            break
        digest.update(data)
    logger.debug(f"Hashed {reader.bytes_read} bytes")
    return digest.hexdigest()
