"""Demultiplexer for the engine's combined log stream.

Each frame is an 8-byte header followed by its payload::

    [stream type: 1 byte][reserved: 3 bytes][length: uint32 big-endian]

Stream type 1 is stdout and 2 is stderr. Capture is bounded: once either
stream grows past ``max_length`` it is cut to exactly ``max_length`` and no
further frames are read for either stream.
"""

import struct
from enum import Enum
from typing import Iterator, NamedTuple, Optional, Protocol, Tuple

from polyrun.sandbox.core.exceptions import (
    LogStreamError,
    TruncatedFrameError,
    UnknownFrameTypeError,
)

STDOUT = 1
STDERR = 2
HEADER_SIZE = 8
MAX_OUTPUT_LENGTH = 2048

_HEADER = struct.Struct(">BxxxL")


class LogReader(Protocol):
    """Blocking byte source; ``read`` returns ``b""`` at end of input."""

    def read(self, n: int) -> bytes:
        ...


class Frame(NamedTuple):
    stream_type: int
    payload: bytes


class ReaderState(str, Enum):
    HEADER = "HEADER"
    PAYLOAD = "PAYLOAD"
    DONE = "DONE"


class FrameReader:
    """Reads frames one at a time from a multiplexed stream."""

    def __init__(self, reader: LogReader) -> None:
        self.reader = reader
        self.state = ReaderState.HEADER

    def _read_exactly(self, size: int) -> bytes:
        """Reads until ``size`` bytes arrive or the input ends."""
        chunks = []
        remaining = size
        while remaining > 0:
            try:
                chunk = self.reader.read(remaining)
            except OSError as e:
                raise LogStreamError(f"failed to read log stream: {e}") from e
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def next_frame(self) -> Optional[Frame]:
        """Returns the next frame, or None once the stream has ended."""
        if self.state is ReaderState.DONE:
            return None

        header = self._read_exactly(HEADER_SIZE)
        if len(header) < HEADER_SIZE:
            self.state = ReaderState.DONE
            return None
        stream_type, length = _HEADER.unpack(header)
        if stream_type not in (STDOUT, STDERR):
            self.state = ReaderState.DONE
            raise UnknownFrameTypeError(stream_type)

        self.state = ReaderState.PAYLOAD
        payload = self._read_exactly(length)
        if len(payload) < length:
            self.state = ReaderState.DONE
            raise TruncatedFrameError(
                f"stream ended after {len(payload)} of {length} payload bytes"
            )
        self.state = ReaderState.HEADER
        return Frame(stream_type, payload)

    def __iter__(self) -> Iterator[Frame]:
        while True:
            frame = self.next_frame()
            if frame is None:
                return
            yield frame


class DemuxBuffers:
    """Independent stdout/stderr accumulators with a shared cap."""

    def __init__(self, max_length: int = MAX_OUTPUT_LENGTH) -> None:
        self.max_length = max_length
        self.stdout = bytearray()
        self.stderr = bytearray()

    def append(self, stream_type: int, payload: bytes) -> bool:
        """Appends a payload; returns True when the cap was exceeded."""
        buffer = self.stdout if stream_type == STDOUT else self.stderr
        # 只写入剩余容量，另一个线程随时读取快照也不会超过上限
        room = max(self.max_length - len(buffer), 0)
        buffer.extend(payload[:room])
        return len(payload) > room

    def snapshot(self) -> Tuple[bytes, bytes]:
        return bytes(self.stdout[: self.max_length]), bytes(self.stderr[: self.max_length])


def demultiplex(
    reader: LogReader,
    max_length: int = MAX_OUTPUT_LENGTH,
    buffers: Optional[DemuxBuffers] = None,
) -> Tuple[bytes, bytes]:
    """Splits a multiplexed stream into (stdout, stderr).

    Args:
        reader: Source of the multiplexed stream.
        max_length: Maximum bytes kept per stream.
        buffers: Accumulators to fill, so a caller can read partial output
            from another thread.
    Returns:
        Tuple of captured stdout and stderr.
    Raises:
        UnknownFrameTypeError: If a frame carries an unknown stream type.
        TruncatedFrameError: If the stream ends inside a payload.
        LogStreamError: If reading the stream fails.
    """
    buffers = buffers if buffers is not None else DemuxBuffers(max_length)
    for frame in FrameReader(reader):
        if buffers.append(frame.stream_type, frame.payload):
            break
    return buffers.snapshot()
