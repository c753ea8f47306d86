"""Tests for the log stream demultiplexer."""

import io

import pytest

from polyrun.sandbox.core.demux import (
    MAX_OUTPUT_LENGTH,
    STDERR,
    STDOUT,
    DemuxBuffers,
    FrameReader,
    ReaderState,
    demultiplex,
)
from polyrun.sandbox.core.exceptions import (
    LogStreamError,
    StreamProtocolError,
    TruncatedFrameError,
    UnknownFrameTypeError,
)
from tests.fakes import frame


class TrickleReader:
    """Returns at most one byte per read."""

    def __init__(self, data: bytes) -> None:
        self.buffer = io.BytesIO(data)

    def read(self, n: int) -> bytes:
        return self.buffer.read(min(n, 1))


class BrokenReader:
    def read(self, n: int) -> bytes:
        raise ConnectionResetError("connection reset by peer")


class WatchedBuffer(bytearray):
    """Records the largest size the buffer ever reached."""

    peak = 0

    def extend(self, data) -> None:
        super().extend(data)
        self.peak = max(self.peak, len(self))


class TestDemultiplex:
    def test_splits_interleaved_streams(self):
        data = (
            frame(STDOUT, b"out 1\n")
            + frame(STDERR, b"err 1\n")
            + frame(STDOUT, b"out 2\n")
        )
        stdout, stderr = demultiplex(io.BytesIO(data))
        assert stdout == b"out 1\nout 2\n"
        assert stderr == b"err 1\n"

    def test_empty_stream(self):
        assert demultiplex(io.BytesIO(b"")) == (b"", b"")

    def test_partial_header_at_end_is_normal_termination(self):
        data = frame(STDOUT, b"hello") + b"\x01\x00\x00"
        assert demultiplex(io.BytesIO(data)) == (b"hello", b"")

    def test_retries_partial_reads(self):
        data = frame(STDOUT, b"Hello, world!\n") + frame(STDERR, b"oops")
        assert demultiplex(TrickleReader(data)) == (b"Hello, world!\n", b"oops")

    def test_zero_length_frame(self):
        data = frame(STDOUT, b"") + frame(STDOUT, b"x")
        assert demultiplex(io.BytesIO(data)) == (b"x", b"")

    def test_output_exactly_at_cap_is_kept(self):
        payload = b"a" * MAX_OUTPUT_LENGTH
        data = frame(STDOUT, payload) + frame(STDERR, b"still read")
        stdout, stderr = demultiplex(io.BytesIO(data))
        assert stdout == payload
        assert stderr == b"still read"

    def test_one_byte_over_cap_truncates_and_stops(self):
        data = (
            frame(STDOUT, b"a" * (MAX_OUTPUT_LENGTH + 1))
            + frame(STDERR, b"never read")
            + frame(STDOUT, b"never read")
        )
        stdout, stderr = demultiplex(io.BytesIO(data))
        assert stdout == b"a" * MAX_OUTPUT_LENGTH
        assert stderr == b""

    def test_cap_applies_across_frames(self):
        data = frame(STDERR, b"b" * 2000) + frame(STDERR, b"b" * 100) + frame(STDOUT, b"x")
        stdout, stderr = demultiplex(io.BytesIO(data))
        assert stderr == b"b" * MAX_OUTPUT_LENGTH
        assert stdout == b""

    def test_streams_have_independent_counters(self):
        data = frame(STDOUT, b"a" * 2000) + frame(STDERR, b"b" * 2000)
        stdout, stderr = demultiplex(io.BytesIO(data))
        assert len(stdout) == 2000
        assert len(stderr) == 2000

    def test_custom_max_length(self):
        data = frame(STDOUT, b"abcdef")
        assert demultiplex(io.BytesIO(data), max_length=4) == (b"abcd", b"")

    def test_unknown_frame_type(self):
        data = frame(STDOUT, b"partial") + frame(5, b"bad")
        with pytest.raises(UnknownFrameTypeError) as exc:
            demultiplex(io.BytesIO(data))
        assert exc.value.stream_type == 5
        assert isinstance(exc.value, StreamProtocolError)

    def test_truncated_payload(self):
        data = frame(STDOUT, b"0123456789")[:-3]
        with pytest.raises(TruncatedFrameError):
            demultiplex(io.BytesIO(data))

    def test_read_failure(self):
        with pytest.raises(LogStreamError):
            demultiplex(BrokenReader())

    def test_fills_given_buffers(self):
        buffers = DemuxBuffers()
        demultiplex(io.BytesIO(frame(STDERR, b"err")), buffers=buffers)
        assert buffers.snapshot() == (b"", b"err")

    def test_buffers_never_hold_more_than_cap(self):
        buffers = DemuxBuffers(max_length=8)
        buffers.stdout = WatchedBuffer(b"abc")
        assert buffers.append(STDOUT, b"defghijklmnop") is True
        assert buffers.stdout.peak == 8
        assert buffers.snapshot() == (b"abcdefgh", b"")

    def test_append_after_cap_reports_overflow(self):
        buffers = DemuxBuffers(max_length=4)
        assert buffers.append(STDERR, b"abcd") is False
        assert buffers.append(STDERR, b"e") is True
        assert buffers.snapshot() == (b"", b"abcd")


class TestFrameReader:
    def test_state_transitions(self):
        reader = FrameReader(io.BytesIO(frame(STDERR, b"e")))
        assert reader.state is ReaderState.HEADER
        first = reader.next_frame()
        assert first.stream_type == STDERR
        assert first.payload == b"e"
        assert reader.state is ReaderState.HEADER
        assert reader.next_frame() is None
        assert reader.state is ReaderState.DONE
        assert reader.next_frame() is None

    def test_iterates_frames(self):
        data = frame(STDOUT, b"1") + frame(STDERR, b"2")
        frames = list(FrameReader(io.BytesIO(data)))
        assert [(f.stream_type, f.payload) for f in frames] == [(STDOUT, b"1"), (STDERR, b"2")]
