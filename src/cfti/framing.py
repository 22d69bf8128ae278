# framing.py
# Turns a child's byte stream into frames. Channels start line-buffered; a
# line beginning with SO switches to length-prefixed binary frames, and an
# empty binary frame switches back.
from __future__ import annotations

from dataclasses import dataclass
from typing import BinaryIO, Iterator, Optional

SHIFT_OUT = b"\x0e"
LENGTH_BYTES = 4

LINE = "line"
BINARY = "binary"


@dataclass(frozen=True)
class Frame:
    mode: str
    data: bytes

    def text(self, errors: str = "strict") -> str:
        return self.data.decode("utf-8", errors=errors)


class LineDecoder:
    """Reads newline-terminated lines. Returns None when the stream switches mode."""
    mode = LINE

    def read_frame(self, stream: BinaryIO) -> Optional[Frame]:
        first = stream.read(1)
        if not first:
            raise EOFError
        if first == SHIFT_OUT:
            return None
        line = first if first == b"\n" else first + stream.readline()
        return Frame(LINE, line.rstrip(b"\r\n"))


class BinaryDecoder:
    """Reads 4-byte big-endian length-prefixed frames. A zero length ends binary mode."""
    mode = BINARY

    def read_frame(self, stream: BinaryIO) -> Optional[Frame]:
        header = _read_exact(stream, LENGTH_BYTES)
        size = int.from_bytes(header, "big")
        if size == 0:
            return None
        return Frame(BINARY, _read_exact(stream, size))


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        chunk = stream.read(remaining)
        if not chunk:
            raise EOFError
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


class FrameReader:
    """
    Uniform "sequence of frames" over a stream whose decoder is swapped at runtime.

    A truncated binary frame at end of stream is dropped.
    """

    def __init__(self, stream: BinaryIO):
        self.stream = stream
        self.decoder = LineDecoder()

    def switch(self) -> None:
        self.decoder = BinaryDecoder() if self.decoder.mode == LINE else LineDecoder()

    def __iter__(self) -> Iterator[Frame]:
        while True:
            try:
                frame = self.decoder.read_frame(self.stream)
            except EOFError:
                return
            if frame is None:
                self.switch()
                continue
            yield frame


def encode_binary(payload: bytes) -> bytes:
    """Bytes a child writes to send one binary frame (switch in, frame, switch out)."""
    return SHIFT_OUT + len(payload).to_bytes(LENGTH_BYTES, "big") + payload + bytes(LENGTH_BYTES)
