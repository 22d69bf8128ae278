from __future__ import annotations

import io

from cfti.framing import BINARY, LINE, FrameReader, encode_binary


def frames(data: bytes):
    return [(f.mode, f.data) for f in FrameReader(io.BytesIO(data))]


def test_lines() -> None:
    assert frames(b"one\ntwo\r\n\nlast") == [(LINE, b"one"), (LINE, b"two"), (LINE, b""), (LINE, b"last")]


def test_switch_to_binary_and_back() -> None:
    data = b"before\n" + encode_binary(b"\x00\x01\n\xff") + b"after\n"
    assert frames(data) == [(LINE, b"before"), (BINARY, b"\x00\x01\n\xff"), (LINE, b"after")]


def test_several_binary_frames_in_one_block() -> None:
    data = b"\x0e" + (3).to_bytes(4, "big") + b"abc" + (2).to_bytes(4, "big") + b"de" + bytes(4) + b"x\n"
    assert frames(data) == [(BINARY, b"abc"), (BINARY, b"de"), (LINE, b"x")]


def test_truncated_binary_frame_is_dropped() -> None:
    data = b"ok\n\x0e" + (10).to_bytes(4, "big") + b"short"
    assert frames(data) == [(LINE, b"ok")]


def test_empty_stream() -> None:
    assert frames(b"") == []
