# wire.py
# Logger wire formats: tab-separated values and JSON lines.
from __future__ import annotations

from typing import List

from .events import Event

TSV_FIELDS = ("message_type", "unit", "unit_type", "unix_time", "unix_time_nsecs", "message")

_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\t": "\\t"}
_UNESCAPES = {"\\": "\\", "n": "\n", "t": "\t"}


def tsv_escape(text: str) -> str:
    """Escape backslash, newline and tab. Every other character passes through."""
    return "".join(_ESCAPES.get(ch, ch) for ch in text)


def tsv_unescape(text: str) -> str:
    """
    Inverse of tsv_escape.

    An unknown escape sequence (or a trailing lone backslash) is kept verbatim.
    """
    out: List[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text) and text[i + 1] in _UNESCAPES:
            out.append(_UNESCAPES[text[i + 1]])
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def encode_tsv(event: Event) -> str:
    return "\t".join([
        event.message_type,
        event.unit,
        event.unit_type,
        str(event.unix_time),
        str(event.unix_time_nsecs),
        tsv_escape(event.message),
    ])


def decode_tsv(line: str) -> Event:
    """Parse one TSV record (without its trailing newline) back into an Event."""
    parts = line.rstrip("\n").split("\t")
    if len(parts) < len(TSV_FIELDS):
        raise ValueError(f"Expected {len(TSV_FIELDS)} fields, got {len(parts)}: {line!r}")
    kind, unit, unit_type, secs, nsecs = parts[:5]
    # Tabs inside the message are escaped, so any extra field is empty trailing junk.
    return Event(
        message_type=kind,
        unit=unit,
        unit_type=unit_type,
        unix_time=int(secs),
        unix_time_nsecs=int(nsecs),
        message=tsv_unescape(parts[5]),
    )


def encode_json(event: Event) -> str:
    return event.model_dump_json()


def decode_json(line: str) -> Event:
    return Event.model_validate_json(line)
