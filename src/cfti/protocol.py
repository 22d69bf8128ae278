# protocol.py
# Interface text protocol and Trigger protocol.
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from . import events as ev
from .errors import ProtocolError
from .events import Event
from .wire import encode_tsv

PROTOCOL_VERSION = "Jig/20 1.0"

# verb -> (min args, max args); None means "rest of line"
CLIENT_VERBS = {
    "HELLO": (1, None),
    "JIG": (0, 0),
    "SCENARIOS": (0, 0),
    "SCENARIO": (1, 1),
    "TESTS": (0, 1),
    "START": (0, 1),
    "ABORT": (0, 0),
    "PONG": (1, 1),
    "LOG": (0, None),
    "SHUTDOWN": (0, None),
}

_RESULT_VERBS = {"pass": "PASS", "fail": "FAIL", "skip": "SKIP"}


@dataclass(frozen=True)
class Command:
    """An inbound control command, already validated."""
    source: str
    verb: str
    args: Tuple[str, ...] = ()

    @property
    def arg(self) -> Optional[str]:
        return self.args[0] if self.args else None

    @property
    def text(self) -> str:
        return " ".join(self.args)


def validate_command(source: str, verb: str, args: Tuple[str, ...] = ()) -> Command:
    """
    Check a verb and its arguments against the client verb table.

    Raises:
      ProtocolError: unknown verb or wrong number of arguments.
    """
    verb = verb.upper()
    if verb not in CLIENT_VERBS:
        raise ProtocolError(kind="UnknownVerb", unit=source, message=f"Unknown verb: {verb}")
    lo, hi = CLIENT_VERBS[verb]
    if len(args) < lo or (hi is not None and len(args) > hi):
        raise ProtocolError(
            kind="BadArguments",
            unit=source,
            message=f"{verb} takes {lo}..{'n' if hi is None else hi} arguments, got {len(args)}",
            details={"args": list(args)},
        )
    return Command(source=source, verb=verb, args=tuple(args))


def parse_client_line(source: str, line: str) -> Optional[Command]:
    """
    Parse one line from an Interface program.

    Verbs are case-insensitive. Blank lines return None.
    """
    line = line.strip()
    if not line:
        return None
    verb, _, rest = line.partition(" ")
    verb = verb.upper()
    if verb in ("LOG", "HELLO", "SHUTDOWN"):
        args: Tuple[str, ...] = (rest.strip(),) if rest.strip() else ()
    else:
        args = tuple(rest.split())
    return validate_command(source, verb, args)


def encode_text(event: Event) -> Optional[str]:
    """
    Render an event as an Interface protocol line (server -> client).

    Returns None for events an Interface does not receive.
    """
    kind = event.message_type
    p = event.payload

    if kind in ev.LOG_KINDS:
        return "LOG " + encode_tsv(event)
    if kind == ev.HELLO:
        return f"HELLO {event.message or PROTOCOL_VERSION}"
    if kind == ev.JIG:
        return f"JIG {event.unit}"
    if kind == ev.SCENARIOS:
        return " ".join(["SCENARIOS", *p.get("scenarios", [])])
    if kind == ev.SCENARIO:
        return f"SCENARIO {event.unit}"
    if kind == ev.TESTS:
        return " ".join(["TESTS", event.unit, *p.get("tests", [])])
    if kind == ev.DESCRIBE:
        return f"DESCRIBE {p['type'].upper()} {p['field'].upper()} {p['item']} {_one_line(event.message)}"
    if kind == ev.SCENARIO_START:
        return f"START {event.unit}"
    if kind == ev.TEST_START:
        return f"RUNNING {event.unit}"
    if kind == ev.TEST_RESULT:
        verb = _RESULT_VERBS[p["result"]]
        reason = _one_line(event.message)
        return f"{verb} {event.unit} {reason}".rstrip()
    if kind == ev.SCENARIO_FINISH:
        return f"FINISH {p['code']} {event.unit}"
    if kind == ev.PING:
        return f"PING {p['id']}"
    if kind == ev.EXIT:
        return "EXIT"
    return None


def encode_trigger(event: Event) -> Optional[str]:
    """Triggers only hear the outcome of a finished scenario."""
    if event.message_type != ev.SCENARIO_FINISH:
        return None
    return "Pass" if event.payload.get("success") else "Fail"


def _one_line(text: str) -> str:
    return text.replace("\r", " ").replace("\n", " ")


# ----------------------------------------------------------------------
# Trigger protocol (trigger -> engine)
# ----------------------------------------------------------------------

TRIGGER_READY = "ready"
TRIGGER_MONITOR = "monitor"
TRIGGER_GO = "go"
TRIGGER_STOP = "stop"

_TRIGGER_WORDS = {TRIGGER_READY, TRIGGER_MONITOR, TRIGGER_GO, TRIGGER_STOP}


def parse_trigger_line(source: str, line: str, *, ready: bool) -> Optional[str]:
    """
    Parse one line from a Trigger program into a trigger word.

    `Ready` must be the first message; anything else before it is an error.
    """
    word = line.strip().lower()
    if not word:
        return None
    if word not in _TRIGGER_WORDS:
        raise ProtocolError(kind="UnknownTrigger", unit=source, message=f"Unknown trigger message: {line.strip()}")
    if not ready and word != TRIGGER_READY:
        raise ProtocolError(kind="NotReady", unit=source, message=f"Trigger sent {line.strip()!r} before Ready")
    return word
