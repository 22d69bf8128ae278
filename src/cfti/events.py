# events.py
from __future__ import annotations

import time
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field

# Log-class kinds: what Logger programs care about.
STDOUT = "stdout"
STDERR = "stderr"
DEBUG = "debug"
LOG = "log"
CONFIG_ERROR = "config-error"
UNLOADING = "unloading"

# Run-progress kinds.
TEST_START = "test-start"
TEST_RESULT = "test-result"
SCENARIO_START = "scenario-start"
SCENARIO_FINISH = "scenario-finish"

# Interface-level kinds.
HELLO = "hello"
JIG = "jig"
SCENARIOS = "scenarios"
SCENARIO = "scenario"
TESTS = "tests"
DESCRIBE = "describe"
PING = "ping"
EXIT = "exit"

# Supervisor notices: consumed by the scenario run, never published.
READY = "ready"
EXITED = "exited"

LOG_KINDS = frozenset({STDOUT, STDERR, DEBUG, LOG, CONFIG_ERROR, UNLOADING})


def now_ns() -> tuple[int, int]:
    """Wall-clock time as (seconds, nanoseconds) since the epoch."""
    ns = time.time_ns()
    return ns // 1_000_000_000, ns % 1_000_000_000


class Event(BaseModel):
    """
    One record on the event bus.

    Immutable once built: producers create it and hand it to the bus.
    The JSON field names are the logger wire format.
    """
    model_config = ConfigDict(frozen=True)

    message_type: str
    unit: str
    unit_type: str
    unix_time: int
    unix_time_nsecs: int
    message: str = ""
    payload: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def create(
        cls,
        kind: str,
        unit: str,
        unit_type: str,
        message: str = "",
        **payload: Any,
    ) -> Event:
        secs, nsecs = now_ns()
        return cls(
            message_type=kind,
            unit=unit,
            unit_type=unit_type,
            unix_time=secs,
            unix_time_nsecs=nsecs,
            message=message,
            payload=payload,
        )


def debug(unit: str, unit_type: str, message: str, **payload: Any) -> Event:
    return Event.create(DEBUG, unit, unit_type, message, **payload)


def running(test: str) -> Event:
    return Event.create(TEST_START, test, "test", f"Running {test}")


def result(test: str, outcome: str, reason: str = "") -> Event:
    """`outcome` is one of pass, fail, skip."""
    return Event.create(TEST_RESULT, test, "test", reason, result=outcome)

