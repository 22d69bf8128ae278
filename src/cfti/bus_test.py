from __future__ import annotations

import threading
from typing import List

import pytest

from cfti import events as ev
from cfti.bus import EventBus, LivenessMonitor
from cfti.config import EngineConfig
from cfti.errors import ProtocolError
from cfti.events import Event
from cfti.protocol import Command


def out(unit: str, message: str, unit_type: str = "test") -> Event:
    return Event.create(ev.STDOUT, unit, unit_type, message)


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_every_sink_sees_the_same_order() -> None:
    bus = EventBus()
    first: List[str] = []
    second: List[str] = []
    bus.subscribe(first.append, "tsv")
    bus.subscribe(second.append, "tsv")

    for i in range(100):
        bus.publish(out("adc", str(i)))
    bus.close()

    assert len(first) == 100
    assert first == second
    assert [line.rsplit("\t", 1)[1] for line in first] == [str(i) for i in range(100)]


def test_sequence_numbers_follow_admission() -> None:
    bus = EventBus()
    assert [bus.publish(out("a", "x")) for _ in range(3)] == [1, 2, 3]


def test_unit_type_and_kind_filters() -> None:
    bus = EventBus()
    tests_only: List[Event] = []
    results_only: List[Event] = []
    bus.subscribe(tests_only.append, "event", filter=["test"])
    bus.subscribe(results_only.append, "event", kinds=[ev.TEST_RESULT])

    bus.publish(out("adc", "x"))
    bus.publish(out("smoke", "y", unit_type="scenario"))
    bus.publish(ev.result("adc", "pass"))
    bus.close()

    assert [e.message for e in tests_only] == ["x", ""]
    assert [e.message_type for e in results_only] == [ev.TEST_RESULT]


def test_trigger_format_only_emits_finish() -> None:
    bus = EventBus()
    lines: List[str] = []
    bus.subscribe(lines.append, "trigger")

    bus.publish(out("adc", "x"))
    bus.publish(Event.create(ev.SCENARIO_FINISH, "smoke", "scenario", code=200, success=True))
    bus.close()

    assert lines == ["Pass"]


def test_unknown_format_rejected() -> None:
    with pytest.raises(ValueError):
        EventBus().subscribe(print, "xml")


def test_full_queue_drops_for_slow_sink_only() -> None:
    bus = EventBus()
    entered = threading.Event()
    gate = threading.Event()

    def slow(event: Event) -> None:
        entered.set()
        gate.wait(5)

    fast: List[Event] = []
    slow_sub = bus.subscribe(slow, "event", name="slow", maxsize=2)
    bus.subscribe(fast.append, "event", name="fast")

    bus.publish(out("adc", "0"))
    assert entered.wait(5)
    for i in range(1, 10):
        bus.publish(out("adc", str(i)))
    gate.set()
    bus.close()

    assert slow_sub.dropped == 7
    assert [e.message for e in fast if e.message_type == ev.STDOUT] == [str(i) for i in range(10)]
    reports = [e for e in fast if e.message_type == ev.DEBUG and e.unit == "slow"]
    assert reports and reports[0].payload["dropped"] == 7


def test_failing_sink_is_degraded_and_closed() -> None:
    bus = EventBus(EngineConfig(sink_max_failures=3))
    closed = threading.Event()
    watcher: List[Event] = []

    def broken(record: str) -> None:
        raise OSError("disk full")

    sub = bus.subscribe(broken, "tsv", name="disk", on_close=closed.set)
    bus.subscribe(watcher.append, "event", filter=["logger"])

    for i in range(5):
        bus.publish(out("adc", str(i)))
    assert closed.wait(5)
    bus.close()

    assert sub.degraded
    assert sub not in bus.subscriptions
    failures = [e.message for e in watcher if e.unit == "disk" and "SinkWriteFailed" in e.message]
    assert len(failures) == 3
    assert any("degraded" in e.message for e in watcher)


def test_commands_are_validated_and_forwarded() -> None:
    received: List[Command] = []
    bus = EventBus(handler=received.append)

    bus.handle_command("ui", "start", ["smoke"])
    bus.handle_command("ui", "ABORT")

    assert [(c.verb, c.args) for c in received] == [("START", ("smoke",)), ("ABORT", ())]


def test_log_command_is_echoed_under_source_name() -> None:
    bus = EventBus(handler=lambda c: None)
    seen: List[Event] = []
    bus.subscribe(seen.append, "event")

    bus.handle_command("ui", "LOG", ["operator ready"])
    bus.close()

    assert [(e.message_type, e.unit, e.message) for e in seen] == [(ev.LOG, "ui", "operator ready")]


def test_protocol_error_drops_source() -> None:
    dropped = threading.Event()
    bus = EventBus(handler=lambda c: None)
    bus.register_source("ui", dropped.set)

    with pytest.raises(ProtocolError):
        bus.handle_command("ui", "SCENARIO")

    assert dropped.is_set()
    assert "ui" not in bus.sources()


def test_ping_goes_only_to_its_source() -> None:
    bus = EventBus()
    ui: List[str] = []
    other: List[str] = []
    bus.subscribe(ui.append, "text", name="ui")
    bus.subscribe(other.append, "text", name="other")

    ping_id = bus.ping("ui")
    bus.close()

    assert ui == [f"PING {ping_id}"]
    assert other == []


def test_pong_must_match_outstanding_ping() -> None:
    clock = FakeClock()
    monitor = LivenessMonitor(pong_timeout=5, clock=clock)

    ping_id = monitor.ping("ui")
    clock.now += 1
    monitor.pong("ui", ping_id)
    assert monitor.outstanding("ui") == ()

    with pytest.raises(ProtocolError) as exc:
        monitor.pong("ui", ping_id)
    assert exc.value.kind == "UnexpectedPong"


def test_late_pong_is_rejected() -> None:
    clock = FakeClock()
    monitor = LivenessMonitor(pong_timeout=5, clock=clock)

    ping_id = monitor.ping("ui")
    clock.now += 6
    assert monitor.expired() == ["ui"]
    with pytest.raises(ProtocolError) as exc:
        monitor.pong("ui", ping_id)
    assert exc.value.kind == "PongTimeout"


def test_unresponsive_source_is_dropped() -> None:
    clock = FakeClock()
    bus = EventBus()
    bus.liveness.clock = clock
    dropped = threading.Event()
    bus.register_source("ui", dropped.set)
    bus.register_source("button", lambda: None, ping=False)

    bus.ping("ui")
    clock.now += 10

    assert bus.check_liveness() == ["ui"]
    assert dropped.is_set()
    assert bus.sources() == ["button"]
    assert bus.pinged_sources() == []
