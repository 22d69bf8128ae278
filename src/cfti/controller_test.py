from __future__ import annotations

import sys
from typing import List, Tuple

import pytest

from cfti import dsl
from cfti import events as ev
from cfti.bus import EventBus
from cfti.config import EngineConfig
from cfti.controller import Controller
from cfti.errors import GraphError
from cfti.events import Event
from cfti.protocol import Command
from cfti.scenario import FINISH_ABORTED, FINISH_SUCCESS

CONFIG = EngineConfig(termination_timeout=1.0)
SLEEP = [sys.executable, "-c", "import time; time.sleep(30)"]
PASS = [sys.executable, "-c", "print('ok')"]


def make(*defs, jig=None) -> Tuple[Controller, EventBus, List[Event]]:
    bus = EventBus(CONFIG)
    seen: List[Event] = []
    bus.subscribe(seen.append, "event")
    return Controller(dsl.units(*defs), bus, config=CONFIG, jig=jig), bus, seen


def kinds(seen: List[Event], kind: str) -> List[Event]:
    return [e for e in seen if e.message_type == kind]


def test_greeting_announces_jig_scenarios_and_tests() -> None:
    ctrl, bus, _ = make(
        dsl.jig("bench", title="Bench 1", default_scenario="smoke"),
        dsl.scenario("smoke", "b"),
        dsl.test("a", PASS),
        dsl.test("b", PASS, requires="a"),
    )
    lines: List[str] = []
    bus.subscribe(lines.append, "text")

    ctrl.greet()
    bus.close()

    assert lines[0] == "HELLO Jig/20 1.0"
    assert lines[1] == "JIG bench"
    assert "DESCRIBE JIG NAME bench Bench 1" in lines
    assert "SCENARIOS smoke" in lines
    assert lines[-2:] == ["SCENARIO smoke", "TESTS smoke a b"]


def test_hello_is_answered_to_its_sender_only() -> None:
    ctrl, bus, _ = make(dsl.jig("bench"), dsl.scenario("smoke", "a"), dsl.test("a", PASS))
    ui: List[str] = []
    other_ui: List[str] = []
    logger: List[str] = []
    bus.subscribe(ui.append, "text", name="ui")
    bus.subscribe(other_ui.append, "text", name="panel")
    bus.subscribe(logger.append, "tsv", name="disk")

    ctrl.handle(Command("ui", "HELLO", ("operator",)))
    ctrl.handle(Command("panel", "JIG"))
    bus.close()

    assert ui[0] == "HELLO Jig/20 1.0"
    assert "TESTS smoke a" in ui
    assert other_ui == ["JIG bench"]
    assert logger == []


def test_single_jig_and_scenario_are_picked_by_default() -> None:
    ctrl, bus, _ = make(dsl.jig("bench"), dsl.scenario("smoke", "a"), dsl.test("a", PASS))
    bus.close()
    assert ctrl.jig_name == "bench"
    assert ctrl.scenario is not None and ctrl.scenario.name == "smoke"


def test_unknown_jig() -> None:
    with pytest.raises(GraphError):
        make(dsl.jig("bench"), jig="lab")


def test_start_runs_selected_scenario() -> None:
    ctrl, bus, seen = make(dsl.scenario("smoke", "a"), dsl.test("a", PASS))

    assert ctrl.start() is not None
    result = ctrl.wait(10)
    bus.close()

    assert result is not None and result.code == FINISH_SUCCESS
    assert kinds(seen, ev.SCENARIO_FINISH)[0].unit == "smoke"


def test_start_while_running_is_ignored() -> None:
    ctrl, bus, seen = make(dsl.scenario("smoke", "a"), dsl.test("a", SLEEP))

    first = ctrl.start()
    second = ctrl.start()
    ctrl.abort()
    result = ctrl.wait(10)
    bus.close()

    assert first is not None
    assert second is None
    assert any("already running" in e.message for e in kinds(seen, ev.DEBUG))
    assert result is not None and result.code == FINISH_ABORTED
    assert len(kinds(seen, ev.SCENARIO_START)) == 1


def test_graph_error_is_reported_not_run() -> None:
    ctrl, bus, seen = make(dsl.scenario("smoke", "missing"), dsl.test("a", PASS))

    assert ctrl.start() is None
    bus.close()

    errors = kinds(seen, ev.CONFIG_ERROR)
    assert errors and errors[0].unit == "missing"
    assert kinds(seen, ev.SCENARIO_START) == []


def test_unknown_scenario_is_a_config_error() -> None:
    ctrl, bus, seen = make(dsl.scenario("smoke", "a"), dsl.test("a", PASS))

    ctrl.handle(Command("ui", "SCENARIO", ("nightly",)))
    ctrl.handle(Command("ui", "TESTS", ("nightly",)))
    bus.close()

    assert [e.unit for e in kinds(seen, ev.CONFIG_ERROR)] == ["nightly", "nightly"]
    assert ctrl.scenario.name == "smoke"


def test_scenario_command_selects_and_lists_tests() -> None:
    ctrl, bus, seen = make(
        dsl.scenario("smoke", "a"),
        dsl.scenario("full", "a b"),
        dsl.test("a", PASS),
        dsl.test("b", PASS),
    )
    assert ctrl.scenario is None

    ctrl.handle(Command("ui", "SCENARIO", ("full",)))
    bus.close()

    assert ctrl.scenario.name == "full"
    assert kinds(seen, ev.TESTS)[0].payload["tests"] == ["a", "b"]


def test_commands_from_bus_are_dispatched_when_serving() -> None:
    ctrl, bus, seen = make(dsl.scenario("smoke", "a"), dsl.test("a", PASS))
    ctrl.serve()

    bus.handle_command("ui", "SHUTDOWN")
    assert ctrl.shutdown_requested.wait(5)
    ctrl.shutdown()
    bus.close()

    assert seen[-1].message_type == ev.EXIT
