from __future__ import annotations

import pytest

from cfti import dsl
from cfti.model import TestType, UnitKind, split_names, unit_id


def test_name_lists_accept_strings_and_sequences() -> None:
    assert split_names("a, b  c,,") == ("a", "b", "c")
    assert split_names(["a", " b ", ""]) == ("a", "b")
    assert split_names(None) == ()


def test_kind_suffix_is_optional() -> None:
    assert unit_id("adc.test", UnitKind.TEST) == "adc"
    assert unit_id("adc.test", UnitKind.SCENARIO) == "adc.test"
    assert unit_id(".test", UnitKind.TEST) == ".test"


def test_test_definition_normalizes_names() -> None:
    t = dsl.test("uart.test", "echo hi", requires="power.test, console", jigs="bench.jig", env={"N": 3})

    assert t.name == "uart"
    assert t.requires == ("power", "console")
    assert t.jigs == ("bench",)
    assert t.env == {"N": "3"}
    assert t.type is TestType.SIMPLE
    assert t.display_name == "uart"


def test_daemon_definition() -> None:
    d = dsl.daemon("srv", "server", ready_text="READY", check="ping", check_interval=2, title="Server")

    assert d.is_daemon
    assert d.daemon_ready_text == "READY"
    assert d.daemon_check_interval == 2
    assert d.display_name == "Server"


def test_stop_command_falls_back_to_generic_hook() -> None:
    t = dsl.test("t", "true", exec_stop="generic", exec_stop_fail="on-fail")
    assert t.stop_command(False) == "on-fail"
    assert t.stop_command(True) == "generic"
    assert dsl.test("u", "true").stop_command(True) is None

    s = dsl.scenario("s", "t", exec_stop_success="yay")
    assert s.stop_command(True) == "yay"
    assert s.stop_command(False) is None


def test_jig_compatibility() -> None:
    t = dsl.test("t", "true", jigs="bench")
    assert t.compatible_with("bench")
    assert not t.compatible_with("lab")
    assert t.compatible_with(None)
    assert dsl.test("any", "true").compatible_with("lab")


def test_scenario_needs_tests() -> None:
    with pytest.raises(ValueError):
        dsl.scenario("empty", "")


def test_program_formats_are_checked() -> None:
    assert dsl.logger("log", "cat", format="json").format == "json"
    assert dsl.trigger("button", "button-daemon").kind is UnitKind.TRIGGER
    with pytest.raises(ValueError):
        dsl.logger("log", "cat", format="text")
    with pytest.raises(ValueError):
        dsl.interface("ui", "panel", format="tsv")


def test_units_flattens_lists_and_rejects_duplicates() -> None:
    matrix = [dsl.test(f"port{i}", "true") for i in range(3)]
    loaded = dsl.units(dsl.jig("bench.jig", default_scenario="smoke.scenario"), matrix, dsl.scenario("smoke", "port0"))

    assert sorted(loaded.tests) == ["port0", "port1", "port2"]
    assert loaded.jig("bench").default_scenario == "smoke"
    assert loaded.scenarios_for("bench")[0].name == "smoke"

    with pytest.raises(ValueError):
        dsl.units(dsl.test("a", "true"), dsl.test("a.test", "false"))
