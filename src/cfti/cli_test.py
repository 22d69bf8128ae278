from __future__ import annotations

import sys
from pathlib import Path

from click.testing import CliRunner

from cfti.cli import cli

PY = sys.executable

UNITS = f"""
from cfti import test, scenario, jig, units

OK = [{PY!r}, "-c", "print('fine')"]
BAD = [{PY!r}, "-c", "import sys; print('broken'); sys.exit(2)"]

UNITS = units(
    jig("bench", default_scenario="smoke"),
    test("power", OK, title="Power on"),
    test("adc", OK, requires="power", suggests="cal"),
    test("cal", OK),
    test("flash", BAD, requires="power"),
    scenario("smoke", "adc"),
    scenario("full", "adc flash"),
    scenario("loop", "x"),
    test("x", OK, requires="y"),
    test("y", OK, requires="x"),
)
"""


def unit_file(tmp_path: Path) -> str:
    p = tmp_path / "bench_units.py"
    p.write_text(UNITS)
    return str(p)


def test_list(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["list", "--units", unit_file(tmp_path)])

    assert result.exit_code == 0, result.output
    assert "bench: bench (default scenario: smoke)" in result.output
    assert "power (simple): Power on" in result.output
    assert "smoke: smoke [adc]" in result.output


def test_graph_order(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["graph", "--units", unit_file(tmp_path), "--scenario", "smoke"])

    assert result.exit_code == 0, result.output
    assert "1. power" in result.output
    assert "2. cal" in result.output
    assert "3. adc" in result.output


def test_graph_cycle_is_an_error(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["graph", "--units", unit_file(tmp_path), "--scenario", "loop"])

    assert result.exit_code == 1
    assert "CycleDetected" in result.output


def test_run_default_scenario_passes(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["run", "--units", unit_file(tmp_path), "--no-programs"])

    assert result.exit_code == 0, result.output
    assert "adc | fine" in result.output
    assert "SCENARIO PASSED: smoke (code 200)" in result.output
    assert "adc: PASSED" in result.output


def test_run_failing_scenario_exits_nonzero(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["run", "--units", unit_file(tmp_path), "--scenario", "full", "--no-programs"])

    assert result.exit_code == 1
    assert "SCENARIO FAILED: full (code 501)" in result.output
    assert "flash: FAILED" in result.output


def test_run_tsv_output_and_log_file(tmp_path: Path) -> None:
    log = tmp_path / "run.log"
    result = CliRunner().invoke(
        cli,
        ["run", "--units", unit_file(tmp_path), "--log-format", "tsv", "--log-file", str(log), "--no-programs"],
    )

    assert result.exit_code == 0, result.output
    finish = [line for line in result.output.splitlines() if line.startswith("scenario-finish\t")]
    assert len(finish) == 1
    assert log.read_text().splitlines() == [line for line in result.output.splitlines() if "\t" in line]


def test_run_missing_units_file(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["run", "--units", str(tmp_path / "nope.py")])

    assert result.exit_code == 1
    assert "Could not find unit file" in result.output


def test_run_unknown_jig(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["run", "--units", unit_file(tmp_path), "--jig", "lab", "--no-programs"])

    assert result.exit_code == 1
    assert "Unknown jig" in result.output
