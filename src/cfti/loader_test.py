from __future__ import annotations

from pathlib import Path

import pytest

from cfti.errors import LoadError
from cfti.loader import discover_units, find_unit_files, load_units

UNITS_CONSTANT = """
from cfti import test, scenario, jig, units

UNITS = units(
    test("adc", "echo adc"),
    test("uart.test", "echo uart", requires="adc"),
    scenario("smoke", "uart"),
    jig("bench", default_scenario="smoke"),
)
"""

UNITS_FUNCTION = """
from cfti import test, scenario, unit_set

def units():
    return unit_set([test("a", "true"), test("b", "true")], scenario("s", "a b"))
"""


def write(tmp_path: Path, name: str, body: str) -> Path:
    p = tmp_path / name
    p.write_text(body)
    return p


def test_load_units_constant(tmp_path: Path) -> None:
    loaded = load_units(write(tmp_path, "cfti_units.py", UNITS_CONSTANT))

    assert sorted(loaded.tests) == ["adc", "uart"]
    assert loaded.tests["uart"].requires == ("adc",)
    assert loaded.scenario("smoke.scenario").tests == ("uart",)
    assert loaded.jig("bench").default_scenario == "smoke"


def test_load_units_function(tmp_path: Path) -> None:
    loaded = load_units(write(tmp_path, "bench_units.py", UNITS_FUNCTION))
    assert sorted(loaded.tests) == ["a", "b"]
    assert list(loaded.scenarios) == ["s"]


def test_units_helper_misused_as_definition(tmp_path: Path) -> None:
    body = "from cfti import test\n\ndef units(first):\n    return first\n"
    with pytest.raises(LoadError) as exc:
        load_units(write(tmp_path, "cfti_units.py", body))
    assert "unit_set" in exc.value.message


def test_file_without_units(tmp_path: Path) -> None:
    with pytest.raises(LoadError) as exc:
        load_units(write(tmp_path, "cfti_units.py", "X = 1\n"))
    assert exc.value.kind == "BadUnitFile"


def test_duplicate_names_are_a_load_error(tmp_path: Path) -> None:
    body = "from cfti import test, units\nUNITS = units(test('a', 'true'), test('a.test', 'true'))\n"
    with pytest.raises(LoadError) as exc:
        load_units(write(tmp_path, "cfti_units.py", body))
    assert "Duplicate" in exc.value.message


def test_syntax_error_is_a_load_error(tmp_path: Path) -> None:
    with pytest.raises(LoadError):
        load_units(write(tmp_path, "cfti_units.py", "def broken(:\n"))


def test_non_python_file_rejected(tmp_path: Path) -> None:
    with pytest.raises(LoadError):
        load_units(write(tmp_path, "units.toml", "[test]\n"))


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(LoadError) as exc:
        load_units(tmp_path / "nope.py")
    assert exc.value.kind == "UnitFileNotFound"


def test_discover_default_file(tmp_path: Path) -> None:
    p = write(tmp_path, "cfti_units.py", UNITS_CONSTANT)
    assert discover_units(root=tmp_path) == p


def test_discover_explicit_path_without_suffix(tmp_path: Path) -> None:
    p = write(tmp_path, "bench_units.py", UNITS_FUNCTION)
    assert discover_units(str(tmp_path / "bench_units")) == p


def test_discover_nothing(tmp_path: Path) -> None:
    with pytest.raises(LoadError) as exc:
        discover_units(root=tmp_path)
    assert exc.value.kind == "UnitFileNotFound"


def test_discover_ambiguous(tmp_path: Path) -> None:
    write(tmp_path, "cfti_units.py", UNITS_CONSTANT)
    write(tmp_path, "bench_units.py", UNITS_FUNCTION)

    assert [p.name for p in find_unit_files(tmp_path)] == ["cfti_units.py", "bench_units.py"]
    with pytest.raises(LoadError) as exc:
        discover_units(root=tmp_path)
    assert exc.value.kind == "AmbiguousUnitFile"
