# src/cfti/dsl.py
from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Union

from .model import (
    CommandSpec,
    JigDef,
    ProgramDef,
    ScenarioDef,
    TestDef,
    TestType,
    UnitKind,
    UnitSet,
    split_names,
    unit_id,
)

Names = Union[str, Sequence[str], None]
Unit = Union[TestDef, ScenarioDef, JigDef, ProgramDef]


def _names(value: Names, kind: UnitKind) -> tuple:
    return tuple(unit_id(n, kind) for n in split_names(value))


# ---------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------

def test(
    name: str,
    exec_start: CommandSpec,
    *,
    title: str = "",
    description: str = "",
    requires: Names = None,
    suggests: Names = None,
    provides: Names = None,
    timeout: Optional[float] = None,
    exec_stop: Optional[CommandSpec] = None,
    exec_stop_success: Optional[CommandSpec] = None,
    exec_stop_fail: Optional[CommandSpec] = None,
    jigs: Names = None,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> TestDef:
    """
    A simple test: runs to completion, exit code 0 passes.

    The last line the test prints on stdout is its result message.
    """
    return TestDef(
        name=unit_id(name, UnitKind.TEST),
        exec_start=exec_start,
        title=title,
        description=description,
        requires=_names(requires, UnitKind.TEST),
        suggests=_names(suggests, UnitKind.TEST),
        provides=split_names(provides),
        timeout=timeout,
        exec_stop=exec_stop,
        exec_stop_success=exec_stop_success,
        exec_stop_fail=exec_stop_fail,
        jigs=_names(jigs, UnitKind.JIG),
        working_directory=cwd,
        # force values to str for env compatibility
        env={k: str(v) for k, v in (env or {}).items()},
    )


test.__test__ = False  # not a pytest test


def daemon(
    name: str,
    exec_start: CommandSpec,
    *,
    ready_text: Optional[str] = None,
    check: Optional[CommandSpec] = None,
    check_interval: Optional[float] = None,
    title: str = "",
    description: str = "",
    requires: Names = None,
    suggests: Names = None,
    provides: Names = None,
    timeout: Optional[float] = None,
    exec_stop: Optional[CommandSpec] = None,
    exec_stop_success: Optional[CommandSpec] = None,
    exec_stop_fail: Optional[CommandSpec] = None,
    jigs: Names = None,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> TestDef:
    """
    A daemon test: ready once `ready_text` (a regex) matches a stdout line,
    or immediately when no pattern is given. It keeps running until the
    scenario ends; `check` is run every `check_interval` seconds meanwhile.
    """
    return TestDef(
        name=unit_id(name, UnitKind.TEST),
        exec_start=exec_start,
        title=title,
        description=description,
        requires=_names(requires, UnitKind.TEST),
        suggests=_names(suggests, UnitKind.TEST),
        provides=split_names(provides),
        timeout=timeout,
        type=TestType.DAEMON,
        daemon_ready_text=ready_text,
        daemon_check=check,
        daemon_check_interval=check_interval,
        exec_stop=exec_stop,
        exec_stop_success=exec_stop_success,
        exec_stop_fail=exec_stop_fail,
        jigs=_names(jigs, UnitKind.JIG),
        working_directory=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
    )


# ---------------------------------------------------------------------
# Scenarios and jigs
# ---------------------------------------------------------------------

def scenario(
    name: str,
    tests: Names,
    *,
    title: str = "",
    description: str = "",
    assume: Names = None,
    timeout: Optional[float] = None,
    exec_start: Optional[CommandSpec] = None,
    exec_stop: Optional[CommandSpec] = None,
    exec_stop_success: Optional[CommandSpec] = None,
    exec_stop_failure: Optional[CommandSpec] = None,
    jigs: Names = None,
    cwd: Optional[str] = None,
) -> ScenarioDef:
    terminals = _names(tests, UnitKind.TEST)
    if not terminals:
        raise ValueError(f"scenario({name!r}) must list at least one test")
    return ScenarioDef(
        name=unit_id(name, UnitKind.SCENARIO),
        tests=terminals,
        title=title,
        description=description,
        assume=_names(assume, UnitKind.TEST),
        timeout=timeout,
        exec_start=exec_start,
        exec_stop=exec_stop,
        exec_stop_success=exec_stop_success,
        exec_stop_failure=exec_stop_failure,
        jigs=_names(jigs, UnitKind.JIG),
        working_directory=cwd,
    )


def jig(
    name: str,
    *,
    title: str = "",
    description: str = "",
    default_scenario: Optional[str] = None,
    cwd: Optional[str] = None,
) -> JigDef:
    return JigDef(
        name=unit_id(name, UnitKind.JIG),
        title=title,
        description=description,
        default_scenario=unit_id(default_scenario, UnitKind.SCENARIO) if default_scenario else None,
        working_directory=cwd,
    )


# ---------------------------------------------------------------------
# Logger / Interface / Trigger programs
# ---------------------------------------------------------------------

def _program(kind: UnitKind, name: str, exec_start: CommandSpec, format: str,
             title: str, description: str, jigs: Names, cwd: Optional[str]) -> ProgramDef:
    return ProgramDef(
        name=unit_id(name, kind),
        kind=kind,
        exec_start=exec_start,
        format=format,
        title=title,
        description=description,
        jigs=_names(jigs, UnitKind.JIG),
        working_directory=cwd,
    )


def logger(name: str, exec_start: CommandSpec, *, format: str = "tsv", title: str = "",
           description: str = "", jigs: Names = None, cwd: Optional[str] = None) -> ProgramDef:
    """A program that receives every event on stdin, as `tsv` or `json` lines."""
    if format not in ("tsv", "json"):
        raise ValueError(f"logger({name!r}): format must be tsv or json, got {format!r}")
    return _program(UnitKind.LOGGER, name, exec_start, format, title, description, jigs, cwd)


def interface(name: str, exec_start: CommandSpec, *, format: str = "text", title: str = "",
              description: str = "", jigs: Names = None, cwd: Optional[str] = None) -> ProgramDef:
    """A program speaking the interface text protocol on stdin/stdout."""
    if format not in ("text", "json"):
        raise ValueError(f"interface({name!r}): format must be text or json, got {format!r}")
    return _program(UnitKind.INTERFACE, name, exec_start, format, title, description, jigs, cwd)


def trigger(name: str, exec_start: CommandSpec, *, title: str = "", description: str = "",
            jigs: Names = None, cwd: Optional[str] = None) -> ProgramDef:
    """A program that starts and stops scenarios (Ready / Go / Stop)."""
    return _program(UnitKind.TRIGGER, name, exec_start, "trigger", title, description, jigs, cwd)


# ---------------------------------------------------------------------
# Unit file helper (single-file story)
# ---------------------------------------------------------------------

def units(*defs: Union[Unit, List[Unit]]) -> UnitSet:
    """
    Collect unit definitions into a UnitSet.

    Users can write:
        from cfti import unit_set, test, scenario

        def units():
            return unit_set(test(...), scenario(...))

    Or use UNITS directly:
        UNITS = units(test(...), scenario(...))

    Lists are flattened, so matrix-style helpers can return several units.
    """
    out = UnitSet()
    for d in defs:
        for unit in (d if isinstance(d, list) else [d]):
            out.add(unit)
    return out


unit_set = units  # alias for unit files that define their own units()
