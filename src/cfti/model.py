# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple, Union

# A command is either a single string (split with shell-word rules, never run
# through a shell) or an explicit argv sequence.
CommandSpec = Union[str, Sequence[str]]


class UnitKind(str, Enum):
    TEST = "test"
    SCENARIO = "scenario"
    JIG = "jig"
    TRIGGER = "trigger"
    LOGGER = "logger"
    INTERFACE = "interface"


class TestType(str, Enum):
    __test__ = False

    SIMPLE = "simple"
    DAEMON = "daemon"


class TestState(str, Enum):
    """Per-test run state. Transitions are monotonic: terminal states are final."""
    __test__ = False

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (TestState.PASSED, TestState.FAILED, TestState.SKIPPED)


def split_names(value: Union[str, Sequence[str], None]) -> Tuple[str, ...]:
    """
    Normalize a unit-name list.

    Accepts a sequence of names or a single string separated by commas and/or
    whitespace (the way unit files spell them).
    """
    if value is None:
        return ()
    if isinstance(value, str):
        value = value.replace(",", " ").split()
    return tuple(v.strip() for v in value if v and v.strip())


def unit_id(name: str, kind: UnitKind) -> str:
    """Strip an optional `.kind` suffix, so `foo.test` and `foo` are the same test."""
    suffix = "." + kind.value
    if name.endswith(suffix) and len(name) > len(suffix):
        return name[: -len(suffix)]
    return name


@dataclass(frozen=True)
class TestDef:
    """
    A single test unit.

    Canonical dependency fields: `requires` (hard) and `suggests` (soft).
    `provides` lists aliases other tests may depend on instead of this test's name.
    """
    __test__ = False

    name: str
    exec_start: CommandSpec
    title: str = ""
    description: str = ""
    requires: Tuple[str, ...] = ()
    suggests: Tuple[str, ...] = ()
    provides: Tuple[str, ...] = ()
    timeout: Optional[float] = None          # None -> EngineConfig.test_timeout
    type: TestType = TestType.SIMPLE
    daemon_ready_text: Optional[str] = None  # regex, daemons only
    daemon_check: Optional[CommandSpec] = None
    daemon_check_interval: Optional[float] = None
    exec_stop: Optional[CommandSpec] = None
    exec_stop_success: Optional[CommandSpec] = None
    exec_stop_fail: Optional[CommandSpec] = None
    jigs: Tuple[str, ...] = ()
    working_directory: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    @property
    def display_name(self) -> str:
        return self.title or self.name

    @property
    def is_daemon(self) -> bool:
        return self.type is TestType.DAEMON

    def stop_command(self, passed: bool) -> Optional[CommandSpec]:
        """The outcome-specific stop hook, falling back to the generic ExecStop."""
        specific = self.exec_stop_success if passed else self.exec_stop_fail
        return specific if specific is not None else self.exec_stop

    def compatible_with(self, jig: Optional[str]) -> bool:
        return jig is None or not self.jigs or jig in self.jigs


@dataclass(frozen=True)
class ScenarioDef:
    """An ordered list of terminal tests, plus scenario-level hooks."""
    name: str
    tests: Tuple[str, ...]
    title: str = ""
    description: str = ""
    assume: Tuple[str, ...] = ()
    timeout: Optional[float] = None          # None -> EngineConfig.scenario_timeout
    exec_start: Optional[CommandSpec] = None
    exec_stop: Optional[CommandSpec] = None
    exec_stop_success: Optional[CommandSpec] = None
    exec_stop_failure: Optional[CommandSpec] = None
    jigs: Tuple[str, ...] = ()
    working_directory: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.title or self.name

    def stop_command(self, success: bool) -> Optional[CommandSpec]:
        specific = self.exec_stop_success if success else self.exec_stop_failure
        return specific if specific is not None else self.exec_stop

    def compatible_with(self, jig: Optional[str]) -> bool:
        return jig is None or not self.jigs or jig in self.jigs


@dataclass(frozen=True)
class JigDef:
    name: str
    title: str = ""
    description: str = ""
    default_scenario: Optional[str] = None
    working_directory: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.title or self.name


@dataclass(frozen=True)
class ProgramDef:
    """An external Logger / Interface / Trigger program speaking a line protocol."""
    name: str
    kind: UnitKind
    exec_start: CommandSpec
    format: str = ""
    title: str = ""
    description: str = ""
    jigs: Tuple[str, ...] = ()
    working_directory: Optional[str] = None

    def compatible_with(self, jig: Optional[str]) -> bool:
        return jig is None or not self.jigs or jig in self.jigs


@dataclass
class UnitSet:
    """Every unit known to the engine, keyed by name."""
    tests: Dict[str, TestDef] = field(default_factory=dict)
    scenarios: Dict[str, ScenarioDef] = field(default_factory=dict)
    jigs: Dict[str, JigDef] = field(default_factory=dict)
    programs: Dict[str, ProgramDef] = field(default_factory=dict)

    def add(self, unit: Union[TestDef, ScenarioDef, JigDef, ProgramDef]) -> None:
        if isinstance(unit, TestDef):
            table: dict = self.tests
        elif isinstance(unit, ScenarioDef):
            table = self.scenarios
        elif isinstance(unit, JigDef):
            table = self.jigs
        elif isinstance(unit, ProgramDef):
            table = self.programs
        else:
            raise TypeError(f"Not a unit definition: {unit!r}")
        if unit.name in table:
            raise ValueError(f"Duplicate unit name: {unit.name}")
        table[unit.name] = unit

    def scenario(self, name: str) -> Optional[ScenarioDef]:
        return self.scenarios.get(unit_id(name, UnitKind.SCENARIO))

    def jig(self, name: str) -> Optional[JigDef]:
        return self.jigs.get(unit_id(name, UnitKind.JIG))

    def programs_of(self, kind: UnitKind, jig: Optional[str] = None) -> list[ProgramDef]:
        return [
            p for _, p in sorted(self.programs.items())
            if p.kind is kind and p.compatible_with(jig)
        ]

    def scenarios_for(self, jig: Optional[str]) -> list[ScenarioDef]:
        return [s for _, s in sorted(self.scenarios.items()) if s.compatible_with(jig)]
