from .dag import build_graph, DependencyGraph
from .bus import EventBus
from .controller import Controller
from .scenario import ScenarioRun, ScenarioResult
from .model import TestDef, ScenarioDef, JigDef, ProgramDef, UnitSet

# Last: `scenario` the helper shadows the submodule attribute of the same name.
from .dsl import test, daemon, scenario, jig, logger, interface, trigger, units, unit_set

__all__ = [
    "test", "daemon", "scenario", "jig", "logger", "interface", "trigger", "units", "unit_set",
    "build_graph", "DependencyGraph", "EventBus", "Controller", "ScenarioRun", "ScenarioResult",
    "TestDef", "ScenarioDef", "JigDef", "ProgramDef", "UnitSet",
]
