# controller.py
# Glue between inbound commands and scenario runs. Commands are queued by the
# bus and dispatched one at a time on the controller thread.
from __future__ import annotations

import queue
import threading
from typing import Dict, Optional

from . import events as ev
from .bus import EventBus
from .config import EngineConfig
from .dag import DependencyGraph, build_graph
from .errors import GraphError
from .events import Event
from .model import JigDef, ScenarioDef, UnitSet
from .process import ProcessSupervisor
from .protocol import PROTOCOL_VERSION, Command
from .scenario import ScenarioResult, ScenarioRun

_STOP = object()


def _addressed(to: Optional[str]) -> Dict[str, str]:
    return {"to": to} if to else {}


class Controller:
    """
    Holds the unit set, the active jig and the selected scenario.

    Only one scenario run exists at a time; START while running is a no-op.
    """

    def __init__(
        self,
        units: UnitSet,
        bus: EventBus,
        *,
        config: Optional[EngineConfig] = None,
        jig: Optional[str] = None,
        supervisor: Optional[ProcessSupervisor] = None,
    ):
        self.units = units
        self.bus = bus
        self.config = config or EngineConfig()
        self.supervisor = supervisor or ProcessSupervisor(self.config)
        self.jig: Optional[JigDef] = self._pick_jig(jig)
        self.scenario: Optional[ScenarioDef] = self._default_scenario()

        self.run: Optional[ScenarioRun] = None
        self.result: Optional[ScenarioResult] = None
        self.shutdown_requested = threading.Event()

        self._commands: queue.Queue = queue.Queue()
        self._run_thread: Optional[threading.Thread] = None
        self._dispatcher: Optional[threading.Thread] = None
        self._pinger: Optional[threading.Thread] = None
        self._lock = threading.Lock()

        bus.set_handler(self.submit)

    @property
    def jig_name(self) -> Optional[str]:
        return self.jig.name if self.jig else None

    @property
    def running(self) -> bool:
        return self._run_thread is not None and self._run_thread.is_alive()

    # ---- selection ----

    def _pick_jig(self, name: Optional[str]) -> Optional[JigDef]:
        if name:
            jig = self.units.jig(name)
            if jig is None:
                raise GraphError(kind="UnknownUnit", unit=name, message=f"Unknown jig '{name}'")
            return jig
        if len(self.units.jigs) == 1:
            return next(iter(self.units.jigs.values()))
        return None

    def _default_scenario(self) -> Optional[ScenarioDef]:
        if self.jig and self.jig.default_scenario:
            return self.units.scenario(self.jig.default_scenario)
        candidates = self.units.scenarios_for(self.jig_name)
        return candidates[0] if len(candidates) == 1 else None

    def select_scenario(self, name: str) -> Optional[ScenarioDef]:
        scenario = self.units.scenario(name)
        if scenario is None or not scenario.compatible_with(self.jig_name):
            self._config_error(name, f"Unknown scenario '{name}'")
            return None
        self.scenario = scenario
        self.bus.publish(Event.create(ev.SCENARIO, scenario.name, "scenario"))
        self.publish_tests(scenario)
        return scenario

    def graph_for(self, scenario: ScenarioDef) -> Optional[DependencyGraph]:
        """Build the graph, reporting graph errors as config-error events."""
        try:
            return build_graph(self.units.tests.values(), scenario, self.jig_name)
        except GraphError as e:
            self._config_error(e.unit, str(e).splitlines()[0], **e.details)
            return None

    # ---- announcements ----

    def greet(self, to: Optional[str] = None) -> None:
        """Send the greeting sequence; `to` addresses it to one subscriber."""
        self.bus.publish(Event.create(ev.HELLO, "cfti", "jig", PROTOCOL_VERSION, **_addressed(to)))
        self.publish_jig(to)
        self.describe(to)
        self.publish_scenarios(to)
        if self.scenario is not None:
            self.bus.publish(Event.create(ev.SCENARIO, self.scenario.name, "scenario", **_addressed(to)))
            self.publish_tests(self.scenario, to)

    def publish_jig(self, to: Optional[str] = None) -> None:
        self.bus.publish(Event.create(ev.JIG, self.jig_name or "", "jig", **_addressed(to)))

    def publish_scenarios(self, to: Optional[str] = None) -> None:
        names = [s.name for s in self.units.scenarios_for(self.jig_name)]
        self.bus.publish(Event.create(ev.SCENARIOS, self.jig_name or "", "jig", scenarios=names, **_addressed(to)))

    def publish_tests(self, scenario: Optional[ScenarioDef] = None, to: Optional[str] = None) -> None:
        scenario = scenario or self.scenario
        if scenario is None:
            return
        graph = self.graph_for(scenario)
        if graph is None:
            return
        self.bus.publish(Event.create(ev.TESTS, scenario.name, "scenario", tests=graph.executable(),
                                      **_addressed(to)))

    def describe(self, to: Optional[str] = None) -> None:
        """Publish DESCRIBE records for the jig, its scenarios and their tests."""
        if self.jig is not None:
            self._describe("jig", self.jig.name, self.jig.display_name, self.jig.description, to)
        for scenario in self.units.scenarios_for(self.jig_name):
            self._describe("scenario", scenario.name, scenario.display_name, scenario.description, to)
        for test in sorted(self.units.tests.values(), key=lambda t: t.name):
            if test.compatible_with(self.jig_name):
                self._describe("test", test.name, test.display_name, test.description, to)

    def _describe(self, type: str, item: str, name: str, description: str, to: Optional[str]) -> None:
        self.bus.publish(Event.create(ev.DESCRIBE, item, type, name, type=type, field="name", item=item,
                                      **_addressed(to)))
        if description:
            self.bus.publish(Event.create(ev.DESCRIBE, item, type, description,
                                          type=type, field="description", item=item, **_addressed(to)))

    def _config_error(self, unit: str, message: str, **payload) -> None:
        self.bus.publish(Event.create(ev.CONFIG_ERROR, unit, "scenario", message, **payload))

    # ---- runs ----

    def start(self, name: Optional[str] = None) -> Optional[ScenarioRun]:
        with self._lock:
            if self.running:
                self.bus.publish(ev.debug("cfti", "jig", "START ignored: a scenario is already running"))
                return None
            if name and self.select_scenario(name) is None:
                return None
            if self.scenario is None:
                self._config_error("cfti", "No scenario selected")
                return None
            graph = self.graph_for(self.scenario)
            if graph is None:
                return None
            self.run = ScenarioRun(
                graph,
                self.scenario,
                self.bus,
                config=self.config,
                jig=self.jig_name,
                supervisor=self.supervisor,
            )
            self._run_thread = threading.Thread(target=self._run, args=(self.run,), daemon=True,
                                                name=f"scenario {self.scenario.name}")
            self._run_thread.start()
            return self.run

    def _run(self, run: ScenarioRun) -> None:
        self.result = run.run()

    def abort(self) -> None:
        if self.run is not None and self.running:
            self.run.abort()

    def wait(self, timeout: Optional[float] = None) -> Optional[ScenarioResult]:
        """Wait for the current run (if any) and return its result."""
        if self._run_thread is not None:
            self._run_thread.join(timeout)
        return self.result

    # ---- command dispatch ----

    def submit(self, command: Command) -> None:
        """Bus handler: queue the command for the controller thread."""
        self._commands.put(command)

    def handle(self, command: Command) -> None:
        verb = command.verb
        if verb == "HELLO":
            self.greet(command.source)
        elif verb == "JIG":
            self.publish_jig(command.source)
        elif verb == "SCENARIOS":
            self.publish_scenarios(command.source)
        elif verb == "SCENARIO":
            self.select_scenario(command.args[0])
        elif verb == "TESTS":
            scenario = self.units.scenario(command.arg) if command.arg else self.scenario
            if scenario is None:
                self._config_error(command.arg or "cfti", f"Unknown scenario '{command.arg or ''}'")
            else:
                self.publish_tests(scenario, command.source)
        elif verb == "START":
            self.start(command.arg)
        elif verb == "ABORT":
            self.abort()
        elif verb == "SHUTDOWN":
            self.shutdown_requested.set()

    def _dispatch_loop(self) -> None:
        while True:
            command = self._commands.get()
            if command is _STOP:
                return
            self.handle(command)

    def _ping_loop(self) -> None:
        while not self.shutdown_requested.wait(self.config.ping_interval):
            self.bus.check_liveness()
            for source in self.bus.pinged_sources():
                self.bus.ping(source)

    def serve(self) -> None:
        """Start the dispatch and PING threads."""
        self._dispatcher = threading.Thread(target=self._dispatch_loop, daemon=True, name="controller")
        self._dispatcher.start()
        self._pinger = threading.Thread(target=self._ping_loop, daemon=True, name="ping")
        self._pinger.start()

    def shutdown(self) -> None:
        self.shutdown_requested.set()
        self.abort()
        self.wait()
        if self._dispatcher is not None:
            self._commands.put(_STOP)
            self._dispatcher.join()
        self.bus.publish(Event.create(ev.EXIT, "cfti", "jig"))

