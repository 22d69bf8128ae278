# scenario.py
# The scenario run state machine. Walks a DependencyGraph, one test at a time,
# and owns every TestState transition. Everything asynchronous (process
# readiness, exits, aborts, the scenario deadline) arrives as a message on a
# single control queue.
from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from . import events as ev
from .bus import EventBus
from .config import EngineConfig
from .dag import DependencyGraph
from .events import Event
from .framing import Frame
from .model import CommandSpec, ScenarioDef, TestState
from .process import ProcessHandle, ProcessSupervisor, StopReason, output_event

FINISH_SUCCESS = 200
FINISH_TIMEOUT = 408
FINISH_ABORTED = 499
FINISH_FAILURE = 500

REASON_ABORTED = "Aborted"
REASON_TIMEOUT = "Timeout"


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class ScenarioResult:
    scenario: str
    state: RunState
    success: bool
    code: int
    tests: Dict[str, TestState] = field(default_factory=dict)
    reasons: Dict[str, str] = field(default_factory=dict)
    hook_failures: int = 0

    def with_state(self, state: TestState) -> List[str]:
        return [name for name, s in self.tests.items() if s is state]

    @property
    def failures(self) -> int:
        return len(self.with_state(TestState.FAILED)) + self.hook_failures


class ScenarioRun:
    """
    One execution of one scenario.

    run() blocks until the scenario is completed or aborted. abort() may be
    called from any thread.
    """

    def __init__(
        self,
        graph: DependencyGraph,
        scenario: ScenarioDef,
        bus: EventBus,
        *,
        config: Optional[EngineConfig] = None,
        jig: Optional[str] = None,
        supervisor: Optional[ProcessSupervisor] = None,
    ):
        self.graph = graph
        self.scenario = scenario
        self.bus = bus
        self.config = config or EngineConfig()
        self.jig = jig if jig is not None else graph.jig
        self.supervisor = supervisor or ProcessSupervisor(self.config)

        self.state = RunState.IDLE
        self.states: Dict[str, TestState] = {name: TestState.PENDING for name in graph.order}
        self.reasons: Dict[str, str] = {}
        self.hook_failures = 0

        self._control: queue.Queue = queue.Queue()
        self._handles: Dict[str, ProcessHandle] = {}
        self._pumps: Dict[str, threading.Thread] = {}
        self._ready: Set[str] = set()
        self._capped: Set[str] = set()
        self._abort: Optional[tuple] = None
        self._deadline = 0.0

    # ---- control surface ----

    def abort(self, reason: str = REASON_ABORTED) -> None:
        self._control.put(("abort", reason))

    def start(self) -> threading.Thread:
        """Run in a background thread."""
        t = threading.Thread(target=self.run, daemon=True, name=f"scenario {self.scenario.name}")
        t.start()
        return t

    # ---- main loop ----

    def run(self) -> ScenarioResult:
        if self.state is not RunState.IDLE:
            raise RuntimeError(f"Scenario run already {self.state.value}")
        self.state = RunState.RUNNING

        timeout = self.scenario.timeout or self.config.scenario_timeout
        self._deadline = time.monotonic() + timeout
        timer = threading.Timer(timeout, self._control.put, args=(("timeout",),))
        timer.daemon = True
        timer.start()

        self._publish(Event.create(ev.SCENARIO_START, self.scenario.name, "scenario",
                                   f"Starting {self.scenario.display_name}",
                                   jig=self.jig, tests=self.graph.executable()))
        try:
            for name in self.graph.order:
                if name in self.graph.assumed:
                    self._finish(name, TestState.PASSED, "assumed")

            if self.scenario.exec_start is not None:
                if not self._run_hook(self.scenario.exec_start, self.config.scenario_start_timeout):
                    self.hook_failures += 1

            for name in self.graph.executable():
                self._drain_control()
                self._check_deadline()
                if self._abort:
                    break
                blocked = [d for d in self.graph.requires.get(name, ()) if not self._satisfied(d)]
                if blocked:
                    self._finish(name, TestState.SKIPPED, f"dependency failed: {blocked[0]}")
                    continue
                self._run_test(name)

            self._drain_control()
            self._check_deadline()
            if not self._abort:
                self._stop_daemons()
        finally:
            timer.cancel()

        return self._complete()

    def _run_test(self, name: str) -> None:
        test = self.graph.nodes[name]
        remaining = max(self._deadline - time.monotonic(), 0.0)
        timeout = test.timeout or self.config.test_timeout
        if remaining <= timeout:
            # The scenario deadline comes first; its expiry is a scenario timeout.
            timeout = remaining
            self._capped.add(name)

        handle = self.supervisor.handle(test, env=self._env(name))
        self._handles[name] = handle
        self.states[name] = TestState.RUNNING
        self._publish(ev.running(name))

        handle.start(timeout=timeout, working_dir=self._working_dir(test.working_directory))
        pump = threading.Thread(target=self._pump, args=(name, handle), daemon=True, name=f"pump {name}")
        self._pumps[name] = pump
        pump.start()

        # Block until this test is resolved: finished, or (daemons) ready.
        while not self._abort:
            if self.states[name].terminal or name in self._ready:
                return
            self._dispatch(self._control.get())

    def _pump(self, name: str, handle: ProcessHandle) -> None:
        for event in handle.events():
            if event.message_type in (ev.READY, ev.EXITED):
                self._control.put((event.message_type, name, event))
            else:
                self._publish(event)

    # ---- control messages ----

    def _drain_control(self) -> None:
        while True:
            try:
                message = self._control.get_nowait()
            except queue.Empty:
                return
            self._dispatch(message)

    def _dispatch(self, message: tuple) -> None:
        kind = message[0]
        if kind == ev.READY:
            _, name, _ = message
            if not self.states[name].terminal:
                self._ready.add(name)
                self._publish(ev.debug(name, "test", "Daemon ready"))
        elif kind == ev.EXITED:
            _, name, event = message
            self._on_exit(name, event)
        elif kind == "abort":
            self._do_abort(message[1], FINISH_ABORTED)
        elif kind == "timeout":
            self._do_abort(REASON_TIMEOUT, FINISH_TIMEOUT)

    def _on_exit(self, name: str, event: Event) -> None:
        self._pumps[name].join()
        if self.states[name].terminal:
            return
        passed = bool(event.payload.get("passed"))
        reason = str(event.payload.get("reason") or "")
        if reason == REASON_TIMEOUT and name in self._capped:
            self._do_abort(REASON_TIMEOUT, FINISH_TIMEOUT)
            return
        self._ready.discard(name)
        self._finish(name, TestState.PASSED if passed else TestState.FAILED, reason)
        self._stop_hook(name, passed)

    def _do_abort(self, reason: str, code: int) -> None:
        if self._abort:
            return
        self._abort = (reason, code)
        self._publish(ev.debug(self.scenario.name, "scenario", f"Aborting: {reason}"))
        interrupted = []
        for name, handle in self._handles.items():
            if not self.states[name].terminal:
                handle.terminate(reason)
                self._pumps[name].join()
                interrupted.append(name)
        for name in self.graph.order:
            if not self.states[name].terminal:
                self._finish(name, TestState.SKIPPED, reason)
        for name in interrupted:
            self._stop_hook(name, False)

    def _check_deadline(self) -> None:
        if not self._abort and time.monotonic() >= self._deadline:
            self._do_abort(REASON_TIMEOUT, FINISH_TIMEOUT)

    def _stop_daemons(self) -> None:
        for name, handle in self._handles.items():
            if self.states[name] is not TestState.RUNNING:
                continue
            handle.terminate("Scenario finished")
            self._pumps[name].join()
            self._finish(name, TestState.PASSED, handle.last_line)
            self._stop_hook(name, True)

    # ---- helpers ----

    def _satisfied(self, name: str) -> bool:
        state = self.states.get(name)
        if state is TestState.PASSED:
            return True
        return state is TestState.RUNNING and name in self._ready

    def _finish(self, name: str, state: TestState, reason: str = "") -> None:
        if self.states[name].terminal:
            return
        self.states[name] = state
        self.reasons[name] = reason
        outcome = {TestState.PASSED: "pass", TestState.FAILED: "fail", TestState.SKIPPED: "skip"}[state]
        self._publish(ev.result(name, outcome, reason))

    def _stop_hook(self, name: str, passed: bool) -> None:
        handle = self._handles[name]
        reason = StopReason.SUCCESS if passed else StopReason.FAIL
        result = handle.stop(reason, on_output=self._output_publisher(name, "test"))
        if result is not None and not result.ok:
            self._publish(ev.debug(name, "test", f"Stop command failed: {result.describe()}"))

    def _run_hook(self, cmd: CommandSpec, timeout: float) -> bool:
        name = self.scenario.name
        result = self.supervisor.run(
            cmd,
            timeout=timeout,
            cwd=self._working_dir(),
            env=self._env(None),
            on_output=self._output_publisher(name, "scenario"),
        )
        if not result.ok:
            self._publish(ev.debug(name, "scenario", f"{result.command}: {result.describe()}"))
        return result.ok

    def _complete(self) -> ScenarioResult:
        aborted = self._abort is not None
        failures = sum(1 for s in self.states.values() if s is TestState.FAILED) + self.hook_failures
        success = not aborted and failures == 0

        stop = self.scenario.stop_command(success)
        if stop is not None:
            timeout = self.config.scenario_success_timeout if success else self.config.scenario_failure_timeout
            if not self._run_hook(stop, timeout):
                self.hook_failures += 1
                failures += 1
                success = False

        if aborted:
            code = self._abort[1]
            self.state = RunState.ABORTED
        else:
            code = FINISH_SUCCESS if success else FINISH_FAILURE + failures
            self.state = RunState.COMPLETED

        self._publish(Event.create(ev.SCENARIO_FINISH, self.scenario.name, "scenario",
                                   f"Finished with code {code}", code=code, success=success))
        return ScenarioResult(
            scenario=self.scenario.name,
            state=self.state,
            success=success,
            code=code,
            tests=dict(self.states),
            reasons=dict(self.reasons),
            hook_failures=self.hook_failures,
        )

    def _output_publisher(self, unit: str, unit_type: str):
        def publish(stream: str, frame: Frame) -> None:
            self._publish(output_event(stream, unit, unit_type, frame))
        return publish

    def _env(self, test: Optional[str]) -> Dict[str, str]:
        env = {
            "CFTI_JIG": self.jig or "",
            "CFTI_SCENARIO": self.scenario.name,
            "CFTI_UNIT_TYPE": "test" if test else "scenario",
        }
        if test:
            env["CFTI_TEST"] = test
        return env

    def _working_dir(self, preferred: Optional[str] = None) -> Optional[str]:
        return preferred or self.scenario.working_directory or self.config.working_directory

    def _publish(self, event: Event) -> None:
        self.bus.publish(event)
