# process.py
# Process supervision: one ProcessHandle per test invocation, plus a
# run-to-completion helper for support commands (stop hooks, scenario
# hooks, daemon health checks).
from __future__ import annotations

import base64
import os
import queue
import re
import shlex
import signal
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterator, List, Mapping, Optional

from . import events as ev
from .config import EngineConfig
from .errors import ProcessError
from .events import Event
from .framing import LINE, Frame, FrameReader
from .model import CommandSpec, TestDef, TestType

# (stream name, frame) callback for support-command output
OutputCallback = Callable[[str, Frame], None]


class HandleState(str, Enum):
    NOT_STARTED = "not-started"
    STARTING = "starting"
    READY = "ready"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


class StopReason(str, Enum):
    SUCCESS = "success"
    FAIL = "fail"


# Exit reasons carried on the `exited` notice.
REASON_TIMEOUT = "Timeout"
REASON_SPAWN = "SpawnError"
REASON_DAEMON_EXIT = "DaemonExited"
REASON_DAEMON_CHECK = "DaemonCheckFailed"


# ----------------------------------------------------------------------
# Command helpers
# ----------------------------------------------------------------------

def make_command(cmd: CommandSpec) -> List[str]:
    """
    Turn a CommandSpec into argv.

    Strings are split with POSIX shell-word rules; no shell is involved.

    Raises:
      ProcessError: empty command or unbalanced quoting.
    """
    if isinstance(cmd, str):
        try:
            argv = shlex.split(cmd)
        except ValueError as e:
            raise ProcessError(kind="MakeCommandError", unit=cmd, message=str(e))
    else:
        argv = [str(a) for a in cmd]
    if not argv:
        raise ProcessError(kind="NoCommandSpecified", unit=str(cmd), message="Empty command")
    return argv


def command_text(cmd: CommandSpec) -> str:
    return cmd if isinstance(cmd, str) else shlex.join([str(a) for a in cmd])


def build_env(extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    env = os.environ.copy()
    env.update({k: str(v) for k, v in (extra or {}).items()})
    return env


def output_event(stream: str, unit: str, unit_type: str, frame: Frame) -> Event:
    """
    Wrap one frame of child output in an event.

    Binary frames and lines that are not valid UTF-8 are carried base64-encoded
    (payload `encoding="base64"`), so every byte reaches the sinks unchanged.
    """
    if frame.mode == LINE:
        try:
            return Event.create(stream, unit, unit_type, frame.text())
        except UnicodeDecodeError:
            pass
    data = base64.b64encode(frame.data).decode("ascii")
    return Event.create(stream, unit, unit_type, data, encoding="base64")


def _signal_group(pid: int, sig: int) -> None:
    try:
        os.killpg(pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def terminate_group(proc: subprocess.Popen, grace: float) -> Optional[int]:
    """
    Terminate a child and every descendant in its session.

    SIGTERM first, SIGKILL after `grace` seconds. Returns the exit code.
    """
    if proc.poll() is None:
        _signal_group(proc.pid, signal.SIGTERM)
        try:
            proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            _signal_group(proc.pid, signal.SIGKILL)
            proc.wait()
    # Reap descendants that outlived the leader.
    _signal_group(proc.pid, signal.SIGKILL)
    return proc.returncode


@dataclass(frozen=True)
class CommandResult:
    command: str
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.timed_out and self.returncode == 0

    def describe(self) -> str:
        if self.error:
            return self.error
        if self.timed_out:
            return REASON_TIMEOUT
        return f"exit code {self.returncode}"


def run_command(
    cmd: CommandSpec,
    *,
    timeout: float,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    on_output: Optional[OutputCallback] = None,
    grace: float = 5.0,
) -> CommandResult:
    """
    Run a support command to completion, capturing its output.

    Never raises for command failures: spawn errors and timeouts are reported
    in the returned CommandResult. Each output frame is passed to `on_output`
    as (stream, frame) as soon as it is read.
    """
    text = command_text(cmd)
    try:
        argv = make_command(cmd)
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            env=build_env(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
    except ProcessError as e:
        return CommandResult(command=text, returncode=None, error=f"{e.kind}: {e.message}")
    except OSError as e:
        return CommandResult(command=text, returncode=None, error=f"{REASON_SPAWN}: {e}")

    captured: Dict[str, List[str]] = {ev.STDOUT: [], ev.STDERR: []}
    readers = [
        threading.Thread(target=_collect, args=(proc.stdout, ev.STDOUT, captured[ev.STDOUT], on_output),
                         daemon=True, name=f"{text} stdout"),
        threading.Thread(target=_collect, args=(proc.stderr, ev.STDERR, captured[ev.STDERR], on_output),
                         daemon=True, name=f"{text} stderr"),
    ]
    for t in readers:
        t.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        terminate_group(proc, grace)
    # Leftover descendants may still hold our pipes open.
    _signal_group(proc.pid, signal.SIGKILL)
    for t in readers:
        t.join()

    return CommandResult(
        command=text,
        returncode=proc.returncode,
        stdout="\n".join(captured[ev.STDOUT]),
        stderr="\n".join(captured[ev.STDERR]),
        timed_out=timed_out,
    )


def _collect(stream, stream_name: str, lines: List[str], on_output: Optional[OutputCallback]) -> None:
    for frame in FrameReader(stream):
        if frame.mode == LINE:
            lines.append(frame.text(errors="replace"))
        if on_output is not None:
            on_output(stream_name, frame)
    stream.close()


# ----------------------------------------------------------------------
# Process handle
# ----------------------------------------------------------------------

class ProcessHandle:
    """
    Owns one invocation of a test's ExecStart.

    Output and lifecycle notices are delivered through `events()`, a lazy,
    single-pass stream that ends after the `exited` notice. The handle never
    touches run state: it only reports.

    Lifecycle:
      simple:  not-started -> starting -> running -> stopped | failed
      daemon:  not-started -> starting -> ready -> stopping -> stopped | failed
    """

    def __init__(
        self,
        test: TestDef,
        *,
        config: Optional[EngineConfig] = None,
        env: Optional[Mapping[str, str]] = None,
        unit_type: str = "test",
    ):
        self.test = test
        self.config = config or EngineConfig()
        self.env = dict(env or {})
        self.unit_type = unit_type

        self.state = HandleState.NOT_STARTED
        self.ready = False
        self.last_check_ok: Optional[bool] = None
        self.last_line = ""
        self.returncode: Optional[int] = None
        self.working_dir: Optional[str] = None

        self._proc: Optional[subprocess.Popen] = None
        self._queue: Optional[queue.Queue] = None
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._stop_requested = threading.Event()
        self._stop_reason: Optional[str] = None
        self._timed_out = False
        self._fail_reason: Optional[str] = None
        self._ready_re: Optional[re.Pattern] = None
        self._timer: Optional[threading.Timer] = None
        self._readers: List[threading.Thread] = []

    # ---- public API ----

    @property
    def name(self) -> str:
        return self.test.name

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    @property
    def alive(self) -> bool:
        return self._proc is not None and not self._done.is_set()

    def start(
        self,
        cmd: Optional[CommandSpec] = None,
        mode: Optional[TestType] = None,
        timeout: Optional[float] = None,
        working_dir: Optional[str] = None,
    ) -> ProcessHandle:
        """
        Spawn the command. Defaults come from the test definition.

        Spawn failures do not raise: they end the event stream with a failed
        `exited` notice (reason SpawnError).
        """
        if self.alive:
            raise ProcessError(kind="AlreadyRunning", unit=self.name, message="Process is still running")

        cmd = self.test.exec_start if cmd is None else cmd
        mode = self.test.type if mode is None else mode
        timeout = self.test.timeout if timeout is None else timeout
        if timeout is None:
            timeout = self.config.test_timeout

        self._reset(mode)
        self.working_dir = working_dir
        self.state = HandleState.STARTING

        try:
            argv = make_command(cmd)
            if mode is TestType.DAEMON and self.test.daemon_ready_text:
                self._ready_re = re.compile(self.test.daemon_ready_text)
            self._proc = subprocess.Popen(
                argv,
                cwd=working_dir,
                env=build_env(self.env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ProcessError, re.error) as e:
            self.state = HandleState.FAILED
            self._emit(ev.debug(self.name, self.unit_type, f"Unable to spawn {command_text(cmd)}: {e}"))
            self._emit(self._notice(ev.EXITED, passed=False, reason=REASON_SPAWN, returncode=None))
            self._finish()
            return self

        self._emit(ev.debug(self.name, self.unit_type, f"Started {command_text(cmd)} (pid {self._proc.pid})"))
        self._readers = [
            threading.Thread(target=self._read, args=(self._proc.stdout, ev.STDOUT), daemon=True,
                             name=f"{self.name} stdout"),
            threading.Thread(target=self._read, args=(self._proc.stderr, ev.STDERR), daemon=True,
                             name=f"{self.name} stderr"),
        ]
        for t in self._readers:
            t.start()

        self._timer = threading.Timer(timeout, self._on_deadline)
        self._timer.daemon = True
        self._timer.start()

        if mode is TestType.DAEMON:
            if self._ready_re is None:
                self._mark_ready()
        else:
            self.state = HandleState.RUNNING

        threading.Thread(target=self._wait, args=(mode,), daemon=True, name=f"{self.name} wait").start()
        return self

    def events(self) -> Iterator[Event]:
        """Yield output events and notices until the process is gone."""
        q = self._queue
        if q is None:
            raise ProcessError(kind="NotStarted", unit=self.name, message="start() has not been called")
        while True:
            item = q.get()
            if item is None:
                return
            yield item

    def terminate(self, reason: str = "Stopped") -> None:
        """Kill the process group (if still alive) and wait until it is gone."""
        if self._proc is None:
            return
        with self._lock:
            if not self._done.is_set() and not self._stop_requested.is_set():
                self._stop_reason = reason
                self._stop_requested.set()
                self.state = HandleState.STOPPING
        if not self._done.is_set():
            terminate_group(self._proc, self.config.termination_timeout)
        self.wait()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def stop(self, reason: StopReason, on_output: Optional[OutputCallback] = None) -> Optional[CommandResult]:
        """
        Stop the process and run the stop hook matching `reason`.

        ExecStopSuccess / ExecStopFail win over the generic ExecStop for their
        outcome. Returns the hook's result, or None when no hook is defined.
        """
        self.terminate("Stopped")
        passed = reason is StopReason.SUCCESS
        cmd = self.test.stop_command(passed)
        if cmd is None:
            return None
        timeout = self.config.test_success_timeout if passed else self.config.test_failure_timeout
        return run_command(
            cmd,
            timeout=timeout,
            cwd=self.working_dir,
            env=self.env,
            on_output=on_output,
            grace=self.config.termination_timeout,
        )

    # ---- internals ----

    def _reset(self, mode: TestType) -> None:
        self._queue = queue.Queue()
        self._done.clear()
        self._stop_requested.clear()
        self._stop_reason = None
        self._timed_out = False
        self._fail_reason = None
        self._ready_re = None
        self.ready = False
        self.last_check_ok = None
        self.last_line = ""
        self.returncode = None

    def _emit(self, event: Event) -> None:
        assert self._queue is not None
        self._queue.put(event)

    def _notice(self, kind: str, **payload) -> Event:
        return Event.create(kind, self.name, self.unit_type, **payload)

    def _finish(self) -> None:
        assert self._queue is not None
        self._queue.put(None)
        self._done.set()

    def _read(self, stream, stream_name: str) -> None:
        for frame in FrameReader(stream):
            event = output_event(stream_name, self.name, self.unit_type, frame)
            self._emit(event)
            if stream_name != ev.STDOUT or "encoding" in event.payload:
                continue
            text = event.message
            self.last_line = text
            if self._ready_re is not None and not self.ready and self._ready_re.search(text):
                self._mark_ready()
        stream.close()

    def _mark_ready(self) -> None:
        with self._lock:
            if self.ready or self._timed_out or self._stop_requested.is_set():
                return
            self.ready = True
            self.state = HandleState.READY
            if self._timer is not None:
                self._timer.cancel()
        self._emit(self._notice(ev.READY, pid=self.pid))
        if self.test.daemon_check is not None:
            threading.Thread(target=self._health_loop, daemon=True, name=f"{self.name} check").start()

    def _on_deadline(self) -> None:
        with self._lock:
            if self._done.is_set() or self.ready or self._stop_requested.is_set():
                return
            self._timed_out = True
        self._emit(ev.debug(self.name, self.unit_type, "Deadline reached, terminating"))
        assert self._proc is not None
        terminate_group(self._proc, self.config.termination_timeout)

    def _health_loop(self) -> None:
        interval = self.test.daemon_check_interval or self.config.daemon_check_interval
        while not self._done.wait(interval):
            if self._stop_requested.is_set():
                return
            result = run_command(
                self.test.daemon_check,  # type: ignore[arg-type]
                timeout=interval,
                cwd=self.working_dir,
                env=self.env,
                grace=self.config.termination_timeout,
            )
            self.last_check_ok = result.ok
            if result.ok:
                continue
            with self._lock:
                if self._stop_requested.is_set() or self._done.is_set():
                    return
                self._fail_reason = f"{REASON_DAEMON_CHECK}: {result.describe()}"
            self._emit(ev.debug(self.name, self.unit_type, f"Daemon check failed: {result.describe()}"))
            assert self._proc is not None
            terminate_group(self._proc, self.config.termination_timeout)
            return

    def _wait(self, mode: TestType) -> None:
        proc = self._proc
        assert proc is not None
        returncode = proc.wait()
        # Leftover descendants may still hold our pipes open.
        _signal_group(proc.pid, signal.SIGKILL)
        for t in self._readers:
            t.join()
        if self._timer is not None:
            self._timer.cancel()
        self.returncode = returncode

        with self._lock:
            stopped = self._stop_requested.is_set()
            if stopped:
                passed, reason = mode is TestType.DAEMON and self.ready, self._stop_reason or "Stopped"
            elif self._timed_out:
                passed, reason = False, REASON_TIMEOUT
            elif self._fail_reason:
                passed, reason = False, self._fail_reason
            elif mode is TestType.DAEMON:
                when = "after" if self.ready else "before"
                passed, reason = False, f"{REASON_DAEMON_EXIT}: exited {when} becoming ready (code {returncode})"
            else:
                passed = returncode == 0
                reason = self.last_line if passed else f"exit code {returncode}"

            if stopped:
                self.state = HandleState.STOPPED
            else:
                self.state = HandleState.STOPPED if passed else HandleState.FAILED

        self._emit(self._notice(
            ev.EXITED,
            passed=passed,
            reason=reason,
            returncode=returncode,
            last_line=self.last_line,
            stopped=stopped,
        ))
        self._finish()


class ProcessSupervisor:
    """Creates process handles and runs support commands with shared config."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def handle(self, test: TestDef, env: Optional[Mapping[str, str]] = None) -> ProcessHandle:
        return ProcessHandle(test, config=self.config, env={**test.env, **(env or {})})

    def run(
        self,
        cmd: CommandSpec,
        *,
        timeout: float,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> CommandResult:
        return run_command(
            cmd,
            timeout=timeout,
            cwd=cwd,
            env=env,
            on_output=on_output,
            grace=self.config.termination_timeout,
        )
