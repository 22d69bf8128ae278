# adapters.py
# Sinks and sources that connect the bus to the outside world: plain streams
# and log files, and the Logger / Interface / Trigger programs a jig declares.
from __future__ import annotations

import subprocess
import threading
from pathlib import Path
from typing import List, Optional, TextIO

from . import events as ev
from .bus import EventBus, Subscription
from .config import EngineConfig
from .errors import ProcessError, ProtocolError, SinkError
from .events import Event
from .model import ProgramDef, UnitKind, UnitSet
from .process import build_env, make_command, terminate_group
from .protocol import (
    TRIGGER_GO,
    TRIGGER_READY,
    TRIGGER_STOP,
    parse_client_line,
    parse_trigger_line,
)


class StreamSink:
    """Writes one record per line to a text stream."""

    def __init__(self, stream: TextIO, close: bool = False):
        self.stream = stream
        self._close = close

    def __call__(self, record: str) -> None:
        if self.stream.closed:
            raise SinkError(kind="SinkClosed", unit=str(getattr(self.stream, "name", "stream")),
                            message="Stream is closed")
        self.stream.write(record + "\n")
        self.stream.flush()

    def close(self) -> None:
        if self._close and not self.stream.closed:
            self.stream.close()


def open_log_file(path: str) -> StreamSink:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    return StreamSink(p.open("a", encoding="utf-8"), close=True)


# ----------------------------------------------------------------------
# External programs
# ----------------------------------------------------------------------

class ProgramAdapter:
    """
    A long-running Logger / Interface / Trigger program.

    Bus records are written to the program's stdin; Interface and Trigger
    programs send their commands back on stdout.
    """

    sink_format = "tsv"
    answers_ping = False

    def __init__(self, program: ProgramDef, bus: EventBus, *, jig: Optional[str] = None,
                 config: Optional[EngineConfig] = None):
        self.program = program
        self.bus = bus
        self.jig = jig
        self.config = config or EngineConfig()
        self.proc: Optional[subprocess.Popen] = None
        self.subscription: Optional[Subscription] = None
        self._reader: Optional[threading.Thread] = None
        self._stopped = threading.Event()

    @property
    def name(self) -> str:
        return self.program.name

    @property
    def unit_type(self) -> str:
        return self.program.kind.value

    def start(self) -> ProgramAdapter:
        argv = make_command(self.program.exec_start)
        env = {"CFTI_JIG": self.jig or "", "CFTI_UNIT_TYPE": self.unit_type}
        self.proc = subprocess.Popen(
            argv,
            cwd=self.program.working_directory or self.config.working_directory,
            env=build_env(env),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE if self.reads_commands else subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            bufsize=1,
            start_new_session=True,
        )
        self.subscription = self.subscribe()
        if self.reads_commands:
            self.bus.register_source(self.name, self._drop, ping=self.answers_ping)
            self._reader = threading.Thread(target=self._read, daemon=True, name=f"{self.name} reader")
            self._reader.start()
        self.bus.publish(ev.debug(self.name, self.unit_type, f"Started (pid {self.proc.pid})"))
        return self

    @property
    def reads_commands(self) -> bool:
        return False

    def subscribe(self) -> Subscription:
        return self.bus.subscribe(
            self._write,
            self.program.format or self.sink_format,
            name=self.name,
            unit_type=self.unit_type,
        )

    def _write(self, record: str) -> None:
        assert self.proc is not None and self.proc.stdin is not None
        self.proc.stdin.write(record + "\n")
        self.proc.stdin.flush()

    def _read(self) -> None:
        assert self.proc is not None and self.proc.stdout is not None
        try:
            for line in self.proc.stdout:
                if self._stopped.is_set():
                    return
                self.on_line(line.rstrip("\n"))
        except ProtocolError:
            # The bus has already dropped us.
            return
        except UnicodeDecodeError as e:
            if not self._stopped.is_set():
                self.bus.drop_source(self.name, f"Invalid UTF-8 on stdout: {e.reason}")
            return
        if not self._stopped.is_set():
            self.bus.drop_source(self.name, "program exited")

    def on_line(self, line: str) -> None:
        raise NotImplementedError

    def _drop(self) -> None:
        threading.Thread(target=self.stop, daemon=True, name=f"{self.name} stop").start()

    def stop(self) -> None:
        if self._stopped.is_set() or self.proc is None:
            return
        self._stopped.set()
        self.bus.publish(Event.create(ev.UNLOADING, self.name, self.unit_type, "Unloading"))
        self.bus.unregister_source(self.name)
        if self.subscription is not None:
            self.bus.unsubscribe(self.subscription, self.config.termination_timeout)
        if self.proc.stdin is not None:
            try:
                self.proc.stdin.close()
            except OSError:
                pass
        # EOF on stdin is the polite way to ask a program to exit.
        try:
            self.proc.wait(timeout=self.config.termination_timeout)
        except subprocess.TimeoutExpired:
            pass
        terminate_group(self.proc, self.config.termination_timeout)
        self.bus.publish(ev.debug(self.name, self.unit_type, f"Stopped (exit code {self.proc.returncode})"))


class LoggerProgram(ProgramAdapter):
    sink_format = "tsv"


class InterfaceProgram(ProgramAdapter):
    sink_format = "text"
    answers_ping = True

    @property
    def reads_commands(self) -> bool:
        return True

    def on_line(self, line: str) -> None:
        try:
            command = parse_client_line(self.name, line)
        except ProtocolError as e:
            self.bus.drop_source(self.name, str(e).splitlines()[0])
            raise
        if command is not None:
            self.bus.handle_command(self.name, command.verb, command.args)


class TriggerProgram(ProgramAdapter):
    sink_format = "trigger"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.ready = False

    @property
    def reads_commands(self) -> bool:
        return True

    def subscribe(self) -> Subscription:
        return self.bus.subscribe(self._write, "trigger", kinds=[ev.SCENARIO_FINISH],
                                  name=self.name, unit_type=self.unit_type)

    def on_line(self, line: str) -> None:
        try:
            word = parse_trigger_line(self.name, line, ready=self.ready)
        except ProtocolError as e:
            self.bus.drop_source(self.name, str(e).splitlines()[0])
            raise
        if word == TRIGGER_READY:
            self.ready = True
            self.bus.publish(ev.debug(self.name, self.unit_type, "Trigger ready"))
        elif word == TRIGGER_GO:
            self.bus.handle_command(self.name, "START")
        elif word == TRIGGER_STOP:
            self.bus.handle_command(self.name, "ABORT")
        elif word is not None:
            self.bus.publish(ev.debug(self.name, self.unit_type, f"Trigger: {word}"))


ADAPTERS = {
    UnitKind.LOGGER: LoggerProgram,
    UnitKind.INTERFACE: InterfaceProgram,
    UnitKind.TRIGGER: TriggerProgram,
}


def launch_programs(units: UnitSet, bus: EventBus, *, jig: Optional[str] = None,
                    config: Optional[EngineConfig] = None) -> List[ProgramAdapter]:
    """Start every Logger, then every Interface, then every Trigger compatible with the jig."""
    started: List[ProgramAdapter] = []
    for kind in (UnitKind.LOGGER, UnitKind.INTERFACE, UnitKind.TRIGGER):
        for program in units.programs_of(kind, jig):
            adapter = ADAPTERS[kind](program, bus, jig=jig, config=config)
            try:
                started.append(adapter.start())
            except (OSError, ProcessError) as e:
                bus.publish(Event.create(ev.CONFIG_ERROR, program.name, kind.value,
                                         f"Unable to start program: {e}"))
    return started
