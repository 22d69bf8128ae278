# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence


@dataclass
class EngineError(Exception):
    """
    Structured engine error with enough context for:
      - clean CLI output
      - `config-error` / `debug` events on the bus
      - debugging without full tracebacks
    """
    kind: str
    unit: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"unit={self.unit}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Graph errors: fatal at build time, before any process is spawned
# ----------------------------------------------------------------------

class GraphError(EngineError):
    pass


class CycleDetected(GraphError):
    def __init__(self, path: Sequence[str]):
        super().__init__(
            kind="CycleDetected",
            unit=path[0] if path else "<graph>",
            message="Dependency cycle: " + " -> ".join(path),
            details={"path": list(path)},
        )
        self.path = list(path)


class UnknownUnit(GraphError):
    def __init__(self, name: str, referenced_by: Optional[str] = None):
        message = f"Unknown unit '{name}'"
        if referenced_by:
            message += f" (referenced by '{referenced_by}')"
        super().__init__(kind="UnknownUnit", unit=name, message=message)
        self.name = name


class AmbiguousProvider(GraphError):
    def __init__(self, alias: str, candidates: Sequence[str]):
        super().__init__(
            kind="AmbiguousProvider",
            unit=alias,
            message=f"More than one test provides '{alias}': {', '.join(candidates)}",
            details={"candidates": list(candidates)},
        )
        self.alias = alias
        self.candidates = list(candidates)


class IncompatibleJig(GraphError):
    def __init__(self, test: str, jig: Optional[str]):
        super().__init__(
            kind="IncompatibleJig",
            unit=test,
            message=f"Test '{test}' is not compatible with jig '{jig}'",
            details={"jig": jig},
        )
        self.test = test
        self.jig = jig


# ----------------------------------------------------------------------
# Runtime errors: localized to a test, a source or a sink
# ----------------------------------------------------------------------

class ProcessError(EngineError):
    """Spawn failure, timeout, unexpected daemon exit, daemon-check failure."""


class ProtocolError(EngineError):
    """Malformed inbound command or missing PONG. Drops the offending source."""


class SinkError(EngineError):
    """A Logger/Interface write failed. Reported as debug, never blocks a run."""


class LoadError(EngineError):
    """A unit-definition file could not be loaded."""
