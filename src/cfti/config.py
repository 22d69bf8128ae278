# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Mapping, Optional

ENV_PREFIX = "CFTI_"


@dataclass(frozen=True)
class EngineConfig:
    """
    Engine-wide defaults. All durations are seconds.

    Every field can be overridden from the environment as CFTI_<FIELD>,
    e.g. CFTI_TEST_TIMEOUT=60.
    """
    test_timeout: float = 3600.0
    scenario_timeout: float = 7200.0
    scenario_start_timeout: float = 10.0
    scenario_success_timeout: float = 10.0
    scenario_failure_timeout: float = 10.0
    test_success_timeout: float = 10.0
    test_failure_timeout: float = 10.0
    termination_timeout: float = 5.0
    daemon_check_interval: float = 5.0
    ping_interval: float = 10.0
    pong_timeout: float = 5.0
    sink_queue_size: int = 4096
    sink_max_failures: int = 3
    working_directory: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> EngineConfig:
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            if f.name == "working_directory":
                values[f.name] = raw
            elif f.type in ("int", int):
                values[f.name] = int(raw)
            else:
                values[f.name] = float(raw)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def with_overrides(self, **overrides) -> EngineConfig:
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
