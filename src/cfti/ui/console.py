"""Console output formatting utilities for CFTI."""

from __future__ import annotations

import sys
from typing import Iterable, Optional

from cfti import events as ev
from cfti.events import Event


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show engine debug events and child stderr
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, jig: Optional[str], scenario: str, test_count: int) -> None:
        """Print run start information."""
        print("\nSCENARIO STARTED")
        print(f"Jig: {jig or '(any)'}")
        print(f"Scenario: {scenario}")
        print(f"Tests: {test_count}")
        print()

    def print_test_start(self, name: str) -> None:
        print(f"\nTEST STARTED: {name}")

    def print_output(self, unit: str, text: str) -> None:
        print(f"  {unit} | {text}")

    def print_test_result(self, name: str, outcome: str, reason: str = "") -> None:
        """Print a test's terminal state, with its result message if any."""
        status = {"pass": "passed", "fail": "FAILED", "skip": "skipped"}.get(outcome, outcome)
        print(f"STATUS: {status}" + (f" ({reason})" if reason else ""))

    def print_finish(self, scenario: str, code: int, success: bool) -> None:
        print(f"\nSCENARIO {'PASSED' if success else 'FAILED'}: {scenario} (code {code})")

    def print_plan(self, order: Iterable[str], assumed: Iterable[str] = ()) -> None:
        """Print the resolved execution order."""
        assumed = set(assumed)
        for i, name in enumerate(order, 1):
            note = " (assumed)" if name in assumed else ""
            print(f"  {i}. {name}{note}")

    def print_results(self, results: dict[str, str]) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for test, state in results.items():
            print(f"  {test}: {state.upper()}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


class ConsoleSink:
    """Bus sink (format "event") that renders run progress on a Console."""

    def __init__(self, console: Console):
        self.console = console

    def __call__(self, event: Event) -> None:
        c = self.console
        kind = event.message_type
        if kind == ev.SCENARIO_START:
            c.print_run_started(event.payload.get("jig"), event.unit, len(event.payload.get("tests", ())))
        elif kind == ev.TEST_START:
            c.print_test_start(event.unit)
        elif kind == ev.TEST_RESULT:
            c.print_test_result(event.unit, event.payload.get("result", ""), event.message)
        elif kind == ev.SCENARIO_FINISH:
            c.print_finish(event.unit, event.payload.get("code", 0), bool(event.payload.get("success")))
        elif kind == ev.STDOUT:
            c.print_output(event.unit, event.message)
        elif kind == ev.CONFIG_ERROR:
            c.print_error("Configuration error", event.message, details=[f"unit={event.unit}"])
        elif kind in (ev.STDERR, ev.DEBUG, ev.LOG, ev.UNLOADING):
            c.print_debug(f"{event.unit_type}/{event.unit}: {event.message}")


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
