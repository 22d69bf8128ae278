# cli.py
from __future__ import annotations

import signal
import sys
from pathlib import Path
from typing import List, Optional

import click

from cfti.adapters import ProgramAdapter, StreamSink, launch_programs, open_log_file
from cfti.bus import EventBus
from cfti.config import EngineConfig
from cfti.controller import Controller
from cfti.errors import GraphError, LoadError
from cfti.loader import discover_units, load_units
from cfti.model import UnitSet
from cfti.ui.console import Console, ConsoleSink, get_console, set_console


def _load(units_arg: Optional[str]) -> UnitSet:
    console = get_console()
    try:
        path = discover_units(units_arg)
        units = load_units(path)
    except LoadError as e:
        console.print_error(
            e.message,
            f"Could not load units from {e.unit}",
            details=[f"{k}: {v}" for k, v in e.details.items()] or None,
            suggestion="Create a cfti_units.py or specify one explicitly:\n  cfti run --units my_units.py",
        )
        sys.exit(1)
    console.print_debug(f"Loaded {len(units.tests)} tests, {len(units.scenarios)} scenarios from {path}")
    return units


def _controller(units: UnitSet, bus: EventBus, jig: Optional[str], config: EngineConfig) -> Controller:
    try:
        return Controller(units, bus, config=config, jig=jig)
    except GraphError as e:
        get_console().print_error("Unknown jig", e.message, details=sorted(units.jigs) or None)
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show engine debug events and child stderr)",
)
@click.pass_context
def cli(ctx, debug):
    """CFTI: dependency-aware test orchestration for factory test jigs."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["config"] = EngineConfig.from_env()


@cli.command()
@click.option("--units", "units_arg", default=None, help="Unit file path (defaults to cfti_units.py if present)")
@click.option("--jig", default=None, help="Jig to run on (defaults to the only jig, if there is one)")
@click.option("--scenario", default=None, help="Scenario to run (defaults to the jig's default scenario)")
@click.option("--log-format", type=click.Choice(["console", "tsv", "json"]), default="console", show_default=True)
@click.option("--log-file", default=None, help="Also append tsv/json records to this file")
@click.option("--programs/--no-programs", default=True, show_default=True,
              help="Launch the Logger/Interface/Trigger programs declared for the jig")
@click.pass_context
def run(ctx, units_arg, jig, scenario, log_format, log_file, programs):
    """Run one scenario and exit 0 if it passed."""
    console = get_console()
    config: EngineConfig = ctx.obj["config"]
    units = _load(units_arg)

    bus = EventBus(config)
    if log_format == "console":
        bus.subscribe(ConsoleSink(console), "event", name="console")
    else:
        bus.subscribe(StreamSink(sys.stdout), log_format, name="stdout")
    if log_file:
        sink = open_log_file(log_file)
        bus.subscribe(sink, "json" if log_format == "json" else "tsv", name="logfile", on_close=sink.close)

    controller = _controller(units, bus, jig, config)
    adapters: List[ProgramAdapter] = launch_programs(units, bus, jig=controller.jig_name, config=config) \
        if programs else []

    try:
        if controller.start(scenario) is None:
            bus.close()
            sys.exit(1)
        result = controller.wait()
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user, aborting")
        controller.abort()
        result = controller.wait()
    finally:
        for adapter in adapters:
            adapter.stop()

    bus.close()
    if result is None:
        sys.exit(1)
    if log_format == "console":
        console.print_results({name: state.value for name, state in result.tests.items()})
    sys.exit(0 if result.success else 1)


@cli.command(name="list")
@click.option("--units", "units_arg", default=None, help="Unit file path")
@click.option("--jig", default=None, help="Only show units compatible with this jig")
def list_units(units_arg, jig):
    """List jigs, scenarios, tests and programs."""
    console = get_console()
    units = _load(units_arg)

    console.print_header("Jigs")
    for j in units.jigs.values():
        default = f" (default scenario: {j.default_scenario})" if j.default_scenario else ""
        console.print_info(f"  {j.name}: {j.display_name}{default}")
    console.print_header("Scenarios")
    for s in units.scenarios_for(jig):
        console.print_info(f"  {s.name}: {s.display_name} [{', '.join(s.tests)}]")
    console.print_header("Tests")
    for t in sorted(units.tests.values(), key=lambda t: t.name):
        if t.compatible_with(jig):
            console.print_info(f"  {t.name} ({t.type.value}): {t.display_name}")
    if units.programs:
        console.print_header("Programs")
        for p in units.programs.values():
            if p.compatible_with(jig):
                console.print_info(f"  {p.name} ({p.kind.value})")


@cli.command()
@click.option("--units", "units_arg", default=None, help="Unit file path")
@click.option("--jig", default=None, help="Jig to resolve the graph for")
@click.option("--scenario", required=True, help="Scenario to resolve")
def graph(units_arg, jig, scenario):
    """Print the resolved execution order of a scenario."""
    from cfti.dag import build_graph

    console = get_console()
    units = _load(units_arg)
    s = units.scenario(scenario)
    if s is None:
        console.print_error("Unknown scenario", f"No scenario named '{scenario}'", details=sorted(units.scenarios))
        sys.exit(1)
    try:
        g = build_graph(units.tests.values(), s, jig)
    except GraphError as e:
        console.print_error(e.kind, e.message, details=[f"{k}: {v}" for k, v in e.details.items()] or None)
        sys.exit(1)

    console.print_header(f"{s.name} on {jig or 'any jig'}")
    console.print_plan(g.order, g.assumed)
    for name in g.order:
        deps = list(g.requires.get(name, ())) + [f"({d})" for d in g.suggests.get(name, ())]
        if deps:
            console.print_debug(f"{name} <- {' '.join(deps)}")


@cli.command()
@click.option("--units", "units_arg", default=None, help="Unit file path")
@click.option("--jig", default=None, help="Jig to serve (defaults to the only jig, if there is one)")
@click.option("--log-file", default=None, help="Append tsv records to this file")
@click.pass_context
def serve(ctx, units_arg, jig, log_file):
    """Launch the jig's programs and wait for commands until SHUTDOWN."""
    console = get_console()
    config: EngineConfig = ctx.obj["config"]
    units = _load(units_arg)

    bus = EventBus(config)
    bus.subscribe(ConsoleSink(console), "event", name="console")
    if log_file:
        sink = open_log_file(log_file)
        bus.subscribe(sink, "tsv", name="logfile", on_close=sink.close)

    controller = _controller(units, bus, jig, config)
    controller.serve()
    adapters = launch_programs(units, bus, jig=controller.jig_name, config=config)
    if not adapters:
        console.print_info("No programs declared; waiting for SIGINT/SIGTERM")

    signal.signal(signal.SIGTERM, lambda *_: controller.shutdown_requested.set())
    console.print_info(f"Serving jig {controller.jig_name or '(any)'} from {Path.cwd()}")
    try:
        controller.shutdown_requested.wait()
    except KeyboardInterrupt:
        console.print_info("\nStopped by user")
    try:
        controller.shutdown()
    finally:
        for adapter in adapters:
            adapter.stop()
        bus.close()


if __name__ == "__main__":
    cli()
