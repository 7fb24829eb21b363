# cli.py
from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click

from batchflow.dag import build_dag, topo_levels
from batchflow.errors import ValidationError
from batchflow.model import ConfirmAnswer, Scenario
from batchflow.runner import ConfirmRequest
from batchflow.scenario import load_file
from batchflow.scheduler import RunResult, RunStatus, start
from batchflow.settings import EngineSettings
from batchflow.ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_INTERRUPTED = 130
FLUSH_TIMEOUT = 5.0

SCENARIO_SUFFIXES = (".yaml", ".yml", ".json", ".py")


def find_scenario_files() -> List[Path]:
    """
    Find all scenario files in the current directory.

    Returns:
        List of Path objects for scenario files
    """
    current_dir = Path(".")
    for suffix in SCENARIO_SUFFIXES:
        default = current_dir / f"batchflow_scenario{suffix}"
        if default.exists():
            return [default]

    found = [
        p
        for p in current_dir.glob("*_scenario.*")
        if p.suffix in SCENARIO_SUFFIXES
    ]
    return sorted(found)


def discover_scenario(scenario_arg: Optional[str]) -> Path:
    """
    Discover scenario file from argument or default.

    Args:
        scenario_arg: Optional scenario argument from CLI

    Returns:
        Path to scenario file

    Raises:
        SystemExit: If no scenario can be found or several candidates exist
    """
    console = get_console()

    if scenario_arg:
        path = Path(scenario_arg)
        if not path.exists():
            console.print_error(
                "Scenario file not found",
                f"Could not find scenario file: {scenario_arg}",
            )
            sys.exit(EXIT_INVALID)
        return path

    candidates = find_scenario_files()
    if not candidates:
        console.print_error(
            "No scenario file found",
            "Could not find any scenario files.",
            details=[
                "Looked for:",
                "  batchflow_scenario.{yaml,yml,json,py}",
                "  *_scenario.{yaml,yml,json,py}",
            ],
            suggestion="Specify a scenario explicitly:\n  batchflow run nightly.yaml",
        )
        sys.exit(EXIT_INVALID)

    if len(candidates) > 1:
        console.print_error(
            "Multiple scenario files found",
            "Found multiple scenario files. Please specify which one to use:",
            details=[str(p) for p in candidates],
        )
        sys.exit(EXIT_INVALID)

    return candidates[0]


def parse_vars(pairs: Tuple[str, ...]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--var")
        out[key.strip()] = value
    return out


def _load(scenario_arg: Optional[str]) -> Tuple[Path, Scenario]:
    console = get_console()
    path = discover_scenario(scenario_arg)
    try:
        return path, load_file(path)
    except ValidationError as e:
        console.print_error("Invalid scenario", f"{path}:", details=str(e).splitlines())
        sys.exit(EXIT_INVALID)


_prompt_open = threading.Event()


def prompt_confirm(request: ConfirmRequest) -> bool:
    """
    Ask on the terminal. Used when stdin is interactive.

    The question is read on the step's worker thread, so Ctrl-C cannot
    interrupt it: a cancelled run finishes once the open prompt is answered.
    """
    click.echo(f"\n[{request.step_id}] {request.message}")
    for line in request.summary.splitlines():
        click.echo(f"    {line}")
    _prompt_open.set()
    try:
        return click.confirm("Proceed?", default=request.default_answer is ConfirmAnswer.YES)
    finally:
        _prompt_open.clear()


def interrupt_notice() -> str:
    if _prompt_open.is_set():
        return "\nInterrupted by user, cancelling... answer the open confirm prompt to finish."
    return "\nInterrupted by user, cancelling..."


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """batchflow: dependency-ordered batch job runner."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("scenario", required=False)
@click.option("--workers", default=None, type=int, help="Maximum steps running at once")
@click.option("--var", "variables", multiple=True, metavar="KEY=VALUE", help="Seed a context variable (repeatable)")
@click.option("--quiet", is_flag=True, default=False, help="Hide step log lines while running")
@click.option(
    "--prompt/--no-prompt",
    default=None,
    help="Ask at confirm gates (default: only when stdin is a terminal)",
)
@click.pass_context
def run(ctx, scenario, workers, variables, quiet, prompt):
    """Run a batchflow scenario."""
    console = get_console()
    console.quiet = quiet

    path, loaded = _load(scenario)
    try:
        settings = EngineSettings.from_env().with_overrides(max_workers=workers)
    except ValueError as e:
        console.print_error("Invalid settings", str(e))
        sys.exit(EXIT_INVALID)

    if prompt is None:
        prompt = sys.stdin.isatty()

    console.print_run_started(
        scenario=loaded.name,
        source=path.name,
        step_count=len(loaded),
        workers=settings.max_workers,
    )

    try:
        handle = start(
            loaded,
            settings=settings,
            consumers=[console],
            variables=parse_vars(variables),
            confirm=prompt_confirm if prompt else None,
        )
    except ValidationError as e:
        console.print_error("Cannot start run", str(e).splitlines()[0], details=str(e).splitlines()[1:])
        sys.exit(EXIT_INVALID)

    try:
        result = _wait(handle)
    except KeyboardInterrupt:
        console.print_info(interrupt_notice())
        handle.cancel()
        result = handle.await_completion()
        handle.flush_events(FLUSH_TIMEOUT)
        console.print_results(result)
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    # live step output goes out before the summary
    if not handle.flush_events(FLUSH_TIMEOUT):
        console.print_debug(f"event output still pending after {FLUSH_TIMEOUT:g}s")
    console.print_results(result)
    if result.status is RunStatus.CANCELLED:
        sys.exit(EXIT_INTERRUPTED)
    if not result.ok:
        sys.exit(EXIT_FAILED)


def _wait(handle) -> RunResult:
    # short joins keep the main thread responsive to Ctrl-C
    while True:
        try:
            return handle.await_completion(timeout=0.5)
        except TimeoutError:
            continue


@cli.command()
@click.argument("scenario", required=False)
def validate(scenario):
    """Load and validate a scenario without running it."""
    console = get_console()
    path, loaded = _load(scenario)
    console.print_info(f"OK: {path.name} ({loaded.name}, {len(loaded)} steps)")


@cli.command()
@click.argument("scenario", required=False)
def plan(scenario):
    """Print the dependency levels and admission mode of each step."""
    console = get_console()
    _path, loaded = _load(scenario)
    adj, indeg = build_dag(loaded.steps)
    console.print_plan(loaded, topo_levels(adj, indeg))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
