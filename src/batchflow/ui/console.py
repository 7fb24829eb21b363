"""Console output formatting utilities for batchflow."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, List, Optional, Sequence

from ..events import EngineEvent, EventKind
from ..state import StepState

if TYPE_CHECKING:
    from ..model import Scenario
    from ..scheduler import RunResult


_STATE_LABELS = {
    StepState.RUNNING: "STEP STARTED",
    StepState.SUCCEEDED: "STEP SUCCEEDED",
    StepState.FAILED: "STEP FAILED",
    StepState.BLOCKED: "STEP BLOCKED",
    StepState.SKIPPED: "STEP SKIPPED",
}


class Console:
    """Centralized console output formatting. Also usable as an event consumer."""

    def __init__(self, debug: bool = False, quiet: bool = False, log_tail: int = 10):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress step log lines while the run is live
            log_tail: Number of log lines shown per failed step in the summary
        """
        self.debug = debug
        self.quiet = quiet
        self.log_tail = log_tail
        self._lock = threading.Lock()

    def _print(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    # ---- event consumer ----

    def on_event(self, event: EngineEvent) -> None:
        """Render one engine event."""
        if event.kind is EventKind.STATE:
            label = _STATE_LABELS.get(event.new_state)
            if label:
                self._print(f"{label}: {event.step_id}")
        elif event.kind is EventKind.LOG:
            if not self.quiet:
                self._print(f"[{event.step_id}] {event.line}")
        elif event.kind is EventKind.RUN_FINISHED:
            self.print_debug(f"run finished: {event.line}")

    # ---- headers / summaries ----

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(self, scenario: str, source: str, step_count: int, workers: int) -> None:
        """Print run start information."""
        self._print(
            "\nRUN STARTED",
            f"Scenario: {scenario}",
            f"Source: {source}",
            f"Steps: {step_count}",
            f"Workers: {workers}",
            "",
        )

    def print_results(self, result: "RunResult") -> None:
        """Print final results summary with failure detail."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for step_id, snap in result.steps.items():
            status = snap.state.value.upper()
            if snap.ignored_failure:
                status += " (failure ignored)"
            duration = f" {snap.duration:.1f}s" if snap.duration is not None else ""
            lines.append(f"  {step_id}: {status} attempts={snap.attempts}{duration}")
        lines.append(f"\nRUN {result.status.value.upper()}")
        self._print(*lines)

        for step_id, snap in result.steps.items():
            if snap.state is not StepState.FAILED:
                continue
            self.print_failure(step_id, snap.last_error or "unknown error", list(snap.logs))

    def print_failure(self, name: str, reason: str, logs: Sequence[str] = ()) -> None:
        """
        Print failure message.

        Args:
            name: Step id
            reason: Last error recorded for the step
            logs: Captured log lines; only the tail is shown unless debugging
        """
        lines = [f"\nSTEP FAILED: {name}"]
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        tail = list(logs) if self.debug else list(logs)[-self.log_tail:]
        if tail:
            lines.append("Log tail:")
            lines.extend(f"  {line}" for line in tail)
        self._print(*lines)

    def print_plan(self, scenario: "Scenario", levels: List[List[str]]) -> None:
        """Print topological levels with each step's admission mode."""
        by_id = scenario.as_map()
        lines = [f"\nPLAN: {scenario.name}"]
        for i, level in enumerate(levels, start=1):
            lines.append(f"Level {i}:")
            for step_id in level:
                step = by_id[step_id]
                mode = "parallel" if step.allow_parallel else "sequential"
                deps = f" after {', '.join(step.depends_on)}" if step.depends_on else ""
                lines.append(f"  {step_id} [{step.kind.value}, {mode}, retry={step.retry}]{deps}")
        self._print(*lines)

    # ---- generic ----

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[List[str]] = None,
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
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or ())
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._print(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print(f"[DEBUG] {message}", err=True)


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
