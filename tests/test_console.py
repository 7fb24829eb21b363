# tests/test_console.py
from __future__ import annotations

from batchflow.events import EngineEvent, EventKind
from batchflow.scheduler import RunResult, RunStatus
from batchflow.state import StepSnapshot, StepState
from batchflow.ui.console import Console


def snapshot(step_id, state, attempts=1, logs=(), error=None, ignored=False):
    return StepSnapshot(
        step_id=step_id,
        state=state,
        attempts=attempts,
        logs=tuple(logs),
        started_at=None,
        finished_at=None,
        last_error=error,
        ignored_failure=ignored,
    )


def test_state_and_log_events(capsys):
    console = Console()
    console.on_event(EngineEvent.transition("a", StepState.PENDING, StepState.RUNNING))
    console.on_event(EngineEvent.log("a", "loading"))
    console.on_event(EngineEvent.transition("a", StepState.RUNNING, StepState.SUCCEEDED))

    out = capsys.readouterr().out.splitlines()
    assert out == ["STEP STARTED: a", "[a] loading", "STEP SUCCEEDED: a"]


def test_quiet_hides_log_lines(capsys):
    console = Console(quiet=True)
    console.on_event(EngineEvent.log("a", "noise"))
    console.on_event(EngineEvent.transition("a", StepState.RUNNING, StepState.FAILED))

    assert capsys.readouterr().out.splitlines() == ["STEP FAILED: a"]


def test_results_show_failure_tail(capsys):
    result = RunResult(
        scenario="nightly",
        status=RunStatus.FAILED,
        steps={
            "ok": snapshot("ok", StepState.SUCCEEDED, ignored=True),
            "bad": snapshot("bad", StepState.FAILED, 3, [f"l{i}" for i in range(20)], "shell failed\ntrace"),
            "next": snapshot("next", StepState.BLOCKED, 0),
        },
        variables={},
    )
    Console(log_tail=2).print_results(result)

    out = capsys.readouterr().out
    assert "ok: SUCCEEDED (failure ignored) attempts=1" in out
    assert "next: BLOCKED attempts=0" in out
    assert "RUN FAILED" in out
    assert "STEP FAILED: bad" in out
    assert "Error: shell failed" in out
    assert "trace" not in out
    assert "  l19" in out and "  l17" not in out


def test_errors_go_to_stderr(capsys):
    Console().print_error("Invalid scenario", "x.yaml:", details=["cycle a -> b -> a"], suggestion="fix it")
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "ERROR: Invalid scenario" in captured.err
    assert "  cycle a -> b -> a" in captured.err


def test_debug_messages_only_in_debug_mode(capsys):
    Console().print_debug("hidden")
    Console(debug=True).print_debug("shown")
    assert capsys.readouterr().err.strip() == "[DEBUG] shown"
