# tests/test_state.py
from __future__ import annotations

import pytest

from batchflow.state import MAX_LOG_LINES, IllegalTransition, StepRun, StepState


def test_happy_path_sets_timestamps():
    run = StepRun("a")
    assert run.move_to(StepState.RUNNING) is StepState.PENDING
    assert run.started_at is not None and run.finished_at is None
    run.move_to(StepState.SUCCEEDED)
    assert run.satisfied
    assert run.snapshot().duration >= 0


@pytest.mark.parametrize(
    "path",
    [
        [StepState.SUCCEEDED],
        [StepState.RUNNING, StepState.BLOCKED],
        [StepState.RUNNING, StepState.PENDING],
        [StepState.BLOCKED, StepState.RUNNING],
        [StepState.RUNNING, StepState.FAILED, StepState.SUCCEEDED],
    ],
)
def test_illegal_transitions(path):
    run = StepRun("a")
    with pytest.raises(IllegalTransition):
        for state in path:
            run.move_to(state)


def test_blocked_and_skipped_straight_from_pending():
    for state in (StepState.BLOCKED, StepState.SKIPPED):
        run = StepRun("a")
        run.move_to(state)
        assert run.state.terminal
        assert run.started_at is None
        assert not run.satisfied


def test_log_ring_buffer_keeps_latest():
    run = StepRun("a")
    for i in range(600):
        run.add_log(f"line {i}")

    logs = run.snapshot().logs
    assert len(logs) == MAX_LOG_LINES == 500
    assert logs[0] == "line 100"
    assert logs[-1] == "line 599"
