# state.py
from __future__ import annotations

import enum
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, FrozenSet, Optional, Tuple

MAX_LOG_LINES = 500


class StepState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[StepState] = frozenset(
    {StepState.SUCCEEDED, StepState.FAILED, StepState.BLOCKED, StepState.SKIPPED}
)

TRANSITIONS: Dict[StepState, FrozenSet[StepState]] = {
    StepState.PENDING: frozenset({StepState.RUNNING, StepState.BLOCKED, StepState.SKIPPED}),
    StepState.RUNNING: frozenset({StepState.SUCCEEDED, StepState.FAILED, StepState.SKIPPED}),
    StepState.SUCCEEDED: frozenset(),
    StepState.FAILED: frozenset(),
    StepState.BLOCKED: frozenset(),
    StepState.SKIPPED: frozenset(),
}


class IllegalTransition(RuntimeError):
    def __init__(self, step_id: str, old: StepState, new: StepState):
        super().__init__(f"step '{step_id}': illegal transition {old.value} -> {new.value}")
        self.step_id = step_id
        self.old = old
        self.new = new


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StepRun:
    """
    Mutable runtime record for one step in one run. Owned by the scheduler;
    nothing else writes to it.
    """
    step_id: str
    state: StepState = StepState.PENDING
    attempts: int = 0
    logs: Deque[str] = field(default_factory=lambda: deque(maxlen=MAX_LOG_LINES))
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    ignored_failure: bool = False

    def move_to(self, new: StepState) -> StepState:
        """Apply a transition and return the previous state."""
        old = self.state
        if new not in TRANSITIONS[old]:
            raise IllegalTransition(self.step_id, old, new)
        self.state = new
        if new is StepState.RUNNING:
            self.started_at = _utcnow()
        elif new.terminal:
            self.finished_at = _utcnow()
        return old

    def add_log(self, line: str) -> None:
        self.logs.append(line)

    @property
    def satisfied(self) -> bool:
        """Counts as a finished dependency (including failures ignored by policy)."""
        return self.state is StepState.SUCCEEDED

    def snapshot(self) -> "StepSnapshot":
        return StepSnapshot(
            step_id=self.step_id,
            state=self.state,
            attempts=self.attempts,
            logs=tuple(self.logs),
            started_at=self.started_at,
            finished_at=self.finished_at,
            last_error=self.last_error,
            ignored_failure=self.ignored_failure,
        )


@dataclass(frozen=True)
class StepSnapshot:
    """Read-only copy of a StepRun, kept in the RunResult for diagnosis."""
    step_id: str
    state: StepState
    attempts: int
    logs: Tuple[str, ...]
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    last_error: Optional[str]
    ignored_failure: bool = False

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()
