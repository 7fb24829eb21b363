# tests/conftest.py
from __future__ import annotations

import threading
import time
from collections import Counter
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from batchflow.errors import ExecutorError
from batchflow.executors.base import Invocation
from batchflow.model import StepKind
from batchflow.settings import EngineSettings


class FakeExecutor:
    """
    Scripted executor for engine tests.

    fail_times:  fail the first N calls per step id
    fail_steps:  step ids that always fail
    delay:       seconds each call takes (aborts early when cancelled)
    lines:       log lines emitted per call
    """

    def __init__(
        self,
        fail_times: int = 0,
        fail_steps: Sequence[str] = (),
        delay: float = 0.0,
        lines: Sequence[str] = (),
        delays: Optional[Dict[str, float]] = None,
    ):
        self.fail_times = fail_times
        self.fail_steps = set(fail_steps)
        self.delay = delay
        self.delays = delays or {}
        self.lines = list(lines)
        self.calls: List[str] = []
        self.configs: List[object] = []
        self.timeline: List[Tuple[str, str]] = []
        self.started = threading.Event()
        self._counts: Counter = Counter()
        self._lock = threading.Lock()

    def execute(self, invocation: Invocation) -> Optional[str]:
        step = invocation.step_id
        with self._lock:
            self._counts[step] += 1
            n = self._counts[step]
            self.calls.append(step)
            self.configs.append(invocation.config)
            self.timeline.append(("start", step))
        self.started.set()

        for line in self.lines:
            invocation.log(line)

        delay = self.delays.get(step, self.delay)
        if delay and invocation.cancel.wait(delay):
            raise ExecutorError("fake", step, "aborted")

        with self._lock:
            self.timeline.append(("end", step))

        if step in self.fail_steps or n <= self.fail_times:
            raise ExecutorError("fake", step, f"boom #{n}", exit_code=1)
        return None

    def count(self, step: str) -> int:
        with self._lock:
            return self._counts[step]

    def index(self, event: str, step: str) -> int:
        with self._lock:
            return self.timeline.index((event, step))


class RecordingHooks:
    def __init__(self):
        self.lines: List[str] = []
        self.attempts: List[int] = []

    def log(self, line: str) -> None:
        self.lines.append(line)

    def attempt_started(self, attempt: int) -> None:
        self.attempts.append(attempt)


def wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        max_workers=4,
        backoff_base=0.0,
        backoff_max=0.0,
        backoff_jitter=0.0,
        event_queue_size=5000,
        cancel_grace=2.0,
    )


@pytest.fixture
def fake() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def hooks() -> RecordingHooks:
    return RecordingHooks()


def executors_for(fake: FakeExecutor) -> Dict[StepKind, FakeExecutor]:
    return {
        StepKind.SHELL: fake,
        StepKind.SQL: fake,
        StepKind.SQL_FILE: fake,
        StepKind.SQL_LOADER_PAR: fake,
    }
