# scheduler.py
from __future__ import annotations

import enum
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Union

from .context import ExecutionContext
from .dag import build_dag, descendants
from .errors import ValidationError
from .events import Consumer, EngineEvent, EventStream, Subscription
from .executors.base import Executor, ExecutorRegistry, default_registry
from .model import LoopConfig, Scenario, Step, StepKind
from .runner import ConfirmCallback, StepOutcome, StepRunner
from .scenario import validate
from .settings import EngineSettings
from .state import StepRun, StepSnapshot, StepState


class RunStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RunResult:
    scenario: str
    status: RunStatus
    steps: Dict[str, StepSnapshot]
    variables: Dict[str, str]

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    def in_state(self, state: StepState) -> List[str]:
        return [sid for sid, snap in self.steps.items() if snap.state is state]


class _Hooks:
    """StepHooks handed to the runner for one step."""

    def __init__(self, scheduler: "Scheduler", step_id: str):
        self._scheduler = scheduler
        self._step_id = step_id

    def log(self, line: str) -> None:
        self._scheduler.log(self._step_id, line)

    def attempt_started(self, attempt: int) -> None:
        self._scheduler.attempt_started(self._step_id, attempt)


class Scheduler:
    """
    Drives a validated scenario to completion.

    Each pass computes the ready set (pending steps whose dependencies all
    succeeded). Sequential steps are admitted one at a time and awaited;
    parallel steps are only admitted once no sequential step is ready.
    A failed step blocks everything downstream of it.
    """

    def __init__(
        self,
        scenario: Scenario,
        runner: StepRunner,
        events: Optional[EventStream] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.scenario = scenario
        self.runner = runner
        self.events = events or EventStream()
        self.settings = settings or runner.settings
        self.cancel_event = runner.run_cancel

        self.runs: Dict[str, StepRun] = {s.id: StepRun(s.id) for s in scenario.steps}
        self._adj, _indeg = build_dag(scenario.steps)
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # StepRun mutation (the only place it happens)
    # ------------------------------------------------------------------

    def _move(self, step_id: str, new: StepState, error: Optional[str] = None) -> None:
        with self._lock:
            run = self.runs[step_id]
            old = run.move_to(new)
            if error is not None:
                run.last_error = error
            self.events.emit(EngineEvent.transition(step_id, old, new))

    def log(self, step_id: str, line: str) -> None:
        with self._lock:
            run = self.runs[step_id]
            if run.state.terminal:
                return
            run.add_log(line)
            self.events.emit(EngineEvent.log(step_id, line))

    def attempt_started(self, step_id: str, attempt: int) -> None:
        with self._lock:
            run = self.runs[step_id]
            if run.state.terminal:
                return
            run.attempts = attempt
        if attempt > 1:
            self.log(step_id, f"attempt {attempt}/{self.scenario.step(step_id).retry + 1}")

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def ready(self) -> List[Step]:
        """Pending steps whose dependencies all succeeded, in declaration order."""
        with self._lock:
            return [
                s
                for s in self.scenario.steps
                if self.runs[s.id].state is StepState.PENDING
                and all(self.runs[d].satisfied for d in s.depends_on)
            ]

    def run(self) -> RunResult:
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(
            max_workers=self.settings.max_workers,
            thread_name_prefix="batchflow-step",
        ) as pool:
            while True:
                if self.cancel_event.is_set():
                    self._skip_pending("run cancelled before admission")
                else:
                    ready = self.ready()
                    sequential = [s for s in ready if not s.allow_parallel]
                    if sequential:
                        fut = self._admit(pool, sequential[0], in_flight)
                        self._drain(in_flight, until=fut)
                        continue
                    for step in ready:
                        self._admit(pool, step, in_flight)

                if not in_flight:
                    break
                self._drain(in_flight)

        return self.result()

    def _admit(self, pool: ThreadPoolExecutor, step: Step, in_flight: Dict[Future, str]) -> Future:
        self._move(step.id, StepState.RUNNING)
        fut = pool.submit(self.runner.run, step, _Hooks(self, step.id))
        in_flight[fut] = step.id
        return fut

    def _drain(self, in_flight: Dict[Future, str], until: Optional[Future] = None) -> None:
        """Collect completions: one batch, or until `until` has finished."""
        while in_flight:
            done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
            for fut in done:
                self._collect(fut, in_flight.pop(fut))
            if until is None or until not in in_flight:
                return

    def _collect(self, fut: Future, step_id: str) -> None:
        try:
            outcome: StepOutcome = fut.result()
        except Exception as e:
            # e.g. a confirm callback raised
            self.log(step_id, f"internal error: {type(e).__name__}: {e}")
            outcome = StepOutcome(StepState.FAILED, self.runs[step_id].attempts, f"{type(e).__name__}: {e}")
        self._finish(step_id, outcome)

    def _finish(self, step_id: str, outcome: StepOutcome) -> None:
        with self._lock:
            run = self.runs[step_id]
            run.attempts = max(run.attempts, outcome.attempts)
            run.ignored_failure = outcome.ignored_failure
        self._move(step_id, outcome.state, error=outcome.error)

        if outcome.state is StepState.FAILED:
            self._propagate(step_id, StepState.BLOCKED, f"blocked by failed step '{step_id}'")
        elif outcome.state is StepState.SKIPPED:
            self._propagate(step_id, StepState.SKIPPED, f"skipped because '{step_id}' was skipped")

    def _propagate(self, root: str, state: StepState, reason: str) -> None:
        for sid in descendants(self._adj, [root]):
            if self.runs[sid].state is StepState.PENDING:
                self._move(sid, state, error=reason)

    def _skip_pending(self, reason: str) -> None:
        for step in self.scenario.steps:
            if self.runs[step.id].state is StepState.PENDING:
                self._move(step.id, StepState.SKIPPED, error=reason)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, StepSnapshot]:
        with self._lock:
            return {sid: run.snapshot() for sid, run in self.runs.items()}

    def result(self) -> RunResult:
        steps = self.snapshot()
        states = {snap.state for snap in steps.values()}
        if StepState.FAILED in states or StepState.BLOCKED in states:
            status = RunStatus.FAILED
        elif StepState.SKIPPED in states:
            status = RunStatus.CANCELLED
        else:
            status = RunStatus.SUCCEEDED
        return RunResult(
            scenario=self.scenario.name,
            status=status,
            steps=steps,
            variables=self.runner.context.snapshot(),
        )


# ----------------------------------------------------------------------
# Run control surface
# ----------------------------------------------------------------------

class RunHandle:
    """A run executing on a background thread."""

    def __init__(self, scheduler: Scheduler, events: EventStream):
        self.scheduler = scheduler
        self.events = events
        self._result: Optional[RunResult] = None
        self._error: Optional[BaseException] = None
        self._finished = threading.Event()
        self._thread = threading.Thread(target=self._main, name="batchflow-run", daemon=True)
        self._thread.start()

    def _main(self) -> None:
        try:
            self._result = self.scheduler.run()
            self.events.emit(EngineEvent.run_finished(self._result.status.value))
        except BaseException as e:
            self._error = e
        finally:
            self.scheduler.runner.close()
            # waiters are released before observers are flushed
            self._finished.set()
            self.events.close()

    def cancel(self) -> None:
        """Stop admitting steps and abort the ones in flight."""
        self.scheduler.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.scheduler.cancel_event.is_set()

    @property
    def done(self) -> bool:
        return self._finished.is_set()

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        return self.events.subscribe(maxsize)

    def snapshot(self) -> Dict[str, StepSnapshot]:
        return self.scheduler.snapshot()

    def await_completion(self, timeout: Optional[float] = None) -> RunResult:
        """
        Wait for the run to reach a terminal status. Attached consumers may
        still be working through their buffers; see flush_events().
        """
        if not self._finished.wait(timeout):
            raise TimeoutError(f"run '{self.scheduler.scenario.name}' still in progress after {timeout}s")
        if self._error is not None:
            raise self._error
        return self._result

    def flush_events(self, timeout: Optional[float] = None) -> bool:
        """Wait for attached consumers to handle every buffered event. False on timeout."""
        self._thread.join(timeout)
        return not self._thread.is_alive()


ExecutorsArg = Union[ExecutorRegistry, Mapping[StepKind, Executor], None]


def _kinds(steps: Iterable[Step]) -> Iterable[StepKind]:
    for step in steps:
        yield step.kind
        if isinstance(step.config, LoopConfig):
            yield from _kinds(step.config.steps)


def start(
    scenario: Scenario,
    executors: ExecutorsArg = None,
    settings: Optional[EngineSettings] = None,
    consumers: Iterable[Consumer] = (),
    variables: Optional[Mapping[str, str]] = None,
    confirm: Optional[ConfirmCallback] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RunHandle:
    """
    Begin executing `scenario` and return immediately.

    Args:
        executors: registry (or kind -> executor mapping); defaults to the
            stock shell/SQL/sqlldr backends over the scenario's db targets
        settings: engine settings; defaults to EngineSettings.from_env()
        consumers: event consumers attached before the first event
        variables: initial context variables
        confirm: callback answering confirm gates; without it each gate
            uses its default_answer

    Raises ValidationError before any step runs if the scenario is invalid,
    a db target cannot be built, or a kind has no executor.
    """
    scenario = validate(scenario)
    settings = settings or EngineSettings.from_env()

    if isinstance(executors, ExecutorRegistry):
        registry = executors
    elif executors is not None:
        registry = ExecutorRegistry(executors)
    else:
        registry = default_registry(scenario.db)

    missing = registry.missing_for(_kinds(scenario.steps))
    if missing:
        raise ValidationError("no executor registered for step kinds", details={"kinds": missing})

    events = EventStream(settings.event_queue_size)
    for consumer in consumers:
        events.attach(consumer)

    runner = StepRunner(
        registry,
        ExecutionContext(variables, environ),
        settings,
        run_cancel=threading.Event(),
        confirm=confirm,
    )
    return RunHandle(Scheduler(scenario, runner, events, settings), events)


def cancel(handle: RunHandle) -> None:
    handle.cancel()


def await_completion(handle: RunHandle, timeout: Optional[float] = None) -> RunResult:
    return handle.await_completion(timeout)


def run(scenario: Scenario, **kwargs) -> RunResult:
    """Synchronous convenience: start() then await_completion()."""
    return start(scenario, **kwargs).await_completion()
