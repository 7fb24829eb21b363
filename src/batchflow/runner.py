# runner.py
"""
Step Runner: drives one step from admission to a terminal outcome.

Order of work for a step:
  1. resolve ${VAR} templates in its config (failure -> Failed, 0 attempts)
  2. `before` confirm gate
  3. execute: extract/loop are built in, every other kind goes to the
     executor registered for it, with retry, backoff and timeout
  4. `after` confirm gate

The runner never touches StepRun records. Progress is reported through
the StepHooks handle the scheduler passes in, and the result comes back
as a StepOutcome.
"""
from __future__ import annotations

import copy
import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional, Protocol

from .context import ExecutionContext
from .dag import topo_order
from .errors import (
    BatchflowError,
    ConfirmRejected,
    ContextError,
    ExecutorError,
    LoopSourceEmpty,
    RunCancelled,
    StepTimeout,
)
from .executors.base import Executor, ExecutorRegistry, Invocation
from .model import (
    ConfirmAnswer,
    ErrorPolicy,
    ExtractConfig,
    KindConfig,
    LoopConfig,
    ShellConfig,
    SqlConfig,
    SqlFileConfig,
    SqlLoaderConfig,
    Step,
    StepKind,
)
from .scenario import step_summary
from .settings import EngineSettings
from .state import StepState

POLL_INTERVAL = 0.05

# Config fields that may carry ${VAR} templates, per config type.
# Shell args/env and loop bodies are handled separately.
_TEMPLATED_FIELDS = {
    SqlConfig: ("sql",),
    SqlFileConfig: ("path",),
    SqlLoaderConfig: ("control_file", "data_file", "log_file", "bad_file", "discard_file", "conn"),
    ExtractConfig: ("file_path",),
    LoopConfig: ("for_each_glob",),
}


@dataclass(frozen=True)
class StepOutcome:
    state: StepState
    attempts: int
    error: Optional[str] = None
    ignored_failure: bool = False


class StepHooks(Protocol):
    """Narrow channel back to the scheduler, which owns the StepRun."""

    def log(self, line: str) -> None:
        ...

    def attempt_started(self, attempt: int) -> None:
        ...


@dataclass(frozen=True)
class ConfirmRequest:
    step_id: str
    phase: str                  # "before" | "after"
    message: str
    summary: str
    default_answer: ConfirmAnswer


ConfirmCallback = Callable[[ConfirmRequest], bool]


def backoff_delay(
    attempt: int,
    settings: EngineSettings,
    rng: Optional[random.Random] = None,
    previous: float = 0.0,
) -> float:
    """
    Delay before retry number `attempt` (1-based).

    base * 2**(attempt-1) scaled by a random factor in [1, 1 + jitter],
    capped at backoff_max and never below `previous`.
    """
    rng = rng or random
    raw = settings.backoff_base * (2 ** (attempt - 1)) * (1.0 + rng.uniform(0.0, settings.backoff_jitter))
    return max(previous, min(raw, settings.backoff_max))


class _NestedHooks:
    """Forwards a loop body step's progress onto the loop step's record."""

    def __init__(self, parent: StepHooks, nested_id: str):
        self._parent = parent
        self._prefix = f"[{nested_id}] "

    def log(self, line: str) -> None:
        self._parent.log(self._prefix + line)

    def attempt_started(self, attempt: int) -> None:
        if attempt > 1:
            self._parent.log(f"{self._prefix}attempt {attempt}")


class _GatedHooks:
    """Hooks for one attempt. Once closed, a straggling attempt can no longer write to the step."""

    def __init__(self, parent: StepHooks):
        self._parent = parent
        self._open = True
        self._lock = threading.Lock()

    def log(self, line: str) -> None:
        with self._lock:
            if self._open:
                self._parent.log(line)

    def attempt_started(self, attempt: int) -> None:
        with self._lock:
            if self._open:
                self._parent.attempt_started(attempt)

    def close(self) -> None:
        with self._lock:
            self._open = False


@dataclass
class _Progress:
    attempts: int = 0


class StepRunner:
    def __init__(
        self,
        registry: ExecutorRegistry,
        context: ExecutionContext,
        settings: Optional[EngineSettings] = None,
        run_cancel: Optional[threading.Event] = None,
        confirm: Optional[ConfirmCallback] = None,
        rng: Optional[random.Random] = None,
    ):
        self.registry = registry
        self.context = context
        self.settings = settings or EngineSettings()
        self.run_cancel = run_cancel or threading.Event()
        self.confirm = confirm
        self.rng = rng or random.Random()
        # timed-out attempts may linger for up to cancel_grace
        self._attempts = ThreadPoolExecutor(
            max_workers=self.settings.max_workers * 2,
            thread_name_prefix="batchflow-attempt",
        )

    def close(self) -> None:
        self._attempts.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, step: Step, hooks: StepHooks) -> StepOutcome:
        """Run `step` to a terminal outcome. Step-local errors never escape."""
        progress = _Progress()
        try:
            self._execute(step, hooks, progress)
        except RunCancelled as e:
            hooks.log(str(e))
            return StepOutcome(StepState.SKIPPED, progress.attempts, str(e))
        except ContextError as e:
            hooks.log(f"error: {e}")
            return StepOutcome(StepState.FAILED, progress.attempts, str(e))
        except (ExecutorError, StepTimeout) as e:
            if step.error_policy is ErrorPolicy.IGNORE:
                hooks.log(f"failure ignored by error_policy: {e}")
                return StepOutcome(StepState.SUCCEEDED, progress.attempts, str(e), ignored_failure=True)
            return StepOutcome(StepState.FAILED, progress.attempts, str(e))
        return StepOutcome(StepState.SUCCEEDED, progress.attempts)

    # ------------------------------------------------------------------
    # Step body
    # ------------------------------------------------------------------

    def _execute(self, step: Step, hooks: StepHooks, progress: _Progress) -> None:
        config = self.resolve_config(step)
        self._confirm(step, "before", hooks)

        if step.kind is StepKind.EXTRACT_VAR_FROM_FILE:
            self._start_attempt(1, hooks, progress)
            value = self._builtin(step, hooks, lambda cancel, gate: self.context.extract(config))
            hooks.log(f"{config.var_name}={value}")
        elif step.kind is StepKind.LOOP:
            self._start_attempt(1, hooks, progress)
            self._builtin(step, hooks, lambda cancel, gate: self._run_loop(step, config, gate, cancel))
        else:
            executor = self.registry.get(step.kind)
            if executor is None:
                raise ExecutorError(step.kind.value, step.id, "no executor registered for this kind")
            self._run_attempts(step, config, executor, hooks, progress)

        self._confirm(step, "after", hooks)

    def resolve_config(self, step: Step) -> KindConfig:
        """Return a copy of the step config with every templated field resolved."""
        cfg = step.config
        resolve = self.context.resolve
        optional = self.context.resolve_optional

        if isinstance(cfg, ShellConfig):
            return replace(
                cfg,
                script=resolve(cfg.script, field="shell.script"),
                shell_program=optional(cfg.shell_program, field="shell.shell_program"),
                shell_args=tuple(resolve(a, field="shell.shell_args") for a in cfg.shell_args),
                env={k: resolve(v, field=f"shell.env.{k}") for k, v in cfg.env.items()},
                working_dir=optional(cfg.working_dir, field="shell.working_dir"),
                run_as=optional(cfg.run_as, field="shell.run_as"),
            )

        fields = _TEMPLATED_FIELDS.get(type(cfg), ())
        return replace(cfg, **{f: optional(getattr(cfg, f), field=f) for f in fields})

    def _start_attempt(self, n: int, hooks: StepHooks, progress: _Progress) -> None:
        progress.attempts = n
        hooks.attempt_started(n)

    # ------------------------------------------------------------------
    # Executor attempts
    # ------------------------------------------------------------------

    def _run_attempts(
        self,
        step: Step,
        config: KindConfig,
        executor: Executor,
        hooks: StepHooks,
        progress: _Progress,
    ) -> None:
        total = step.retry + 1
        previous_delay = 0.0

        for n in range(1, total + 1):
            if self.run_cancel.is_set():
                raise RunCancelled(step.id)
            self._start_attempt(n, hooks, progress)

            try:
                summary = self._attempt(step, config, executor, hooks)
            except (ExecutorError, StepTimeout) as e:
                hooks.log(f"attempt {n}/{total} failed: {e}")
                if n == total:
                    raise
                delay = backoff_delay(n, self.settings, self.rng, previous_delay)
                previous_delay = delay
                hooks.log(f"retrying in {delay:.2f}s")
                if self.run_cancel.wait(delay):
                    raise RunCancelled(step.id) from e
                continue

            if summary:
                hooks.log(summary)
            return

    def _attempt(self, step: Step, config: KindConfig, executor: Executor, hooks: StepHooks) -> Optional[str]:
        cancel = threading.Event()
        gate = _GatedHooks(hooks)
        invocation = Invocation(
            step_id=step.id,
            kind=step.kind,
            config=config,
            cancel=cancel,
            log=gate.log,
            resolve=self.context.resolve,
            timeout=step.timeout,
        )
        future = self._attempts.submit(_invoke, executor, invocation)
        return self._await(step, future, cancel, gate)

    def _builtin(self, step: Step, hooks: StepHooks, body: Callable[[threading.Event, StepHooks], Any]) -> Any:
        """Run an extract or loop body under the same deadline and cancellation as an executor attempt."""
        cancel = threading.Event()
        gate = _GatedHooks(hooks)
        future = _spawn(body, cancel, gate)
        return self._await(step, future, cancel, gate)

    def _await(self, step: Step, future: Future, cancel: threading.Event, gate: "_GatedHooks") -> Any:
        """
        Poll `future` until it finishes, the step times out, or the run is
        cancelled. On the last two the work is told to stop via `cancel`,
        given `cancel_grace` seconds, and its log is closed.
        """
        deadline = None if step.timeout is None else time.monotonic() + step.timeout

        while True:
            wait_for = POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._abandon(future, cancel, gate)
                    raise StepTimeout(step.id, step.timeout)
                wait_for = min(wait_for, remaining)

            try:
                return future.result(timeout=wait_for)
            except FuturesTimeout:
                pass
            except ExecutorError as e:
                if self.run_cancel.is_set():
                    raise RunCancelled(step.id) from e
                raise

            if self.run_cancel.is_set():
                self._abandon(future, cancel, gate)
                raise RunCancelled(step.id)

    def _abandon(self, future: Future, cancel: threading.Event, gate: "_GatedHooks") -> None:
        cancel.set()
        try:
            future.exception(timeout=self.settings.cancel_grace)
        except FuturesTimeout:
            gate.log(f"executor did not stop within {self.settings.cancel_grace:g}s")
        gate.close()

    # ------------------------------------------------------------------
    # Built-in kinds
    # ------------------------------------------------------------------

    def _run_loop(self, step: Step, config: LoopConfig, hooks: StepHooks, cancel: threading.Event) -> None:
        paths = self.context.glob_sources(config.for_each_glob)
        if not paths:
            raise LoopSourceEmpty(config.for_each_glob)

        body = topo_order(config.steps)
        hooks.log(f"loop over {len(paths)} path(s) as {config.as_var}")

        # nested steps stop when this loop is cancelled or times out
        scoped = copy.copy(self)
        scoped.run_cancel = cancel

        for i, path in enumerate(paths, start=1):
            if cancel.is_set():
                raise RunCancelled(step.id)
            self.context.set(config.as_var, path)
            hooks.log(f"iteration {i}/{len(paths)}: {path}")

            for nested in body:
                outcome = scoped.run(nested, _NestedHooks(hooks, nested.id))
                if outcome.state is StepState.SKIPPED:
                    raise RunCancelled(step.id)
                if outcome.state is StepState.FAILED:
                    raise ExecutorError(
                        "loop",
                        step.id,
                        f"nested step '{nested.id}' failed on {path}: {outcome.error}",
                        details={"iteration": i, "path": path},
                    )

    def _confirm(self, step: Step, phase: str, hooks: StepHooks) -> None:
        cfg = step.confirm
        if cfg is None or not getattr(cfg, phase):
            return

        template = cfg.message_before if phase == "before" else cfg.message_after
        if template:
            message = self.context.resolve(template, field=f"confirm.message_{phase}")
        elif phase == "before":
            message = f"Run step '{step.label}'?"
        else:
            message = f"Step '{step.label}' finished. Continue?"

        hooks.log(f"confirm ({phase}): {message}")
        if self.confirm is None:
            approved = cfg.default_answer is ConfirmAnswer.YES
        else:
            request = ConfirmRequest(
                step_id=step.id,
                phase=phase,
                message=message,
                summary=step_summary(step),
                default_answer=cfg.default_answer,
            )
            approved = bool(self.confirm(request))

        answer = "Yes" if approved else "No"
        self.context.set(f"CONFIRM_{step.id.upper()}", answer)
        hooks.log(f"confirm ({phase}) answered {answer}")
        if not approved:
            raise ConfirmRejected(step.id, phase)


def _spawn(fn: Callable[..., Any], *args: Any) -> Future:
    """Run `fn` on a dedicated daemon thread. Loop bodies use the attempt pool, so built-ins stay off it."""
    future: Future = Future()

    def target() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn(*args))
        except BaseException as e:
            future.set_exception(e)

    threading.Thread(target=target, name="batchflow-builtin", daemon=True).start()
    return future


def _invoke(executor: Executor, invocation: Invocation) -> Optional[str]:
    try:
        return executor.execute(invocation)
    except BatchflowError:
        raise
    except Exception as e:
        # unexpected backend errors count as a failed attempt
        raise ExecutorError(invocation.kind.value, invocation.step_id, f"{type(e).__name__}: {e}") from e
