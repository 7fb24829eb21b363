# executors/base.py
"""
Executor capability boundary.

The runner resolves a step's templates, then hands the resolved config to
the executor registered for the step's kind. Executors report failure by
raising ExecutorError (retried) or a ContextError (not retried). They must
watch `invocation.cancel` and abort promptly once it is set; the runner
sets it on timeout and on run cancellation.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Protocol, runtime_checkable

from ..model import KindConfig, StepKind


@dataclass(frozen=True)
class Invocation:
    step_id: str
    kind: StepKind
    config: KindConfig                 # templates already resolved
    cancel: threading.Event
    log: Callable[[str], None]
    resolve: Callable[[str], str]      # for late templates (sql_file content, SQLLDR_CONN)
    timeout: Optional[float] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()


@runtime_checkable
class Executor(Protocol):
    def execute(self, invocation: Invocation) -> Optional[str]:
        """Run once. Return an optional one-line summary, raise on failure."""
        ...


class ExecutorRegistry:
    """Maps step kinds to executors for one run."""

    def __init__(self, executors: Optional[Mapping[StepKind, Executor]] = None):
        self._by_kind: Dict[StepKind, Executor] = {}
        for kind, ex in (executors or {}).items():
            self.register(kind, ex)

    def register(self, kind: StepKind, executor: Executor) -> None:
        kind = StepKind(kind)
        if kind is StepKind.EXTRACT_VAR_FROM_FILE or kind is StepKind.LOOP:
            raise ValueError(f"kind '{kind.value}' is built into the runner")
        if not callable(getattr(executor, "execute", None)):
            raise TypeError(f"executor for '{kind.value}' must define execute(invocation)")
        self._by_kind[kind] = executor

    def get(self, kind: StepKind) -> Optional[Executor]:
        return self._by_kind.get(kind)

    def __contains__(self, kind: StepKind) -> bool:
        return kind in self._by_kind

    def missing_for(self, kinds) -> list:
        return sorted({k.value for k in kinds if k not in self._by_kind and k not in _BUILTIN_KINDS})


_BUILTIN_KINDS = frozenset({StepKind.EXTRACT_VAR_FROM_FILE, StepKind.LOOP})


def default_registry(db_targets: Optional[Mapping] = None) -> ExecutorRegistry:
    """
    Registry with the stock backends: shell, sqlldr, and SQL over the
    scenario's database targets.

    Raises ValidationError if a database target names an unknown kind.
    """
    from .shell import ShellExecutor
    from .sql import SqlExecutor, build_databases
    from .sqlldr import SqlLoaderExecutor

    sql = SqlExecutor(build_databases(db_targets or {}))
    return ExecutorRegistry(
        {
            StepKind.SHELL: ShellExecutor(),
            StepKind.SQL: sql,
            StepKind.SQL_FILE: sql,
            StepKind.SQL_LOADER_PAR: SqlLoaderExecutor(),
        }
    )
