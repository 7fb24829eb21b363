from .dsl import extract, loop, scenario, sh, sql, sql_file, sqlldr
from .errors import BatchflowError, ContextError, ExecutorError, ValidationError
from .model import Scenario, Step, StepKind
from .scenario import load, load_file
from .scheduler import RunHandle, RunResult, RunStatus, await_completion, cancel, run, start
from .state import StepState

__all__ = [
    "extract",
    "loop",
    "scenario",
    "sh",
    "sql",
    "sql_file",
    "sqlldr",
    "BatchflowError",
    "ContextError",
    "ExecutorError",
    "ValidationError",
    "Scenario",
    "Step",
    "StepKind",
    "load",
    "load_file",
    "RunHandle",
    "RunResult",
    "RunStatus",
    "await_completion",
    "cancel",
    "run",
    "start",
    "StepState",
]
