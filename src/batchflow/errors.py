# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


class BatchflowError(Exception):
    """Base class for every error raised by batchflow."""


# ----------------------------------------------------------------------
# Load time
# ----------------------------------------------------------------------

@dataclass(eq=False)
class ValidationError(BatchflowError):
    """
    Structured load-time error. Fatal: the run never starts.

    Carries enough context for clean CLI output without a traceback.
    """
    message: str
    step: Optional[str] = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{type(self).__name__}: {self.message}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class DuplicateStepId(ValidationError):
    pass


class UnknownDependency(ValidationError):
    pass


class CycleDetected(ValidationError):
    pass


class MissingField(ValidationError):
    pass


# ----------------------------------------------------------------------
# Run time (step local)
# ----------------------------------------------------------------------

class ContextError(BatchflowError):
    """Configuration-class failure. Never retried."""


@dataclass(eq=False)
class MissingVariable(ContextError):
    name: str
    field: Optional[str] = None

    def __str__(self) -> str:
        where = f" (in {self.field})" if self.field else ""
        return f"variable '{self.name}' is not set in the context or environment{where}"


@dataclass(eq=False)
class ExtractionFailed(ContextError):
    path: str
    pattern: str
    reason: str = "pattern did not match"

    def __str__(self) -> str:
        return f"extraction from {self.path} failed: {self.reason} (pattern={self.pattern!r})"


@dataclass(eq=False)
class LoopSourceEmpty(ContextError):
    pattern: str

    def __str__(self) -> str:
        return f"loop source matched no paths: {self.pattern}"


@dataclass(eq=False)
class ConfirmRejected(ContextError):
    step: str
    phase: str

    def __str__(self) -> str:
        return f"step '{self.step}' was rejected at the {self.phase} confirm"


@dataclass(eq=False)
class ExecutorError(BatchflowError):
    """
    Failure reported by a pluggable backend (query error, non-zero exit, loader error).
    Retried up to the step's retry count.
    """
    kind: str
    step: str
    message: str
    exit_code: Optional[int] = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        text = f"[{self.step}] {self.kind} failed: {self.message}"
        if self.exit_code is not None:
            text += f" (exit={self.exit_code})"
        return text


@dataclass(eq=False)
class StepTimeout(BatchflowError):
    """Attempt exceeded the step timeout. Counted like an ExecutorError."""
    step: str
    timeout: float

    def __str__(self) -> str:
        return f"[{self.step}] attempt timed out after {self.timeout:g}s"


@dataclass(eq=False)
class RunCancelled(BatchflowError):
    step: Optional[str] = None

    def __str__(self) -> str:
        if self.step:
            return f"[{self.step}] cancelled by run stop request"
        return "run cancelled"
