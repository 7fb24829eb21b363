# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Callable, Mapping, Optional, TypeVar

T = TypeVar("T")


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class EngineSettings:
    """Engine tuning knobs. CLI flags override values read from the environment."""
    max_workers: int = field(default_factory=_default_workers)
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    backoff_jitter: float = 0.1
    event_queue_size: int = 1000
    cancel_grace: float = 5.0

    def __post_init__(self) -> None:
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.backoff_base < 0 or self.backoff_max < 0 or self.backoff_jitter < 0:
            raise ValueError("backoff settings must be >= 0")
        if self.event_queue_size < 1:
            raise ValueError("event_queue_size must be >= 1")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            max_workers=_read(env, "BATCHFLOW_MAX_WORKERS", int, defaults.max_workers),
            backoff_base=_read(env, "BATCHFLOW_BACKOFF_BASE", float, defaults.backoff_base),
            backoff_max=_read(env, "BATCHFLOW_BACKOFF_MAX", float, defaults.backoff_max),
            backoff_jitter=_read(env, "BATCHFLOW_BACKOFF_JITTER", float, defaults.backoff_jitter),
            event_queue_size=_read(env, "BATCHFLOW_EVENT_QUEUE_SIZE", int, defaults.event_queue_size),
            cancel_grace=_read(env, "BATCHFLOW_CANCEL_GRACE", float, defaults.cancel_grace),
        )

    def with_overrides(self, **changes) -> "EngineSettings":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def _read(env: Mapping[str, str], name: str, cast: Callable[[str], T], default: T) -> T:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"{name} must be a valid {cast.__name__}, got {raw!r}") from None
