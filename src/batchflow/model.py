# model.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple, Union


class StepKind(str, enum.Enum):
    """Closed set of step kinds. The value is the tag used in scenario documents."""
    SQL = "sql"
    SQL_FILE = "sql_file"
    SQL_LOADER_PAR = "sql_loader_par"
    SHELL = "shell"
    EXTRACT_VAR_FROM_FILE = "extract_var_from_file"
    LOOP = "loop"


class ErrorPolicy(str, enum.Enum):
    FAIL = "fail"
    IGNORE = "ignore"


class ConfirmAnswer(str, enum.Enum):
    YES = "yes"
    NO = "no"


# ---------------------------------------------------------------------
# Kind-specific configuration
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class SqlConfig:
    sql: str
    target_db: Optional[str] = None


@dataclass(frozen=True)
class SqlFileConfig:
    path: str
    target_db: Optional[str] = None


@dataclass(frozen=True)
class SqlLoaderConfig:
    """Parameters handed to the bulk loader binary (sqlldr)."""
    control_file: str
    data_file: Optional[str] = None
    log_file: Optional[str] = None
    bad_file: Optional[str] = None
    discard_file: Optional[str] = None
    conn: Optional[str] = None


@dataclass(frozen=True)
class ShellConfig:
    script: str
    shell_program: Optional[str] = None
    shell_args: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    working_dir: Optional[str] = None
    run_as: Optional[str] = None
    error_policy: ErrorPolicy = ErrorPolicy.FAIL


@dataclass(frozen=True)
class ExtractConfig:
    """
    Read `file_path`, search it with `pattern` and store capture `group` in `var_name`.
    When `line` (1-based) is set only that line is searched.
    """
    file_path: str
    pattern: str
    var_name: str
    group: int = 1
    line: Optional[int] = None


@dataclass(frozen=True)
class LoopConfig:
    for_each_glob: str
    as_var: str
    steps: Tuple["Step", ...] = ()


KindConfig = Union[SqlConfig, SqlFileConfig, SqlLoaderConfig, ShellConfig, ExtractConfig, LoopConfig]

CONFIG_TYPES: Dict[StepKind, type] = {
    StepKind.SQL: SqlConfig,
    StepKind.SQL_FILE: SqlFileConfig,
    StepKind.SQL_LOADER_PAR: SqlLoaderConfig,
    StepKind.SHELL: ShellConfig,
    StepKind.EXTRACT_VAR_FROM_FILE: ExtractConfig,
    StepKind.LOOP: LoopConfig,
}


@dataclass(frozen=True)
class ConfirmConfig:
    before: bool = False
    after: bool = False
    message_before: Optional[str] = None
    message_after: Optional[str] = None
    default_answer: ConfirmAnswer = ConfirmAnswer.YES


@dataclass(frozen=True)
class DbTarget:
    """A named database connection the SQL kinds can address via `target_db`."""
    kind: str
    dsn: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None


# ---------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """
    A single unit of work inside a scenario.

    `kind` and `config` form a tagged variant: `config` is always the
    CONFIG_TYPES entry for `kind`. Steps never change after load; runtime
    state lives in `state.StepRun`.
    """
    id: str
    kind: StepKind
    config: KindConfig
    name: str = ""
    depends_on: Tuple[str, ...] = ()
    allow_parallel: bool = False
    retry: int = 0
    timeout: Optional[float] = None   # seconds, None = no timeout
    confirm: Optional[ConfirmConfig] = None

    @property
    def label(self) -> str:
        return self.name or self.id

    @property
    def error_policy(self) -> ErrorPolicy:
        if isinstance(self.config, ShellConfig):
            return self.config.error_policy
        return ErrorPolicy.FAIL


@dataclass(frozen=True)
class Scenario:
    """Validated step graph. Step order is declaration order (used for tie-breaking)."""
    name: str
    steps: Tuple[Step, ...]
    db: Mapping[str, DbTarget] = field(default_factory=dict)

    def step(self, step_id: str) -> Step:
        for s in self.steps:
            if s.id == step_id:
                return s
        raise KeyError(step_id)

    def as_map(self) -> Dict[str, Step]:
        return {s.id: s for s in self.steps}

    def __len__(self) -> int:
        return len(self.steps)
