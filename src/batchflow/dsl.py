# src/batchflow/dsl.py
from __future__ import annotations

import re
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .model import (
    ConfirmAnswer,
    ConfirmConfig,
    DbTarget,
    ErrorPolicy,
    ExtractConfig,
    LoopConfig,
    Scenario,
    ShellConfig,
    SqlConfig,
    SqlFileConfig,
    SqlLoaderConfig,
    Step,
    StepKind,
)
from .scenario import validate


def _step(
    step_id: str,
    kind: StepKind,
    config,
    *,
    name: str = "",
    needs: Optional[Sequence[str]] = None,
    parallel: bool = False,
    retry: int = 0,
    timeout: Optional[float] = None,
    confirm: Optional[ConfirmConfig] = None,
) -> Step:
    if retry < 0:
        raise ValueError(f"step {step_id!r}: retry must be >= 0")
    return Step(
        id=step_id,
        kind=kind,
        config=config,
        name=name or step_id,
        depends_on=tuple(needs or ()),
        allow_parallel=parallel,
        retry=retry,
        timeout=timeout or None,
        confirm=confirm,
    )


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    step_id: str,
    script: str,
    *,
    program: Optional[str] = None,
    args: Sequence[str] = (),
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
    run_as: Optional[str] = None,
    ignore_errors: bool = False,
    **common,
) -> Step:
    """Create a shell step."""
    cfg = ShellConfig(
        script=script,
        shell_program=program,
        shell_args=tuple(args),
        env={k: str(v) for k, v in (env or {}).items()},
        working_dir=cwd,
        run_as=run_as,
        error_policy=ErrorPolicy.IGNORE if ignore_errors else ErrorPolicy.FAIL,
    )
    return _step(step_id, StepKind.SHELL, cfg, **common)


def sql(step_id: str, text: str, *, target_db: Optional[str] = None, **common) -> Step:
    return _step(step_id, StepKind.SQL, SqlConfig(sql=text, target_db=target_db), **common)


def sql_file(step_id: str, path: str, *, target_db: Optional[str] = None, **common) -> Step:
    return _step(step_id, StepKind.SQL_FILE, SqlFileConfig(path=path, target_db=target_db), **common)


def sqlldr(
    step_id: str,
    control_file: str,
    *,
    data_file: Optional[str] = None,
    log_file: Optional[str] = None,
    bad_file: Optional[str] = None,
    discard_file: Optional[str] = None,
    conn: Optional[str] = None,
    **common,
) -> Step:
    cfg = SqlLoaderConfig(
        control_file=control_file,
        data_file=data_file,
        log_file=log_file,
        bad_file=bad_file,
        discard_file=discard_file,
        conn=conn,
    )
    return _step(step_id, StepKind.SQL_LOADER_PAR, cfg, **common)


def extract(
    step_id: str,
    file_path: str,
    pattern: str,
    var_name: str,
    *,
    group: Optional[int] = None,
    line: Optional[int] = None,
    **common,
) -> Step:
    """Create an extract step. Without `group` the pattern must have exactly one capture group."""
    if group is None:
        if re.compile(pattern).groups != 1:
            raise ValueError(f"step {step_id!r}: pattern needs exactly one capture group or an explicit group")
        group = 1
    cfg = ExtractConfig(file_path=file_path, pattern=pattern, var_name=var_name, group=group, line=line)
    return _step(step_id, StepKind.EXTRACT_VAR_FROM_FILE, cfg, **common)


def loop(step_id: str, for_each_glob: str, as_var: str, *steps: Step, **common) -> Step:
    """
    Run `steps` once per path matching `for_each_glob`, with the path bound
    to `as_var`. Body step ids only need to be unique within the loop.
    """
    if not steps:
        raise ValueError(f"loop({step_id!r}) must have at least one step")
    cfg = LoopConfig(for_each_glob=for_each_glob, as_var=as_var, steps=tuple(steps))
    return _step(step_id, StepKind.LOOP, cfg, **common)


def confirm(
    *,
    before: bool = True,
    after: bool = False,
    message_before: Optional[str] = None,
    message_after: Optional[str] = None,
    default: Union[str, ConfirmAnswer] = ConfirmAnswer.YES,
) -> ConfirmConfig:
    return ConfirmConfig(
        before=before,
        after=after,
        message_before=message_before,
        message_after=message_after,
        default_answer=ConfirmAnswer(default),
    )


def db(kind: str, *, dsn: Optional[str] = None, user: Optional[str] = None, password: Optional[str] = None) -> DbTarget:
    return DbTarget(kind=kind, dsn=dsn, user=user, password=password)


# ---------------------------------------------------------------------
# Scenario helper (single-file story)
# ---------------------------------------------------------------------

def scenario(
    name: str,
    *steps: Step,
    steps_list: Optional[Iterable[Step]] = None,
    databases: Optional[Mapping[str, DbTarget]] = None,
) -> Scenario:
    """
    Build and validate a scenario.

    Users can write, in a batchflow_scenario.py:
        from batchflow.dsl import scenario, sh, sql

        SCENARIO = scenario(
            "nightly",
            sh("dump", "pg_dump ..."),
            sql("mark", "UPDATE ...", needs=["dump"]),
        )

    A file that defines its own scenario() function should import this
    module instead (`from batchflow import dsl`) to avoid the name clash.
    """
    all_steps: List[Step] = list(steps_list or [])
    all_steps.extend(steps)
    targets: Dict[str, DbTarget] = dict(databases or {})
    return validate(Scenario(name=name, steps=tuple(all_steps), db=targets))
