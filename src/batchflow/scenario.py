# scenario.py
from __future__ import annotations

import json
import re
import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import yaml

from .dag import build_dag, topo_levels
from .errors import MissingField, ValidationError
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

DEFAULT_DB_TARGET = "default"


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def load(raw: Union[Mapping[str, Any], Scenario]) -> Scenario:
    """
    Turn a structured scenario document into a validated Scenario.

    Raises ValidationError (or a subclass) on the first problem found.
    """
    if isinstance(raw, Scenario):
        return validate(raw)
    if not isinstance(raw, Mapping):
        raise ValidationError(f"scenario must be a mapping, got {type(raw).__name__}")

    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise MissingField("scenario 'name' is required")

    raw_steps = raw.get("steps")
    if not isinstance(raw_steps, list):
        raise MissingField("scenario 'steps' must be a list")

    db = _parse_db(raw.get("db") or {})
    steps = tuple(_parse_step(s, where=f"steps[{i}]") for i, s in enumerate(raw_steps))
    return validate(Scenario(name=name, steps=steps, db=db))


def validate(scenario: Scenario) -> Scenario:
    """Structural checks shared by parsed and programmatically built scenarios."""
    _validate_graph(scenario.steps)
    targets = {DEFAULT_DB_TARGET, *scenario.db.keys()}
    for step in _walk(scenario.steps):
        target = getattr(step.config, "target_db", None)
        if target is not None and target not in targets:
            raise ValidationError(
                f"unknown target_db '{target}'",
                step=step.id,
                details={"known": sorted(targets)},
            )
    return scenario


def load_file(path: Union[str, Path]) -> Scenario:
    """
    Load a scenario from a file.

    Supported:
      - .yaml / .yml   (YAML document)
      - .json          (JSON document)
      - .py            defining scenario() -> Scenario | dict, or SCENARIO = ...
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise ValidationError(f"scenario file not found: {p}")

    suffix = p.suffix.lower()
    if suffix in (".yaml", ".yml"):
        try:
            raw = yaml.safe_load(p.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ValidationError(f"invalid YAML in {p.name}", details={"error": str(e)}) from e
    elif suffix == ".json":
        try:
            raw = json.loads(p.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValidationError(f"invalid JSON in {p.name}", details={"error": str(e)}) from e
    elif suffix == ".py":
        raw = _load_python(p)
    else:
        raise ValidationError(f"unsupported scenario file type: {p.name}")

    return load(raw)


def _load_python(p: Path) -> Any:
    module_name = f"batchflow_scenario_{p.stem}"
    globals_dict = runpy.run_path(str(p), run_name=module_name)

    if "scenario" in globals_dict and callable(globals_dict["scenario"]):
        return globals_dict["scenario"]()
    if "SCENARIO" in globals_dict:
        return globals_dict["SCENARIO"]
    raise ValidationError(
        f"{p.name} must define scenario() or SCENARIO",
        details={"hint": "def scenario(): return batchflow.dsl.scenario('name', ...)"},
    )


# ----------------------------------------------------------------------
# Graph validation
# ----------------------------------------------------------------------

def _validate_graph(steps: Sequence[Step]) -> None:
    adj, indeg = build_dag(steps)
    topo_levels(adj, indeg)
    for step in steps:
        if isinstance(step.config, LoopConfig):
            if not step.config.steps:
                raise MissingField("loop needs at least one nested step", step=step.id)
            # loop bodies are their own namespace
            _validate_graph(step.config.steps)


def _walk(steps: Sequence[Step]):
    for step in steps:
        yield step
        if isinstance(step.config, LoopConfig):
            yield from _walk(step.config.steps)


# ----------------------------------------------------------------------
# Parsing helpers
# ----------------------------------------------------------------------

def _parse_db(raw: Any) -> Dict[str, DbTarget]:
    if not isinstance(raw, Mapping):
        raise ValidationError("'db' must be a mapping of target name -> connection")
    out: Dict[str, DbTarget] = {}
    for name, cfg in raw.items():
        if not isinstance(cfg, Mapping) or not isinstance(cfg.get("kind"), str):
            raise MissingField(f"db target '{name}' needs a 'kind'")
        out[str(name)] = DbTarget(
            kind=cfg["kind"],
            dsn=_opt_str(cfg, "dsn", f"db.{name}"),
            user=_opt_str(cfg, "user", f"db.{name}"),
            password=_opt_str(cfg, "password", f"db.{name}"),
        )
    return out


def _parse_step(raw: Any, where: str) -> Step:
    if not isinstance(raw, Mapping):
        raise ValidationError(f"{where} must be a mapping")

    step_id = raw.get("id")
    if not isinstance(step_id, str) or not step_id.strip():
        raise MissingField(f"{where}: 'id' is required")

    kind_raw = raw.get("kind")
    try:
        kind = StepKind(kind_raw)
    except ValueError:
        raise ValidationError(
            f"unknown kind {kind_raw!r}",
            step=step_id,
            details={"allowed": [k.value for k in StepKind]},
        ) from None

    depends_on = raw.get("depends_on") or []
    if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
        raise ValidationError("'depends_on' must be a list of step ids", step=step_id)

    retry = raw.get("retry", 0)
    if isinstance(retry, bool) or not isinstance(retry, int) or retry < 0:
        raise ValidationError("'retry' must be an integer >= 0", step=step_id, details={"retry": retry})

    timeout = raw.get("timeout_sec")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout < 0:
            raise ValidationError("'timeout_sec' must be a number >= 0", step=step_id)
        timeout = float(timeout) or None

    allow_parallel = raw.get("allow_parallel", False)
    if not isinstance(allow_parallel, bool):
        raise ValidationError("'allow_parallel' must be a boolean", step=step_id)

    name = raw.get("name") or step_id
    return Step(
        id=step_id,
        name=str(name),
        kind=kind,
        config=_KIND_PARSERS[kind](raw, step_id),
        depends_on=tuple(dict.fromkeys(depends_on)),
        allow_parallel=allow_parallel,
        retry=retry,
        timeout=timeout,
        confirm=_parse_confirm(raw.get("confirm"), step_id),
    )


def _block(raw: Mapping[str, Any], key: str, step_id: str) -> Mapping[str, Any]:
    block = raw.get(key)
    if not isinstance(block, Mapping):
        raise MissingField(f"'{key}' block is required for kind '{raw.get('kind')}'", step=step_id)
    return block


def _req_str(block: Mapping[str, Any], key: str, step_id: str) -> str:
    value = block.get(key)
    if not isinstance(value, str) or not value.strip():
        raise MissingField(f"'{key}' is required", step=step_id)
    return value


def _opt_str(block: Mapping[str, Any], key: str, step_id: str) -> Optional[str]:
    value = block.get(key)
    if value is None:
        return None
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise ValidationError(f"'{key}' must be a string", step=step_id)
    return str(value)


def _parse_sql(raw: Mapping[str, Any], step_id: str) -> SqlConfig:
    return SqlConfig(sql=_req_str(raw, "sql", step_id), target_db=_opt_str(raw, "target_db", step_id))


def _parse_sql_file(raw: Mapping[str, Any], step_id: str) -> SqlFileConfig:
    return SqlFileConfig(path=_req_str(raw, "sql_file", step_id), target_db=_opt_str(raw, "target_db", step_id))


def _parse_sqlldr(raw: Mapping[str, Any], step_id: str) -> SqlLoaderConfig:
    block = _block(raw, "sqlldr", step_id)
    return SqlLoaderConfig(
        control_file=_req_str(block, "control_file", step_id),
        data_file=_opt_str(block, "data_file", step_id),
        log_file=_opt_str(block, "log_file", step_id),
        bad_file=_opt_str(block, "bad_file", step_id),
        discard_file=_opt_str(block, "discard_file", step_id),
        conn=_opt_str(block, "conn", step_id),
    )


def _parse_error_policy(value: Any, step_id: str) -> ErrorPolicy:
    if isinstance(value, Mapping):
        value = value.get("type")
    if value is None:
        return ErrorPolicy.FAIL
    try:
        return ErrorPolicy(value)
    except ValueError:
        raise ValidationError(
            f"unknown error_policy {value!r}",
            step=step_id,
            details={"allowed": [p.value for p in ErrorPolicy]},
        ) from None


def _parse_shell(raw: Mapping[str, Any], step_id: str) -> ShellConfig:
    block = raw.get("shell")
    if isinstance(block, str):
        block = {"script": block}
    if not isinstance(block, Mapping):
        raise MissingField("'shell' block is required for kind 'shell'", step=step_id)

    script = block.get("script", block.get("command"))
    if not isinstance(script, str) or not script.strip():
        raise MissingField("'shell.script' is required", step=step_id)

    shell_args = block.get("shell_args") or []
    env = block.get("env") or {}
    if not isinstance(shell_args, list) or not isinstance(env, Mapping):
        raise ValidationError("'shell_args' must be a list and 'env' a mapping", step=step_id)

    return ShellConfig(
        script=script,
        shell_program=_opt_str(block, "shell_program", step_id),
        shell_args=tuple(str(a) for a in shell_args),
        env={str(k): str(v) for k, v in env.items()},
        working_dir=_opt_str(block, "working_dir", step_id),
        run_as=_opt_str(block, "run_as", step_id),
        error_policy=_parse_error_policy(block.get("error_policy"), step_id),
    )


def _parse_extract(raw: Mapping[str, Any], step_id: str) -> ExtractConfig:
    block = _block(raw, "extract", step_id)
    pattern = _req_str(block, "pattern", step_id)
    try:
        compiled = re.compile(pattern)
    except re.error as e:
        raise ValidationError(f"invalid regex: {e}", step=step_id, details={"pattern": pattern}) from e

    group = block.get("group")
    if group is None:
        if compiled.groups != 1:
            raise ValidationError(
                "pattern must have exactly one capture group",
                step=step_id,
                details={"pattern": pattern, "groups": compiled.groups},
            )
        group = 1
    elif isinstance(group, bool) or not isinstance(group, int) or not 1 <= group <= compiled.groups:
        raise ValidationError(
            f"capture group {group!r} does not exist in pattern",
            step=step_id,
            details={"pattern": pattern, "groups": compiled.groups},
        )

    line = block.get("line")
    if line is not None and (isinstance(line, bool) or not isinstance(line, int) or line < 1):
        raise ValidationError("'line' must be a 1-based line number", step=step_id)

    return ExtractConfig(
        file_path=_req_str(block, "file_path", step_id),
        pattern=pattern,
        var_name=_req_str(block, "var_name", step_id),
        group=group,
        line=line,
    )


def _parse_loop(raw: Mapping[str, Any], step_id: str) -> LoopConfig:
    block = _block(raw, "loop", step_id)
    nested = block.get("steps")
    if not isinstance(nested, list) or not nested:
        raise MissingField("'loop.steps' must be a non-empty list", step=step_id)
    return LoopConfig(
        for_each_glob=_req_str(block, "for_each_glob", step_id),
        as_var=_req_str(block, "as_var", step_id),
        steps=tuple(_parse_step(s, where=f"{step_id}.loop.steps[{i}]") for i, s in enumerate(nested)),
    )


def _parse_confirm(raw: Any, step_id: str) -> Optional[ConfirmConfig]:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ValidationError("'confirm' must be a mapping", step=step_id)
    answer = raw.get("default_answer", "yes")
    if isinstance(answer, bool):  # YAML 1.1 reads bare yes/no as booleans
        answer = "yes" if answer else "no"
    try:
        default_answer = ConfirmAnswer(str(answer).lower())
    except ValueError:
        raise ValidationError(f"confirm.default_answer must be yes or no, got {answer!r}", step=step_id) from None
    return ConfirmConfig(
        before=bool(raw.get("before", False)),
        after=bool(raw.get("after", False)),
        message_before=_opt_str(raw, "message_before", step_id),
        message_after=_opt_str(raw, "message_after", step_id),
        default_answer=default_answer,
    )


_KIND_PARSERS = {
    StepKind.SQL: _parse_sql,
    StepKind.SQL_FILE: _parse_sql_file,
    StepKind.SQL_LOADER_PAR: _parse_sqlldr,
    StepKind.SHELL: _parse_shell,
    StepKind.EXTRACT_VAR_FROM_FILE: _parse_extract,
    StepKind.LOOP: _parse_loop,
}


def step_summary(step: Step, max_lines: int = 4) -> str:
    """Short human summary of what a step does (used by confirm prompts and `plan`)."""
    cfg = step.config
    if isinstance(cfg, SqlConfig):
        return _trim_lines(cfg.sql, max_lines)
    if isinstance(cfg, SqlFileConfig):
        return f"file: {cfg.path}"
    if isinstance(cfg, SqlLoaderConfig):
        return f"control: {cfg.control_file}"
    if isinstance(cfg, ShellConfig):
        return _trim_lines(cfg.script, max_lines)
    if isinstance(cfg, ExtractConfig):
        return f"file: {cfg.file_path} / group: {cfg.group} / var: {cfg.var_name}"
    if isinstance(cfg, LoopConfig):
        return f"loop {cfg.for_each_glob} -> {cfg.as_var} ({len(cfg.steps)} steps)"
    return step.kind.value


def _trim_lines(text: str, max_lines: int) -> str:
    lines: List[str] = text.splitlines()[:max_lines]
    if len(text.splitlines()) > max_lines:
        lines.append("...")
    return "\n".join(lines)
