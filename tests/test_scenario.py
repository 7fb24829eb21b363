# tests/test_scenario.py
from __future__ import annotations

import json
from pathlib import Path

import pytest

from batchflow import dsl
from batchflow.errors import CycleDetected, DuplicateStepId, MissingField, UnknownDependency, ValidationError
from batchflow.model import ConfirmAnswer, ErrorPolicy, LoopConfig, ShellConfig, StepKind
from batchflow.scenario import load, load_file, step_summary


def doc(*steps, **extra):
    raw = {"name": "nightly", "steps": list(steps)}
    raw.update(extra)
    return raw


def shell(step_id, script="true", **fields):
    return {"id": step_id, "kind": "shell", "shell": {"script": script}, **fields}


def test_minimal_document_gets_defaults():
    scenario = load(doc(shell("a")))
    step = scenario.step("a")
    assert scenario.name == "nightly"
    assert step.name == "a"
    assert step.kind is StepKind.SHELL
    assert step.depends_on == ()
    assert step.allow_parallel is False
    assert step.retry == 0
    assert step.timeout is None
    assert step.error_policy is ErrorPolicy.FAIL


def test_common_fields_are_parsed():
    scenario = load(
        doc(
            shell("a"),
            shell("b", name="Second", depends_on=["a"], allow_parallel=True, retry=2, timeout_sec=1.5),
        )
    )
    b = scenario.step("b")
    assert (b.label, b.depends_on, b.allow_parallel, b.retry, b.timeout) == ("Second", ("a",), True, 2, 1.5)


def test_zero_timeout_means_no_timeout():
    assert load(doc(shell("a", timeout_sec=0))).step("a").timeout is None


@pytest.mark.parametrize("retry", [-1, True, "2", 1.5])
def test_bad_retry_rejected(retry):
    with pytest.raises(ValidationError):
        load(doc(shell("a", retry=retry)))


def test_missing_name_rejected():
    with pytest.raises(MissingField):
        load({"steps": []})


def test_unknown_kind_rejected():
    with pytest.raises(ValidationError) as exc:
        load(doc({"id": "a", "kind": "ftp"}))
    assert "sql" in exc.value.details["allowed"]


def test_graph_errors_surface_at_load():
    with pytest.raises(DuplicateStepId):
        load(doc(shell("a"), shell("a")))
    with pytest.raises(UnknownDependency):
        load(doc(shell("a", depends_on=["ghost"])))
    with pytest.raises(CycleDetected):
        load(doc(shell("a", depends_on=["b"]), shell("b", depends_on=["a"])))


def test_shell_block_variants():
    scenario = load(
        doc(
            {"id": "short", "kind": "shell", "shell": "echo hi"},
            {
                "id": "full",
                "kind": "shell",
                "shell": {
                    "command": "run.sh",
                    "shell_program": "bash",
                    "shell_args": ["x", 1],
                    "env": {"N": 3},
                    "working_dir": "/tmp",
                    "run_as": "batch",
                    "error_policy": {"type": "ignore"},
                },
            },
        )
    )
    assert scenario.step("short").config == ShellConfig(script="echo hi")
    full = scenario.step("full").config
    assert full.script == "run.sh"
    assert full.shell_args == ("x", "1")
    assert dict(full.env) == {"N": "3"}
    assert full.error_policy is ErrorPolicy.IGNORE


def test_unknown_error_policy_rejected():
    with pytest.raises(ValidationError):
        load(doc({"id": "a", "kind": "shell", "shell": {"script": "x", "error_policy": "retry"}}))


def test_missing_kind_block_rejected():
    with pytest.raises(MissingField):
        load(doc({"id": "a", "kind": "sql_loader_par"}))
    with pytest.raises(MissingField):
        load(doc({"id": "a", "kind": "sql"}))


def test_extract_group_rules():
    base = {"id": "e", "kind": "extract_var_from_file"}
    ok = load(doc({**base, "extract": {"file_path": "f", "pattern": r"year=(\d+)", "var_name": "year"}}))
    assert ok.step("e").config.group == 1

    with pytest.raises(ValidationError):
        load(doc({**base, "extract": {"file_path": "f", "pattern": r"(\w+)=(\d+)", "var_name": "v"}}))
    with pytest.raises(ValidationError):
        load(doc({**base, "extract": {"file_path": "f", "pattern": r"(\d+)", "var_name": "v", "group": 2}}))
    with pytest.raises(ValidationError):
        load(doc({**base, "extract": {"file_path": "f", "pattern": "(unclosed", "var_name": "v"}}))

    two = load(doc({**base, "extract": {"file_path": "f", "pattern": r"(\w+)=(\d+)", "var_name": "v", "group": 2, "line": 3}}))
    assert (two.step("e").config.group, two.step("e").config.line) == (2, 3)


def test_target_db_must_be_declared():
    with pytest.raises(ValidationError) as exc:
        load(doc({"id": "q", "kind": "sql", "sql": "select 1", "target_db": "warehouse"}))
    assert exc.value.step == "q"

    scenario = load(
        doc(
            {"id": "q", "kind": "sql", "sql": "select 1", "target_db": "warehouse"},
            db={"warehouse": {"kind": "oracle", "dsn": "db:1521/x", "user": "u", "password": "${PW}"}},
        )
    )
    assert scenario.db["warehouse"].password == "${PW}"


def test_loop_body_is_its_own_graph():
    loop = {
        "id": "each",
        "kind": "loop",
        "loop": {
            "for_each_glob": "in/*.csv",
            "as_var": "FILE",
            "steps": [shell("a"), shell("b", depends_on=["a"])],
        },
    }
    # body ids may repeat top-level ids
    scenario = load(doc(shell("a"), loop))
    cfg = scenario.step("each").config
    assert isinstance(cfg, LoopConfig)
    assert [s.id for s in cfg.steps] == ["a", "b"]

    loop["loop"]["steps"] = [shell("a", depends_on=["b"]), shell("b", depends_on=["a"])]
    with pytest.raises(CycleDetected):
        load(doc(loop))

    loop["loop"]["steps"] = []
    with pytest.raises(MissingField):
        load(doc(loop))


def test_confirm_block():
    scenario = load(doc(shell("a", confirm={"before": True, "message_before": "go?", "default_answer": "No"})))
    confirm = scenario.step("a").confirm
    assert confirm.before and not confirm.after
    assert confirm.default_answer is ConfirmAnswer.NO

    with pytest.raises(ValidationError):
        load(doc(shell("a", confirm={"default_answer": "maybe"})))


def test_confirm_yaml_bare_no(tmp_path):
    path = tmp_path / "gate.yaml"
    path.write_text(
        "name: gate\n"
        "steps:\n"
        "  - id: drop\n"
        "    kind: sql\n"
        "    sql: drop table stage\n"
        "    confirm: {before: yes, default_answer: no}\n",
        encoding="utf-8",
    )
    confirm = load_file(path).step("drop").confirm
    assert confirm.before
    assert confirm.default_answer is ConfirmAnswer.NO


def test_load_file_yaml_and_json(tmp_path):
    yaml_file = tmp_path / "nightly.yaml"
    yaml_file.write_text(
        "name: nightly\n"
        "steps:\n"
        "  - id: a\n"
        "    kind: sql\n"
        "    sql: select 1\n"
        "  - id: b\n"
        "    kind: shell\n"
        "    depends_on: [a]\n"
        "    shell: {script: echo done}\n",
        encoding="utf-8",
    )
    assert [s.id for s in load_file(yaml_file).steps] == ["a", "b"]

    json_file = tmp_path / "nightly.json"
    json_file.write_text(json.dumps(doc(shell("x"))), encoding="utf-8")
    assert load_file(json_file).step("x").kind is StepKind.SHELL


def test_load_file_python(tmp_path):
    py = tmp_path / "batchflow_scenario.py"
    py.write_text(
        "from batchflow import dsl\n"
        "SCENARIO = dsl.scenario('py', dsl.sh('a', 'true'), dsl.sql('b', 'select 1', needs=['a']))\n",
        encoding="utf-8",
    )
    scenario = load_file(py)
    assert scenario.name == "py"
    assert scenario.step("b").depends_on == ("a",)


def test_load_file_errors(tmp_path):
    with pytest.raises(ValidationError):
        load_file(tmp_path / "missing.yaml")

    bad = tmp_path / "bad.yaml"
    bad.write_text("name: [unclosed\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_file(bad)

    txt = tmp_path / "scenario.txt"
    txt.write_text("name: x", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_file(txt)

    empty_py = tmp_path / "empty.py"
    empty_py.write_text("X = 1\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_file(empty_py)


def test_dsl_scenario_is_validated():
    with pytest.raises(UnknownDependency):
        dsl.scenario("x", dsl.sh("a", "true", needs=["b"]))


def test_step_summary():
    step = dsl.sql("q", "line1\nline2\nline3\nline4\nline5")
    assert step_summary(step) == "line1\nline2\nline3\nline4\n..."
    assert step_summary(dsl.sql_file("f", "q.sql")) == "file: q.sql"


@pytest.mark.parametrize("relpath", ["batchflow_scenario.py", "scenarios/archive_purge.yaml"])
def test_shipped_scenarios_load(relpath):
    root = Path(__file__).resolve().parent.parent
    scenario = load_file(root / relpath)
    assert len(scenario) == 5
