# tests/test_context.py
from __future__ import annotations

from pathlib import Path

import pytest

from batchflow.context import ExecutionContext
from batchflow.errors import ExtractionFailed, MissingVariable
from batchflow.model import ExtractConfig


def test_resolve_prefers_context_over_environment():
    ctx = ExecutionContext({"DAY": "mon"}, environ={"DAY": "sun", "HOST": "db1"})
    assert ctx.resolve("${DAY}@${HOST}") == "mon@db1"


def test_resolve_missing_variable():
    ctx = ExecutionContext(environ={})
    with pytest.raises(MissingVariable) as exc:
        ctx.resolve("select * from t where y = ${missing}", field="sql")
    assert exc.value.name == "missing"
    assert "sql" in str(exc.value)


def test_resolve_is_single_pass():
    ctx = ExecutionContext({"A": "${B}", "B": "never"}, environ={})
    assert ctx.resolve("x=${A}") == "x=${B}"


def test_text_without_placeholders_is_untouched():
    ctx = ExecutionContext(environ={})
    assert ctx.resolve("cost is $5 and {braces}") == "cost is $5 and {braces}"
    assert ctx.resolve_optional(None) is None


def test_environment_fallback_uses_process_env(monkeypatch):
    monkeypatch.setenv("BATCHFLOW_TEST_VALUE", "42")
    assert ExecutionContext().resolve("${BATCHFLOW_TEST_VALUE}") == "42"


def test_extract_round_trip(tmp_path):
    f = tmp_path / "out.log"
    f.write_text("header\nyear=2024\n", encoding="utf-8")
    ctx = ExecutionContext(environ={})

    value = ctx.extract(ExtractConfig(file_path=str(f), pattern=r"year=(\d+)", var_name="year"))

    assert value == "2024"
    assert ctx.get("year") == "2024"
    assert ctx.resolve("FY${year}") == "FY2024"


def test_extract_selected_line_and_group(tmp_path):
    f = tmp_path / "out.log"
    f.write_text("rows=1\nrows=77 errors=3\n", encoding="utf-8")
    ctx = ExecutionContext(environ={})

    cfg = ExtractConfig(file_path=str(f), pattern=r"rows=(\d+) errors=(\d+)", var_name="errs", group=2, line=2)
    assert ctx.extract(cfg) == "3"

    with pytest.raises(ExtractionFailed):
        ctx.extract(ExtractConfig(file_path=str(f), pattern=r"rows=(\d+)", var_name="r", line=5))


def test_extract_failures(tmp_path):
    f = tmp_path / "out.log"
    f.write_text("nothing here", encoding="utf-8")
    ctx = ExecutionContext(environ={})

    with pytest.raises(ExtractionFailed) as exc:
        ctx.extract(ExtractConfig(file_path=str(f), pattern=r"year=(\d+)", var_name="year"))
    assert "did not match" in str(exc.value)
    assert "year" not in ctx

    with pytest.raises(ExtractionFailed):
        ctx.extract(ExtractConfig(file_path=str(tmp_path / "gone.log"), pattern=r"(x)", var_name="x"))


def test_glob_sources_sorted(tmp_path):
    for name in ("b.csv", "a.csv", "c.txt"):
        (tmp_path / name).write_text("", encoding="utf-8")
    paths = ExecutionContext.glob_sources(str(tmp_path / "*.csv"))
    assert [Path(p).name for p in paths] == ["a.csv", "b.csv"]


def test_snapshot_is_a_copy():
    ctx = ExecutionContext({"A": 1}, environ={})
    snap = ctx.snapshot()
    ctx.set("B", "2")
    assert snap == {"A": "1"}
