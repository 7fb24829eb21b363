# executors/sql.py
from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Protocol

from ..errors import ExecutorError, ValidationError
from ..model import DbTarget, SqlConfig, SqlFileConfig
from .base import Invocation
from .process import run_process

DEFAULT_TARGET = "default"


class Database(Protocol):
    def execute_sql(self, sql: str, invocation: Invocation) -> None:
        ...


class DummyDatabase:
    """Logs the statement instead of running it. Used for `default` unless overridden."""

    def execute_sql(self, sql: str, invocation: Invocation) -> None:
        first = sql.strip().splitlines()[0] if sql.strip() else ""
        invocation.log(f"dummy db: {first}")


class SqlplusDatabase:
    """
    Oracle target driven through `sqlplus -S user/password@dsn`.

    Credentials may hold ${VAR} templates; they are resolved per call so
    secrets can come from the environment.
    """

    def __init__(self, dsn: str, user: str, password: str, program: str = "sqlplus"):
        self.dsn = dsn
        self.user = user
        self.password = password
        self.program = program

    def execute_sql(self, sql: str, invocation: Invocation) -> None:
        login = "{}/{}@{}".format(
            invocation.resolve(self.user),
            invocation.resolve(self.password),
            invocation.resolve(self.dsn),
        )
        script = (
            "WHENEVER SQLERROR EXIT SQL.SQLCODE\n"
            "SET HEADING OFF\n"
            "SET FEEDBACK OFF\n"
            f"{sql}\n/\nEXIT\n"
        )
        code = run_process(
            [self.program, "-S", login],
            kind="sqlplus",
            step=invocation.step_id,
            log=invocation.log,
            cancel=invocation.cancel,
            stdin_text=script,
        )
        if code != 0:
            raise ExecutorError("sqlplus", invocation.step_id, f"sqlplus exited with status {code}", exit_code=code)


DatabaseFactory = Callable[[DbTarget], Database]


def _dummy(target: DbTarget) -> Database:
    return DummyDatabase()


def _oracle(target: DbTarget) -> Database:
    missing = [f for f in ("dsn", "user", "password") if not getattr(target, f)]
    if missing:
        raise ValidationError("oracle target is missing connection fields", details={"missing": missing})
    return SqlplusDatabase(target.dsn, target.user, target.password)


_DATABASE_KINDS: Dict[str, DatabaseFactory] = {
    "dummy": _dummy,
    "oracle": _oracle,
}


def register_database(kind: str, factory: DatabaseFactory) -> None:
    """Make a database kind available to scenario `db` entries (e.g. a postgres driver)."""
    _DATABASE_KINDS[kind] = factory


def build_databases(targets: Mapping[str, DbTarget]) -> Dict[str, Database]:
    """
    Instantiate every declared target before the run starts.
    Unknown kinds are a ValidationError so no step runs against a half-built setup.
    """
    databases: Dict[str, Database] = {DEFAULT_TARGET: DummyDatabase()}
    for name, target in targets.items():
        factory = _DATABASE_KINDS.get(target.kind)
        if factory is None:
            raise ValidationError(
                f"db target '{name}' has unknown kind '{target.kind}'",
                details={"known": sorted(_DATABASE_KINDS)},
            )
        databases[name] = factory(target)
    return databases


class SqlExecutor:
    """Handles both `sql` and `sql_file` kinds."""

    def __init__(self, databases: Optional[Mapping[str, Database]] = None):
        self.databases: Dict[str, Database] = dict(databases or {DEFAULT_TARGET: DummyDatabase()})

    def execute(self, invocation: Invocation) -> Optional[str]:
        config = invocation.config
        if isinstance(config, SqlFileConfig):
            path = Path(config.path)
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as e:
                raise ExecutorError("sql_file", invocation.step_id, f"cannot read {path}: {e}") from e
            sql = invocation.resolve(text)
        elif isinstance(config, SqlConfig):
            sql = config.sql
        else:
            raise TypeError(f"SqlExecutor cannot run {type(config).__name__}")

        target = config.target_db or DEFAULT_TARGET
        db = self.databases.get(target)
        if db is None:
            raise ExecutorError("sql", invocation.step_id, f"undefined db target: {target}")
        db.execute_sql(sql, invocation)
        return f"executed on {target}"
