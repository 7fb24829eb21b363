# executors/sqlldr.py
from __future__ import annotations

from typing import List, Optional

from ..errors import ExecutorError
from ..model import SqlLoaderConfig
from .base import Invocation
from .process import run_process

CONN_VARIABLE = "SQLLDR_CONN"


def sqlldr_argv(config: SqlLoaderConfig, conn: str, program: str = "sqlldr") -> List[str]:
    argv = [program, conn, f"control={config.control_file}"]
    for key in ("data", "log", "bad", "discard"):
        value = getattr(config, f"{key}_file")
        if value:
            argv.append(f"{key}={value}")
    return argv


class SqlLoaderExecutor:
    def __init__(self, program: str = "sqlldr"):
        self.program = program

    def execute(self, invocation: Invocation) -> Optional[str]:
        config: SqlLoaderConfig = invocation.config
        # falls back to the context/environment; raises MissingVariable when unset
        conn = config.conn or invocation.resolve("${%s}" % CONN_VARIABLE)

        code = run_process(
            sqlldr_argv(config, conn, self.program),
            kind="sqlldr",
            step=invocation.step_id,
            log=invocation.log,
            cancel=invocation.cancel,
        )
        if code != 0:
            raise ExecutorError("sqlldr", invocation.step_id, f"sqlldr exited with status {code}", exit_code=code)
        return None
