# executors/shell.py
from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from ..errors import ExecutorError
from ..model import ShellConfig
from .base import Invocation
from .process import run_process


def shell_argv(config: ShellConfig) -> List[str]:
    """`<program> -c <script> [args...]` (`cmd /C` on Windows)."""
    if os.name == "nt":
        program = config.shell_program or "cmd"
        flag = "/C"
    else:
        program = config.shell_program or "sh"
        flag = "-c"
    return [program, flag, config.script, *config.shell_args]


class ShellExecutor:
    def execute(self, invocation: Invocation) -> Optional[str]:
        config: ShellConfig = invocation.config
        step = invocation.step_id

        cwd = None
        if config.working_dir:
            cwd = Path(config.working_dir).expanduser().resolve()
            if not cwd.is_dir():
                raise ExecutorError("shell", step, f"working_dir not found: {cwd}")

        code = run_process(
            shell_argv(config),
            kind="shell",
            step=step,
            log=invocation.log,
            cancel=invocation.cancel,
            cwd=str(cwd) if cwd else None,
            env=config.env,
            user=config.run_as,
        )
        if code != 0:
            raise ExecutorError("shell", step, f"command exited with status {code}", exit_code=code)
        return None
