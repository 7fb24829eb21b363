# executors/process.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
from typing import Callable, IO, List, Mapping, Optional, Sequence

from ..errors import ExecutorError

POLL_INTERVAL = 0.05

TOOL_HINTS = {
    "sh": "Install a POSIX shell or set shell.shell_program.",
    "bash": "Install bash or set shell.shell_program.",
    "sqlldr": "Install Oracle SQL*Loader or fix PATH.",
    "sqlplus": "Install Oracle SQL*Plus or fix PATH.",
}


def _pump(stream: IO[str], log: Callable[[str], None], prefix: str) -> None:
    for raw in iter(stream.readline, ""):
        log(prefix + raw.rstrip("\r\n"))
    stream.close()


def _kill(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:
        proc.kill()


def run_process(
    argv: Sequence[str],
    *,
    kind: str,
    step: str,
    log: Callable[[str], None],
    cancel: threading.Event,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    stdin_text: Optional[str] = None,
    user: Optional[str] = None,
) -> int:
    """
    Run `argv`, streaming stdout/stderr lines to `log` as they arrive.

    The process is killed (with its process group on POSIX) once `cancel`
    is set; an ExecutorError is raised in that case. Returns the exit code.
    """
    full_env = os.environ.copy()
    full_env.update(env or {})

    kwargs = {}
    if os.name == "posix":
        kwargs["start_new_session"] = True
        if user:
            kwargs.update(_user_kwargs(user, kind, step))
    elif user:
        raise ExecutorError(kind, step, "run_as is not supported on this platform")

    try:
        proc = subprocess.Popen(
            list(argv),
            cwd=cwd,
            env=full_env,
            stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            **kwargs,
        )
    except FileNotFoundError as e:
        program = os.path.basename(argv[0])
        details = {"hint": TOOL_HINTS[program]} if program in TOOL_HINTS else {}
        raise ExecutorError(kind, step, f"command not found: {argv[0]}", details=details) from e
    except (OSError, subprocess.SubprocessError) as e:
        raise ExecutorError(kind, step, f"cannot start {argv[0]}: {e}") from e

    readers: List[threading.Thread] = [
        threading.Thread(target=_pump, args=(proc.stdout, log, ""), daemon=True),
        threading.Thread(target=_pump, args=(proc.stderr, log, "[stderr] "), daemon=True),
    ]
    for t in readers:
        t.start()

    if stdin_text is not None:
        try:
            proc.stdin.write(stdin_text)
            proc.stdin.close()
        except BrokenPipeError:
            pass

    while proc.poll() is None:
        if cancel.wait(POLL_INTERVAL):
            _kill(proc)
            proc.wait()
            break

    for t in readers:
        t.join(timeout=1.0)

    if cancel.is_set():
        raise ExecutorError(kind, step, "aborted", exit_code=proc.returncode)
    return proc.returncode


def _user_kwargs(user: str, kind: str, step: str) -> dict:
    import pwd

    try:
        entry = pwd.getpwnam(user)
    except KeyError:
        raise ExecutorError(kind, step, f"run_as user not found: {user}") from None
    return {"user": entry.pw_uid, "group": entry.pw_gid}
