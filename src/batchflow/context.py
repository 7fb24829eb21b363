# context.py
"""
Run-scoped variable store shared by every step of one run.

Concurrency invariant: writers (extract steps, loop bindings, confirm
answers) are always graph ancestors of the readers that consume their
values, or run strictly before them inside a loop body. Because the
scheduler only admits a step after all of its dependencies finished, a
read never races the write it depends on. The lock below only keeps the
dict itself consistent. A future feature that lets two parallel steps
write the same variable breaks this invariant.
"""
from __future__ import annotations

import glob
import os
import re
import threading
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .errors import ExtractionFailed, MissingVariable
from .model import ExtractConfig

PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ExecutionContext:
    def __init__(self, initial: Optional[Mapping[str, str]] = None, environ: Optional[Mapping[str, str]] = None):
        self._vars: Dict[str, str] = {k: str(v) for k, v in (initial or {}).items()}
        self._environ = os.environ if environ is None else environ
        self._lock = threading.Lock()

    # ---- store ----

    def set(self, name: str, value: str) -> None:
        with self._lock:
            self._vars[name] = str(value)

    def get(self, name: str) -> Optional[str]:
        """Context value first, then the process environment."""
        with self._lock:
            if name in self._vars:
                return self._vars[name]
        return self._environ.get(name)

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._vars)

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    # ---- templating ----

    def resolve(self, template: str, field: Optional[str] = None) -> str:
        """
        Replace every ${NAME} in `template`.

        Single pass: a substituted value is never scanned again, so a value
        containing "${OTHER}" stays literal.
        """
        def repl(m: re.Match) -> str:
            value = self.get(m.group(1))
            if value is None:
                raise MissingVariable(m.group(1), field=field)
            return value

        return PLACEHOLDER.sub(repl, template)

    def resolve_optional(self, template: Optional[str], field: Optional[str] = None) -> Optional[str]:
        if template is None:
            return None
        return self.resolve(template, field=field)

    # ---- extraction ----

    def extract(self, config: ExtractConfig) -> str:
        """
        Apply `config.pattern` to the file (or the selected line) and store
        the capture group under `config.var_name`. `config.file_path` must
        already be resolved.
        """
        path = Path(config.file_path)
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise ExtractionFailed(str(path), config.pattern, reason=f"cannot read file: {e}") from e

        if config.line is not None:
            lines = content.splitlines()
            if config.line > len(lines):
                raise ExtractionFailed(
                    str(path), config.pattern, reason=f"file has no line {config.line} ({len(lines)} lines)"
                )
            content = lines[config.line - 1]

        m = re.search(config.pattern, content)
        if m is None or m.group(config.group) is None:
            raise ExtractionFailed(str(path), config.pattern)

        value = m.group(config.group)
        self.set(config.var_name, value)
        return value

    # ---- loop sources ----

    @staticmethod
    def glob_sources(pattern: str) -> List[str]:
        """Paths matching `pattern`, in lexical order."""
        return sorted(glob.glob(pattern, recursive=True))
