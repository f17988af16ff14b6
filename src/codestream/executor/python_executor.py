"""
Launcher for Python snippets.

The snippet is written to ``main.py`` inside the session workspace and run
with the configured interpreter in unbuffered mode, so that output reaches
observers as it is printed rather than when the interpreter exits.

This launcher assumes the host provides the interpreter and whatever
third-party libraries users may import.  Users cannot install packages at
runtime.
"""

from __future__ import annotations

from pathlib import Path
from typing import List

from .base import ProcessLauncher


class PythonLauncher(ProcessLauncher):
    """Run Python code with the system interpreter."""

    language = "python"
    filename = "main.py"

    def __init__(self, executable: str = "python3") -> None:
        super().__init__(executable)

    def command(self, script_path: Path) -> List[str]:
        return [self.executable, "-u", str(script_path)]
