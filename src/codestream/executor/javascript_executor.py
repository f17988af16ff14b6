"""
Launcher for JavaScript snippets, run with Node.js.

The snippet is written to ``main.js`` inside the session workspace and run
as ``node main.js``.
"""

from __future__ import annotations

from pathlib import Path
from typing import List

from .base import ProcessLauncher


class JavaScriptLauncher(ProcessLauncher):
    """Run JavaScript with Node.js."""

    language = "javascript"
    filename = "main.js"

    def __init__(self, executable: str = "node") -> None:
        super().__init__(executable)

    def command(self, script_path: Path) -> List[str]:
        return [self.executable, str(script_path)]
