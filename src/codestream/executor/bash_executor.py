"""
Launcher for Bash scripts.

The script is written to ``main.sh`` inside the session workspace and
passed to ``bash`` as a file argument.  As with the other launchers, only a
limited set of core utilities should be available on the host to minimise
the attack surface.
"""

from __future__ import annotations

from pathlib import Path
from typing import List

from .base import ProcessLauncher


class BashLauncher(ProcessLauncher):
    """Run Bash scripts."""

    language = "bash"
    filename = "main.sh"

    def __init__(self, executable: str = "bash") -> None:
        super().__init__(executable)

    def prepare_source(self, source: bytes) -> bytes:
        if not source.startswith(b"#!/"):
            return b"#!/bin/bash\n" + source
        return source

    def command(self, script_path: Path) -> List[str]:
        return [self.executable, str(script_path)]
