"""
Process launchers for the supported languages.

Each launcher knows how to write a snippet into a session workspace and
which interpreter runs it.  The registry only ever sees the launchers built
by :func:`build_launchers`, which form the language allow-list: a language
without a launcher is rejected at submission time.  Additional languages
can be added by implementing the ``ProcessLauncher`` interface from
``base.py`` and registering the class in ``LAUNCHER_CLASSES``.
"""

from __future__ import annotations

from typing import Dict, Type

from ..config import Config
from .base import LaunchedProcess, ProcessLauncher
from .bash_executor import BashLauncher
from .javascript_executor import JavaScriptLauncher
from .python_executor import PythonLauncher

LAUNCHER_CLASSES: Dict[str, Type[ProcessLauncher]] = {
    "python": PythonLauncher,
    "javascript": JavaScriptLauncher,
    "bash": BashLauncher,
}


def build_launchers(config: Config) -> Dict[str, ProcessLauncher]:
    """Instantiate a launcher for every allow-listed language."""
    executables = {
        "python": config.python_bin,
        "javascript": config.node_bin,
        "bash": config.bash_bin,
    }
    launchers: Dict[str, ProcessLauncher] = {}
    for language in config.allowed_langs:
        if language not in LAUNCHER_CLASSES:
            raise ValueError(f"No launcher available for allowed language: {language}")
        launchers[language] = LAUNCHER_CLASSES[language](executables[language])
    return launchers


__all__ = [
    "LAUNCHER_CLASSES",
    "LaunchedProcess",
    "ProcessLauncher",
    "PythonLauncher",
    "JavaScriptLauncher",
    "BashLauncher",
    "build_launchers",
]
