"""Shared fixtures for the execution service tests."""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
import time
from pathlib import Path
from typing import Callable, List

import pytest

from codestream.events import BaseEvent
from codestream.executor import BashLauncher, JavaScriptLauncher, PythonLauncher
from codestream.notifier import Notifier, Subscription
from codestream.registry import SessionRegistry
from codestream.workspace import WorkspaceManager


requires_node = pytest.mark.skipif(shutil.which("node") is None, reason="node is not installed")


def pid_alive(pid: int) -> bool:
    """True if ``pid`` exists and is not a zombie."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return True
    # the state field follows the parenthesised command name
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


def wait_until_dead(pid: int, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(0.05)
    return not pid_alive(pid)


async def collect_until_complete(subscription: Subscription, timeout: float = 20.0) -> List[BaseEvent]:
    """Gather events until an ``execution_complete`` arrives."""
    events: List[BaseEvent] = []

    async def _gather() -> None:
        async for event in subscription:
            events.append(event)
            if event.type == "execution_complete":
                return

    await asyncio.wait_for(_gather(), timeout=timeout)
    return events


@pytest.fixture
def workspace_root(tmp_path) -> Path:
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture
def make_registry(workspace_root) -> Callable[..., SessionRegistry]:
    """Build a registry wired with the real launchers and a fresh notifier."""

    def _make(launchers=None, **kwargs) -> SessionRegistry:
        if launchers is None:
            launchers = {
                "python": PythonLauncher(sys.executable),
                "javascript": JavaScriptLauncher(shutil.which("node") or "node"),
                "bash": BashLauncher(),
            }
        kwargs.setdefault("timeout", 10.0)
        kwargs.setdefault("kill_grace", 1.0)
        return SessionRegistry(
            launchers,
            WorkspaceManager(workspace_root, release_backoff=0.01),
            Notifier(),
            **kwargs,
        )

    return _make
