"""Ephemeral code execution service package.

This package runs untrusted source snippets as isolated child processes,
streams their output live to observers and tears every resource down
deterministically, whether the program exits, times out or is cancelled.

The top-level modules include:

* ``config`` – configuration handling for environment variables.
* ``session`` – the session lifecycle record and its state machine.
* ``events`` – Pydantic models of the events streamed to observers.
* ``workspace`` – per-session scratch directories and project file sources.
* ``executor`` – language-specific process launchers.
* ``multiplexer`` – concurrent stream readers and the bounded event queue.
* ``notifier`` – predicate based fan-out of events to observers.
* ``registry`` – the session registry that ties everything together.
* ``api`` – FastAPI application exposing HTTP and WebSocket endpoints.
"""

from .errors import (
    CodeTooLargeError,
    ExecError,
    LaunchError,
    SessionNotFoundError,
    UnsupportedLanguageError,
    ValidationError,
)
from .notifier import Notifier, all_events, for_session
from .registry import SessionRegistry
from .session import SessionState
from .workspace import WorkspaceManager

__all__ = [
    "CodeTooLargeError",
    "ExecError",
    "LaunchError",
    "Notifier",
    "SessionNotFoundError",
    "SessionRegistry",
    "SessionState",
    "UnsupportedLanguageError",
    "ValidationError",
    "WorkspaceManager",
    "all_events",
    "for_session",
]
