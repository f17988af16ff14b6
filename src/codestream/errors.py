"""Exception types raised by the execution subsystem.

Only conditions the caller has to react to are exceptions.  A program that
exits non-zero, runs out of time or gets cancelled is not an error from the
service's point of view: those outcomes are terminal session states and are
reported through ``execution_complete`` events.
"""

from __future__ import annotations


class ExecError(Exception):
    """Base class for all execution subsystem errors."""


class ValidationError(ExecError):
    """The request was rejected before any session was created."""


class UnsupportedLanguageError(ValidationError):
    """The requested language has no allow-listed interpreter."""

    def __init__(self, language: str) -> None:
        super().__init__(f"Unsupported language: {language}")
        self.language = language


class CodeTooLargeError(ValidationError):
    """The submitted source exceeds the configured byte limit."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Source is {size} bytes; limit is {limit} bytes")
        self.size = size
        self.limit = limit


class LaunchError(ExecError):
    """The interpreter could not be spawned."""


class SessionNotFoundError(ExecError, KeyError):
    """The session id is unknown or has already been evicted."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id

    def __str__(self) -> str:
        return self.args[0]


class InvalidTransition(ExecError):
    """A session state change that the lifecycle does not allow."""
