"""Session data model.

A :class:`Session` is the lifecycle record of one accepted
:class:`ExecutionRequest`.  Sessions are owned by the
:class:`~codestream.registry.SessionRegistry`: only the task that runs a
session mutates it, everybody else sees :class:`SessionSnapshot` copies.
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Optional

from .errors import InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (SessionState.QUEUED, SessionState.RUNNING)


_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    # a launch failure or an early cancel ends a session before it runs
    SessionState.QUEUED: frozenset(
        {SessionState.RUNNING, SessionState.FAILED, SessionState.CANCELLED}
    ),
    SessionState.RUNNING: frozenset(
        {
            SessionState.SUCCEEDED,
            SessionState.FAILED,
            SessionState.TIMED_OUT,
            SessionState.CANCELLED,
        }
    ),
}


@dataclass(frozen=True)
class ExecutionRequest:
    """Immutable description of what to run."""

    language: str
    source: bytes
    project_ref: Any = None
    submitted_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of a session at one point in time."""

    id: str
    language: str
    state: SessionState
    workspace_path: Optional[str]
    submitted_at: datetime
    started_at: Optional[datetime]
    ended_at: Optional[datetime]
    exit_code: Optional[int]
    reason: Optional[str]
    error: Optional[str]


@dataclass
class Session:
    request: ExecutionRequest
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.QUEUED
    workspace_path: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    cancel_requested: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _sequence: "itertools.count[int]" = field(default_factory=itertools.count, repr=False)

    def next_sequence(self) -> int:
        """Return the next event sequence number for this session."""
        return next(self._sequence)

    def transition(self, new_state: SessionState) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidTransition(
                f"Session {self.id}: {self.state.value} -> {new_state.value} is not allowed"
            )
        self.state = new_state
        if new_state is SessionState.RUNNING:
            self.started_at = utcnow()
        elif new_state.is_terminal:
            self.ended_at = utcnow()
            self.workspace_path = None

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            id=self.id,
            language=self.request.language,
            state=self.state,
            workspace_path=self.workspace_path,
            submitted_at=self.request.submitted_at,
            started_at=self.started_at,
            ended_at=self.ended_at,
            exit_code=self.exit_code,
            reason=self.reason,
            error=self.error,
        )
