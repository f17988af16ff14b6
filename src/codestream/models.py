"""Pydantic models for request and response bodies.

These models express the structure of the HTTP API.  Field names are
camelCase on the wire, matching the event messages sent over the
WebSocket, and snake_case in Python.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .session import SessionSnapshot


class _ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ExecuteRequest(_ApiModel):
    """Request body for submitting code."""

    language: str = Field(..., description="Language of the snippet, e.g. 'python' or 'javascript'.")
    code: str = Field(..., description="Source code to execute.")
    project_id: Optional[Any] = Field(
        default=None,
        alias="projectId",
        description="Opaque project reference whose files are copied next to the snippet.",
    )


class SubmitResponse(_ApiModel):
    session_id: str = Field(alias="sessionId")
    state: str


class SessionStatus(_ApiModel):
    """Current status of a session."""

    session_id: str = Field(alias="sessionId")
    language: str
    state: str
    exit_code: Optional[int] = Field(default=None, alias="exitCode")
    reason: Optional[str] = None
    error: Optional[str] = None
    submitted_at: datetime = Field(alias="submittedAt")
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")
    ended_at: Optional[datetime] = Field(default=None, alias="endedAt")

    @classmethod
    def from_snapshot(cls, snapshot: SessionSnapshot) -> "SessionStatus":
        return cls(
            session_id=snapshot.id,
            language=snapshot.language,
            state=snapshot.state.value,
            exit_code=snapshot.exit_code,
            reason=snapshot.reason,
            error=snapshot.error,
            submitted_at=snapshot.submitted_at,
            started_at=snapshot.started_at,
            ended_at=snapshot.ended_at,
        )


class SessionList(_ApiModel):
    sessions: List[SessionStatus] = Field(default_factory=list)


class CancelResponse(_ApiModel):
    session_id: str = Field(alias="sessionId")
    cancelled: bool


class ExecuteResult(_ApiModel):
    """Response of the blocking ``/api/execute`` endpoint."""

    session_id: str = Field(alias="sessionId")
    output: str
    error: Optional[str] = None
    exit_code: Optional[int] = Field(default=None, alias="exitCode")
    reason: Optional[str] = None
