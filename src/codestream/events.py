"""Typed events published while a session runs.

Every event carries ``type``, ``sessionId``, ``timestamp`` and ``sequence``
when serialised with :func:`to_message`.  ``sequence`` is assigned per
session and increases with every event the session emits; an ``overflow``
event reuses the highest sequence number among the events it replaces.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .session import utcnow


class BaseEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    session_id: str = Field(alias="sessionId")
    sequence: int
    timestamp: datetime = Field(default_factory=utcnow)

    # Output events may be dropped under backpressure, lifecycle events never.
    droppable: bool = Field(default=False, exclude=True)


class ExecutionStartEvent(BaseEvent):
    type: Literal["execution_start"] = "execution_start"


class OutputEvent(BaseEvent):
    type: Literal["output"] = "output"
    stream: Literal["stdout", "stderr"]
    content: str
    payload: bytes = Field(default=b"", exclude=True)
    droppable: bool = Field(default=True, exclude=True)


class ExecutionCompleteEvent(BaseEvent):
    type: Literal["execution_complete"] = "execution_complete"
    exit_code: Optional[int] = Field(default=None, alias="exitCode")
    reason: Literal["exit", "timeout", "cancelled", "error"]
    error: Optional[str] = None


class OverflowEvent(BaseEvent):
    type: Literal["overflow"] = "overflow"
    dropped_count: int = Field(alias="droppedCount")


Event = Union[ExecutionStartEvent, OutputEvent, ExecutionCompleteEvent, OverflowEvent]


def to_message(event: BaseEvent) -> Dict[str, Any]:
    """Serialise an event into the JSON shape sent to observers."""
    message = event.model_dump(mode="json", by_alias=True)
    if message.get("type") == "execution_complete" and message.get("error") is None:
        message.pop("error", None)
    return message
