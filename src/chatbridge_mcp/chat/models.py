"""
Chat data model and the events streamed to clients.
"""

import json
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Role(str, Enum):
    USER = "user"
    MODEL = "model"


class ToolCallState(str, Enum):
    CALLING = "calling"
    RESULT = "result"
    ERROR = "error"


class ToolCall(_CamelModel):
    tool_call_id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Any] = None
    state: ToolCallState = ToolCallState.CALLING


class ChatMessage(_CamelModel):
    role: Role
    content: str
    tool_calls: List[ToolCall] = Field(default_factory=list)


class TurnState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TurnState.COMPLETED, TurnState.ABORTED, TurnState.FAILED)


class ErrorCode(str, Enum):
    RATE_LIMIT = "rate_limit"
    GENERATION_ERROR = "generation_error"


class TextEvent(_CamelModel):
    """Cumulative text of the model message so far."""

    type: Literal["text"] = "text"
    content: str


class ToolCallEvent(_CamelModel):
    type: Literal["tool_call"] = "tool_call"
    tool_call_id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ErrorEvent(_CamelModel):
    """Terminal event of a failed turn."""

    type: Literal["error"] = "error"
    message: str
    code: ErrorCode = ErrorCode.GENERATION_ERROR


StreamEvent = Union[TextEvent, ToolCallEvent, ErrorEvent]


def encode_event(event: StreamEvent) -> bytes:
    """One NDJSON line for an event."""
    payload = event.model_dump(mode="json", by_alias=True)
    return (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")
