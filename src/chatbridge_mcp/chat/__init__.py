"""
Chat turns streamed from a generation provider, with MCP tools exposed
through automatic function calling.
"""

from .models import (
    ChatMessage,
    ErrorCode,
    ErrorEvent,
    Role,
    StreamEvent,
    TextEvent,
    ToolCall,
    ToolCallEvent,
    ToolCallState,
    TurnState,
    encode_event,
)
from .orchestrator import ChatOrchestrator, ChatTurn, prepare_messages
from .providers import (
    FunctionCall,
    FunctionResponse,
    GeminiProvider,
    GenerationChunk,
    GenerationProvider,
    MockProvider,
    create_provider,
)

__all__ = [
    "ChatMessage",
    "ErrorCode",
    "ErrorEvent",
    "Role",
    "StreamEvent",
    "TextEvent",
    "ToolCall",
    "ToolCallEvent",
    "ToolCallState",
    "TurnState",
    "encode_event",
    "ChatOrchestrator",
    "ChatTurn",
    "prepare_messages",
    "FunctionCall",
    "FunctionResponse",
    "GeminiProvider",
    "GenerationChunk",
    "GenerationProvider",
    "MockProvider",
    "create_provider",
]
