"""
MCP connectivity for the ChatBridge MCP framework.

This module provides the components for connecting to MCP servers,
tracking their capabilities, and routing tool calls to the right server.
"""

from .capabilities import (
    CapabilitySet,
    ContentBlock,
    MCPPrompt,
    MCPPromptArgument,
    MCPResource,
    MCPResourceTemplate,
    MCPTool,
    PromptResult,
    ResourceResult,
    ToolResult,
    discover_capabilities,
)
from .client_session import ChatBridgeClientSession
from .connection_manager import ConnectionManager, ServerConnection, SessionStatus
from .aggregator import NamespacedTool, ToolBinding
from .service import ApiResponse, MCPService
from .transports import TransportFactory, open_transport

__all__ = [
    "CapabilitySet",
    "ContentBlock",
    "MCPPrompt",
    "MCPPromptArgument",
    "MCPResource",
    "MCPResourceTemplate",
    "MCPTool",
    "PromptResult",
    "ResourceResult",
    "ToolResult",
    "discover_capabilities",
    "ChatBridgeClientSession",
    "ConnectionManager",
    "ServerConnection",
    "SessionStatus",
    "NamespacedTool",
    "ToolBinding",
    "ApiResponse",
    "MCPService",
    "TransportFactory",
    "open_transport",
]
