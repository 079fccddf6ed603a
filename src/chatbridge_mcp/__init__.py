"""
ChatBridge MCP - streaming Gemini chat extended with the tools of MCP servers.
"""

__version__ = "0.1.0"

# MCP connectivity
from chatbridge_mcp.mcp.connection_manager import ConnectionManager, SessionStatus
from chatbridge_mcp.mcp.aggregator import ToolBinding
from chatbridge_mcp.mcp.client_session import ChatBridgeClientSession
from chatbridge_mcp.mcp.service import ApiResponse, MCPService

# Chat
from chatbridge_mcp.chat.orchestrator import ChatOrchestrator, ChatTurn
from chatbridge_mcp.chat.providers import GeminiProvider, MockProvider

# Configuration
from chatbridge_mcp.config import DescriptorStore, ServerDescriptor, Settings, load_config

from chatbridge_mcp.app import ChatBridgeApp

__all__ = [
    "ConnectionManager",
    "SessionStatus",
    "ToolBinding",
    "ChatBridgeClientSession",
    "ApiResponse",
    "MCPService",
    "ChatOrchestrator",
    "ChatTurn",
    "GeminiProvider",
    "MockProvider",
    "DescriptorStore",
    "ServerDescriptor",
    "Settings",
    "load_config",
    "ChatBridgeApp",
]
