"""
Configuration management for the ChatBridge MCP framework.
"""

from .settings import (
    Settings,
    MCPSettings,
    MCPServerSettings,
    GeminiSettings,
    ChatSettings,
    LoggingSettings,
    ServerSettings,
    TransportKind,
    load_config,
)
from .descriptors import (
    EXPORT_FORMAT_VERSION,
    DescriptorStore,
    ExportBundle,
    ServerDescriptor,
    ServerDescriptorInput,
)

__all__ = [
    "Settings",
    "MCPSettings",
    "MCPServerSettings",
    "GeminiSettings",
    "ChatSettings",
    "LoggingSettings",
    "ServerSettings",
    "TransportKind",
    "load_config",
    "EXPORT_FORMAT_VERSION",
    "DescriptorStore",
    "ExportBundle",
    "ServerDescriptor",
    "ServerDescriptorInput",
]
