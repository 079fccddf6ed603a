"""
Settings models for the ChatBridge MCP framework.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_CONFIG_FILENAME = "chatbridge_mcp.config.yaml"
ENV_PREFIX = "CHATBRIDGE_"


class TransportKind(str, Enum):
    """How a backend server is reached."""

    SUBPROCESS = "subprocess"
    HTTP_STREAM = "http-stream"


# Spellings used by other MCP clients and older exports
_TRANSPORT_ALIASES = {
    "stdio": TransportKind.SUBPROCESS,
    "subprocess": TransportKind.SUBPROCESS,
    "streamable-http": TransportKind.HTTP_STREAM,
    "streamable_http": TransportKind.HTTP_STREAM,
    "http-stream": TransportKind.HTTP_STREAM,
    "http": TransportKind.HTTP_STREAM,
}


def parse_transport_kind(value: Any) -> Any:
    """Normalize a transport spelling; unknown values are left for validation."""
    if isinstance(value, str):
        return _TRANSPORT_ALIASES.get(value.strip().lower(), value)
    return value


class MCPServerSettings(BaseModel):
    """Settings for an MCP server, as written in the config file."""

    name: Optional[str] = None
    transport: TransportKind = TransportKind.SUBPROCESS
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Optional[Dict[str, str]] = None
    url: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    auto_connect: bool = False
    read_timeout_seconds: Optional[float] = None

    @field_validator("transport", mode="before")
    @classmethod
    def normalize_transport(cls, value: Any) -> Any:
        return parse_transport_kind(value)


class MCPSettings(BaseModel):
    """Settings for MCP connectivity."""

    servers: Dict[str, MCPServerSettings] = Field(default_factory=dict)
    connect_timeout_seconds: float = 30.0
    discovery_timeout_seconds: Optional[float] = 10.0
    close_timeout_seconds: float = 5.0
    keepalive_interval_seconds: Optional[float] = 30.0
    keepalive_timeout_seconds: float = 10.0
    read_timeout_seconds: Optional[float] = 60.0


class GeminiSettings(BaseModel):
    """Settings for the Gemini generation backend."""

    api_key: Optional[str] = None
    api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-2.5-flash"
    max_remote_calls: int = 10
    request_timeout_seconds: Optional[float] = 120.0

    @model_validator(mode="before")
    @classmethod
    def fill_api_key(cls, data: Any) -> Any:
        # Fall back to the environment when no key is configured
        if isinstance(data, dict) and not data.get("api_key"):
            from ..utils.secrets import get_api_key
            api_key = get_api_key("gemini")
            if api_key:
                data = {**data, "api_key": api_key}
        return data


class ChatSettings(BaseModel):
    """Settings for the chat orchestrator."""

    provider: str = "gemini"
    turn_history_size: int = 100


class LoggingSettings(BaseModel):
    """Settings for logging configuration."""

    level: str = "info"
    file_path: Optional[str] = None
    console: bool = True


class ServerSettings(BaseModel):
    """Settings for the HTTP API."""

    host: str = "127.0.0.1"
    port: int = 8080


class Settings(BaseModel):
    """Root settings object for the ChatBridge MCP framework."""

    mcp: MCPSettings = Field(default_factory=MCPSettings)
    gemini: GeminiSettings = Field(default_factory=GeminiSettings)
    chat: ChatSettings = Field(default_factory=ChatSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    model_config = {"extra": "allow"}


def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load and validate the configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.
            If None, look for 'chatbridge_mcp.config.yaml' in the current directory.

    Returns:
        Settings: Validated configuration object.
    """
    from ..utils.secrets import load_env_files

    load_env_files()

    if config_path is None:
        config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILENAME)

    config_data: Dict[str, Any] = {}

    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}

    # Secrets live next to the config file
    secrets_path = Path(config_path).with_suffix(".secrets.yaml")
    if secrets_path.exists():
        with open(secrets_path, "r") as f:
            secrets_data = yaml.safe_load(f) or {}
        _merge_dicts(config_data, secrets_data)

    # Environment variables override file settings
    env_config = _load_from_env()
    if env_config:
        _merge_dicts(config_data, env_config)

    return Settings.model_validate(config_data)


def _load_from_env() -> Dict[str, Any]:
    """
    Load configuration from environment variables.

    CHATBRIDGE_SECTION__KEY maps to section.key; double underscores separate
    levels so that keys may contain single underscores.
    """
    config: Dict[str, Any] = {}

    _set_nested_dict(config, ["gemini", "api_key"], os.environ.get("GEMINI_API_KEY"))
    _set_nested_dict(config, ["gemini", "api_base"], os.environ.get("GEMINI_API_BASE"))
    _set_nested_dict(config, ["gemini", "model"], os.environ.get("GEMINI_MODEL"))

    _set_nested_dict(config, ["logging", "level"], os.environ.get("LOG_LEVEL"))
    _set_nested_dict(config, ["logging", "file_path"], os.environ.get("LOG_FILE"))

    for key, value in os.environ.items():
        if key.startswith(ENV_PREFIX):
            path = [part for part in key[len(ENV_PREFIX):].lower().split("__") if part]
            if path:
                _set_nested_dict(config, path, value)

    return config


def _set_nested_dict(d: Dict[str, Any], path: List[str], value: Any) -> None:
    """
    Set a value in a nested dictionary based on a path.
    """
    if value is None:
        return

    if len(path) == 1:
        d[path[0]] = value
        return

    if path[0] not in d or not isinstance(d[path[0]], dict):
        d[path[0]] = {}

    _set_nested_dict(d[path[0]], path[1:], value)


def _merge_dicts(target: Dict, source: Dict) -> None:
    """
    Recursively merge source dictionary into target dictionary.
    Values in source will override values in target.
    """
    for key, value in source.items():
        if key in target and isinstance(target[key], dict) and isinstance(value, dict):
            _merge_dicts(target[key], value)
        else:
            target[key] = value
