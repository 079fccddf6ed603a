"""
Secret management utilities for the ChatBridge MCP framework.

API keys come from environment variables; .env files are loaded into the
environment for local development.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Paths to check for .env files, in order of precedence
ENV_PATHS = [
    Path.cwd() / ".env",
    Path.cwd() / ".secrets.env",
    Path.home() / ".chatbridge_mcp" / ".env",
]

_PROVIDER_KEYS = {
    "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
}


def load_env_files() -> Optional[Path]:
    """
    Load the first .env file found in ENV_PATHS.

    Returns:
        The path that was loaded, or None.
    """
    for env_path in ENV_PATHS:
        if env_path.exists():
            load_dotenv(dotenv_path=env_path)
            return env_path
    return None


def get_secret(key: str, default: Optional[str] = None) -> Optional[str]:
    """
    Get a secret from environment variables with fallback.
    """
    return os.environ.get(key, default)


def get_api_key(provider: str) -> Optional[str]:
    """
    Get the API key for a generation provider.

    Args:
        provider: Provider name ("gemini").

    Returns:
        The API key, or None if not set.

    Raises:
        ValueError: If the provider is not supported.
    """
    names = _PROVIDER_KEYS.get(provider.lower())
    if names is None:
        raise ValueError(f"Unknown provider: {provider}")

    for name in names:
        value = get_secret(name)
        if value:
            return value
    return None
