"""
Shared utilities: logging, secrets and the subprocess transport.
"""

from .logging import configure_logging, get_logger

__all__ = ["configure_logging", "get_logger"]
