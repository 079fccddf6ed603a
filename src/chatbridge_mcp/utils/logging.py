"""
Logging utilities for the ChatBridge MCP framework.
"""

import logging
from typing import Dict, List, Optional, Union

from rich.console import Console
from rich.logging import RichHandler


# Global logger configuration
_loggers: Dict[str, logging.Logger] = {}
_console = Console(stderr=True)
_log_level = logging.INFO
_log_handlers: List[logging.Handler] = [
    RichHandler(console=_console, rich_tracebacks=True, show_path=False)
]


def _parse_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    parsed = logging.getLevelName(level.upper())
    if not isinstance(parsed, int):
        raise ValueError(f"Unknown log level: {level}")
    return parsed


def configure_logging(
    level: Union[int, str] = logging.INFO,
    add_file_handler: Optional[str] = None,
    console: bool = True,
) -> None:
    """
    Configure the logging system.

    Args:
        level: Logging level, either numeric or a name such as "debug".
        add_file_handler: If provided, also log to this file.
        console: Whether to keep the rich console handler.
    """
    global _log_level, _log_handlers

    _log_level = _parse_level(level)
    _log_handlers = []

    if console:
        _log_handlers.append(
            RichHandler(console=_console, rich_tracebacks=True, show_path=False)
        )

    if add_file_handler:
        file_handler = logging.FileHandler(add_file_handler)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        ))
        _log_handlers.append(file_handler)

    # Update existing loggers
    for logger in _loggers.values():
        _attach_handlers(logger)


def _attach_handlers(logger: logging.Logger) -> None:
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    for handler in _log_handlers:
        logger.addHandler(handler)
    logger.setLevel(_log_level)
    logger.propagate = False


class StructuredLogger(logging.Logger):
    """
    A logger that accepts a `data` keyword carrying a structured payload.
    """

    def _log(self, level, msg, args, exc_info=None, extra=None, stack_info=False,
             stacklevel=1, data=None):
        if data is not None:
            msg = f"{msg} {data}"
        super()._log(level, msg, args, exc_info, extra, stack_info, stacklevel)


logging.setLoggerClass(StructuredLogger)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the specified name.

    Args:
        name: Name of the logger.

    Returns:
        Logger instance wired to the framework handlers.
    """
    if name in _loggers:
        return _loggers[name]

    logger = logging.getLogger(name)
    _attach_handlers(logger)

    _loggers[name] = logger
    return logger
