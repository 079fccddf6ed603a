"""
Error taxonomy for the ChatBridge MCP framework.
"""

import re
from typing import Optional


class ChatBridgeError(Exception):
    """Base class for all framework errors."""


class ValidationError(ChatBridgeError, ValueError):
    """Malformed caller input. Raised before any I/O takes place."""


class ServerConnectionError(ChatBridgeError, ConnectionError):
    """A transport could not be established, or died after it was."""

    def __init__(self, message: str, server_id: Optional[str] = None):
        super().__init__(message)
        self.server_id = server_id


class ProtocolError(ChatBridgeError):
    """A backend answered, but not in the shape we expected."""


class GenerationError(ChatBridgeError):
    """The generation backend failed a request."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RateLimitError(GenerationError):
    """The generation backend signalled quota or throughput exhaustion."""


class CancellationError(ChatBridgeError):
    """A chat turn was aborted by its caller."""


# A bare 429 must stand alone, not inside a longer number
_RATE_LIMIT_PATTERN = re.compile(r"\b429\b|quota|RESOURCE_EXHAUSTED|rate.?limit", re.IGNORECASE)


def is_rate_limit_error(exc: BaseException) -> bool:
    """
    Check whether an exception signals quota or throughput exhaustion.

    Looks at HTTP-ish status/code attributes first, then at the message.
    """
    if isinstance(exc, RateLimitError):
        return True

    for attr in ("status", "code", "status_code"):
        if getattr(exc, attr, None) == 429:
            return True

    return _RATE_LIMIT_PATTERN.search(str(exc)) is not None


def classify_generation_error(exc: BaseException) -> GenerationError:
    """
    Map any exception raised by a generation source onto the error taxonomy.
    """
    if isinstance(exc, RateLimitError):
        return exc

    status = getattr(exc, "status", None)
    message = str(exc) or exc.__class__.__name__

    if is_rate_limit_error(exc):
        return RateLimitError(message, status=429)
    if isinstance(exc, GenerationError):
        return exc
    return GenerationError(message, status=status if isinstance(status, int) else None)
