"""
Transport factories: turn a server descriptor into the read/write stream
pair an MCP client session runs on.
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncContextManager, Callable, Optional, Tuple

from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp.client.stdio import StdioServerParameters, get_default_environment
from mcp.client.streamable_http import streamablehttp_client

from chatbridge_mcp.config.descriptors import ServerDescriptor
from chatbridge_mcp.config.settings import TransportKind
from chatbridge_mcp.errors import ValidationError
from chatbridge_mcp.utils.logging import get_logger
from chatbridge_mcp.utils.stdio import ExitCallback, stdio_client_with_rich_stderr

logger = get_logger(__name__)

TransportStreams = Tuple[MemoryObjectReceiveStream, MemoryObjectSendStream]

TransportFactory = Callable[
    [ServerDescriptor, Optional[ExitCallback]],
    AsyncContextManager[TransportStreams],
]
"""
Opens the transport for a descriptor. The exit callback, when given, is
invoked if the underlying channel dies on its own.
"""

# Default bounds for the streamable HTTP transport
HTTP_TIMEOUT = timedelta(seconds=30)
HTTP_SSE_READ_TIMEOUT = timedelta(minutes=5)


@asynccontextmanager
async def http_stream_client(descriptor: ServerDescriptor):
    """
    Open a streamable HTTP session to the descriptor's URL.

    The MCP client multiplexes every request over this one logical session
    and correlates responses by JSON-RPC id.
    """
    sse_read_timeout = (
        timedelta(seconds=descriptor.read_timeout_seconds)
        if descriptor.read_timeout_seconds
        else HTTP_SSE_READ_TIMEOUT
    )
    async with streamablehttp_client(
        descriptor.url,
        headers=descriptor.headers or None,
        timeout=HTTP_TIMEOUT,
        sse_read_timeout=sse_read_timeout,
    ) as (read_stream, write_stream, get_session_id):
        logger.debug(f"{descriptor.id}: Opened HTTP stream to {descriptor.url}")
        yield read_stream, write_stream
        logger.debug(f"{descriptor.id}: Closing HTTP stream (session id {get_session_id()})")


def subprocess_parameters(descriptor: ServerDescriptor) -> StdioServerParameters:
    """Build stdio parameters, overlaying the descriptor env on the defaults."""
    return StdioServerParameters(
        command=descriptor.command,
        args=list(descriptor.args),
        env={**get_default_environment(), **(descriptor.env or {})},
    )


def open_transport(
    descriptor: ServerDescriptor,
    on_exit: Optional[ExitCallback] = None,
) -> AsyncContextManager[TransportStreams]:
    """
    Default transport factory, dispatching on the descriptor's transport kind.
    """
    if descriptor.transport == TransportKind.SUBPROCESS:
        return stdio_client_with_rich_stderr(
            subprocess_parameters(descriptor), on_exit=on_exit
        )
    elif descriptor.transport == TransportKind.HTTP_STREAM:
        return http_stream_client(descriptor)
    else:
        raise ValidationError(f"Unsupported transport: {descriptor.transport}")
