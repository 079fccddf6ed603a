from contextlib import asynccontextmanager
from functools import partial
from typing import Dict, Optional

import anyio
import pytest
from mcp.server.fastmcp import FastMCP
from mcp.shared.memory import create_client_server_memory_streams

from chatbridge_mcp.config.descriptors import ServerDescriptor
from chatbridge_mcp.config.settings import MCPSettings
from chatbridge_mcp.errors import ServerConnectionError
from chatbridge_mcp.mcp.connection_manager import ConnectionManager
from chatbridge_mcp.utils.stdio import ExitCallback


@pytest.fixture
def anyio_backend():
    return "asyncio"


def build_demo_server(name: str = "demo") -> FastMCP:
    server = FastMCP(name)

    @server.tool()
    def add(a: int, b: int) -> int:
        """Add two integers."""
        return a + b

    @server.tool()
    def echo(text: str) -> str:
        """Echo the text back."""
        return text

    @server.tool()
    def explode() -> str:
        """Always fails."""
        raise RuntimeError("kaboom")

    @server.prompt()
    def greet(name: str) -> str:
        """Greet someone."""
        return f"Say hello to {name}"

    @server.resource("note://readme", mime_type="text/plain")
    def readme() -> str:
        """The readme note."""
        return "read me first"

    @server.resource("note://{slug}")
    def note(slug: str) -> str:
        """A note by slug."""
        return f"note {slug}"

    return server


class MemoryTransports:
    """
    Transport factory that connects descriptors to in-process FastMCP
    servers over memory streams, keyed by descriptor id.
    """

    def __init__(self, servers: Dict[str, FastMCP]):
        self.servers = servers
        self.exit_callbacks: Dict[str, Optional[ExitCallback]] = {}
        self.opened = 0

    @asynccontextmanager
    async def __call__(self, descriptor: ServerDescriptor, on_exit: Optional[ExitCallback] = None):
        server = self.servers.get(descriptor.id)
        if server is None:
            raise ServerConnectionError(f"No such server: {descriptor.id}", server_id=descriptor.id)

        self.exit_callbacks[descriptor.id] = on_exit
        self.opened += 1
        low_level = server._mcp_server

        async with create_client_server_memory_streams() as (client_streams, server_streams):
            async with anyio.create_task_group() as tg:
                tg.start_soon(
                    partial(
                        low_level.run,
                        server_streams[0],
                        server_streams[1],
                        low_level.create_initialization_options(),
                    )
                )
                try:
                    yield client_streams
                finally:
                    tg.cancel_scope.cancel()

    def crash(self, server_id: str, returncode: int = 1) -> None:
        callback = self.exit_callbacks.get(server_id)
        assert callback is not None, f"{server_id} was never opened"
        callback(returncode)


def memory_descriptor(server_id: str, **kwargs) -> ServerDescriptor:
    data = {"id": server_id, "name": f"{server_id} server", "command": "in-memory"}
    data.update(kwargs)
    return ServerDescriptor.model_validate(data)


def fast_settings(**kwargs) -> MCPSettings:
    data = {
        "connect_timeout_seconds": 5.0,
        "discovery_timeout_seconds": 5.0,
        "close_timeout_seconds": 2.0,
        "keepalive_interval_seconds": None,
    }
    data.update(kwargs)
    return MCPSettings(**data)


@pytest.fixture
def transports() -> MemoryTransports:
    return MemoryTransports({"demo": build_demo_server("demo"), "other": build_demo_server("other")})


@pytest.fixture
async def manager(transports: MemoryTransports):
    async with ConnectionManager(fast_settings(), transport_factory=transports) as connection_manager:
        yield connection_manager
