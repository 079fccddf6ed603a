"""
Manages the lifecycle of multiple MCP server connections.

The ConnectionManager is the process-wide table of sessions. It is built
explicitly by the application and passed to whoever needs it; it lives for
as long as its `async with` block.
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Set

import anyio
from anyio import Event, Lock, create_task_group
from anyio.abc import TaskGroup

from chatbridge_mcp.config.descriptors import ServerDescriptor
from chatbridge_mcp.config.settings import MCPSettings
from chatbridge_mcp.errors import ServerConnectionError
from chatbridge_mcp.mcp.capabilities import (
    CapabilitySet,
    PromptResult,
    ResourceResult,
    ToolResult,
    discover_capabilities,
    normalize_prompt_result,
    normalize_resource_result,
    normalize_tool_result,
    validate_tool_arguments,
)
from chatbridge_mcp.mcp.client_session import ChatBridgeClientSession
from chatbridge_mcp.mcp.transports import TransportFactory, open_transport
from chatbridge_mcp.utils.logging import get_logger

logger = get_logger(__name__)


class SessionStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    DISCONNECTED = "disconnected"


def describe_exception(exc: BaseException) -> str:
    """Readable message for an exception, unwrapping exception groups."""
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    return str(exc) or type(exc).__name__


class ServerConnection:
    """
    Represents a long-lived MCP server connection.

    Includes:
    - The descriptor it was created from
    - The ClientSession to the server, once the transport is open
    - Its status, last error and cached capabilities
    """

    def __init__(
        self,
        descriptor: ServerDescriptor,
        transport_factory: TransportFactory,
        read_timeout_seconds: Optional[float] = None,
        keepalive_interval_seconds: Optional[float] = None,
        keepalive_timeout_seconds: float = 10.0,
    ):
        self.descriptor = descriptor
        self.session: Optional[ChatBridgeClientSession] = None
        self.status = SessionStatus.CONNECTING
        self.error: Optional[str] = None
        self.capabilities: Optional[CapabilitySet] = None
        self.exit_code: Optional[int] = None

        self._transport_factory = transport_factory
        self._read_timeout_seconds = read_timeout_seconds
        self._keepalive_interval = keepalive_interval_seconds
        self._keepalive_timeout = keepalive_timeout_seconds

        # Signal that session is fully up and initialized (or failed)
        self._initialized_event = Event()
        # Signal we want to shut down
        self._shutdown_event = Event()
        # Signal the transport died without being asked to
        self._transport_exited = Event()
        # Signal the lifecycle task has released everything
        self._closed_event = Event()
        # Entered by the lifecycle task; cancelling it aborts a stuck transport
        self.cancel_scope = anyio.CancelScope()

    @property
    def server_id(self) -> str:
        return self.descriptor.id

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_event.is_set()

    def request_shutdown(self) -> None:
        """
        Request the connection to shut down. Signals the lifecycle task to exit.
        """
        self._shutdown_event.set()

    def cancel(self) -> None:
        """
        Abort the lifecycle task wherever it is, e.g. stuck in a handshake.
        """
        self.request_shutdown()
        self.cancel_scope.cancel()

    def mark_failed(self, message: str) -> None:
        if self.status != SessionStatus.ERROR:
            logger.error(f"{self.server_id}: {message}")
        self.status = SessionStatus.ERROR
        self.error = message

    def handle_transport_exit(self, returncode: Optional[int]) -> None:
        """Exit callback for transports that own a child process."""
        self.exit_code = returncode
        if not self.is_shutting_down:
            self._transport_exited.set()

    def open_transport(self):
        return self._transport_factory(self.descriptor, self.handle_transport_exit)

    def create_session(self, read_stream, send_stream) -> ChatBridgeClientSession:
        """
        Create a new session instance for this server connection.
        """
        seconds = self.descriptor.read_timeout_seconds or self._read_timeout_seconds
        read_timeout = timedelta(seconds=seconds) if seconds else None

        self.session = ChatBridgeClientSession(
            read_stream,
            send_stream,
            read_timeout,
            server_id=self.server_id,
        )
        return self.session

    async def initialize_session(self) -> None:
        """
        Perform the protocol handshake. Must be called within the lifecycle task.
        """
        result = await self.session.initialize()
        server_info = getattr(result, "serverInfo", None)
        logger.info(
            f"{self.server_id}: Initialized",
            data={"server": getattr(server_info, "name", None), "version": getattr(server_info, "version", None)},
        )
        self.status = SessionStatus.CONNECTED
        self._initialized_event.set()

    async def wait_for_initialized(self) -> None:
        await self._initialized_event.wait()

    async def wait_for_closed(self) -> None:
        await self._closed_event.wait()

    async def wait_until_done(self) -> None:
        """
        Park until shutdown is requested, watching the transport meanwhile.
        """
        async with create_task_group() as tg:
            tg.start_soon(self._watch_liveness)
            await self._shutdown_event.wait()
            tg.cancel_scope.cancel()

    async def _watch_liveness(self) -> None:
        while True:
            with anyio.move_on_after(self._keepalive_interval):
                await self._transport_exited.wait()

            if self._transport_exited.is_set():
                self.mark_failed(f"Server process exited unexpectedly with code {self.exit_code}")
                self.request_shutdown()
                return

            try:
                with anyio.fail_after(self._keepalive_timeout):
                    await self.session.send_ping()
            except Exception as exc:
                self.mark_failed(f"Liveness check failed: {describe_exception(exc)}")
                self.request_shutdown()
                return


async def _server_lifecycle_task(server_conn: ServerConnection) -> None:
    """
    Manage the lifecycle of a single server connection.
    Runs inside the ConnectionManager's shared TaskGroup, so the transport
    is entered and exited by the same task.
    """
    server_id = server_conn.server_id
    try:
        with server_conn.cancel_scope:
            async with server_conn.open_transport() as (read_stream, write_stream):
                server_conn.create_session(read_stream, write_stream)

                async with server_conn.session:
                    await server_conn.initialize_session()
                    await server_conn.wait_until_done()
    except Exception as exc:
        message = describe_exception(exc)
        if server_conn._transport_exited.is_set():
            message = f"Server process exited with code {server_conn.exit_code}: {message}"
        if not server_conn.is_shutting_down or server_conn.status == SessionStatus.CONNECTING:
            server_conn.mark_failed(f"Lifecycle task encountered an error: {message}")
        else:
            logger.debug(f"{server_id}: Error while closing transport: {message}")
        # Don't re-raise: it would cancel every other connection in the task group
    finally:
        if server_conn.status == SessionStatus.CONNECTING:
            server_conn.mark_failed("Connection closed before initialization completed")
        elif server_conn.status == SessionStatus.CONNECTED:
            server_conn.status = SessionStatus.DISCONNECTED
        server_conn.session = None
        # Make sure nobody waiting on these hangs
        server_conn._initialized_event.set()
        server_conn._closed_event.set()
        logger.debug(f"{server_id}: Lifecycle task finished ({server_conn.status.value})")


class ConnectionManager:
    """
    Manages the lifecycle of multiple MCP server connections.

    At most one connection exists per server id. Operations on the same id
    are serialized; different ids proceed independently.
    """

    def __init__(
        self,
        settings: Optional[MCPSettings] = None,
        transport_factory: TransportFactory = open_transport,
    ):
        self.settings = settings or MCPSettings()
        self.transport_factory = transport_factory
        self.running_servers: Dict[str, ServerConnection] = {}
        self._server_locks: Dict[str, Lock] = {}
        self._server_lock_users: Dict[str, int] = {}
        self._tg: Optional[TaskGroup] = None

    async def __aenter__(self):
        # We create a task group to manage all server lifecycle tasks
        self._tg = create_task_group()
        await self._tg.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        logger.debug("ConnectionManager: shutting down all server tasks...")
        try:
            await self.disconnect_all()
        finally:
            tg, self._tg = self._tg, None
            if tg:
                await tg.__aexit__(exc_type, exc_val, exc_tb)
            self.running_servers.clear()

    @asynccontextmanager
    async def _server_lock(self, server_id: str):
        """
        Hold the lock serializing connect and disconnect for one id. The lock
        is dropped once nobody holds or waits for it and the id has no
        connection left.
        """
        lock = self._server_locks.get(server_id)
        if lock is None:
            lock = self._server_locks[server_id] = Lock()
        self._server_lock_users[server_id] = self._server_lock_users.get(server_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._server_lock_users[server_id] - 1
            if users == 0 and server_id not in self.running_servers:
                del self._server_lock_users[server_id]
                del self._server_locks[server_id]
            else:
                self._server_lock_users[server_id] = users

    async def connect(self, descriptor: ServerDescriptor) -> CapabilitySet:
        """
        Connect to a server and return its capabilities.

        An existing connection with the same id is torn down first. On
        failure the connection is kept in `error` status and
        ServerConnectionError is raised.
        """
        if not self._tg:
            raise RuntimeError(
                "ConnectionManager must be used inside an async context (i.e. 'async with' or after __aenter__)."
            )

        server_id = descriptor.id
        async with self._server_lock(server_id):
            await self._teardown(server_id)

            server_conn = ServerConnection(
                descriptor=descriptor,
                transport_factory=self.transport_factory,
                read_timeout_seconds=self.settings.read_timeout_seconds,
                keepalive_interval_seconds=self.settings.keepalive_interval_seconds,
                keepalive_timeout_seconds=self.settings.keepalive_timeout_seconds,
            )
            self.running_servers[server_id] = server_conn
            logger.info(
                f"{server_id}: Connecting to '{descriptor.name}' over {descriptor.transport.value}..."
            )
            self._tg.start_soon(_server_lifecycle_task, server_conn)

            with anyio.move_on_after(self.settings.connect_timeout_seconds) as scope:
                await server_conn.wait_for_initialized()
            if scope.cancelled_caught:
                server_conn.mark_failed(
                    f"Timed out after {self.settings.connect_timeout_seconds}s waiting for handshake"
                )
                server_conn.cancel()

            if server_conn.status != SessionStatus.CONNECTED:
                raise ServerConnectionError(
                    server_conn.error or f"{server_id}: Failed to initialize server",
                    server_id=server_id,
                )

            capabilities = await discover_capabilities(
                server_conn.session,
                timeout=self.settings.discovery_timeout_seconds,
                server_id=server_id,
            )
            server_conn.capabilities = capabilities

        logger.info(f"{server_id}: Up and running with a persistent connection!")
        return capabilities

    async def _teardown(self, server_id: str) -> None:
        """
        Remove and close a connection. Caller must hold the server lock.

        Teardown is best effort: failures are logged, never raised.
        """
        server_conn = self.running_servers.pop(server_id, None)
        if server_conn is None:
            return

        server_conn.request_shutdown()
        with anyio.move_on_after(self.settings.close_timeout_seconds) as scope:
            await server_conn.wait_for_closed()
        if scope.cancelled_caught:
            logger.warning(
                f"{server_id}: Transport did not close within {self.settings.close_timeout_seconds}s; cancelling it"
            )
            server_conn.cancel()
            with anyio.move_on_after(self.settings.close_timeout_seconds):
                await server_conn.wait_for_closed()
        logger.info(f"{server_id}: Disconnected.")

    async def disconnect(self, server_id: str) -> None:
        """
        Disconnect a server. A no-op when it is not known.
        """
        async with self._server_lock(server_id):
            if server_id not in self.running_servers:
                logger.debug(f"{server_id}: No connection found. Skipping disconnect")
                return
            logger.info(f"{server_id}: Disconnecting persistent connection to server...")
            try:
                await self._teardown(server_id)
            except Exception as exc:
                logger.error(f"{server_id}: Error during disconnect: {exc}")

    async def disconnect_all(self) -> None:
        """
        Disconnect every server concurrently.
        """
        server_ids = list(self.running_servers)
        if not server_ids:
            return
        logger.info("Disconnecting all persistent server connections...")
        async with create_task_group() as tg:
            for server_id in server_ids:
                tg.start_soon(self.disconnect, server_id)
        logger.info("All persistent server connections closed.")

    def get_connection(self, server_id: str) -> Optional[ServerConnection]:
        return self.running_servers.get(server_id)

    def has_session(self, server_id: str) -> bool:
        """True while any connection attempt for the id has not been torn down."""
        return server_id in self.running_servers

    def get_session(self, server_id: str) -> Optional[ChatBridgeClientSession]:
        """
        Borrow the live session for a server. Do not keep it beyond the call.
        """
        server_conn = self.running_servers.get(server_id)
        if server_conn is None or server_conn.status != SessionStatus.CONNECTED:
            return None
        return server_conn.session

    def status(self, server_id: str) -> SessionStatus:
        server_conn = self.running_servers.get(server_id)
        return server_conn.status if server_conn else SessionStatus.DISCONNECTED

    def get_error(self, server_id: str) -> Optional[str]:
        server_conn = self.running_servers.get(server_id)
        return server_conn.error if server_conn else None

    def is_connected(self, server_id: str) -> bool:
        return self.status(server_id) == SessionStatus.CONNECTED

    def list_connected_ids(self) -> Set[str]:
        return {
            server_id
            for server_id, server_conn in self.running_servers.items()
            if server_conn.status == SessionStatus.CONNECTED
        }

    def get_capabilities(self, server_id: str) -> Optional[CapabilitySet]:
        server_conn = self.running_servers.get(server_id)
        return server_conn.capabilities if server_conn else None

    def _require_connection(self, server_id: str) -> ServerConnection:
        server_conn = self.running_servers.get(server_id)
        if server_conn is None or server_conn.status != SessionStatus.CONNECTED:
            raise ServerConnectionError(f"Server {server_id} is not connected", server_id=server_id)
        return server_conn

    async def refresh_capabilities(self, server_id: str) -> CapabilitySet:
        """
        Re-query a server's capabilities and swap the cached set.
        """
        server_conn = self._require_connection(server_id)
        capabilities = await discover_capabilities(
            server_conn.session,
            timeout=self.settings.discovery_timeout_seconds,
            server_id=server_id,
        )
        server_conn.capabilities = capabilities
        return capabilities

    async def execute_tool(
        self, server_id: str, tool_name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> ToolResult:
        server_conn = self._require_connection(server_id)
        tool = server_conn.capabilities.get_tool(tool_name) if server_conn.capabilities else None
        arguments = validate_tool_arguments(tool, arguments)

        logger.info(
            "Requesting tool call",
            data={"server_id": server_id, "tool_name": tool_name},
        )
        result = await server_conn.session.call_tool(name=tool_name, arguments=arguments)
        return normalize_tool_result(result)

    async def get_prompt(
        self, server_id: str, prompt_name: str, arguments: Optional[Dict[str, str]] = None
    ) -> PromptResult:
        server_conn = self._require_connection(server_id)
        result = await server_conn.session.get_prompt(prompt_name, arguments=arguments)
        return normalize_prompt_result(result)

    async def read_resource(self, server_id: str, uri: str) -> ResourceResult:
        server_conn = self._require_connection(server_id)
        result = await server_conn.session.read_resource(uri)
        return normalize_resource_result(result)

    def connected_capabilities(self, server_ids: Optional[List[str]] = None) -> Dict[str, CapabilitySet]:
        """Cached capability sets of connected servers, in connection order."""
        wanted = set(server_ids) if server_ids is not None else None
        return {
            server_id: server_conn.capabilities
            for server_id, server_conn in self.running_servers.items()
            if server_conn.status == SessionStatus.CONNECTED
            and server_conn.capabilities is not None
            and (wanted is None or server_id in wanted)
        }
