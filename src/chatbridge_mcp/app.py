"""
Main application class for the ChatBridge MCP framework.
"""

import uuid
from contextlib import asynccontextmanager
from typing import Optional

from chatbridge_mcp.chat.orchestrator import ChatOrchestrator
from chatbridge_mcp.chat.providers import GenerationProvider, create_provider
from chatbridge_mcp.config.descriptors import DescriptorStore
from chatbridge_mcp.config.settings import Settings, load_config
from chatbridge_mcp.mcp.connection_manager import ConnectionManager
from chatbridge_mcp.mcp.service import MCPService
from chatbridge_mcp.mcp.transports import TransportFactory, open_transport
from chatbridge_mcp.utils.logging import configure_logging, get_logger


class ChatBridgeApp:
    """
    Owns the connection manager, the descriptor table and the chat
    orchestrator for the lifetime of the process.

    Example usage:
        app = ChatBridgeApp()

        async with app.run() as running_app:
            async with running_app.orchestrator.run_turn(messages) as turn:
                async for event in turn.events():
                    ...
    """

    def __init__(
        self,
        name: str = "chatbridge",
        config_path: Optional[str] = None,
        settings: Optional[Settings] = None,
        provider: Optional[GenerationProvider] = None,
        transport_factory: TransportFactory = open_transport,
    ):
        """
        Args:
            name: Name of the application.
            config_path: Path to configuration file (if not provided, looks for chatbridge_mcp.config.yaml).
            settings: Configuration object (takes precedence over config_path).
            provider: Generation provider (defaults to the one named in settings).
            transport_factory: Opens MCP transports; replaced in tests.
        """
        self.name = name
        self._config_path = config_path
        self._settings = settings
        self._provider = provider
        self._transport_factory = transport_factory

        self._logger = None
        self._connection_manager: Optional[ConnectionManager] = None
        self._descriptor_store: Optional[DescriptorStore] = None
        self._mcp_service: Optional[MCPService] = None
        self._orchestrator: Optional[ChatOrchestrator] = None
        self._initialized = False
        self._session_id = None

    def _require_initialized(self):
        if not self._initialized:
            raise RuntimeError(
                "ChatBridgeApp not initialized. Please call initialize() first, or use async with app.run()."
            )

    @property
    def settings(self) -> Settings:
        self._require_initialized()
        return self._settings

    @property
    def connection_manager(self) -> ConnectionManager:
        self._require_initialized()
        return self._connection_manager

    @property
    def descriptor_store(self) -> DescriptorStore:
        self._require_initialized()
        return self._descriptor_store

    @property
    def mcp_service(self) -> MCPService:
        self._require_initialized()
        return self._mcp_service

    @property
    def orchestrator(self) -> ChatOrchestrator:
        self._require_initialized()
        return self._orchestrator

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def logger(self):
        if self._logger is None:
            self._logger = get_logger(f"chatbridge.{self.name}")
        return self._logger

    async def initialize(self):
        """Load configuration, start the connection manager and auto-connect servers."""
        if self._initialized:
            return

        if not self._session_id:
            self._session_id = str(uuid.uuid4())

        if self._settings is None:
            self._settings = load_config(self._config_path)

        logging_settings = self._settings.logging
        configure_logging(
            logging_settings.level,
            add_file_handler=logging_settings.file_path,
            console=logging_settings.console,
        )

        self._connection_manager = ConnectionManager(
            self._settings.mcp, transport_factory=self._transport_factory
        )
        await self._connection_manager.__aenter__()

        self._descriptor_store = DescriptorStore.from_settings(
            self._settings.mcp, self._connection_manager
        )
        self._mcp_service = MCPService(self._connection_manager, self._descriptor_store)
        self._orchestrator = ChatOrchestrator(
            self._provider or create_provider(self._settings),
            self._connection_manager,
            history_size=self._settings.chat.turn_history_size,
        )

        self._initialized = True
        self.logger.info(f"ChatBridgeApp initialized - app_name: {self.name}, session_id: {self._session_id}")

        await self.auto_connect()

    async def auto_connect(self) -> None:
        """Connect every descriptor flagged for auto-connect, one at a time."""
        for descriptor in self._descriptor_store.list_descriptors():
            if not descriptor.auto_connect:
                continue
            response = await self._mcp_service.connect(descriptor)
            if response.success:
                self.logger.info(f"{descriptor.id}: Auto-connected")
            else:
                self.logger.warning(f"{descriptor.id}: Auto-connect failed: {response.error}")

    async def cleanup(self):
        """Disconnect all servers and release resources."""
        if not self._initialized:
            return

        self.logger.info(f"ChatBridgeApp cleaning up - app_name: {self.name}, session_id: {self._session_id}")

        try:
            await self._connection_manager.__aexit__(None, None, None)
        finally:
            self._connection_manager = None
            self._descriptor_store = None
            self._mcp_service = None
            self._orchestrator = None
            self._initialized = False

    @asynccontextmanager
    async def run(self):
        """
        Run the application as an async context manager.

        Yields:
            The initialized application instance.
        """
        await self.initialize()
        try:
            yield self
        finally:
            await self.cleanup()
