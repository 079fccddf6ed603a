"""
Capability-management surface consumed by UI layers.

Every call is request/response and returns an ApiResponse envelope rather
than raising; only malformed input raises ValidationError.
"""

from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from pydantic import BaseModel

from chatbridge_mcp.config.descriptors import DescriptorStore, ServerDescriptor, validate_model
from chatbridge_mcp.errors import ValidationError
from chatbridge_mcp.mcp.connection_manager import ConnectionManager
from chatbridge_mcp.utils.logging import get_logger

logger = get_logger(__name__)


class ApiResponse(BaseModel):
    """Envelope returned by every management call."""

    success: bool
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "ApiResponse":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "ApiResponse":
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    return value


def _optional_object(value: Any, field: str) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise ValidationError(f"{field} must be an object")
    return dict(value)


class MCPService:
    """
    Request/response facade over the ConnectionManager.
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        descriptor_store: Optional[DescriptorStore] = None,
    ):
        self.connection_manager = connection_manager
        self.descriptor_store = descriptor_store

    async def _call(
        self, action: str, server_id: Optional[str], call: Callable[[], Awaitable[Any]]
    ) -> ApiResponse:
        try:
            return ApiResponse.ok(await call())
        except ValidationError:
            raise
        except Exception as exc:
            prefix = f"{server_id}: " if server_id else ""
            logger.error(f"{prefix}Error in {action}: {exc}")
            return ApiResponse.fail(str(exc) or f"Failed to {action}")

    def _resolve_descriptor(
        self, payload: Union[str, ServerDescriptor, Mapping[str, Any]]
    ) -> ServerDescriptor:
        if isinstance(payload, ServerDescriptor):
            return payload
        if isinstance(payload, str):
            descriptor = self.descriptor_store.get(payload) if self.descriptor_store else None
            if descriptor is None:
                raise ValidationError(f"Server '{payload}' is not registered")
            return descriptor
        if not isinstance(payload, Mapping):
            raise ValidationError("Server configuration must be an object")

        missing = [
            field for field in ("id", "name") if not payload.get(field)
        ]
        if not (payload.get("transport") or payload.get("type")):
            missing.append("transport")
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        return validate_model(ServerDescriptor, payload)

    async def connect(
        self, payload: Union[str, ServerDescriptor, Mapping[str, Any]]
    ) -> ApiResponse:
        """
        Connect a server given a descriptor, a descriptor payload, or the id
        of a registered descriptor.
        """
        descriptor = self._resolve_descriptor(payload)
        return await self._call(
            "connect to MCP server",
            descriptor.id,
            lambda: self.connection_manager.connect(descriptor),
        )

    async def disconnect(self, server_id: Any) -> ApiResponse:
        server_id = _require_text(server_id, "serverId")
        return await self._call(
            "disconnect from MCP server",
            server_id,
            lambda: self.connection_manager.disconnect(server_id),
        )

    async def status(self, server_id: Any) -> ApiResponse:
        server_id = _require_text(server_id, "serverId")

        async def get_status():
            return {
                "status": self.connection_manager.status(server_id).value,
                "error": self.connection_manager.get_error(server_id),
            }

        return await self._call("get MCP status", server_id, get_status)

    async def connected_ids(self) -> ApiResponse:
        async def get_ids():
            return sorted(self.connection_manager.list_connected_ids())

        return await self._call("get MCP status", None, get_ids)

    async def list_tools(self, server_id: Any) -> ApiResponse:
        server_id = _require_text(server_id, "serverId")

        async def get_tools():
            capabilities = await self.connection_manager.refresh_capabilities(server_id)
            return capabilities.tools

        return await self._call("list tools", server_id, get_tools)

    async def list_prompts(self, server_id: Any) -> ApiResponse:
        server_id = _require_text(server_id, "serverId")

        async def get_prompts():
            capabilities = await self.connection_manager.refresh_capabilities(server_id)
            return capabilities.prompts

        return await self._call("list prompts", server_id, get_prompts)

    async def list_resources(self, server_id: Any) -> ApiResponse:
        server_id = _require_text(server_id, "serverId")

        async def get_resources():
            capabilities = await self.connection_manager.refresh_capabilities(server_id)
            return {
                "resources": capabilities.resources,
                "resourceTemplates": capabilities.resource_templates,
            }

        return await self._call("list resources", server_id, get_resources)

    async def execute_tool(self, server_id: Any, tool_name: Any, arguments: Any = None) -> ApiResponse:
        server_id = _require_text(server_id, "serverId")
        tool_name = _require_text(tool_name, "Tool name")
        arguments = _optional_object(arguments, "arguments")
        return await self._call(
            "execute tool",
            server_id,
            lambda: self.connection_manager.execute_tool(server_id, tool_name, arguments),
        )

    async def get_prompt(self, server_id: Any, prompt_name: Any, arguments: Any = None) -> ApiResponse:
        server_id = _require_text(server_id, "serverId")
        prompt_name = _require_text(prompt_name, "Prompt name")
        arguments = _optional_object(arguments, "arguments")
        if arguments is not None:
            arguments = {key: str(value) for key, value in arguments.items()}
        return await self._call(
            "get prompt",
            server_id,
            lambda: self.connection_manager.get_prompt(server_id, prompt_name, arguments),
        )

    async def read_resource(self, server_id: Any, uri: Any) -> ApiResponse:
        server_id = _require_text(server_id, "serverId")
        uri = _require_text(uri, "URI")
        return await self._call(
            "read resource",
            server_id,
            lambda: self.connection_manager.read_resource(server_id, uri),
        )
