"""
Tool binding: exposes the tools of connected servers to the generation
model and routes the model's function calls back to the right server.
"""

import re
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from pydantic import BaseModel

from chatbridge_mcp.mcp.capabilities import MCPTool, ToolResult
from chatbridge_mcp.utils.logging import get_logger

if TYPE_CHECKING:
    from chatbridge_mcp.mcp.connection_manager import ConnectionManager

logger = get_logger(__name__)

SEP = "-"

# Function names the Gemini API accepts
_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.\-]")
MAX_FUNCTION_NAME_LENGTH = 64


class NamespacedTool(BaseModel):
    """
    A tool together with the server that serves it and the name the model
    sees it under.
    """

    tool: MCPTool
    server_id: str
    exposed_name: str


def _function_name(name: str) -> str:
    cleaned = _INVALID_NAME_CHARS.sub("_", name)
    if not cleaned or not (cleaned[0].isalpha() or cleaned[0] == "_"):
        cleaned = f"_{cleaned}"
    return cleaned[:MAX_FUNCTION_NAME_LENGTH]


class ToolBinding:
    """
    Binds the tools of a set of connected servers for one chat turn.

    Tools keep their own names where possible. When two servers expose the
    same tool name, the later one is exposed as `<server_id>-<tool>`.
    """

    def __init__(
        self,
        connection_manager: "ConnectionManager",
        server_ids: Optional[List[str]] = None,
    ):
        self.connection_manager = connection_manager
        self.server_ids = server_ids
        self._tool_map: Dict[str, NamespacedTool] = {}
        self._server_to_tool_map: Dict[str, List[NamespacedTool]] = {}
        self.load()

    def load(self) -> None:
        """
        Snapshot the cached capabilities of the bound servers.
        """
        self._tool_map.clear()
        self._server_to_tool_map.clear()

        for server_id, capabilities in self.connection_manager.connected_capabilities(
            self.server_ids
        ).items():
            self._server_to_tool_map[server_id] = []
            for tool in capabilities.tools:
                exposed_name = _function_name(tool.name)
                if exposed_name in self._tool_map:
                    exposed_name = _function_name(f"{server_id}{SEP}{tool.name}")
                if exposed_name in self._tool_map:
                    logger.warning(
                        f"{server_id}: Skipping tool '{tool.name}', name already bound"
                    )
                    continue

                namespaced_tool = NamespacedTool(
                    tool=tool, server_id=server_id, exposed_name=exposed_name
                )
                self._tool_map[exposed_name] = namespaced_tool
                self._server_to_tool_map[server_id].append(namespaced_tool)

        logger.debug(
            "Tool binding loaded",
            data={
                "servers": list(self._server_to_tool_map),
                "tools_count": len(self._tool_map),
            },
        )

    def __len__(self) -> int:
        return len(self._tool_map)

    @property
    def bound_server_ids(self) -> List[str]:
        return list(self._server_to_tool_map)

    def list_tools(self) -> List[NamespacedTool]:
        return list(self._tool_map.values())

    def resolve(self, name: str) -> Optional[NamespacedTool]:
        """
        Find the tool behind a function name the model used.
        """
        if name in self._tool_map:
            return self._tool_map[name]

        # Tolerate a namespaced name even when the bare name was exposed
        if SEP in name:
            parts = name.split(SEP)
            for i in range(len(parts) - 1, 0, -1):
                server_id = SEP.join(parts[:i])
                local_name = SEP.join(parts[i:])
                for namespaced_tool in self._server_to_tool_map.get(server_id, []):
                    if namespaced_tool.tool.name == local_name:
                        return namespaced_tool
        return None

    def function_declarations(self) -> List[Dict[str, Any]]:
        """
        Gemini function declarations for every bound tool.
        """
        declarations = []
        for exposed_name, namespaced_tool in self._tool_map.items():
            declaration: Dict[str, Any] = {"name": exposed_name}
            if namespaced_tool.tool.description:
                declaration["description"] = namespaced_tool.tool.description
            if namespaced_tool.tool.input_schema:
                declaration["parametersJsonSchema"] = namespaced_tool.tool.input_schema
            declarations.append(declaration)
        return declarations

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResult:
        """
        Call a bound tool. Tool-level failures come back as error results.
        """
        namespaced_tool = self.resolve(name)
        if namespaced_tool is None:
            logger.error(f"Error: Tool '{name}' not found")
            return ToolResult.error(f"Tool '{name}' not found")

        server_id = namespaced_tool.server_id
        local_name = namespaced_tool.tool.name
        try:
            return await self.connection_manager.execute_tool(server_id, local_name, arguments)
        except Exception as e:
            logger.error(f"{server_id}: Tool '{local_name}' failed: {e}")
            return ToolResult.error(
                f"Failed to call tool '{local_name}' on server '{server_id}': {e}"
            )
