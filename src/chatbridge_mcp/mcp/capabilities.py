"""
Capability discovery and normalization.

Backend-native MCP shapes are converted into the small, immutable models
below; protocol fields outside this contract are dropped.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import anyio
from mcp import ClientSession
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from chatbridge_mcp.errors import ProtocolError, ValidationError
from chatbridge_mcp.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Upper bound on pages followed per discovery call
MAX_DISCOVERY_PAGES = 50


class _Frozen(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class MCPTool(_Frozen):
    name: str
    description: Optional[str] = None
    input_schema: Optional[Dict[str, Any]] = None


class MCPPromptArgument(_Frozen):
    name: str
    description: Optional[str] = None
    required: Optional[bool] = None


class MCPPrompt(_Frozen):
    name: str
    description: Optional[str] = None
    arguments: Optional[List[MCPPromptArgument]] = None


class MCPResource(_Frozen):
    uri: str
    name: str
    description: Optional[str] = None
    mime_type: Optional[str] = None


class MCPResourceTemplate(_Frozen):
    uri_template: str
    name: str
    description: Optional[str] = None
    mime_type: Optional[str] = None


class CapabilitySet(_Frozen):
    """Immutable snapshot of what one server offers."""

    tools: List[MCPTool] = Field(default_factory=list)
    prompts: List[MCPPrompt] = Field(default_factory=list)
    resources: List[MCPResource] = Field(default_factory=list)
    resource_templates: List[MCPResourceTemplate] = Field(default_factory=list)

    def get_tool(self, name: str) -> Optional[MCPTool]:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None


class ContentBlock(_Frozen):
    """One typed piece of content: text, or binary data with a mime type."""

    type: str
    text: Optional[str] = None
    data: Optional[str] = None
    mime_type: Optional[str] = None
    uri: Optional[str] = None


class ToolResult(_Frozen):
    content: List[ContentBlock] = Field(default_factory=list)
    is_error: bool = False

    @property
    def text(self) -> str:
        return "\n".join(block.text for block in self.content if block.text)

    @classmethod
    def error(cls, message: str) -> "ToolResult":
        return cls(content=[ContentBlock(type="text", text=message)], is_error=True)


class PromptMessage(_Frozen):
    role: str
    content: ContentBlock


class PromptResult(_Frozen):
    description: Optional[str] = None
    messages: List[PromptMessage] = Field(default_factory=list)


class ResourceContent(_Frozen):
    uri: str
    mime_type: Optional[str] = None
    text: Optional[str] = None
    blob: Optional[str] = None


class ResourceResult(_Frozen):
    contents: List[ResourceContent] = Field(default_factory=list)


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def normalize_tool(tool: Any) -> MCPTool:
    return MCPTool(
        name=tool.name,
        description=tool.description,
        input_schema=dict(tool.inputSchema) if tool.inputSchema is not None else None,
    )


def normalize_prompt(prompt: Any) -> MCPPrompt:
    arguments = None
    if prompt.arguments is not None:
        arguments = [
            MCPPromptArgument(
                name=argument.name,
                description=argument.description,
                required=argument.required,
            )
            for argument in prompt.arguments
        ]
    return MCPPrompt(name=prompt.name, description=prompt.description, arguments=arguments)


def normalize_resource(resource: Any) -> MCPResource:
    return MCPResource(
        uri=str(resource.uri),
        name=resource.name,
        description=resource.description,
        mime_type=resource.mimeType,
    )


def normalize_resource_template(template: Any) -> MCPResourceTemplate:
    return MCPResourceTemplate(
        uri_template=template.uriTemplate,
        name=template.name,
        description=template.description,
        mime_type=template.mimeType,
    )


def normalize_content_block(block: Any) -> ContentBlock:
    """
    Flatten an MCP content block (text, image, audio, embedded resource or
    resource link) into a ContentBlock.
    """
    block_type = getattr(block, "type", "unknown")

    if block_type == "resource":
        # Embedded resource: lift the inner text or blob
        resource = block.resource
        return ContentBlock(
            type=block_type,
            text=getattr(resource, "text", None),
            data=getattr(resource, "blob", None),
            mime_type=getattr(resource, "mimeType", None),
            uri=_optional_str(getattr(resource, "uri", None)),
        )

    return ContentBlock(
        type=block_type,
        text=getattr(block, "text", None),
        data=getattr(block, "data", None),
        mime_type=getattr(block, "mimeType", None),
        uri=_optional_str(getattr(block, "uri", None)),
    )


def normalize_tool_result(result: Any) -> ToolResult:
    return ToolResult(
        content=[normalize_content_block(block) for block in (result.content or [])],
        is_error=bool(getattr(result, "isError", False)),
    )


def normalize_prompt_result(result: Any) -> PromptResult:
    return PromptResult(
        description=result.description,
        messages=[
            PromptMessage(role=message.role, content=normalize_content_block(message.content))
            for message in (result.messages or [])
        ],
    )


def normalize_resource_result(result: Any) -> ResourceResult:
    return ResourceResult(
        contents=[
            ResourceContent(
                uri=str(content.uri),
                mime_type=content.mimeType,
                text=getattr(content, "text", None),
                blob=getattr(content, "blob", None),
            )
            for content in (result.contents or [])
        ]
    )


async def _collect_pages(
    fetch: Callable[[Optional[str]], Awaitable[Any]],
    items_attr: str,
) -> List[Any]:
    """Follow nextCursor until the server stops paginating."""
    items: List[Any] = []
    cursor: Optional[str] = None
    for _ in range(MAX_DISCOVERY_PAGES):
        page = await fetch(cursor)
        page_items = getattr(page, items_attr, None)
        if page_items is None:
            raise ProtocolError(f"Discovery response is missing '{items_attr}'")
        items.extend(page_items)
        cursor = getattr(page, "nextCursor", None)
        if not cursor:
            break
    return items


def _pager(method: Callable[..., Awaitable[Any]]) -> Callable[[Optional[str]], Awaitable[Any]]:
    async def fetch(cursor: Optional[str]) -> Any:
        if cursor is None:
            return await method()
        return await method(cursor=cursor)

    return fetch


async def discover_capabilities(
    session: ClientSession,
    timeout: Optional[float] = None,
    server_id: Optional[str] = None,
) -> CapabilitySet:
    """
    Query tools, prompts and resources of a session concurrently.

    Each category is fetched independently and bounded by `timeout`. A
    failing category degrades to an empty list; the whole discovery never
    fails because one category is unsupported or broken.

    Args:
        session: An initialized client session.
        timeout: Per-call bound in seconds, or None for no bound.
        server_id: Used for log messages only.

    Returns:
        CapabilitySet: The normalized capabilities.
    """
    prefix = f"{server_id}: " if server_id else ""
    results: Dict[str, List[Any]] = {}

    async def fetch_category(
        category: str,
        fetch: Callable[[Optional[str]], Awaitable[Any]],
        items_attr: str,
        normalize: Callable[[Any], T],
    ) -> None:
        try:
            with anyio.fail_after(timeout):
                raw_items = await _collect_pages(fetch, items_attr)
            results[category] = [normalize(item) for item in raw_items]
        except Exception as exc:
            error = exc if isinstance(exc, ProtocolError) else ProtocolError(
                f"{category} discovery failed: {exc or type(exc).__name__}"
            )
            logger.warning(f"{prefix}{error}; treating {category} as empty")
            results[category] = []

    async with anyio.create_task_group() as tg:
        tg.start_soon(fetch_category, "tools", _pager(session.list_tools), "tools", normalize_tool)
        tg.start_soon(
            fetch_category, "prompts", _pager(session.list_prompts), "prompts", normalize_prompt
        )
        tg.start_soon(
            fetch_category,
            "resources",
            _pager(session.list_resources),
            "resources",
            normalize_resource,
        )
        tg.start_soon(
            fetch_category,
            "resource_templates",
            _pager(session.list_resource_templates),
            "resourceTemplates",
            normalize_resource_template,
        )

    capabilities = CapabilitySet(
        tools=results["tools"],
        prompts=results["prompts"],
        resources=results["resources"],
        resource_templates=results["resource_templates"],
    )
    logger.debug(
        f"{prefix}Discovered capabilities",
        data={
            "tools": len(capabilities.tools),
            "prompts": len(capabilities.prompts),
            "resources": len(capabilities.resources),
            "resource_templates": len(capabilities.resource_templates),
        },
    )
    return capabilities


_JSON_TYPES = {
    "object": dict,
    "array": list,
    "string": str,
    "boolean": bool,
    "integer": int,
    "number": (int, float),
}


def validate_tool_arguments(tool: Optional[MCPTool], arguments: Any) -> Dict[str, Any]:
    """
    Check invocation arguments against a tool's input schema.

    Validation is shallow and happens only at invocation time:
    the arguments must be an object, required properties must be present,
    and top-level properties with a simple declared type must match it.
    """
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise ValidationError(
            f"Tool arguments must be an object, got {type(arguments).__name__}"
        )
    if tool is None or not tool.input_schema:
        return arguments

    schema = tool.input_schema
    missing = [key for key in schema.get("required", []) if key not in arguments]
    if missing:
        raise ValidationError(
            f"Missing required argument(s) for tool '{tool.name}': {', '.join(missing)}"
        )

    properties = schema.get("properties") or {}
    for key, value in arguments.items():
        declared = properties.get(key, {}).get("type") if isinstance(properties.get(key), dict) else None
        expected = _JSON_TYPES.get(declared) if isinstance(declared, str) else None
        if expected is None or value is None:
            continue
        # bool is an int subclass; keep JSON semantics
        if isinstance(value, bool) and declared in ("integer", "number"):
            raise ValidationError(f"Argument '{key}' of tool '{tool.name}' must be {declared}")
        if not isinstance(value, expected):
            raise ValidationError(f"Argument '{key}' of tool '{tool.name}' must be {declared}")

    return arguments
