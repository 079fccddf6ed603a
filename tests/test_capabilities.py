import anyio
import pytest
from mcp import types

from chatbridge_mcp.errors import ValidationError
from chatbridge_mcp.mcp.capabilities import (
    MCPTool,
    discover_capabilities,
    normalize_tool_result,
    validate_tool_arguments,
)

pytestmark = pytest.mark.anyio


class StubSession:
    """Answers discovery calls from canned pages; `failing` categories raise."""

    def __init__(self, failing=(), hanging=(), tool_pages=None):
        self.failing = set(failing)
        self.hanging = set(hanging)
        self.tool_pages = tool_pages or {
            None: types.ListToolsResult(
                tools=[types.Tool(name="search", description="Search", inputSchema={"type": "object"})]
            )
        }

    async def _maybe_fail(self, category):
        if category in self.hanging:
            await anyio.sleep_forever()
        if category in self.failing:
            raise RuntimeError(f"{category} exploded")

    async def list_tools(self, cursor=None):
        await self._maybe_fail("tools")
        return self.tool_pages[cursor]

    async def list_prompts(self, cursor=None):
        await self._maybe_fail("prompts")
        return types.ListPromptsResult(
            prompts=[
                types.Prompt(
                    name="summarize",
                    arguments=[types.PromptArgument(name="topic", required=True)],
                )
            ]
        )

    async def list_resources(self, cursor=None):
        await self._maybe_fail("resources")
        return types.ListResourcesResult(
            resources=[types.Resource(uri="file:///notes.txt", name="notes", mimeType="text/plain")]
        )

    async def list_resource_templates(self, cursor=None):
        await self._maybe_fail("resource_templates")
        return types.ListResourceTemplatesResult(
            resourceTemplates=[types.ResourceTemplate(uriTemplate="file:///{path}", name="files")]
        )


async def test_discovery_collects_every_category():
    capabilities = await discover_capabilities(StubSession(), timeout=1)

    assert [tool.name for tool in capabilities.tools] == ["search"]
    assert capabilities.tools[0].input_schema == {"type": "object"}
    assert capabilities.prompts[0].arguments[0].name == "topic"
    assert capabilities.prompts[0].arguments[0].required is True
    assert capabilities.resources[0].uri == "file:///notes.txt"
    assert capabilities.resources[0].mime_type == "text/plain"
    assert capabilities.resource_templates[0].uri_template == "file:///{path}"


async def test_failing_category_degrades_to_empty():
    capabilities = await discover_capabilities(StubSession(failing={"prompts"}), timeout=1)

    assert capabilities.prompts == []
    assert [tool.name for tool in capabilities.tools] == ["search"]
    assert len(capabilities.resources) == 1


async def test_hanging_category_is_bounded_by_timeout():
    with anyio.fail_after(5):
        capabilities = await discover_capabilities(StubSession(hanging={"resources"}), timeout=0.1)

    assert capabilities.resources == []
    assert len(capabilities.tools) == 1


async def test_discovery_follows_pagination():
    pages = {
        None: types.ListToolsResult(
            tools=[types.Tool(name="first", inputSchema={"type": "object"})], nextCursor="page-2"
        ),
        "page-2": types.ListToolsResult(tools=[types.Tool(name="second", inputSchema={"type": "object"})]),
    }

    capabilities = await discover_capabilities(StubSession(tool_pages=pages), timeout=1)

    assert [tool.name for tool in capabilities.tools] == ["first", "second"]


def test_capability_models_serialize_camel_case():
    tool = MCPTool(name="search", input_schema={"type": "object"})
    assert tool.model_dump(by_alias=True, exclude_none=True) == {
        "name": "search",
        "inputSchema": {"type": "object"},
    }


def test_tool_result_normalization():
    result = types.CallToolResult(
        content=[
            types.TextContent(type="text", text="hello"),
            types.ImageContent(type="image", data="aGk=", mimeType="image/png"),
            types.EmbeddedResource(
                type="resource",
                resource=types.TextResourceContents(uri="file:///a.txt", text="inner", mimeType="text/plain"),
            ),
        ],
        isError=False,
    )

    normalized = normalize_tool_result(result)

    assert [block.type for block in normalized.content] == ["text", "image", "resource"]
    assert normalized.content[1].data == "aGk="
    assert normalized.content[1].mime_type == "image/png"
    assert normalized.content[2].text == "inner"
    assert normalized.content[2].uri == "file:///a.txt"
    assert normalized.text == "hello\ninner"


SCHEMA = {
    "type": "object",
    "properties": {
        "query": {"type": "string"},
        "limit": {"type": "integer"},
        "strict": {"type": "boolean"},
    },
    "required": ["query"],
}


def test_validate_tool_arguments_accepts_matching_object():
    tool = MCPTool(name="search", input_schema=SCHEMA)
    assert validate_tool_arguments(tool, {"query": "x", "limit": 3}) == {"query": "x", "limit": 3}
    assert validate_tool_arguments(None, None) == {}


@pytest.mark.parametrize(
    "arguments, message",
    [
        ("query", "must be an object"),
        ({"limit": 3}, "Missing required"),
        ({"query": 5}, "query"),
        ({"query": "x", "limit": True}, "limit"),
    ],
)
def test_validate_tool_arguments_rejects(arguments, message):
    tool = MCPTool(name="search", input_schema=SCHEMA)
    with pytest.raises(ValidationError, match=message):
        validate_tool_arguments(tool, arguments)
