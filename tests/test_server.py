import json

import pytest
from aiohttp.test_utils import TestClient, TestServer

from chatbridge_mcp.app import ChatBridgeApp
from chatbridge_mcp.chat.models import TurnState
from chatbridge_mcp.chat.providers import FunctionCall, GenerationChunk, MockProvider
from chatbridge_mcp.config.settings import Settings
from chatbridge_mcp.server import create_app

from conftest import fast_settings

pytestmark = pytest.mark.anyio


def app_settings(**mcp_overrides) -> Settings:
    mcp = fast_settings(**mcp_overrides).model_dump()
    mcp["servers"] = {
        "demo": {"name": "Demo", "command": "in-memory", "auto_connect": True},
        "other": {"name": "Other", "command": "in-memory"},
    }
    return Settings.model_validate(
        {"mcp": mcp, "chat": {"provider": "mock"}, "logging": {"level": "warning"}}
    )


@pytest.fixture
def provider():
    return MockProvider()


@pytest.fixture
async def client(transports, provider):
    chat_app = ChatBridgeApp(settings=app_settings(), provider=provider, transport_factory=transports)
    async with chat_app.run() as running_app:
        test_client = TestClient(TestServer(create_app(running_app)))
        await test_client.start_server()
        try:
            yield test_client
        finally:
            await test_client.close()


async def read_ndjson(response):
    body = await response.text()
    return [json.loads(line) for line in body.splitlines() if line]


async def test_health_and_auto_connect(client):
    response = await client.get("/health")
    assert response.status == 200
    assert await response.json() == {"status": "ok", "connectedServers": 1}

    status = await client.get("/api/mcp/status")
    assert await status.json() == {"success": True, "data": ["demo"]}


async def test_chat_streams_ndjson(client):
    response = await client.post("/api/chat", json={"messages": [{"role": "user", "content": "ping"}]})

    assert response.status == 200
    assert response.headers["Content-Type"].startswith("application/x-ndjson")
    assert await read_ndjson(response) == [{"type": "text", "content": "You said: ping"}]
    turn_id = response.headers["X-Turn-Id"]

    status = await client.get(f"/api/chat/{turn_id}")
    assert (await status.json())["data"] == {"turnId": turn_id, "state": TurnState.COMPLETED.value}


async def test_chat_with_tools(client, provider):
    provider.script = [
        [GenerationChunk(function_calls=[FunctionCall(name="echo", args={"text": "hey"})])],
        [GenerationChunk(text="The tool said hey")],
    ]

    response = await client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "echo hey"}], "useMcpTools": True},
    )

    events = await read_ndjson(response)
    assert [event["type"] for event in events] == ["tool_call", "text"]
    assert events[0]["name"] == "echo"
    assert "toolCallId" in events[0]


@pytest.mark.parametrize(
    "body",
    [
        {"messages": []},
        {"messages": [{"role": "user", "content": "   "}]},
        {"nothing": True},
    ],
)
async def test_chat_validation_is_400(client, provider, body):
    response = await client.post("/api/chat", json=body)

    assert response.status == 400
    payload = await response.json()
    assert payload["success"] is False
    assert provider.requests == []


async def test_chat_invalid_json_is_400(client):
    response = await client.post("/api/chat", data="{not json", headers={"Content-Type": "application/json"})
    assert response.status == 400


async def test_chat_rate_limit_before_first_event_is_429(client, provider):
    provider.script = [[RuntimeError("429 Too Many Requests")]]

    response = await client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})

    assert response.status == 429
    payload = await response.json()
    assert payload["success"] is False
    assert payload["code"] == "rate_limit"


async def test_chat_failure_after_events_ends_with_error_event(client, provider):
    provider.script = [[GenerationChunk(text="partial"), RuntimeError("stream broke")]]

    response = await client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})

    assert response.status == 200
    events = await read_ndjson(response)
    assert events[0] == {"type": "text", "content": "partial"}
    assert events[-1]["type"] == "error"
    assert events[-1]["code"] == "generation_error"


async def test_connect_disconnect_and_capabilities(client):
    connected = await client.post("/api/mcp/connect", json={"serverId": "other"})
    assert connected.status == 200
    assert {tool["name"] for tool in (await connected.json())["data"]["tools"]} == {"add", "echo", "explode"}

    tools = await client.get("/api/mcp/servers/other/tools")
    assert len((await tools.json())["data"]) == 3

    prompts = await client.get("/api/mcp/servers/other/prompts")
    assert (await prompts.json())["data"][0]["name"] == "greet"

    resources = await client.get("/api/mcp/servers/other/resources")
    assert (await resources.json())["data"]["resources"][0]["uri"] == "note://readme"

    executed = await client.post(
        "/api/mcp/servers/other/tools/execute", json={"toolName": "add", "arguments": {"a": 1, "b": 2}}
    )
    assert (await executed.json())["data"]["content"][0]["text"] == "3"

    prompt = await client.post(
        "/api/mcp/servers/other/prompts/execute", json={"promptName": "greet", "arguments": {"name": "Bo"}}
    )
    assert (await prompt.json())["data"]["messages"][0]["content"]["text"] == "Say hello to Bo"

    resource = await client.post("/api/mcp/servers/other/resources/read", json={"uri": "note://readme"})
    assert (await resource.json())["data"]["contents"][0]["mimeType"] == "text/plain"

    server_status = await client.get("/api/mcp/servers/other/status")
    assert (await server_status.json())["data"]["status"] == "connected"

    disconnected = await client.post("/api/mcp/disconnect", json={"serverId": "other"})
    assert await disconnected.json() == {"success": True}

    server_status = await client.get("/api/mcp/servers/other/status")
    assert (await server_status.json())["data"]["status"] == "disconnected"


async def test_connect_with_full_descriptor(client):
    response = await client.post(
        "/api/mcp/connect", json={"id": "other", "name": "Other", "type": "stdio", "command": "in-memory"}
    )
    assert response.status == 200
    assert (await response.json())["success"] is True


async def test_connect_validation_and_failures(client):
    missing_fields = await client.post("/api/mcp/connect", json={"name": "x"})
    assert missing_fields.status == 400
    assert "Missing required fields" in (await missing_fields.json())["error"]

    no_command = await client.post("/api/mcp/connect", json={"id": "x", "name": "x", "type": "stdio"})
    assert no_command.status == 400

    unreachable = await client.post(
        "/api/mcp/connect", json={"id": "ghost", "name": "Ghost", "type": "stdio", "command": "in-memory"}
    )
    assert unreachable.status == 500
    assert "No such server" in (await unreachable.json())["error"]

    no_id = await client.post("/api/mcp/disconnect", json={})
    assert no_id.status == 400


async def test_capability_routes_require_connection(client):
    response = await client.get("/api/mcp/servers/other/tools")
    assert response.status == 400
    assert (await response.json())["error"] == "Server is not connected"

    execute = await client.post("/api/mcp/servers/demo/tools/execute", json={})
    assert execute.status == 400
    assert (await execute.json())["error"] == "Tool name is required"


async def test_descriptor_export_and_import(client):
    listed = await client.get("/api/mcp/descriptors")
    assert [descriptor["id"] for descriptor in (await listed.json())["data"]] == ["demo", "other"]

    exported = await client.get("/api/mcp/descriptors/export")
    bundle = await exported.json()
    assert bundle["version"] == "1.0.0"
    assert [server["name"] for server in bundle["servers"]] == ["Demo", "Other"]

    imported = await client.post("/api/mcp/descriptors/import", json=bundle)
    data = (await imported.json())["data"]
    assert len(data) == 2
    assert all(descriptor["id"] not in ("demo", "other") for descriptor in data)

    listed = await client.get("/api/mcp/descriptors")
    assert len((await listed.json())["data"]) == 4

    bad = await client.post("/api/mcp/descriptors/import", json={"version": "9.0.0", "servers": []})
    assert bad.status == 400


async def test_unknown_turn_status_and_cancel(client):
    status = await client.get("/api/chat/nope")
    assert status.status == 400

    cancel = await client.post("/api/chat/nope/cancel")
    assert cancel.status == 400
    assert (await cancel.json())["error"] == "Unknown turn: nope"
