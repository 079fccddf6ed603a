import json
from typing import Any, Dict, List

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from chatbridge_mcp.chat.models import ChatMessage, ErrorCode, Role, TurnState
from chatbridge_mcp.chat.orchestrator import ChatOrchestrator
from chatbridge_mcp.chat.providers import GeminiProvider, parse_gemini_chunk
from chatbridge_mcp.config.settings import GeminiSettings
from chatbridge_mcp.errors import GenerationError, RateLimitError
from chatbridge_mcp.mcp.aggregator import ToolBinding

from conftest import memory_descriptor

pytestmark = pytest.mark.anyio

MESSAGES = [ChatMessage(role=Role.USER, content="What is 2 + 3?")]


def text_payload(text: str, finish_reason: str = None) -> Dict[str, Any]:
    candidate: Dict[str, Any] = {"content": {"role": "model", "parts": [{"text": text}]}}
    if finish_reason:
        candidate["finishReason"] = finish_reason
    return {"candidates": [candidate]}


class FakeGemini:
    """
    Minimal streamGenerateContent endpoint. Each request consumes one
    scripted response: a list of SSE payloads, or an (status, body) error.
    """

    def __init__(self, script: List[Any]):
        self.script = list(script)
        self.requests: List[Dict[str, Any]] = []

    async def handle(self, request: web.Request) -> web.StreamResponse:
        self.requests.append(
            {
                "action": request.match_info["action"],
                "query": dict(request.query),
                "api_key": request.headers.get("x-goog-api-key"),
                "body": await request.json(),
            }
        )
        step = self.script.pop(0)
        if isinstance(step, tuple):
            status, body = step
            return web.json_response(body, status=status)

        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        for payload in step:
            await response.write(f"data: {json.dumps(payload)}\r\n\r\n".encode("utf-8"))
        await response.write_eof()
        return response


@pytest.fixture
async def gemini_server():
    servers = []

    async def start(script):
        fake = FakeGemini(script)
        app = web.Application()
        app.router.add_post("/v1beta/models/{action}", fake.handle)
        server = TestServer(app)
        await server.start_server()
        servers.append(server)
        provider = GeminiProvider(
            GeminiSettings(
                api_key="test-key",
                api_base=str(server.make_url("/v1beta")),
                model="gemini-test",
                request_timeout_seconds=5,
            )
        )
        return fake, provider

    yield start

    for server in servers:
        await server.close()


async def collect(provider, binding=None):
    return [chunk async for chunk in provider.stream_generate(MESSAGES, binding)]


async def test_streams_text_chunks(gemini_server):
    fake, provider = await gemini_server(
        [[text_payload("Hello"), text_payload(", world", "STOP"), {"usageMetadata": {"totalTokenCount": 7}}]]
    )

    chunks = await collect(provider)

    assert [chunk.text for chunk in chunks] == ["Hello", ", world", None]
    [request] = fake.requests
    assert request["action"] == "gemini-test:streamGenerateContent"
    assert request["query"] == {"alt": "sse"}
    assert request["api_key"] == "test-key"
    assert request["body"] == {"contents": [{"role": "user", "parts": [{"text": "What is 2 + 3?"}]}]}


async def test_automatic_function_calling(gemini_server, manager):
    await manager.connect(memory_descriptor("demo"))
    binding = ToolBinding(manager)
    call_part = {"functionCall": {"name": "add", "args": {"a": 2, "b": 3}}, "thoughtSignature": "sig"}
    fake, provider = await gemini_server(
        [
            [{"candidates": [{"content": {"role": "model", "parts": [call_part]}}]}],
            [text_payload("2 + 3 = 5", "STOP")],
        ]
    )

    chunks = await collect(provider, binding)

    assert chunks[0].text is None
    assert chunks[0].function_calls[0].name == "add"
    assert chunks[1].function_responses[0].result.text == "5"
    assert chunks[2].text == "2 + 3 = 5"

    first_body = fake.requests[0]["body"]
    declarations = first_body["tools"][0]["functionDeclarations"]
    assert {declaration["name"] for declaration in declarations} == {"add", "echo", "explode"}

    second_contents = fake.requests[1]["body"]["contents"]
    # The model turn is echoed back verbatim, signature included
    assert second_contents[1] == {"role": "model", "parts": [call_part]}
    assert second_contents[2] == {
        "role": "user",
        "parts": [{"functionResponse": {"name": "add", "response": {"result": "5"}}}],
    }


async def test_rate_limit_response_raises_rate_limit_error(gemini_server):
    _, provider = await gemini_server(
        [(429, {"error": {"code": 429, "message": "Quota exceeded", "status": "RESOURCE_EXHAUSTED"}})]
    )

    with pytest.raises(RateLimitError) as exc_info:
        await collect(provider)
    assert exc_info.value.status == 429
    assert "Quota exceeded" in str(exc_info.value)


async def test_server_error_raises_generation_error(gemini_server):
    _, provider = await gemini_server([(500, {"error": {"code": 500, "message": "Internal", "status": "INTERNAL"}})])

    with pytest.raises(GenerationError) as exc_info:
        await collect(provider)
    assert not isinstance(exc_info.value, RateLimitError)
    assert exc_info.value.status == 500


async def test_error_payload_mid_stream(gemini_server):
    _, provider = await gemini_server(
        [[text_payload("partial"), {"error": {"code": 503, "message": "overloaded", "status": "UNAVAILABLE"}}]]
    )

    chunks = []
    with pytest.raises(GenerationError, match="overloaded"):
        async for chunk in provider.stream_generate(MESSAGES):
            chunks.append(chunk)
    assert [chunk.text for chunk in chunks] == ["partial"]


async def test_abnormal_finish_reason_fails(gemini_server):
    _, provider = await gemini_server([[{"candidates": [{"finishReason": "SAFETY"}]}]])

    with pytest.raises(GenerationError, match="SAFETY"):
        await collect(provider)


async def test_rate_limit_reaches_the_turn_as_error_event(gemini_server):
    _, provider = await gemini_server([(429, {"error": {"code": 429, "message": "Too many requests"}})])
    orchestrator = ChatOrchestrator(provider)

    async with orchestrator.run_turn([{"role": "user", "content": "hi"}]) as turn:
        events = [event async for event in turn.events()]

    assert len(events) == 1
    assert events[0].code == ErrorCode.RATE_LIMIT
    assert turn.state == TurnState.FAILED


async def test_missing_api_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    provider = GeminiProvider(GeminiSettings(api_key=None))
    provider.api_key = None

    with pytest.raises(GenerationError, match="GEMINI_API_KEY"):
        await collect(provider)


def test_function_call_only_chunk_has_no_text():
    chunk = parse_gemini_chunk(
        {
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {"text": "thinking...", "thought": True},
                            {"functionCall": {"id": "c1", "name": "search", "args": {"q": "x"}}},
                        ]
                    }
                }
            ]
        }
    )

    assert chunk.text is None
    assert chunk.function_calls[0].id == "c1"
    assert chunk.function_calls[0].args == {"q": "x"}
    assert len(chunk.raw_parts) == 2


def test_blocked_prompt_is_an_error():
    with pytest.raises(GenerationError, match="blocked"):
        parse_gemini_chunk({"promptFeedback": {"blockReason": "SAFETY"}})


def test_malformed_payload_is_an_error():
    with pytest.raises(GenerationError, match="Malformed"):
        parse_gemini_chunk({"unexpected": True})
