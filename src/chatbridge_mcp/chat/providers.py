"""
Generation backends for the chat orchestrator.

A provider turns an ordered list of chat messages into a stream of
GenerationChunks. Providers also implement automatic function calling:
when the model asks for a function, the provider executes it through the
turn's ToolBinding, feeds the result back, and keeps streaming.
"""

import json
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

import aiohttp
import anyio
from pydantic import BaseModel, Field

from chatbridge_mcp.chat.models import ChatMessage, Role
from chatbridge_mcp.config.settings import GeminiSettings, Settings
from chatbridge_mcp.errors import GenerationError, classify_generation_error
from chatbridge_mcp.mcp.aggregator import ToolBinding
from chatbridge_mcp.mcp.capabilities import ToolResult
from chatbridge_mcp.utils.logging import get_logger

logger = get_logger(__name__)

Content = Dict[str, Any]

# Finish reasons that mean the candidate was cut short, not completed
ABNORMAL_FINISH_REASONS = frozenset({
    "SAFETY",
    "RECITATION",
    "BLOCKLIST",
    "PROHIBITED_CONTENT",
    "SPII",
    "MALFORMED_FUNCTION_CALL",
    "OTHER",
})


class FunctionCall(BaseModel):
    id: Optional[str] = None
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class FunctionResponse(BaseModel):
    id: Optional[str] = None
    name: str
    result: ToolResult

    def to_part(self) -> Content:
        key = "error" if self.result.is_error else "result"
        response: Content = {"name": self.name, "response": {key: self.result.text}}
        if self.id:
            response["id"] = self.id
        return {"functionResponse": response}


class GenerationChunk(BaseModel):
    """
    One increment of a generation stream.

    `text` is None when the increment carries no text, for example when it
    only requests function calls. That is distinct from a malformed
    response, which providers raise as GenerationError.
    """

    text: Optional[str] = None
    function_calls: List[FunctionCall] = Field(default_factory=list)
    function_responses: List[FunctionResponse] = Field(default_factory=list)
    finish_reason: Optional[str] = None
    # Parts as the backend sent them, echoed back on the next round
    raw_parts: List[Content] = Field(default_factory=list, exclude=True)


def to_content(message: ChatMessage) -> Content:
    return {"role": message.role.value, "parts": [{"text": message.content}]}


class GenerationProvider:
    """Base class for generation providers."""

    def __init__(self, max_remote_calls: int = 10):
        self.max_remote_calls = max_remote_calls

    def _stream_round(
        self, contents: List[Content], tool_binding: Optional[ToolBinding]
    ) -> AsyncIterator[GenerationChunk]:
        """
        Stream one model request. Subclasses must implement this.
        """
        raise NotImplementedError("Subclasses must implement _stream_round()")

    async def stream_generate(
        self,
        messages: Sequence[ChatMessage],
        tool_binding: Optional[ToolBinding] = None,
    ) -> AsyncIterator[GenerationChunk]:
        """
        Stream a model response, running requested functions along the way.

        Args:
            messages: Validated, non-empty conversation history.
            tool_binding: Tools exposed to the model, or None.

        Yields:
            GenerationChunk: Text and function-call increments in backend
            order, plus one chunk with the function responses after every
            round of calls.
        """
        contents = [to_content(message) for message in messages]
        rounds = 0

        while True:
            calls: List[FunctionCall] = []
            model_parts: List[Content] = []

            async with aclosing(self._stream_round(contents, tool_binding)) as round_chunks:
                async for chunk in round_chunks:
                    calls.extend(chunk.function_calls)
                    model_parts.extend(chunk.raw_parts)
                    yield chunk

            if not calls or tool_binding is None:
                return

            if rounds >= self.max_remote_calls:
                logger.warning(
                    f"Hit maximum remote calls ({self.max_remote_calls}) with function calls pending"
                )
                return
            rounds += 1

            responses = []
            for call in calls:
                logger.info(f"Calling tool: {call.name} with arguments: {call.args}")
                result = await tool_binding.call_tool(call.name, call.args)
                responses.append(FunctionResponse(id=call.id, name=call.name, result=result))
            yield GenerationChunk(function_responses=responses)

            contents.append({"role": Role.MODEL.value, "parts": model_parts})
            contents.append(
                {"role": Role.USER.value, "parts": [response.to_part() for response in responses]}
            )


def parse_gemini_chunk(payload: Dict[str, Any]) -> GenerationChunk:
    """
    Convert one streamGenerateContent payload into a GenerationChunk.

    Raises:
        GenerationError: For error payloads, blocked prompts, and payloads
            without any usable candidate.
    """
    if "error" in payload:
        raise gemini_error(payload["error"])

    candidates = payload.get("candidates") or []
    if not candidates:
        feedback = payload.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            raise GenerationError(f"Prompt was blocked: {feedback['blockReason']}")
        if "usageMetadata" in payload:
            # Trailing usage report
            return GenerationChunk()
        raise GenerationError(f"Malformed generation response: {json.dumps(payload)[:200]}")

    candidate = candidates[0]
    parts = (candidate.get("content") or {}).get("parts") or []

    texts: List[str] = []
    calls: List[FunctionCall] = []
    for part in parts:
        if part.get("thought"):
            continue
        if "functionCall" in part:
            function_call = part["functionCall"]
            calls.append(
                FunctionCall(
                    id=function_call.get("id"),
                    name=function_call["name"],
                    args=function_call.get("args") or {},
                )
            )
        elif "text" in part:
            texts.append(part["text"])

    return GenerationChunk(
        text="".join(texts) if texts else None,
        function_calls=calls,
        finish_reason=candidate.get("finishReason"),
        raw_parts=parts,
    )


def gemini_error(error: Any, status: Optional[int] = None) -> GenerationError:
    """Build a classified error from a Gemini error object or body."""
    if isinstance(error, dict):
        code = error.get("code", status)
        message = error.get("message") or json.dumps(error)
        if error.get("status"):
            message = f"{error['status']}: {message}"
    else:
        code = status
        message = str(error)
    return classify_generation_error(
        GenerationError(message, status=code if isinstance(code, int) else None)
    )


async def _iter_sse_data(stream: aiohttp.StreamReader) -> AsyncIterator[Dict[str, Any]]:
    """Yield the JSON payload of each server-sent event."""
    data_lines: List[str] = []
    async for raw_line in stream:
        line = raw_line.decode("utf-8").rstrip("\r\n")
        if not line:
            if data_lines:
                yield json.loads("\n".join(data_lines))
                data_lines = []
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    if data_lines:
        yield json.loads("\n".join(data_lines))


class GeminiProvider(GenerationProvider):
    """Google Gemini over the REST streaming API."""

    def __init__(self, settings: Optional[GeminiSettings] = None):
        settings = settings or GeminiSettings()
        super().__init__(max_remote_calls=settings.max_remote_calls)
        self.api_key = settings.api_key
        self.api_base = settings.api_base.rstrip("/")
        self.model = settings.model
        self.request_timeout = settings.request_timeout_seconds

    async def _stream_round(
        self, contents: List[Content], tool_binding: Optional[ToolBinding]
    ) -> AsyncIterator[GenerationChunk]:
        if not self.api_key:
            raise GenerationError("GEMINI_API_KEY is not set in environment variables.")

        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key,
        }
        payload: Dict[str, Any] = {"contents": contents}
        if tool_binding is not None and len(tool_binding):
            payload["tools"] = [{"functionDeclarations": tool_binding.function_declarations()}]

        timeout = aiohttp.ClientTimeout(total=None, sock_connect=30, sock_read=self.request_timeout)
        url = f"{self.api_base}/models/{self.model}:streamGenerateContent?alt=sse"

        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, headers=headers, json=payload) as response:
                if response.status != 200:
                    error_text = await response.text()
                    try:
                        body = json.loads(error_text)
                    except json.JSONDecodeError:
                        body = None
                    if isinstance(body, dict) and isinstance(body.get("error"), dict):
                        raise gemini_error(body["error"], status=response.status)
                    raise gemini_error(
                        f"Gemini API error: {response.status} - {error_text}",
                        status=response.status,
                    )

                async for event in _iter_sse_data(response.content):
                    chunk = parse_gemini_chunk(event)
                    yield chunk
                    if chunk.finish_reason in ABNORMAL_FINISH_REASONS:
                        raise GenerationError(f"Generation stopped early: {chunk.finish_reason}")


ScriptItem = Union[GenerationChunk, BaseException]


class MockProvider(GenerationProvider):
    """
    Scripted provider for tests and offline runs.

    Each round of the script is a list of chunks (or exceptions to raise)
    answering one model request. Without a script the provider echoes the
    last user message.
    """

    def __init__(
        self,
        script: Optional[List[List[ScriptItem]]] = None,
        chunk_delay: float = 0.0,
        max_remote_calls: int = 10,
    ):
        super().__init__(max_remote_calls=max_remote_calls)
        self.script = script
        self.chunk_delay = chunk_delay
        self.requests: List[List[Content]] = []

    def _default_round(self, contents: List[Content]) -> List[ScriptItem]:
        user_text = None
        for content in reversed(contents):
            if content["role"] == Role.USER.value:
                user_text = next(
                    (part["text"] for part in content["parts"] if "text" in part), None
                )
                break
        if not user_text:
            return [GenerationChunk(text="I'm not sure what you're asking about.")]
        return [GenerationChunk(text=f"You said: {user_text}")]

    async def _stream_round(
        self, contents: List[Content], tool_binding: Optional[ToolBinding]
    ) -> AsyncIterator[GenerationChunk]:
        round_index = len(self.requests)
        self.requests.append([dict(content) for content in contents])

        if self.script is None:
            items = self._default_round(contents)
        elif round_index < len(self.script):
            items = self.script[round_index]
        else:
            items = []

        for item in items:
            if self.chunk_delay:
                await anyio.sleep(self.chunk_delay)
            if isinstance(item, BaseException):
                raise item
            if item.function_calls and not item.raw_parts:
                item = item.model_copy(
                    update={
                        "raw_parts": [
                            {"functionCall": {"name": call.name, "args": call.args}}
                            for call in item.function_calls
                        ]
                    }
                )
            yield item


def create_provider(settings: Settings) -> GenerationProvider:
    """
    Create a generation provider from configuration.

    Raises:
        ValueError: If the provider is not supported.
    """
    provider = settings.chat.provider.lower()
    if provider == "gemini":
        return GeminiProvider(settings.gemini)
    elif provider == "mock":
        return MockProvider()
    else:
        raise ValueError(f"Unsupported generation provider: {provider}")
