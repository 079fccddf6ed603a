"""
Streaming chat orchestrator.

One ChatTurn per request: the turn's producer task pulls chunks from the
generation provider and turns them into an ordered stream of events that
the caller reads with `turn.events()` (or `turn.ndjson()` for the wire
encoding).
"""

from collections import OrderedDict
from contextlib import aclosing, asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union
from uuid import uuid4

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from chatbridge_mcp.chat.models import (
    ChatMessage,
    ErrorCode,
    ErrorEvent,
    Role,
    StreamEvent,
    TextEvent,
    ToolCall,
    ToolCallEvent,
    ToolCallState,
    TurnState,
    encode_event,
)
from chatbridge_mcp.chat.providers import GenerationChunk, GenerationProvider
from chatbridge_mcp.errors import (
    CancellationError,
    RateLimitError,
    ValidationError,
    classify_generation_error,
)
from chatbridge_mcp.mcp.aggregator import ToolBinding
from chatbridge_mcp.mcp.connection_manager import ConnectionManager
from chatbridge_mcp.utils.logging import get_logger

logger = get_logger(__name__)

RawMessages = Sequence[Union[ChatMessage, Dict[str, Any]]]


def prepare_messages(raw: Any) -> List[ChatMessage]:
    """
    Validate and normalize the prior messages of a turn.

    Blank messages are dropped. The role `user` is kept and any other role
    becomes `model`.

    Raises:
        ValidationError: If the input is malformed or no message remains.
    """
    if not isinstance(raw, (list, tuple)):
        raise ValidationError("Messages are required")

    messages: List[ChatMessage] = []
    for item in raw:
        if isinstance(item, ChatMessage):
            role, content = item.role.value, item.content
        elif isinstance(item, dict):
            role, content = item.get("role"), item.get("content")
        else:
            raise ValidationError("Each message must be an object with role and content")

        if content is None:
            continue
        if not isinstance(content, str):
            raise ValidationError("Message content must be a string")
        if not content.strip():
            continue

        messages.append(
            ChatMessage(role=Role.USER if role == Role.USER.value else Role.MODEL, content=content)
        )

    if not messages:
        raise ValidationError("No valid messages")
    return messages


class ChatTurn:
    """
    A single chat turn: the validated prior messages plus the model message
    being streamed.

    Events are delivered over a zero-buffer stream, so the producer never
    runs ahead of the reader. A turn's events can be read once.
    """

    def __init__(
        self,
        messages: List[ChatMessage],
        tool_binding: Optional[ToolBinding] = None,
        turn_id: Optional[str] = None,
    ):
        self.id = turn_id or uuid4().hex
        self.messages = list(messages)
        self.model_message = ChatMessage(role=Role.MODEL, content="")
        self.tool_binding = tool_binding
        self.state = TurnState.IDLE
        self.error: Optional[Exception] = None

        self._cancelled = False
        self._cancel_scope = anyio.CancelScope()
        self._done = anyio.Event()
        self._send: MemoryObjectSendStream[StreamEvent]
        self._receive: MemoryObjectReceiveStream[StreamEvent]
        self._send, self._receive = anyio.create_memory_object_stream(0)

    @property
    def tool_calls(self) -> List[ToolCall]:
        return self.model_message.tool_calls

    @property
    def retry_messages(self) -> List[ChatMessage]:
        """The prior messages, ready to resubmit without the failed reply."""
        return [message.model_copy(deep=True) for message in self.messages]

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """
        Stop the turn. Events already delivered stay delivered; nothing
        further is emitted and the in-flight generation request is aborted.
        """
        if self.state.is_terminal or self._cancelled:
            return
        self._cancelled = True
        self.state = TurnState.ABORTED
        self.error = CancellationError(f"Turn {self.id} was aborted")
        self._cancel_scope.cancel()
        logger.info(f"Turn {self.id}: cancellation requested")

    def close_reader(self) -> None:
        """Stop accepting events; a producer still sending gives up."""
        self._receive.close()

    async def wait_done(self) -> None:
        await self._done.wait()

    async def events(self) -> AsyncIterator[StreamEvent]:
        """
        Iterate the turn's events in generation order. The iteration ends
        after a terminal error event, on normal completion, or on cancel.
        """
        async with self._receive:
            async for event in self._receive:
                if self._cancelled:
                    break
                yield event

    async def ndjson(self) -> AsyncIterator[bytes]:
        async for event in self.events():
            yield encode_event(event)

    def _apply_chunk(self, chunk: GenerationChunk) -> List[StreamEvent]:
        events: List[StreamEvent] = []

        for call in chunk.function_calls:
            tool_call = ToolCall(
                tool_call_id=call.id or f"{call.name}-{uuid4().hex[:8]}",
                name=call.name,
                args=call.args,
            )
            self.model_message.tool_calls.append(tool_call)
            events.append(
                ToolCallEvent(
                    tool_call_id=tool_call.tool_call_id,
                    name=tool_call.name,
                    args=tool_call.args,
                )
            )

        for response in chunk.function_responses:
            tool_call = self._pending_call(response.id, response.name)
            if tool_call is None:
                logger.warning(f"Turn {self.id}: response for unknown call '{response.name}'")
                continue
            tool_call.result = response.result.model_dump(mode="json", by_alias=True)
            tool_call.state = ToolCallState.ERROR if response.result.is_error else ToolCallState.RESULT

        if chunk.text:
            self.model_message.content += chunk.text
            events.append(TextEvent(content=self.model_message.content))

        return events

    def _pending_call(self, call_id: Optional[str], name: str) -> Optional[ToolCall]:
        for tool_call in self.model_message.tool_calls:
            if tool_call.state != ToolCallState.CALLING:
                continue
            if call_id and tool_call.tool_call_id == call_id:
                return tool_call
            if not call_id and tool_call.name == name:
                return tool_call
        return None

    async def _stream(self, provider: GenerationProvider) -> None:
        try:
            async with aclosing(
                provider.stream_generate(self.messages, self.tool_binding)
            ) as chunks:
                async for chunk in chunks:
                    for event in self._apply_chunk(chunk):
                        await self._send.send(event)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.info(f"Turn {self.id}: reader went away")
            return
        except Exception as exc:
            if self._cancelled:
                return
            error = classify_generation_error(exc)
            self.error = error
            self.state = TurnState.FAILED
            code = ErrorCode.RATE_LIMIT if isinstance(error, RateLimitError) else ErrorCode.GENERATION_ERROR
            logger.error(f"Turn {self.id} failed: {error}", data={"code": code.value})
            try:
                await self._send.send(ErrorEvent(message=str(error), code=code))
            except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                logger.info(f"Turn {self.id}: reader went away before the error event")
            return

        if not self._cancelled:
            self.state = TurnState.COMPLETED

    async def run(self, provider: GenerationProvider) -> None:
        """Producer task body."""
        try:
            async with self._send:
                with self._cancel_scope:
                    if self._cancelled:
                        return
                    self.state = TurnState.STREAMING
                    logger.debug(
                        f"Turn {self.id} streaming",
                        data={
                            "messages": len(self.messages),
                            "tools": len(self.tool_binding) if self.tool_binding else 0,
                        },
                    )
                    await self._stream(provider)
        finally:
            if not self.state.is_terminal:
                self.state = TurnState.ABORTED
                self.error = CancellationError(f"Turn {self.id} was aborted")
                logger.info(f"Turn {self.id} aborted")
            else:
                logger.debug(f"Turn {self.id} finished: {self.state.value}")
            self._done.set()


class ChatOrchestrator:
    """
    Runs chat turns against a generation provider, optionally exposing the
    tools of connected MCP servers.
    """

    def __init__(
        self,
        provider: GenerationProvider,
        connection_manager: Optional[ConnectionManager] = None,
        history_size: int = 100,
    ):
        self.provider = provider
        self.connection_manager = connection_manager
        self.history_size = history_size
        self._turns: "OrderedDict[str, ChatTurn]" = OrderedDict()

    prepare_messages = staticmethod(prepare_messages)

    def start_turn(
        self,
        messages: RawMessages,
        use_tools: bool = False,
        server_ids: Optional[List[str]] = None,
    ) -> ChatTurn:
        """
        Validate the messages and create an idle turn. No network activity
        happens here.
        """
        prepared = prepare_messages(messages)

        tool_binding = None
        if use_tools and self.connection_manager is not None:
            tool_binding = ToolBinding(self.connection_manager, server_ids)

        turn = ChatTurn(prepared, tool_binding)
        self._turns[turn.id] = turn
        while len(self._turns) > self.history_size:
            self._turns.popitem(last=False)
        return turn

    @asynccontextmanager
    async def run_turn(
        self,
        messages: Union[ChatTurn, RawMessages],
        use_tools: bool = False,
        server_ids: Optional[List[str]] = None,
    ) -> AsyncIterator[ChatTurn]:
        """
        Start streaming a turn and yield it. Leaving the block before the turn
        has finished cancels it.
        """
        if isinstance(messages, ChatTurn):
            turn = messages
        else:
            turn = self.start_turn(messages, use_tools=use_tools, server_ids=server_ids)

        if turn.state != TurnState.IDLE:
            raise ValidationError(f"Turn {turn.id} has already been started")

        async with anyio.create_task_group() as tg:
            tg.start_soon(turn.run, self.provider)
            try:
                yield turn
            finally:
                if not turn.state.is_terminal:
                    turn.cancel()
                turn.close_reader()

    def get_turn(self, turn_id: str) -> Optional[ChatTurn]:
        return self._turns.get(turn_id)

    def status(self, turn_id: str) -> Optional[TurnState]:
        turn = self._turns.get(turn_id)
        return turn.state if turn else None

    def cancel_turn(self, turn_id: str) -> bool:
        """
        Cancel a recent turn. Returns False if the turn is unknown.
        """
        turn = self._turns.get(turn_id)
        if turn is None:
            return False
        turn.cancel()
        return True
