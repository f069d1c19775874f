"""Conversation engine: streams responses, drives tool calls and handles cancellation."""

import asyncio
import json
import time
from collections.abc import AsyncGenerator, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from pydantic_core import to_jsonable_python

from agentchat.models.conversation import ChatRequest, ToolSpec
from agentchat.models.events import MetadataEvent, StreamEvent
from agentchat.models.llm import (
    AgentLoopResult,
    ContentBlock,
    ImageBlock,
    JsonContent,
    LLMUsage,
    Message,
    ResponseMetadata,
    TextBlock,
    TextContent,
    ToolResultBlock,
    ToolResultContent,
    ToolUseBlock,
    cuid,
)
from agentchat.services.accumulator import AccumulatedTurn, ContentAccumulator, MalformedStreamError
from agentchat.services.cache import CachePointPlanner, get_cacheable_fields, log_cache_usage
from agentchat.services.context import limit_context_length
from agentchat.services.moderation import ContentModerator, ModerationPolicy, ModerationResult
from agentchat.services.persistence import PersistenceSink
from agentchat.tools.base import ToolInvoker
from agentchat.utils.logging import get_logger

logger = get_logger(__name__)

TOOL_USE_STOP_REASON = "tool_use"


class EngineState(StrEnum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    TOOLS_REQUESTED = "tools_requested"
    EXECUTING_TOOLS = "executing_tools"
    ABORTED = "aborted"
    ERRORED = "errored"


class EngineError(Exception):
    """Base class for errors the engine propagates to its caller."""


class TransportError(EngineError):
    """The response stream broke, could not be opened, or ended without a terminator."""


class MaxTurnsExceededError(EngineError):
    """The tool loop hit its turn limit."""


class EngineBusyError(EngineError):
    """A submission is already in progress."""


class StreamingClient(Protocol):
    """Opens a streamed response for a request."""

    def stream(self, request: ChatRequest) -> AsyncGenerator[StreamEvent, None]: ...


@dataclass
class EngineConfig:
    """Configuration for a conversation engine."""

    model_id: str = "claude-3-7-sonnet-20250219"
    system_prompt: str | None = None
    max_turns: int = 25  # Requests per submission, including malformed-stream retries
    context_length: int = 0  # Recent messages sent per request, 0 sends everything
    max_stream_retries: int = 2
    enable_prompt_cache: bool = True
    moderation: ModerationPolicy = field(default_factory=ModerationPolicy)


class ConversationEngine:
    """Drives one conversation: submit, stream, run tools, repeat until a final answer.

    The engine owns the history. Observers get snapshots through ``messages`` and
    the ``on_partial`` callback, never live objects.
    """

    def __init__(
        self,
        client: StreamingClient,
        tools: ToolInvoker,
        config: EngineConfig | None = None,
        *,
        tool_catalog: list[ToolSpec] | None = None,
        moderator: ContentModerator | None = None,
        sink: PersistenceSink | None = None,
        conversation_id: str | None = None,
        on_partial: Callable[[Message], None] | None = None,
        on_tool: Callable[[str | None], None] | None = None,
        on_moderation: Callable[[ModerationResult], None] | None = None,
    ):
        """Initialize the engine.

        Args:
            client: Inference client producing stream events
            tools: Invoker for requested tool calls
            config: Engine configuration
            tool_catalog: Tools advertised to the model
            moderator: Optional content moderator
            sink: Optional persistence for finalized messages
            conversation_id: Persistence key, generated when omitted
            on_partial: Receives message snapshots while streaming
            on_tool: Receives the executing tool name, then None when it finishes
            on_moderation: Receives every moderation intervention
        """
        self.client = client
        self.tools = tools
        self.config = config or EngineConfig()
        self.tool_catalog = tool_catalog or []
        self.moderator = moderator
        self.sink = sink
        self.conversation_id = conversation_id or cuid()
        self.on_partial = on_partial
        self.on_tool = on_tool
        self.on_moderation = on_moderation

        self.state = EngineState.IDLE
        self.last_error: EngineError | None = None
        self._messages: list[Message] = []
        self._persisted_ids: list[str] = []
        self._cache_boundary: int | None = None
        self._planner = CachePointPlanner(enabled=self.config.enable_prompt_cache)
        self._task: asyncio.Task[AgentLoopResult] | None = None
        self._cancel_requested = False
        self._turns = 0
        self._usage = LLMUsage()

    @property
    def messages(self) -> list[Message]:
        """Snapshot of the conversation history."""
        return [message.snapshot() for message in self._messages]

    @property
    def cache_boundary(self) -> int | None:
        return self._cache_boundary

    @property
    def is_busy(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def submit(self, text: str, images: list[ImageBlock] | None = None) -> AgentLoopResult:
        """Send user input and run the tool loop until the model gives a final answer.

        Returns:
            Loop result; ``cancelled`` is set when ``cancel()`` interrupted it

        Raises:
            ValueError: If there is neither text nor images
            EngineBusyError: If a submission is already running
            TransportError: If the stream failed (an error message is appended first)
            MaxTurnsExceededError: If the loop hit ``max_turns``
        """
        if not text and not images:
            raise ValueError("Please enter a message or attach images")
        if self.is_busy:
            raise EngineBusyError("A submission is already in progress")

        self._cancel_requested = False
        self._turns = 0
        self._usage = LLMUsage()
        self._task = asyncio.create_task(self._run_submission(text, images or []))
        try:
            return await self._task
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            logger.info(f"Submission cancelled after {self._turns} turns")
            return AgentLoopResult(
                message=None, stop_reason="cancelled", turns=self._turns, usage=self._usage, cancelled=True
            )
        finally:
            self._task = None

    def cancel(self) -> bool:
        """Abandon the in-flight request or tool call.

        Returns:
            True if a submission was cancelled, False if the engine was idle
        """
        task = self._task
        if task is None or task.done():
            logger.debug("cancel() called while idle, nothing to do")
            return False

        logger.info(f"Cancelling submission in state {self.state}")
        self._cancel_requested = True
        self.state = EngineState.ABORTED
        task.cancel()
        return True

    async def clear(self, conversation_id: str | None = None) -> None:
        """Abort any in-flight work and start an empty conversation."""
        await self._abort_in_flight()
        self._messages = []
        self._persisted_ids = []
        self._cache_boundary = None
        self.conversation_id = conversation_id or cuid()
        self.state = EngineState.IDLE
        logger.info(f"Cleared conversation, new id {self.conversation_id}")

    async def switch_conversation(self, conversation_id: str, messages: list[Message]) -> None:
        """Abort any in-flight work and load a stored conversation."""
        await self._abort_in_flight()
        self._messages = [message.snapshot() for message in messages]
        self._persisted_ids = [message.id for message in self._messages]
        self._cache_boundary = None
        self.conversation_id = conversation_id
        self.state = EngineState.IDLE
        logger.info(f"Switched to conversation {conversation_id} with {len(messages)} messages")

    def set_model(self, model_id: str) -> None:
        """Change the active model for subsequent requests."""
        self.config.model_id = model_id
        if "messages" not in get_cacheable_fields(model_id):
            self._cache_boundary = None
        logger.info(f"Active model set to {model_id}")

    # ------------------------------------------------------------------
    # Submission loop
    # ------------------------------------------------------------------

    async def _run_submission(self, text: str, images: list[ImageBlock]) -> AgentLoopResult:
        try:
            await self._remove_unpaired_tool_uses()
            user_message = await self._build_user_message(text, images)
            self._messages.append(user_message)
            await self._persist(user_message)
            return await self._run_loop()
        except asyncio.CancelledError:
            self.state = EngineState.ABORTED
            await self._remove_unpaired_tool_uses()
            self.state = EngineState.IDLE
            raise

    async def _run_loop(self) -> AgentLoopResult:
        max_turns = self.config.max_turns
        malformed_attempts = 0

        while True:
            if self._turns >= max_turns:
                self.state = EngineState.ERRORED
                error = MaxTurnsExceededError(f"Conversation reached the maximum number of turns ({max_turns})")
                self.last_error = error
                logger.error(str(error))
                raise error

            self._turns += 1
            logger.debug(f"Engine turn {self._turns}/{max_turns}")

            request = self._build_request()
            self.state = EngineState.SENDING
            try:
                message, stop_reason = await self._stream_turn(request)
            except MalformedStreamError as e:
                malformed_attempts += 1
                if malformed_attempts > self.config.max_stream_retries:
                    await self._fail(
                        TransportError(f"Received a malformed stream {malformed_attempts} times in a row"), e
                    )
                logger.warning(f"{e}, re-issuing request (attempt {malformed_attempts})")
                continue
            except TransportError as e:
                await self._fail(e, e.__cause__)
            except Exception as e:
                await self._fail(TransportError(str(e) or type(e).__name__), e)

            malformed_attempts = 0
            tool_uses = message.tool_uses()
            if tool_uses and stop_reason == TOOL_USE_STOP_REASON:
                self.state = EngineState.TOOLS_REQUESTED
                logger.info(f"Model requested {len(tool_uses)} tools")

                results = await self._execute_tools(tool_uses)
                result_message = Message(role="user", content=results)
                self._messages.append(result_message)
                await self._persist(result_message)
                continue

            if tool_uses:
                logger.warning(f"Turn stopped with {len(tool_uses)} tool calls but stop reason {stop_reason}")

            self.state = EngineState.IDLE
            logger.info(f"Submission completed in {self._turns} turns")
            return AgentLoopResult(
                message=message.snapshot(), stop_reason=stop_reason, turns=self._turns, usage=self._usage
            )

    async def _stream_turn(self, request: ChatRequest) -> tuple[Message, str | None]:
        """Consume one streamed response and append the finalized message."""
        accumulator = ContentAccumulator(on_partial=self._publish_partial)
        turn: AccumulatedTurn | None = None
        started_at = time.monotonic()

        async with aclosing(self.client.stream(request)) as events:
            async for event in events:
                if self.state == EngineState.SENDING:
                    self.state = EngineState.STREAMING

                if isinstance(event, MetadataEvent):
                    if turn is None:
                        logger.warning("Metadata received before the turn stopped, ignoring")
                        continue
                    self._attach_metadata(turn.message.id, event, turn.stop_reason, started_at)
                    continue

                if turn is not None:
                    logger.warning(f"Ignoring {event.type} event after the turn stopped")
                    continue

                turn = accumulator.feed(event)
                if turn is not None:
                    self._messages.append(turn.message)
                    self._publish_partial(turn.message.snapshot())

        if turn is None:
            raise TransportError("Stream ended before the turn stopped")

        if self.config.moderation.model_output and self.moderator is not None:
            await self._moderate_model_output(turn.message.id)

        message = self._find_message(turn.message.id)
        await self._persist(message)
        return message, turn.stop_reason

    async def _fail(self, error: EngineError, cause: BaseException | None = None) -> None:
        """Surface a failure as an assistant message, then raise it."""
        self.state = EngineState.ERRORED
        self.last_error = error
        logger.error(f"Request failed: {error}", exc_info=cause)

        error_message = Message(role="assistant", content=[TextBlock(text=str(error))])
        self._messages.append(error_message)
        self._publish_partial(error_message.snapshot())
        await self._persist(error_message)
        raise error from cause

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _build_request(self) -> ChatRequest:
        history = limit_context_length(self._messages, self.config.context_length)
        history = _remove_traces(history)
        plan = self._planner.plan(
            history,
            self.config.model_id,
            self._cache_boundary,
            system_prompt=self.config.system_prompt,
            tools=self.tool_catalog,
        )
        self._cache_boundary = plan.new_boundary
        return ChatRequest(
            messages=plan.messages,
            model_id=self.config.model_id,
            system=plan.system,
            tools=plan.tools,
            message_cache_points=plan.message_cache_points,
        )

    async def _build_user_message(self, text: str, images: list[ImageBlock]) -> Message:
        content: list[ContentBlock] = list(images)
        if text:
            guarded = False
            if self.config.moderation.user_input and self.moderator is not None:
                guarded = True
                try:
                    result = await self.moderator.check(text, "input")
                except Exception as e:
                    logger.error(f"Moderation of user input failed, withholding it: {e}")
                    result = ModerationResult(intervened=True, direction="input")
                if result.intervened:
                    self._notify_moderation(result, "user")
                    text = result.substitute or self.config.moderation.default_substitute
            content.append(TextBlock(text=text, guarded=guarded))
        return Message(role="user", content=content)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def _execute_tools(self, tool_uses: list[ToolUseBlock]) -> list[ToolResultBlock]:
        """Run requested tools one at a time, in request order."""
        self.state = EngineState.EXECUTING_TOOLS
        results: list[ToolResultBlock] = []
        for tool_use in tool_uses:
            results.append(await self._execute_tool(tool_use))
        return results

    async def _execute_tool(self, tool_use: ToolUseBlock) -> ToolResultBlock:
        self._notify_tool(tool_use.name)
        try:
            raw_output = await self.tools.invoke(tool_use.name, tool_use.input)
            content = _wrap_tool_output(raw_output)
        except Exception as e:
            logger.error(f"Tool {tool_use.name} failed: {e}")
            return _error_result(tool_use.id, f"Error: {e!s}")
        finally:
            self._notify_tool(None)

        logger.debug(f"Tool {tool_use.name} succeeded: {_content_text(content)[:100]}...")

        if self.config.moderation.tool_output and self.moderator is not None:
            try:
                result = await self.moderator.check(_content_text(content), "output")
            except Exception as e:
                logger.error(f"Moderation of {tool_use.name} output failed: {e}")
                return _error_result(tool_use.id, f"Error: moderation check failed: {e!s}")
            if result.intervened:
                self._notify_moderation(result, tool_use.name)
                return _error_result(tool_use.id, result.substitute or self.config.moderation.default_substitute)

        return ToolResultBlock(tool_use_id=tool_use.id, content=content, status="success")

    # ------------------------------------------------------------------
    # History maintenance
    # ------------------------------------------------------------------

    def _find_message(self, message_id: str) -> Message:
        for message in self._messages:
            if message.id == message_id:
                return message
        raise KeyError(message_id)

    def _replace_message(self, message_id: str, updated: Message) -> None:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                self._messages[index] = updated
                return
        logger.warning(f"Message {message_id} is no longer in the history")

    def _attach_metadata(
        self, message_id: str, event: MetadataEvent, stop_reason: str | None, started_at: float
    ) -> None:
        latency_ms = event.latency_ms
        if latency_ms is None:
            latency_ms = int((time.monotonic() - started_at) * 1000)
        metadata = ResponseMetadata(
            usage=event.usage,
            model=event.model or self.config.model_id,
            stop_reason=stop_reason,
            latency_ms=latency_ms,
        )
        self._usage.add(event.usage)
        log_cache_usage(metadata, self.config.model_id)
        try:
            message = self._find_message(message_id)
        except KeyError:
            logger.warning(f"Metadata for message {message_id} arrived after it left the history")
            return
        self._replace_message(message_id, message.model_copy(update={"metadata": metadata}))

    async def _moderate_model_output(self, message_id: str) -> None:
        message = self._find_message(message_id)
        text = message.text()
        if not text:
            return
        try:
            result = await self.moderator.check(text, "output")
        except Exception as e:
            logger.error(f"Moderation of model output failed: {e}")
            return
        if not result.intervened:
            return

        self._notify_moderation(result, "model")
        substitute: TextBlock | None = TextBlock(
            text=result.substitute or self.config.moderation.default_substitute
        )
        # The substitute takes the first text block's slot so reasoning stays first
        content: list[ContentBlock] = []
        for block in message.content:
            if not isinstance(block, TextBlock):
                content.append(block)
            elif substitute is not None:
                content.append(substitute)
                substitute = None
        self._replace_message(message_id, message.model_copy(update={"content": content}))

    async def _remove_unpaired_tool_uses(self) -> int:
        """Drop every whole message holding a tool use with no later tool result.

        Tool result messages that answered a dropped message are removed with it.
        Persisted messages get a compensating delete.

        Returns:
            Number of messages removed
        """
        answered: set[str] = set()
        doomed: set[int] = set()
        for index in range(len(self._messages) - 1, -1, -1):
            message = self._messages[index]
            if any(tool_use.id not in answered for tool_use in message.tool_uses()):
                doomed.add(index)
            answered.update(result.tool_use_id for result in message.tool_results())

        if not doomed:
            return 0

        orphaned_ids = {tool_use.id for index in doomed for tool_use in self._messages[index].tool_uses()}
        for index, message in enumerate(self._messages):
            if any(result.tool_use_id in orphaned_ids for result in message.tool_results()):
                doomed.add(index)

        for index in sorted(doomed, reverse=True):
            removed = self._messages.pop(index)
            logger.warning(f"Removed message {removed.id} with unanswered tool calls")
            await self._unpersist(removed)
        return len(doomed)

    async def _abort_in_flight(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        self.cancel()
        await asyncio.wait([task])

    # ------------------------------------------------------------------
    # Persistence and observers
    # ------------------------------------------------------------------

    async def _persist(self, message: Message) -> None:
        if self.sink is None:
            return
        try:
            await self.sink.append(self.conversation_id, message)
        except Exception as e:
            logger.error(f"Failed to persist message {message.id}: {e}", exc_info=True)
            return
        self._persisted_ids.append(message.id)

    async def _unpersist(self, message: Message) -> None:
        if self.sink is None or message.id not in self._persisted_ids:
            return
        message_index = self._persisted_ids.index(message.id)
        try:
            await self.sink.delete(self.conversation_id, message_index)
        except Exception as e:
            logger.error(f"Failed to delete persisted message {message.id}: {e}", exc_info=True)
            return
        self._persisted_ids.pop(message_index)

    def _publish_partial(self, message: Message) -> None:
        if self.on_partial is not None:
            self.on_partial(message)

    def _notify_tool(self, name: str | None) -> None:
        if self.on_tool is not None:
            self.on_tool(name)

    def _notify_moderation(self, result: ModerationResult, source: str) -> None:
        logger.info(f"Moderation intervened on {result.direction} from {source}")
        if self.on_moderation is not None:
            self.on_moderation(result.model_copy(update={"source": source}))


def _wrap_tool_output(raw_output: Any) -> list[ToolResultContent]:
    if isinstance(raw_output, str):
        return [TextContent(text=raw_output)]
    return [JsonContent(value=to_jsonable_python(raw_output))]


def _content_text(content: list[ToolResultContent]) -> str:
    parts = []
    for item in content:
        if isinstance(item, TextContent):
            parts.append(item.text)
        else:
            parts.append(json.dumps(item.value, ensure_ascii=False))
    return "\n".join(parts)


def _error_result(tool_use_id: str, text: str) -> ToolResultBlock:
    return ToolResultBlock(tool_use_id=tool_use_id, content=[TextContent(text=text)], status="error")


def _remove_traces(messages: list[Message]) -> list[Message]:
    """Strip sub-agent ``traces`` from structured tool results to save input tokens."""
    cleaned: list[Message] = []
    for message in messages:
        if not any(_has_traces(result) for result in message.tool_results()):
            cleaned.append(message)
            continue

        content = []
        for block in message.content:
            if isinstance(block, ToolResultBlock) and _has_traces(block):
                block = block.model_copy(update={"content": [_without_traces(item) for item in block.content]})
            content.append(block)
        cleaned.append(message.model_copy(update={"content": content}))
    return cleaned


def _completion(item: ToolResultContent) -> dict | None:
    if not isinstance(item, JsonContent) or not isinstance(item.value, dict):
        return None
    result = item.value.get("result")
    if not isinstance(result, dict):
        return None
    completion = result.get("completion")
    return completion if isinstance(completion, dict) else None


def _has_traces(block: ToolResultBlock) -> bool:
    return any("traces" in (_completion(item) or {}) for item in block.content)


def _without_traces(item: ToolResultContent) -> ToolResultContent:
    completion = _completion(item)
    if completion is None or "traces" not in completion:
        return item
    trimmed = {key: value for key, value in completion.items() if key != "traces"}
    result = {**item.value["result"], "completion": trimmed}
    return JsonContent(value={**item.value, "result": result})
