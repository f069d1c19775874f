"""Reassembly of streamed inference events into structured message content."""

import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from agentchat.models.events import (
    BlockDeltaEvent,
    BlockStartEvent,
    BlockStopEvent,
    MetadataEvent,
    StreamEvent,
    TurnStartEvent,
    TurnStopEvent,
)
from agentchat.models.llm import (
    ContentBlock,
    Message,
    ReasoningBlock,
    TextBlock,
    ToolUseBlock,
    cuid,
    generate_message_id,
)
from agentchat.utils.logging import get_logger

logger = get_logger(__name__)

PartialObserver = Callable[[Message], None]


class MalformedStreamError(Exception):
    """A turn terminator arrived without a matching turn start."""


@dataclass
class AccumulatedTurn:
    """A finalized message together with the reason the turn stopped."""

    message: Message
    stop_reason: str | None


@dataclass
class _ToolCall:
    call_id: str
    name: str
    raw_input: str = ""


@dataclass
class _Reasoning:
    text: str = ""
    signature: str = ""
    redacted: bytes | None = None

    @property
    def finished(self) -> bool:
        return bool(self.signature) or self.redacted is not None

    def to_block(self) -> ReasoningBlock:
        if self.redacted is not None:
            return ReasoningBlock(redacted=self.redacted)
        return ReasoningBlock(text=self.text, signature=self.signature or None)


def parse_tool_input(raw_input: str) -> Any:
    """Parse accumulated tool arguments, keeping the raw string when it is not JSON."""
    if not raw_input.strip():
        return {}
    try:
        return json.loads(raw_input)
    except json.JSONDecodeError:
        logger.warning(f"Tool arguments are not valid JSON, keeping raw string ({len(raw_input)} chars)")
        return raw_input


class ContentAccumulator:
    """Consumes stream events one at a time and maintains a single in-progress message.

    Plain text and tool arguments are buffered separately so a response may
    interleave spoken text with a tool call. Reasoning always lands before the
    text it informed. Observers receive a fresh snapshot on every text or tool
    argument delta and never hold a reference to the live state.
    """

    def __init__(self, on_partial: PartialObserver | None = None):
        self.on_partial = on_partial
        self._reset()

    def _reset(self) -> None:
        self._started = False
        self._role: Literal["user", "assistant"] = "assistant"
        self._message_id = generate_message_id()
        self._content: list[ContentBlock] = []
        self._text = ""
        self._reasoning: list[_Reasoning] = []
        self._tool_calls: dict[str, _ToolCall] = {}
        self._open_tool: str | None = None

    @property
    def started(self) -> bool:
        return self._started

    def feed(self, event: StreamEvent) -> AccumulatedTurn | None:
        """Apply one event. Returns the finalized turn on ``turn_stop``.

        Raises:
            MalformedStreamError: If ``turn_stop`` arrives before ``turn_start``
        """
        if isinstance(event, TurnStartEvent):
            self._reset()
            self._started = True
            self._role = event.role
        elif isinstance(event, BlockStartEvent):
            self._start_block(event)
        elif isinstance(event, BlockDeltaEvent):
            self._apply_delta(event)
        elif isinstance(event, BlockStopEvent):
            self._stop_block()
        elif isinstance(event, TurnStopEvent):
            return self._stop_turn(event)
        elif not isinstance(event, MetadataEvent):
            logger.error(f"Unexpected stream event: {event!r}")
        return None

    def _start_block(self, event: BlockStartEvent) -> None:
        if event.kind != "tool_use":
            return
        call_id = event.call_id or f"call_{cuid()}"
        self._tool_calls[call_id] = _ToolCall(call_id=call_id, name=event.name or "")
        self._open_tool = call_id
        logger.debug(f"Tool block started: {event.name} ({call_id})")

    def _apply_delta(self, event: BlockDeltaEvent) -> None:
        if event.kind == "text":
            if event.text:
                self._text += event.text
                self._publish()
        elif event.kind == "reasoning":
            self._apply_reasoning_delta(event)
        elif event.kind == "tool_input":
            call_id = event.call_id or self._open_tool
            if call_id is None or call_id not in self._tool_calls:
                logger.warning(f"Tool argument delta for unknown call {call_id!r}, dropping")
                return
            self._tool_calls[call_id].raw_input += event.text
            self._publish()

    def _apply_reasoning_delta(self, event: BlockDeltaEvent) -> None:
        if event.redacted is not None:
            self._reasoning.append(_Reasoning(redacted=event.redacted))
            return

        if not self._reasoning or self._reasoning[-1].finished:
            if not event.text and not event.signature:
                return
            self._reasoning.append(_Reasoning())

        current = self._reasoning[-1]
        current.text += event.text
        if event.signature:
            current.signature = event.signature

    def _flush_text(self) -> None:
        for reasoning in self._reasoning:
            self._content.append(reasoning.to_block())
        self._reasoning = []
        if self._text:
            self._content.append(TextBlock(text=self._text))
        self._text = ""

    def _stop_block(self) -> None:
        if self._open_tool is None:
            self._flush_text()
            return

        # Text streamed alongside the call precedes it
        self._flush_text()
        call = self._tool_calls.pop(self._open_tool)
        self._open_tool = None
        self._content.append(ToolUseBlock(id=call.call_id, name=call.name, input=parse_tool_input(call.raw_input)))

    def _stop_turn(self, event: TurnStopEvent) -> AccumulatedTurn:
        if not self._started:
            self._reset()
            raise MalformedStreamError("turn_stop received without turn_start")

        if self._open_tool is not None:
            logger.warning(f"Turn stopped with tool block {self._open_tool} still open, closing it")
            self._stop_block()
        self._flush_text()

        message = Message(id=self._message_id, role=self._role, content=self._content)
        stop_reason = event.stop_reason
        logger.debug(f"Turn finalized - Stop reason: {stop_reason}, Content blocks: {len(message.content)}")
        self._reset()
        return AccumulatedTurn(message=message, stop_reason=stop_reason)

    def partial(self) -> Message:
        """Build a snapshot of the in-progress message."""
        content = [block.model_copy(deep=True) for block in self._content]
        content.extend(reasoning.to_block() for reasoning in self._reasoning)
        if self._text:
            content.append(TextBlock(text=self._text))
        content.extend(
            ToolUseBlock(id=call.call_id, name=call.name, input=call.raw_input) for call in self._tool_calls.values()
        )
        return Message(id=self._message_id, role=self._role, content=content)

    def _publish(self) -> None:
        if self.on_partial is not None:
            self.on_partial(self.partial())
