"""Scripted stream clients and event builders shared by the engine tests."""

import asyncio
import json
from collections.abc import AsyncGenerator
from typing import Any

from agentchat.models.conversation import ChatRequest
from agentchat.models.events import (
    BlockDeltaEvent,
    BlockStartEvent,
    BlockStopEvent,
    MetadataEvent,
    StreamEvent,
    TurnStartEvent,
    TurnStopEvent,
)
from agentchat.models.llm import LLMUsage
from agentchat.services.moderation import ModerationDirection, ModerationResult


def text_turn(*chunks: str, stop_reason: str = "end_turn", output_tokens: int = 5) -> list[StreamEvent]:
    """Events for an assistant turn that streams plain text."""
    events: list[StreamEvent] = [TurnStartEvent(role="assistant"), BlockStartEvent(kind="text")]
    events.extend(BlockDeltaEvent(kind="text", text=chunk) for chunk in chunks)
    events.extend(
        [
            BlockStopEvent(),
            TurnStopEvent(stop_reason=stop_reason),
            MetadataEvent(usage=LLMUsage(input_tokens=10, output_tokens=output_tokens)),
        ]
    )
    return events


def tool_turn(
    *calls: tuple[str, str, Any], text: str | None = None, stop_reason: str = "tool_use"
) -> list[StreamEvent]:
    """Events for an assistant turn requesting tools.

    Each call is ``(call_id, name, arguments)``; dict arguments are JSON-encoded and
    streamed in two fragments, strings are streamed verbatim.
    """
    events: list[StreamEvent] = [TurnStartEvent(role="assistant")]
    if text:
        events.extend([BlockStartEvent(kind="text"), BlockDeltaEvent(kind="text", text=text), BlockStopEvent()])
    for call_id, name, arguments in calls:
        raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
        middle = len(raw) // 2
        events.extend(
            [
                BlockStartEvent(kind="tool_use", call_id=call_id, name=name),
                BlockDeltaEvent(kind="tool_input", text=raw[:middle]),
                BlockDeltaEvent(kind="tool_input", text=raw[middle:]),
                BlockStopEvent(),
            ]
        )
    events.extend([TurnStopEvent(stop_reason=stop_reason), MetadataEvent(usage=LLMUsage(input_tokens=10))])
    return events


class ScriptedClient:
    """Streaming client that replays one scripted response per request.

    Script items are stream events, exceptions (raised at that point) or
    ``asyncio.Event`` objects (awaited, to hold the stream open).
    """

    def __init__(self, *scripts: list[Any]):
        self.scripts = list(scripts)
        self.requests: list[ChatRequest] = []

    async def stream(self, request: ChatRequest) -> AsyncGenerator[StreamEvent, None]:
        self.requests.append(request.model_copy(deep=True))
        if not self.scripts:
            raise AssertionError("Unexpected request, no scripted response left")
        for item in self.scripts.pop(0):
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            yield item


class RecordingInvoker:
    """Tool invoker returning canned results and recording calls in order."""

    def __init__(self, results: dict[str, Any] | None = None):
        self.results = results or {}
        self.calls: list[tuple[str, Any]] = []

    async def invoke(self, name: str, tool_input: Any) -> Any:
        self.calls.append((name, tool_input))
        result = self.results.get(name, f"{name} done")
        if isinstance(result, BaseException):
            raise result
        return result


class BlockingInvoker:
    """Tool invoker that signals when it starts and then waits forever."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.calls: list[tuple[str, Any]] = []

    async def invoke(self, name: str, tool_input: Any) -> Any:
        self.calls.append((name, tool_input))
        self.started.set()
        await asyncio.Event().wait()


class KeywordModerator:
    """Moderator that intervenes when a blocked word appears."""

    def __init__(self, blocked: str, substitute: str | None = "[blocked]"):
        self.blocked = blocked
        self.substitute = substitute
        self.checks: list[tuple[str, ModerationDirection]] = []

    async def check(self, text: str, direction: ModerationDirection) -> ModerationResult:
        self.checks.append((text, direction))
        if self.blocked in text:
            return ModerationResult(intervened=True, substitute=self.substitute, direction=direction)
        return ModerationResult(direction=direction)


class FailingModerator:
    """Moderator whose checks always fail."""

    async def check(self, text: str, direction: ModerationDirection) -> ModerationResult:
        raise ConnectionError("moderation service unavailable")
