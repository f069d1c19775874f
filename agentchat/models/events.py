"""Inference stream event types consumed by the content accumulator."""

from typing import Annotated, Literal

from pydantic import BaseModel, Field

from agentchat.models.llm import LLMUsage

BlockKind = Literal["text", "reasoning", "tool_use"]
DeltaKind = Literal["text", "reasoning", "tool_input"]


class TurnStartEvent(BaseModel):
    """A new message begins."""

    type: Literal["turn_start"] = "turn_start"
    role: Literal["user", "assistant"] = "assistant"


class BlockStartEvent(BaseModel):
    """A content block opens. Tool blocks carry the call id and tool name."""

    type: Literal["block_start"] = "block_start"
    kind: BlockKind = "text"
    call_id: str | None = None
    name: str | None = None


class BlockDeltaEvent(BaseModel):
    """Incremental payload for the open block."""

    type: Literal["block_delta"] = "block_delta"
    kind: DeltaKind
    text: str = ""
    signature: str | None = None
    redacted: bytes | None = None
    call_id: str | None = None


class BlockStopEvent(BaseModel):
    """The open block is complete."""

    type: Literal["block_stop"] = "block_stop"


class TurnStopEvent(BaseModel):
    """The message is complete."""

    type: Literal["turn_stop"] = "turn_stop"
    stop_reason: str | None = None


class MetadataEvent(BaseModel):
    """Trailing usage/accounting data for the message that just stopped."""

    type: Literal["metadata"] = "metadata"
    usage: LLMUsage = Field(default_factory=LLMUsage)
    model: str | None = None
    latency_ms: int | None = None


StreamEvent = Annotated[
    TurnStartEvent | BlockStartEvent | BlockDeltaEvent | BlockStopEvent | TurnStopEvent | MetadataEvent,
    Field(discriminator="type"),
]
