"""LLM-related data models and types (provider-agnostic)."""

from dataclasses import dataclass
from typing import Annotated, Any, Literal

from cuid2 import cuid_wrapper
from pydantic import BaseModel, ConfigDict, Field, model_validator

cuid = cuid_wrapper()


def generate_message_id() -> str:
    """Generate a unique message identifier."""
    return f"msg_{cuid()}"


# Content block types
class TextBlock(BaseModel):
    """Text content block."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["text"] = "text"
    text: str
    guarded: bool = False  # user text wrapped as moderated input


class ReasoningBlock(BaseModel):
    """Private model deliberation, either signed text or an opaque redacted payload."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["reasoning"] = "reasoning"
    text: str | None = None
    signature: str | None = None
    redacted: bytes | None = None

    @model_validator(mode="after")
    def _check_exclusive_forms(self) -> "ReasoningBlock":
        if self.redacted is not None and (self.text is not None or self.signature is not None):
            raise ValueError("Reasoning block is either redacted or text/signature, not both")
        if self.redacted is None and self.text is None:
            raise ValueError("Reasoning block requires text or redacted content")
        return self

    @property
    def is_redacted(self) -> bool:
        return self.redacted is not None


class ToolUseBlock(BaseModel):
    """Tool use content block.

    ``input`` holds the parsed JSON arguments, or the raw argument string when the
    streamed text could not be parsed.
    """

    model_config = ConfigDict(extra="ignore")

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Any


class TextContent(BaseModel):
    """Plain text tool output."""

    type: Literal["text"] = "text"
    text: str


class JsonContent(BaseModel):
    """Structured tool output."""

    type: Literal["json"] = "json"
    value: Any


ToolResultContent = Annotated[TextContent | JsonContent, Field(discriminator="type")]


class ToolResultBlock(BaseModel):
    """Tool result content block."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: list[ToolResultContent]
    status: Literal["success", "error"] = "success"

    @property
    def is_error(self) -> bool:
        return self.status == "error"


class ImageBlock(BaseModel):
    """Image content block."""

    type: Literal["image"] = "image"
    format: Literal["png", "jpeg", "gif", "webp"]
    data: bytes


ContentBlock = Annotated[
    TextBlock | ReasoningBlock | ToolUseBlock | ToolResultBlock | ImageBlock,
    Field(discriminator="type"),
]


@dataclass
class LLMUsage:
    """Token/resource usage information from LLM provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def cache_hit_rate(self) -> float:
        """Calculate cache hit rate as percentage."""
        total_input = self.input_tokens + self.cache_read_input_tokens + self.cache_creation_input_tokens
        if total_input == 0:
            return 0.0
        return (self.cache_read_input_tokens / total_input) * 100

    @property
    def cost_savings_percentage(self) -> float:
        """Calculate cost savings from caching as percentage of total cost."""
        total_input_tokens = self.input_tokens + self.cache_read_input_tokens + self.cache_creation_input_tokens
        if total_input_tokens == 0:
            return 0.0

        normal_cost = total_input_tokens * 1.0  # Base rate

        actual_cost = (
            self.input_tokens * 1.0  # Regular input tokens
            + self.cache_creation_input_tokens * 1.25  # Cache writes (25% more)
            + self.cache_read_input_tokens * 0.1  # Cache reads (10% of base)
        )

        savings = normal_cost - actual_cost
        return (savings / normal_cost) * 100 if normal_cost > 0 else 0.0

    def add(self, other: "LLMUsage") -> None:
        """Accumulate another usage record into this one."""
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens
        self.cache_creation_input_tokens += other.cache_creation_input_tokens
        self.cache_read_input_tokens += other.cache_read_input_tokens


class ResponseMetadata(BaseModel):
    """Accounting data attached to a finalized assistant message."""

    usage: LLMUsage = Field(default_factory=LLMUsage)
    model: str | None = None
    stop_reason: str | None = None
    latency_ms: int | None = None


class Message(BaseModel):
    """A message in a conversation."""

    role: Literal["user", "assistant"]
    content: list[ContentBlock] = Field(default_factory=list)
    id: str = Field(default_factory=generate_message_id)
    metadata: ResponseMetadata | None = None

    def tool_uses(self) -> list[ToolUseBlock]:
        """Return the tool use blocks in request order."""
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        """Return the tool result blocks in order."""
        return [block for block in self.content if isinstance(block, ToolResultBlock)]

    def text(self) -> str:
        """Concatenate the plain text blocks."""
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    def snapshot(self) -> "Message":
        """Return an independent deep copy for observers."""
        return self.model_copy(deep=True)


@dataclass
class AgentLoopResult:
    """Result from executing a submission through the tool loop."""

    message: Message | None
    stop_reason: str | None
    turns: int
    usage: LLMUsage
    cancelled: bool = False
