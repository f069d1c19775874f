"""Request models sent to the inference client."""

from typing import Any

from pydantic import BaseModel, Field

from agentchat.models.llm import Message


class ToolSpec(BaseModel):
    """Catalog entry describing a tool to the model."""

    name: str
    description: str
    input_schema: dict[str, Any]


class CacheableText(BaseModel):
    """System prompt text that may carry a cache marker."""

    text: str
    cache_point: bool = False


class CacheableToolList(BaseModel):
    """Tool catalog that may carry a cache marker after its last entry."""

    tools: list[ToolSpec]
    cache_point: bool = False


class ChatRequest(BaseModel):
    """One request to the inference API.

    ``message_cache_points`` lists indices into ``messages`` after which the
    provider may cache the prefix. The markers never live inside message content.
    """

    messages: list[Message]
    model_id: str
    system: CacheableText | None = None
    tools: CacheableToolList | None = None
    message_cache_points: list[int] = Field(default_factory=list)
