"""Prompt cache planning.

Decides where the provider may cache an unchanged request prefix. Markers are
returned out of band and never modify message content, so a stale boundary
only loses the optimization.
"""

import re
from dataclasses import dataclass, field
from typing import Literal

from agentchat.models.conversation import CacheableText, CacheableToolList, ToolSpec
from agentchat.models.llm import Message, ResponseMetadata, ToolResultBlock
from agentchat.utils.logging import get_logger

logger = get_logger(__name__)

CacheableField = Literal["messages", "system", "tools"]

_ALL_FIELDS: frozenset[CacheableField] = frozenset({"messages", "system", "tools"})
_NO_TOOLS: frozenset[CacheableField] = frozenset({"messages", "system"})

MODEL_CACHE_SUPPORT: dict[str, frozenset[CacheableField]] = {
    # Anthropic API model ids
    "claude-3-7-sonnet-20250219": _ALL_FIELDS,
    "claude-3-5-haiku-20241022": _ALL_FIELDS,
    "claude-3-5-sonnet-20241022": _ALL_FIELDS,
    "claude-sonnet-4-20250514": _ALL_FIELDS,
    "claude-opus-4-20250514": _ALL_FIELDS,
    # Bedrock model ids
    "anthropic.claude-3-7-sonnet-20250219-v1:0": _ALL_FIELDS,
    "anthropic.claude-3-5-haiku-20241022-v1:0": _ALL_FIELDS,
    "anthropic.claude-3-5-sonnet-20241022-v2:0": _ALL_FIELDS,
    "amazon.nova-micro-v1:0": _NO_TOOLS,
    "amazon.nova-lite-v1:0": _NO_TOOLS,
    "amazon.nova-pro-v1:0": _NO_TOOLS,
}

_REGION_PREFIX = re.compile(r"^(us|eu|apac)\.")


def get_base_model_id(model_id: str) -> str:
    """Strip a cross-region inference prefix, e.g. ``us.anthropic.claude...``."""
    return _REGION_PREFIX.sub("", model_id)


def get_cacheable_fields(model_id: str) -> frozenset[CacheableField]:
    """Return the request fields the model can cache."""
    return MODEL_CACHE_SUPPORT.get(get_base_model_id(model_id), frozenset())


def is_prompt_cache_supported(model_id: str) -> bool:
    return bool(get_cacheable_fields(model_id))


@dataclass
class CachePlan:
    """Cache annotations for one request."""

    messages: list[Message]
    system: CacheableText | None
    tools: CacheableToolList | None
    message_cache_points: list[int] = field(default_factory=list)
    new_boundary: int | None = None


class CachePointPlanner:
    """Plans cache points for a request and carries the boundary to the next one."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def plan(
        self,
        messages: list[Message],
        model_id: str,
        prior_boundary: int | None,
        system_prompt: str | None = None,
        tools: list[ToolSpec] | None = None,
    ) -> CachePlan:
        """Annotate a context-limited history.

        Args:
            messages: History exactly as it will be sent
            model_id: Target model
            prior_boundary: Boundary returned by the previous plan for this conversation
            system_prompt: Optional system prompt
            tools: Optional tool catalog

        Returns:
            Plan with out-of-band cache markers and the boundary for the next call
        """
        fields = get_cacheable_fields(model_id) if self.enabled else frozenset()

        system = None
        if system_prompt:
            system = CacheableText(text=system_prompt, cache_point="system" in fields)

        tool_list = None
        if tools:
            tool_list = CacheableToolList(tools=list(tools), cache_point="tools" in fields)

        if "messages" not in fields:
            return CachePlan(messages=messages, system=system, tools=tool_list, new_boundary=None)

        if not messages:
            return CachePlan(messages=messages, system=system, tools=tool_list, new_boundary=prior_boundary)

        last_index = len(messages) - 1
        candidates = {last_index}
        if prior_boundary is not None and 0 <= prior_boundary < len(messages):
            candidates.add(prior_boundary)

        cache_points = sorted(
            index for index in candidates if "tools" in fields or not _has_tool_result(messages[index])
        )
        new_boundary = last_index if prior_boundary is None else max(last_index, prior_boundary)

        logger.debug(f"Cache points for {model_id}: {cache_points}, next boundary: {new_boundary}")
        return CachePlan(
            messages=messages,
            system=system,
            tools=tool_list,
            message_cache_points=cache_points,
            new_boundary=new_boundary,
        )


def _has_tool_result(message: Message) -> bool:
    # Some providers reject a cache point directly after a tool result
    return any(isinstance(block, ToolResultBlock) for block in message.content)


def log_cache_usage(metadata: ResponseMetadata, model_id: str) -> None:
    """Log cache accounting for a finished response."""
    usage = metadata.usage
    logger.info(
        f"Cache usage for {model_id} - Input: {usage.input_tokens}, Output: {usage.output_tokens}, "
        f"Cache read: {usage.cache_read_input_tokens}, Cache write: {usage.cache_creation_input_tokens}, "
        f"Hit rate: {usage.cache_hit_rate:.2f}%, Fields: {sorted(get_cacheable_fields(model_id))}"
    )
