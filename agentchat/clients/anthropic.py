"""Anthropic API streaming client with rate limiting and error handling."""

import asyncio
import base64
import json
import os
import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

import tiktoken
from anthropic import APIError, AsyncAnthropic
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter
from pydantic import BaseModel

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
from agentchat.models.llm import (
    ImageBlock,
    JsonContent,
    LLMUsage,
    Message,
    ReasoningBlock,
    TextBlock,
    ToolResultBlock,
    ToolResultContent,
    ToolUseBlock,
)
from agentchat.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CacheControl(BaseModel):
    """Cache control configuration for prompt caching."""

    type: Literal["ephemeral"] = "ephemeral"
    ttl: Literal["5m", "1h"] = "5m"


@dataclass
class AnthropicConfig:
    """Configuration for Anthropic API client."""

    max_tokens: int = 4096
    temperature: float = 0.1
    max_retries: int = 3
    retry_delay: float = 1.0

    # Extended thinking, disabled when None
    thinking_budget_tokens: int | None = None

    requests_per_minute: int = 50
    tokens_per_minute: int = 40_000


class AnthropicRateLimiter:
    """Professional rate limiter using the limits library."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 40_000):
        """Initialize rate limiter with proper rate limiting library.

        Args:
            requests_per_minute: Maximum requests per minute
            tokens_per_minute: Maximum tokens per minute
        """
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def check_rate_limit(self, estimated_tokens: int, identifier: str = "anthropic") -> None:
        """Wait until the request fits within the rate limits."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        if not self.limiter.hit(self.request_limit, identifier):
            await self._wait_for_window(self.request_limit, identifier, "Request")

        token_identifier = f"{identifier}_tokens"
        if not self.limiter.hit(self.token_limit, token_identifier, cost=estimated_tokens):
            await self._wait_for_window(self.token_limit, token_identifier, "Token")

    async def _wait_for_window(self, limit: Any, identifier: str, label: str) -> None:
        window_stats = self.limiter.get_window_stats(limit, identifier)
        if window_stats:
            reset_time = window_stats.reset_time
            wait_time = max(0, reset_time - time.time())
            if wait_time > 0:
                logger.warning(f"{label} rate limit exceeded, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)


class APIStreamError(Exception):
    """Error reported inside an otherwise successful stream."""


class AnthropicEventTranslator:
    """Translates raw Anthropic stream events into engine stream events.

    Stop reason and usage arrive in ``message_delta`` before ``message_stop``;
    they are emitted as ``turn_stop`` followed by a trailing ``metadata`` event.
    """

    def __init__(self) -> None:
        self.stop_reason: str | None = None
        self.model: str | None = None
        self.usage = LLMUsage()

    def translate(self, data: dict[str, Any]) -> list[StreamEvent]:
        event_type = data.get("type")

        if event_type == "message_start":
            message = data.get("message", {})
            self.model = message.get("model")
            self._update_usage(message.get("usage") or {})
            return [TurnStartEvent(role=message.get("role", "assistant"))]

        if event_type == "content_block_start":
            block = data.get("content_block", {})
            block_type = block.get("type")
            if block_type == "tool_use":
                return [BlockStartEvent(kind="tool_use", call_id=block.get("id"), name=block.get("name"))]
            if block_type == "thinking":
                return [BlockStartEvent(kind="reasoning")]
            if block_type == "redacted_thinking":
                return [
                    BlockStartEvent(kind="reasoning"),
                    BlockDeltaEvent(kind="reasoning", redacted=block.get("data", "").encode()),
                ]
            events: list[StreamEvent] = [BlockStartEvent(kind="text")]
            if block.get("text"):
                events.append(BlockDeltaEvent(kind="text", text=block["text"]))
            return events

        if event_type == "content_block_delta":
            delta = data.get("delta", {})
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                return [BlockDeltaEvent(kind="text", text=delta.get("text", ""))]
            if delta_type == "input_json_delta":
                return [BlockDeltaEvent(kind="tool_input", text=delta.get("partial_json", ""))]
            if delta_type == "thinking_delta":
                return [BlockDeltaEvent(kind="reasoning", text=delta.get("thinking", ""))]
            if delta_type == "signature_delta":
                return [BlockDeltaEvent(kind="reasoning", signature=delta.get("signature", ""))]
            logger.debug(f"Skipping delta type: {delta_type}")
            return []

        if event_type == "content_block_stop":
            return [BlockStopEvent()]

        if event_type == "message_delta":
            self.stop_reason = data.get("delta", {}).get("stop_reason") or self.stop_reason
            self._update_usage(data.get("usage") or {})
            return []

        if event_type == "message_stop":
            self.usage.total_tokens = self.usage.input_tokens + self.usage.output_tokens
            return [
                TurnStopEvent(stop_reason=self.stop_reason),
                MetadataEvent(usage=self.usage, model=self.model),
            ]

        if event_type == "error":
            error = data.get("error", {})
            raise APIStreamError(f"{error.get('type', 'unknown')}: {error.get('message', '')}")

        # ping and unknown events
        return []

    def _update_usage(self, usage: dict[str, Any]) -> None:
        if usage.get("input_tokens") is not None:
            self.usage.input_tokens = usage["input_tokens"]
        if usage.get("output_tokens") is not None:
            self.usage.output_tokens = usage["output_tokens"]
        if usage.get("cache_creation_input_tokens") is not None:
            self.usage.cache_creation_input_tokens = usage["cache_creation_input_tokens"]
        if usage.get("cache_read_input_tokens") is not None:
            self.usage.cache_read_input_tokens = usage["cache_read_input_tokens"]


class AnthropicClient:
    """Low-level Anthropic streaming client with rate limiting and error handling."""

    tokenizer: tiktoken.Encoding | None = None
    api_key: str
    client: AsyncAnthropic
    config: AnthropicConfig
    rate_limiter: AnthropicRateLimiter

    def __init__(self, api_key: str | None = None, config: AnthropicConfig | None = None):
        """Initialize Anthropic client.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            config: Client configuration
        """
        anthropic_api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable is required")

        self.api_key = anthropic_api_key

        self.client = AsyncAnthropic(api_key=self.api_key, max_retries=0)
        self.config = config or AnthropicConfig()
        self.rate_limiter = AnthropicRateLimiter(self.config.requests_per_minute, self.config.tokens_per_minute)

        # Initialize tokenizer for token estimation
        try:
            # Close approximation for Claude
            self.tokenizer = tiktoken.encoding_for_model("gpt-4")
        except Exception:
            self.tokenizer = None

    async def stream(self, request: ChatRequest) -> AsyncGenerator[StreamEvent, None]:
        """Stream a response as engine events.

        Args:
            request: Messages, model and cache-annotated system prompt and tools

        Yields:
            Stream events ending with ``turn_stop`` and ``metadata``
        """
        estimated_tokens = self._estimate_tokens(request)
        logger.debug(f"Estimated tokens: {estimated_tokens}")
        await self.rate_limiter.check_rate_limit(estimated_tokens)

        request_params = self.build_request_params(request)
        logger.debug(
            f"Opening stream for {request.model_id} with {len(request.messages)} messages, "
            f"{len(request.tools.tools) if request.tools else 0} tools"
        )

        stream = await self._request_with_retries(lambda: self.client.messages.create(**request_params, stream=True))
        translator = AnthropicEventTranslator()
        async with stream:
            async for raw_event in stream:
                for event in translator.translate(raw_event.model_dump()):
                    yield event

    async def _request_with_retries(self, call: Callable[[], Awaitable[T]]) -> T:
        """Execute Anthropic API request with retry logic."""
        for attempt in range(self.config.max_retries):
            try:
                return await call()

            except APIError as e:
                if hasattr(e, "status_code") and e.status_code == 429:  # Rate limit exceeded
                    retry_after = 60
                    if hasattr(e, "response") and e.response and hasattr(e.response, "headers"):
                        retry_after = int(e.response.headers.get("retry-after", 60))

                    if retry_after < 120 and attempt < self.config.max_retries - 1:
                        await asyncio.sleep(retry_after)
                        continue

                elif hasattr(e, "status_code") and e.status_code >= 500 and attempt < self.config.max_retries - 1:
                    # Server error, retry with exponential backoff
                    await asyncio.sleep(self.config.retry_delay * (2**attempt))
                    continue

                # Re-raise if not retryable or max retries reached
                raise

        raise Exception(f"Failed to complete request after {self.config.max_retries} attempts")

    def build_request_params(self, request: ChatRequest) -> dict[str, Any]:
        """Build Messages API parameters, placing cache_control at the planned cache points."""
        cache_points = set(request.message_cache_points)
        params: dict[str, Any] = {
            "model": request.model_id,
            "max_tokens": self.config.max_tokens,
            "messages": [
                to_anthropic_message(message, cache_point=index in cache_points)
                for index, message in enumerate(request.messages)
            ],
        }

        if self.config.thinking_budget_tokens:
            # Extended thinking requires temperature 1
            params["thinking"] = {"type": "enabled", "budget_tokens": self.config.thinking_budget_tokens}
        else:
            params["temperature"] = self.config.temperature

        if request.system:
            system_block: dict[str, Any] = {"type": "text", "text": request.system.text}
            if request.system.cache_point:
                system_block["cache_control"] = CacheControl().model_dump()
            params["system"] = [system_block]

        if request.tools and request.tools.tools:
            tools = [tool.model_dump() for tool in request.tools.tools]
            if request.tools.cache_point:
                # Cache control on the last tool caches all tool definitions
                tools[-1]["cache_control"] = CacheControl().model_dump()
            params["tools"] = tools

        return params

    def _estimate_tokens(self, request: ChatRequest) -> int:
        """Estimate token count for rate limiting."""
        text_content = request.system.text if request.system else ""

        for message in request.messages:
            for block in message.content:
                if isinstance(block, TextBlock):
                    text_content += block.text
                elif isinstance(block, ToolUseBlock):
                    text_content += json.dumps(block.input, ensure_ascii=False, default=str)
                elif isinstance(block, ToolResultBlock):
                    text_content += "".join(_result_item_text(item) for item in block.content)

        return self.estimate_message_tokens(text_content)

    def estimate_message_tokens(self, message: str) -> int:
        """Estimate token count for a single message.

        Args:
            message: Message content

        Returns:
            Estimated token count
        """
        try:
            return len(self.tokenizer.encode(message)) if self.tokenizer else len(message) // 4
        except Exception:
            # Fallback: roughly 4 characters per token
            return len(message) // 4


def _result_item_text(item: ToolResultContent) -> str:
    if isinstance(item, JsonContent):
        return json.dumps(item.value, ensure_ascii=False)
    return item.text


def to_anthropic_message(message: Message, cache_point: bool = False) -> dict[str, Any]:
    """Convert a message to the Messages API format."""
    content: list[dict[str, Any]] = []
    for block in message.content:
        if isinstance(block, TextBlock):
            if block.text:
                content.append({"type": "text", "text": block.text})
        elif isinstance(block, ReasoningBlock):
            if block.redacted is not None:
                content.append({"type": "redacted_thinking", "data": block.redacted.decode()})
            else:
                content.append({"type": "thinking", "thinking": block.text, "signature": block.signature or ""})
        elif isinstance(block, ToolUseBlock):
            tool_input = block.input if isinstance(block.input, dict) else {"input": block.input}
            content.append({"type": "tool_use", "id": block.id, "name": block.name, "input": tool_input})
        elif isinstance(block, ToolResultBlock):
            content.append(
                {
                    "type": "tool_result",
                    "tool_use_id": block.tool_use_id,
                    "content": [
                        {"type": "text", "text": _result_item_text(item)} for item in block.content
                    ],
                    "is_error": block.is_error,
                }
            )
        elif isinstance(block, ImageBlock):
            content.append(
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": f"image/{block.format}",
                        "data": base64.b64encode(block.data).decode(),
                    },
                }
            )

    if cache_point and content:
        content[-1]["cache_control"] = CacheControl().model_dump()

    return {"role": message.role, "content": content}


_anthropic_client: AnthropicClient | None = None


def get_anthropic_client() -> AnthropicClient:
    """Get or create Anthropic client instance."""
    global _anthropic_client
    if _anthropic_client is None:
        _anthropic_client = AnthropicClient()
    return _anthropic_client
