"""Content moderation contract and policy."""

from dataclasses import dataclass
from typing import Literal, Protocol

from pydantic import BaseModel

ModerationDirection = Literal["input", "output"]


class ModerationResult(BaseModel):
    """Outcome of a moderation check."""

    intervened: bool = False
    substitute: str | None = None
    direction: ModerationDirection = "output"
    source: str | None = None  # tool name, "user" or "model"


class ContentModerator(Protocol):
    """Inspects text and may replace it before it enters the conversation."""

    async def check(self, text: str, direction: ModerationDirection) -> ModerationResult: ...


@dataclass
class ModerationPolicy:
    """Which content passes through the moderator.

    Attributes:
        user_input: Check user text and mark it as moderated input
        tool_output: Check tool output before it becomes a tool result
        model_output: Check the model's own final text
    """

    user_input: bool = True
    tool_output: bool = True
    model_output: bool = False

    default_substitute: str = "The content was blocked by the moderation policy."
