"""Base types and definitions for tools."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import BaseModel

from agentchat.models.conversation import ToolSpec

ToolHandler = Callable[[Any], Awaitable[Any]]


class ToolInvoker(Protocol):
    """Executes one named tool call and returns a serializable result or raises."""

    async def invoke(self, name: str, tool_input: Any) -> Any: ...


class ToolNotFoundError(LookupError):
    """The model requested a tool that is not registered."""


@dataclass
class ToolDefinition:
    """Definition of a tool available to the agent."""

    name: str
    description: str
    input_schema_class: type[BaseModel]
    handler: ToolHandler

    def get_json_schema(self) -> dict[str, Any]:
        """Get JSON schema for this tool's input."""
        return self.input_schema_class.model_json_schema()

    def parse_input(self, raw_input: Any) -> BaseModel:
        """Parse and validate tool input.

        Raw string input (arguments that were not valid JSON) is validated as JSON
        so the resulting error names the problem.
        """
        if isinstance(raw_input, str):
            return self.input_schema_class.model_validate_json(raw_input)
        return self.input_schema_class.model_validate(raw_input)

    def to_spec(self) -> ToolSpec:
        return ToolSpec(name=self.name, description=self.description, input_schema=self.get_json_schema())
