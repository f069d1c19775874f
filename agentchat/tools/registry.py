"""Tools registry: the default ToolInvoker implementation."""

from typing import Any

from agentchat.models.conversation import ToolSpec
from agentchat.tools.base import ToolDefinition, ToolNotFoundError
from agentchat.utils.logging import get_logger

logger = get_logger(__name__)


class ToolsRegistry:
    """Registry for managing agent tools and dispatching calls to them."""

    def __init__(self, tools: list[ToolDefinition] | None = None):
        """Initialize tools registry with an optional initial tool set."""
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools or []:
            self.register_tool(tool)

    def register_tool(self, tool: ToolDefinition) -> None:
        """Register a new tool in the registry."""
        if tool.name in self._tools:
            logger.warning(f"Replacing already registered tool: {tool.name}")
        self._tools[tool.name] = tool

    def get_tool_specs(self) -> list[ToolSpec]:
        """Get the tool catalog sent to the model."""
        return [tool.to_spec() for tool in self._tools.values()]

    async def invoke(self, name: str, tool_input: Any) -> Any:
        """Validate the input and run the named tool.

        Raises:
            ToolNotFoundError: If the tool is not registered
            pydantic.ValidationError: If the input does not match the tool schema
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(f"Unknown tool {name}")

        parsed_params = tool.parse_input(tool_input)
        logger.debug(f"Executing tool: {name} with input: {parsed_params!r}")
        return await tool.handler(parsed_params)

    def get_tool_names(self) -> list[str]:
        """Get list of all registered tool names."""
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools
