"""Tool definitions and the registry that invokes them."""

from agentchat.tools.base import ToolDefinition, ToolInvoker, ToolNotFoundError
from agentchat.tools.registry import ToolsRegistry

__all__ = ["ToolDefinition", "ToolInvoker", "ToolNotFoundError", "ToolsRegistry"]
