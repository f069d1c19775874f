"""Context-length limiting that keeps tool pairs and reasoning intact."""

from agentchat.models.llm import Message, ReasoningBlock, ToolResultBlock, ToolUseBlock


def limit_context_length(messages: list[Message], context_length: int) -> list[Message]:
    """Keep the most recent ``context_length`` messages plus the older ones they depend on.

    An older message is kept when it:
    - contains reasoning
    - holds a tool result whose tool use is recent or belongs to a reasoning message
    - holds a tool use whose result is recent or which belongs to a reasoning message

    A limit of zero or less disables limiting.
    """
    if context_length <= 0 or len(messages) <= context_length:
        return messages

    recent = messages[-context_length:]
    older = messages[:-context_length]

    recent_tool_uses: set[str] = set()
    recent_tool_results: set[str] = set()
    for message in recent:
        for block in message.content:
            if isinstance(block, ToolUseBlock):
                recent_tool_uses.add(block.id)
            elif isinstance(block, ToolResultBlock):
                recent_tool_results.add(block.tool_use_id)

    reasoning_tool_ids: set[str] = set()
    for message in messages:
        if any(isinstance(block, ReasoningBlock) for block in message.content):
            reasoning_tool_ids.update(block.id for block in message.tool_uses())

    def is_required(message: Message) -> bool:
        for block in message.content:
            if isinstance(block, ReasoningBlock):
                return True
            if isinstance(block, ToolResultBlock) and (
                block.tool_use_id in recent_tool_uses or block.tool_use_id in reasoning_tool_ids
            ):
                return True
            if isinstance(block, ToolUseBlock) and (
                block.id in recent_tool_results or block.id in reasoning_tool_ids
            ):
                return True
        return False

    return [message for message in older if is_required(message)] + recent
