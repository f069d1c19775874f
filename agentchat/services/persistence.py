"""Message persistence contract and in-memory storage."""

from datetime import UTC, datetime
from typing import Protocol

from agentchat.models.llm import Message, cuid
from agentchat.utils.logging import get_logger

logger = get_logger(__name__)


class PersistenceSink(Protocol):
    """Durably records finalized messages for a conversation."""

    async def append(self, conversation_id: str, message: Message) -> None: ...

    async def delete(self, conversation_id: str, message_index: int) -> None: ...


class InMemoryPersistenceSink:
    """In-memory message store keyed by conversation id."""

    def __init__(self) -> None:
        self.conversations: dict[str, list[Message]] = {}
        self.updated_at: dict[str, datetime] = {}

    def create_conversation(self, conversation_id: str | None = None) -> str:
        """Create an empty conversation and return its id."""
        new_conversation_id = conversation_id or self._generate_conversation_id()
        self.conversations.setdefault(new_conversation_id, [])
        self.updated_at[new_conversation_id] = datetime.now(UTC)
        return new_conversation_id

    async def append(self, conversation_id: str, message: Message) -> None:
        """Store a copy of the message at the end of the conversation."""
        self.conversations.setdefault(conversation_id, []).append(message.snapshot())
        self.updated_at[conversation_id] = datetime.now(UTC)
        logger.debug(f"Persisted message {message.id} to conversation {conversation_id}")

    async def delete(self, conversation_id: str, message_index: int) -> None:
        """Remove the message at ``message_index``.

        Raises:
            IndexError: If the conversation has no message at that index
        """
        messages = self.conversations.get(conversation_id, [])
        if not 0 <= message_index < len(messages):
            raise IndexError(f"Conversation {conversation_id} has no message at index {message_index}")
        removed = messages.pop(message_index)
        self.updated_at[conversation_id] = datetime.now(UTC)
        logger.info(f"Deleted message {removed.id} from conversation {conversation_id}")

    def get_messages(self, conversation_id: str) -> list[Message]:
        """Return copies of the stored messages."""
        return [message.snapshot() for message in self.conversations.get(conversation_id, [])]

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation.

        Returns:
            True if the conversation was deleted, False if not found
        """
        if conversation_id in self.conversations:
            del self.conversations[conversation_id]
            self.updated_at.pop(conversation_id, None)
            return True
        return False

    def _generate_conversation_id(self) -> str:
        """Generate a new CUID-based conversation ID."""
        return cuid()
