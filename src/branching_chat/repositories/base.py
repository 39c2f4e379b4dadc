"""Base repository interface."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from ..domain.models import Assistant, Conversation, Message


class Repository(ABC):
    """Abstract document store keyed by conversation id.

    Writes aimed at a conversation that no longer exists raise
    PersistenceError instead of being dropped.
    """

    @abstractmethod
    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        pass

    @abstractmethod
    async def list_conversations(self, limit: int = 100, offset: int = 0) -> List[Conversation]:
        """List all conversations with pagination."""
        pass

    @abstractmethod
    async def count_conversations(self) -> int:
        """Number of stored conversations."""
        pass

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        """Store a new conversation."""
        pass

    @abstractmethod
    async def save_conversation(self, conversation: Conversation) -> None:
        """Replace the whole conversation document."""
        pass

    @abstractmethod
    async def replace_messages(
        self, conversation_id: UUID, messages: Dict[UUID, Message], title: str
    ) -> None:
        """Replace the message tree and title of a conversation."""
        pass

    @abstractmethod
    async def update_title(self, conversation_id: UUID, title: str) -> None:
        """Set the title only."""
        pass

    @abstractmethod
    async def update_conversation(self, conversation_id: UUID, **fields: Any) -> None:
        """Set top level fields of a conversation."""
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: UUID) -> bool:
        """Delete a conversation, returning whether it existed."""
        pass

    @abstractmethod
    async def create_assistant(self, assistant: Assistant) -> Assistant:
        """Store a new assistant."""
        pass

    @abstractmethod
    async def get_assistant(self, assistant_id: str) -> Optional[Assistant]:
        """Retrieve an assistant by ID."""
        pass

    @abstractmethod
    async def get_assistants(self, assistant_ids: List[str]) -> List[Assistant]:
        """Retrieve the known assistants among ``assistant_ids``, in that order."""
        pass

    @abstractmethod
    async def increment_assistant_usage(self, assistant_id: str, hour: datetime) -> int:
        """Create or increment the usage counter of an hourly bucket."""
        pass

    @abstractmethod
    async def get_assistant_usage(self, assistant_id: str, hour: datetime) -> int:
        """Usage counter of an hourly bucket, 0 when absent."""
        pass
