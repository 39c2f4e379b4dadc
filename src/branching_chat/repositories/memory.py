"""In-memory repository implementation."""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

import structlog

from ..domain.errors import PersistenceError
from ..domain.models import Assistant, Conversation, Message
from .base import Repository

logger = structlog.get_logger()


class InMemoryRepository(Repository):
    """Async-safe in-memory document store.

    Documents are deep copied on the way in and out, so a caller only sees
    what was last written at a checkpoint.
    """

    def __init__(self) -> None:
        """Initialize the repository with lock-guarded storage."""
        self._conversations: Dict[UUID, Conversation] = {}
        self._assistants: Dict[str, Assistant] = {}
        self._assistant_usage: Dict[Tuple[str, datetime], int] = {}
        self._async_lock = asyncio.Lock()
        logger.info("repository_initialized")

    def _require(self, conversation_id: UUID) -> Conversation:
        stored = self._conversations.get(conversation_id)
        if stored is None:
            logger.error("conversation_write_not_acknowledged", conversation_id=str(conversation_id))
            raise PersistenceError(f"Conversation {conversation_id} is not stored")
        return stored

    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        async with self._async_lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                logger.warning("conversation_not_found", conversation_id=str(conversation_id))
                return None
            return conversation.model_copy(deep=True)

    async def list_conversations(self, limit: int = 100, offset: int = 0) -> List[Conversation]:
        """List all conversations with pagination."""
        async with self._async_lock:
            conversations = sorted(
                self._conversations.values(),
                key=lambda c: c.updated_at,
                reverse=True
            )
            return [c.model_copy(deep=True) for c in conversations[offset : offset + limit]]

    async def count_conversations(self) -> int:
        async with self._async_lock:
            return len(self._conversations)

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        """Store a new conversation."""
        async with self._async_lock:
            self._conversations[conversation.id] = conversation.model_copy(deep=True)
            logger.info("conversation_created", conversation_id=str(conversation.id))
        return conversation

    async def save_conversation(self, conversation: Conversation) -> None:
        async with self._async_lock:
            # last writer wins
            self._conversations[conversation.id] = conversation.model_copy(deep=True)

    async def replace_messages(
        self, conversation_id: UUID, messages: Dict[UUID, Message], title: str
    ) -> None:
        """Replace the message tree and title of a conversation."""
        async with self._async_lock:
            stored = self._require(conversation_id)
            stored.messages = {
                message_id: message.model_copy(deep=True)
                for message_id, message in messages.items()
            }
            stored.title = title
            stored.updated_at = datetime.utcnow()
            logger.debug(
                "messages_replaced",
                conversation_id=str(conversation_id),
                message_count=len(messages),
            )

    async def update_title(self, conversation_id: UUID, title: str) -> None:
        async with self._async_lock:
            stored = self._require(conversation_id)
            stored.title = title
            stored.updated_at = datetime.utcnow()

    async def update_conversation(self, conversation_id: UUID, **fields: Any) -> None:
        async with self._async_lock:
            stored = self._require(conversation_id)
            for name, value in fields.items():
                setattr(stored, name, value)
            stored.updated_at = datetime.utcnow()

    async def delete_conversation(self, conversation_id: UUID) -> bool:
        async with self._async_lock:
            existed = self._conversations.pop(conversation_id, None) is not None
            if existed:
                logger.info("conversation_deleted", conversation_id=str(conversation_id))
            return existed

    async def create_assistant(self, assistant: Assistant) -> Assistant:
        async with self._async_lock:
            self._assistants[assistant.id] = assistant.model_copy(deep=True)
            logger.info("assistant_created", assistant_id=assistant.id)
        return assistant

    async def get_assistant(self, assistant_id: str) -> Optional[Assistant]:
        async with self._async_lock:
            assistant = self._assistants.get(assistant_id)
            return assistant.model_copy(deep=True) if assistant else None

    async def get_assistants(self, assistant_ids: List[str]) -> List[Assistant]:
        async with self._async_lock:
            return [
                self._assistants[assistant_id].model_copy(deep=True)
                for assistant_id in assistant_ids
                if assistant_id in self._assistants
            ]

    async def increment_assistant_usage(self, assistant_id: str, hour: datetime) -> int:
        """Create or increment the usage counter of an hourly bucket."""
        async with self._async_lock:
            key = (assistant_id, hour)
            self._assistant_usage[key] = self._assistant_usage.get(key, 0) + 1
            return self._assistant_usage[key]

    async def get_assistant_usage(self, assistant_id: str, hour: datetime) -> int:
        async with self._async_lock:
            return self._assistant_usage.get((assistant_id, hour), 0)
