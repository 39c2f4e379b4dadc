"""
Conversation service: lifecycle operations outside of turns.

Creation seeds the tree with a system root holding the preprompt; reads
return the tree view of legacy conversations without writing them back.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

import structlog

from ..config import UsageLimits
from ..domain.errors import InvalidOperationError, NotFoundError, RateLimitedError
from ..domain.models import Assistant, Conversation, Message
from ..repositories.base import Repository
from ..tree.legacy import convert_legacy_conversation

logger = structlog.get_logger()


class ConversationService:
    """Creates, reads, patches and deletes conversations."""

    def __init__(
        self,
        repository: Repository,
        limits: Optional[UsageLimits] = None,
        models: Optional[List[str]] = None,
        default_model: str = "",
    ):
        self.repository = repository
        self.limits = limits or UsageLimits()
        self.models = models or []
        self.default_model = default_model

    def _validate_model(self, model: Optional[str]) -> str:
        model = model or self.default_model
        if self.models and model not in self.models:
            raise InvalidOperationError("Invalid model")
        return model

    async def _assistants(self, assistant_ids: List[str]) -> List[Assistant]:
        assistants = await self.repository.get_assistants(assistant_ids)
        missing = set(assistant_ids) - {a.id for a in assistants}
        if missing:
            raise NotFoundError(f"Assistant not found: {', '.join(sorted(missing))}")
        return assistants

    async def create(
        self,
        model: Optional[str] = None,
        preprompt: Optional[str] = None,
        assistant_id: Optional[str] = None,
        assistant_ids: Optional[List[str]] = None,
    ) -> Conversation:
        """Create a conversation whose root is the system preprompt message.

        With assistants bound, the first assistant's preprompt wins over the
        requested one.
        """
        if self.limits.conversations:
            count = await self.repository.count_conversations()
            if count >= self.limits.conversations:
                raise RateLimitedError(
                    "You have reached the maximum number of conversations. "
                    "Delete some to continue."
                )

        model = self._validate_model(model)
        bound: List[Assistant] = []
        if assistant_ids:
            bound = await self._assistants(assistant_ids)
        elif assistant_id:
            bound = await self._assistants([assistant_id])
        if bound:
            preprompt = bound[0].preprompt or preprompt

        root = Message(from_="system", content=preprompt or "", ancestors=[], children=[])
        conversation = Conversation(
            model=model,
            preprompt=preprompt or "",
            root_message_id=root.id,
            messages={root.id: root},
            assistant_id=bound[0].id if bound else None,
            assistant_ids=[a.id for a in bound] or None,
        )
        await self.repository.create_conversation(conversation)
        logger.info(
            "conversation_started",
            conversation_id=str(conversation.id),
            model=model,
            assistants=len(bound),
        )
        return conversation

    async def get(self, conversation_id: UUID) -> Conversation:
        """Tree view of a conversation."""
        conversation = await self.repository.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        return convert_legacy_conversation(conversation)

    async def list_conversations(self, limit: int = 100, offset: int = 0) -> List[Conversation]:
        return await self.repository.list_conversations(limit=limit, offset=offset)

    async def update(
        self, conversation_id: UUID, title: Optional[str] = None, model: Optional[str] = None
    ) -> Conversation:
        await self.get(conversation_id)
        fields = {}
        if title is not None:
            fields["title"] = title
        if model is not None:
            fields["model"] = self._validate_model(model)
        if fields:
            await self.repository.update_conversation(conversation_id, **fields)
        return await self.get(conversation_id)

    async def delete(self, conversation_id: UUID) -> None:
        if not await self.repository.delete_conversation(conversation_id):
            raise NotFoundError("Conversation not found")

    async def vote(self, conversation_id: UUID, message_id: UUID, score: int) -> Message:
        """Record user feedback on a message."""
        conversation = await self.get(conversation_id)
        message = conversation.messages.get(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        message.score = score
        message.updated_at = datetime.utcnow()
        await self.repository.save_conversation(conversation)
        return message
