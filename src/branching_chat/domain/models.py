"""Domain models for the chat application."""

from datetime import datetime
from typing import Dict, List, Literal, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from .updates import MessageUpdate

Role = Literal["user", "assistant", "system"]


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MessageFile(CamelModel):
    """Attachment: base64 payload, or hash of a file stored server side."""

    type: Literal["hash", "base64"]
    name: str
    value: str
    mime: str


class Message(CamelModel):
    """Message model. A node in the conversation tree."""

    id: UUID = Field(default_factory=uuid4)
    from_: Role = Field(alias="from")
    content: str = ""
    reasoning: Optional[str] = None
    # Ids from the root down to the parent; None on legacy messages.
    ancestors: Optional[List[UUID]] = None
    # Direct children only, insertion ordered.
    children: Optional[List[UUID]] = None
    files: List[MessageFile] = []
    updates: List[MessageUpdate] = []
    interrupted: Optional[bool] = None
    assistant_id: Optional[str] = None
    score: Optional[Literal[-1, 0, 1]] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Conversation(CamelModel):
    """Conversation model.

    ``messages`` maps message id to message and keeps insertion order. A flat
    list of messages (the legacy and document-store layout) is accepted and
    indexed by id.
    """

    id: UUID = Field(default_factory=uuid4)
    title: str = "New Chat"
    model: str = ""
    preprompt: Optional[str] = None
    root_message_id: Optional[UUID] = None
    assistant_id: Optional[str] = None  # legacy single assistant
    assistant_ids: Optional[List[str]] = None
    messages: Dict[UUID, Message] = {}
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("messages", mode="before")
    @classmethod
    def _index_messages(cls, value):
        if isinstance(value, list):
            indexed = {}
            for item in value:
                message = item if isinstance(item, Message) else Message.model_validate(item)
                indexed[message.id] = message
            return indexed
        return value

    @field_serializer("messages")
    def _list_messages(self, messages: Dict[UUID, Message]) -> List[Message]:
        return list(messages.values())

    def bound_assistant_ids(self) -> List[str]:
        """Assistants taking part in each turn, in order."""
        if self.assistant_ids:
            return list(self.assistant_ids)
        if self.assistant_id:
            return [self.assistant_id]
        return []


class Assistant(CamelModel):
    """A named persona with its own preprompt."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    preprompt: str = ""
    created_at: datetime = Field(default_factory=datetime.utcnow)


class TurnRequest(BaseModel):
    """A client request that starts one turn.

    ``id`` is the parent for a new message, or the target of a retry or
    continue.
    """

    id: Optional[UUID] = None
    inputs: Optional[str] = Field(default=None, min_length=1)
    is_retry: bool = False
    is_continue: bool = False
    files: List[MessageFile] = []

    @field_validator("inputs")
    @classmethod
    def _normalize_newlines(cls, value: Optional[str]) -> Optional[str]:
        return value.replace("\r\n", "\n") if value is not None else value
