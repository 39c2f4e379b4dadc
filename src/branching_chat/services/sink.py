"""Update sink: applies generation events to a message and projects them.

Each pass gets its own sink. ``apply`` mutates the message being written,
keeps the audit log in ``Message.updates`` and returns the chunks of the
response body to send for the event.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

import structlog

from ..domain.models import Conversation, Message, MessageFile
from ..domain.updates import (
    FileUpdate,
    FinalAnswerUpdate,
    MessageReasoningUpdateType,
    MessageUpdate,
    MessageUpdateStatus,
    ReasoningUpdate,
    StatusUpdate,
    StreamUpdate,
    TitleUpdate,
    is_transient,
)
from ..repositories.base import Repository

logger = structlog.get_logger()

# NUL never appears in generated text, so clients can strip it from tokens.
PAD_FILLER = "\0"
DEFAULT_PAD_LENGTH = 16
DEFAULT_FLUSH_SIZE = 4096


class MessageState(str, Enum):
    """Lifecycle of the message written by one pass."""

    EMPTY = "empty"
    STREAMING = "streaming"
    FINALIZED = "finalized"


def pad_token(token: str, length: int = DEFAULT_PAD_LENGTH) -> str:
    """Right-pad a token with NUL filler to at least ``length`` characters.

    Streamed tokens are padded on the wire so packet sizes do not leak token
    lengths.
    """
    return token.ljust(length, PAD_FILLER)


def format_event(event: MessageUpdate) -> str:
    """One JSON line of the response body."""
    return event.model_dump_json(by_alias=True, exclude_none=True) + "\n"


class UpdateSink:
    """Reduces one pass's events into ``message`` and emits projections."""

    def __init__(
        self,
        conversation: Conversation,
        message: Message,
        repository: Repository,
        assistant_id: Optional[str] = None,
        accept_title: bool = True,
        pad_length: int = DEFAULT_PAD_LENGTH,
        flush_size: int = DEFAULT_FLUSH_SIZE,
    ):
        self.conversation = conversation
        self.message = message
        self.repository = repository
        self.assistant_id = assistant_id
        self.accept_title = accept_title
        self.pad_length = pad_length
        self.flush_size = flush_size
        self.initial_content = message.content
        self.state = MessageState.EMPTY
        self.error_reported = False

    @property
    def content_unchanged(self) -> bool:
        return self.message.content == self.initial_content

    def appended_text(self) -> str:
        """Text added to the message during this pass."""
        return self.message.content[len(self.initial_content):]

    async def apply(self, event: MessageUpdate) -> List[str]:
        message = self.message
        if self.assistant_id is not None:
            event = event.model_copy(update={"assistant_id": self.assistant_id})

        if isinstance(event, StreamUpdate):
            message.content += event.token
            if self.state == MessageState.EMPTY:
                self.state = MessageState.STREAMING

        elif isinstance(event, ReasoningUpdate):
            if event.subtype == MessageReasoningUpdateType.STREAM:
                message.reasoning = (message.reasoning or "") + (event.token or "")

        elif isinstance(event, TitleUpdate):
            if self.accept_title:
                self.conversation.title = event.title
                await self.repository.update_title(self.conversation.id, event.title)
                logger.info(
                    "conversation_title_updated",
                    conversation_id=str(self.conversation.id),
                    title=event.title,
                )

        elif isinstance(event, FinalAnswerUpdate):
            message.interrupted = event.interrupted
            message.content = self.initial_content + event.text
            self.state = MessageState.FINALIZED

        elif isinstance(event, FileUpdate):
            message.files = [
                *message.files,
                MessageFile(type="hash", name=event.name, value=event.sha, mime=event.mime),
            ]

        elif isinstance(event, StatusUpdate):
            if event.status == MessageUpdateStatus.ERROR:
                self.error_reported = True

        if not is_transient(event):
            message.updates.append(event)
        message.updated_at = datetime.utcnow()

        if isinstance(event, StreamUpdate):
            event = event.model_copy(update={"token": pad_token(event.token, self.pad_length)})

        chunks = [format_event(event)]
        # Whitespace burst so proxies and browsers do not hold the body back.
        if isinstance(event, FinalAnswerUpdate):
            chunks.append(" " * self.flush_size)
        return chunks
