"""Generation events streamed to the client and kept in a message's audit log.

Every event serializes to one JSON object per line. Field names use the
camelCase spelling of the wire protocol (``assistantId``).
"""

from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class MessageUpdateStatus(str, Enum):
    """Values carried by ``status`` events."""

    STARTED = "started"
    ERROR = "error"
    FINISHED = "finished"
    KEEP_ALIVE = "keepAlive"


class MessageReasoningUpdateType(str, Enum):
    """Sub-channels of ``reasoning`` events."""

    STREAM = "stream"
    STATUS = "status"


class _UpdateModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    assistant_id: Optional[str] = None


class StatusUpdate(_UpdateModel):
    type: Literal["status"] = "status"
    status: MessageUpdateStatus
    message: Optional[str] = None


class StreamUpdate(_UpdateModel):
    type: Literal["stream"] = "stream"
    token: str


class ReasoningUpdate(_UpdateModel):
    type: Literal["reasoning"] = "reasoning"
    subtype: MessageReasoningUpdateType
    token: Optional[str] = None
    status: Optional[str] = None


class TitleUpdate(_UpdateModel):
    type: Literal["title"] = "title"
    title: str


class FinalAnswerUpdate(_UpdateModel):
    type: Literal["finalAnswer"] = "finalAnswer"
    text: str
    interrupted: bool = False


class FileUpdate(_UpdateModel):
    type: Literal["file"] = "file"
    name: str
    sha: str
    mime: str


MessageUpdate = Annotated[
    Union[
        StatusUpdate,
        StreamUpdate,
        ReasoningUpdate,
        TitleUpdate,
        FinalAnswerUpdate,
        FileUpdate,
    ],
    Field(discriminator="type"),
]

MessageUpdates = List[MessageUpdate]


def is_transient(event: BaseModel) -> bool:
    """Return True for events that are forwarded but never audited.

    Stream tokens, reasoning tokens and keep-alive pings are too frequent
    to keep in ``Message.updates``.
    """
    if isinstance(event, StreamUpdate):
        return True
    if isinstance(event, ReasoningUpdate):
        return event.subtype == MessageReasoningUpdateType.STREAM
    if isinstance(event, StatusUpdate):
        return event.status == MessageUpdateStatus.KEEP_ALIVE
    return False
