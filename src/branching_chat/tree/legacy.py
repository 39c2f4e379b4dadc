"""Conversion of flat, pre-tree conversations into the tree layout."""

from datetime import datetime

import structlog

from ..domain.models import Conversation, Message

logger = structlog.get_logger()


def is_tree_conversation(conversation: Conversation) -> bool:
    """True when the root id is set and every message carries tree fields."""
    if conversation.root_message_id is None:
        return False
    return all(
        message.ancestors is not None and message.children is not None
        for message in conversation.messages.values()
    )


def convert_legacy_conversation(conversation: Conversation) -> Conversation:
    """Return the conversation in tree layout, chaining messages linearly.

    Message i becomes the only child of message i-1. A system message holding
    the preprompt is put in front when the flat log does not start with one.
    An empty conversation gets just the system root. Already converted
    conversations come back unchanged.
    """
    if is_tree_conversation(conversation):
        return conversation

    flat = [message.model_copy(deep=True) for message in conversation.messages.values()]
    if not flat or flat[0].from_ != "system":
        now = datetime.utcnow()
        flat.insert(
            0,
            Message(
                from_="system",
                content=conversation.preprompt or "",
                created_at=now,
                updated_at=now,
            ),
        )

    for index, message in enumerate(flat):
        message.ancestors = [previous.id for previous in flat[:index]]
        message.children = [flat[index + 1].id] if index + 1 < len(flat) else []

    logger.info(
        "legacy_conversation_converted",
        conversation_id=str(conversation.id),
        message_count=len(flat),
    )
    return conversation.model_copy(
        update={"root_message_id": flat[0].id, "messages": {m.id: m for m in flat}}
    )
