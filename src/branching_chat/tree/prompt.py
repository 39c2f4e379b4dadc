"""Prompt reconstruction from a path in the conversation tree."""

from typing import List
from uuid import UUID

from ..domain.models import Conversation, Message
from .primitives import path_to_root


def build_subtree(conversation: Conversation, message_id: UUID) -> List[Message]:
    """Ordered prompt context ending at ``message_id``.

    Returns a new list, so callers may pop the trailing placeholder when
    regenerating it. The tree itself is left untouched.
    """
    return list(path_to_root(conversation, message_id))


def substitute_preprompt(messages: List[Message], preprompt: str) -> List[Message]:
    """Copy of ``messages`` whose leading system message carries ``preprompt``."""
    prompt = list(messages)
    if prompt and prompt[0].from_ == "system":
        prompt[0] = prompt[0].model_copy(update={"content": preprompt})
    return prompt
