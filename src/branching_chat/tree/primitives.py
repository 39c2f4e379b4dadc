"""Pure operations on the in-memory conversation tree.

A conversation keeps both adjacency lists on every node: ``ancestors`` (root
to parent) and ``children``. Both are updated by the same call here and
nowhere else.
"""

from typing import Any, List, Optional
from uuid import UUID

from ..domain.errors import InvalidOperationError, NotFoundError
from ..domain.models import Conversation, Message


def _get(conversation: Conversation, message_id: UUID) -> Message:
    message = conversation.messages.get(message_id)
    if message is None:
        raise NotFoundError(f"Message {message_id} not found")
    return message


def is_message_id(conversation: Conversation, value: Any) -> bool:
    """Whether ``value`` is a well formed id of a message in the conversation."""
    if isinstance(value, UUID):
        message_id = value
    else:
        try:
            message_id = UUID(str(value))
        except (TypeError, ValueError):
            return False
    return message_id in conversation.messages


def latest_leaf(conversation: Conversation) -> Optional[UUID]:
    """Follow the most recently added child from the root down to a leaf."""
    if conversation.root_message_id is None:
        return None
    current = _get(conversation, conversation.root_message_id)
    while current.children:
        current = _get(conversation, current.children[-1])
    return current.id


def add_child(
    conversation: Conversation,
    message: Message,
    parent_id: Optional[UUID] = None,
) -> UUID:
    """Attach ``message`` under ``parent_id`` and return its id.

    The first message of an empty conversation becomes the root and must be a
    system message. Without a
    parent in a non-empty conversation the message goes under the latest leaf.
    """
    if not conversation.messages:
        if message.from_ != "system":
            raise InvalidOperationError("The root message must be a system message")
        message.ancestors = []
        message.children = []
        conversation.messages[message.id] = message
        conversation.root_message_id = message.id
        return message.id

    if parent_id is None:
        parent_id = latest_leaf(conversation)
        if parent_id is None:
            raise InvalidOperationError(
                "Cannot resolve a parent in a conversation without a root message"
            )

    parent = _get(conversation, parent_id)
    if message.id in conversation.messages:
        raise InvalidOperationError(f"Message {message.id} is already in the conversation")

    message.ancestors = [*(parent.ancestors or []), parent.id]
    message.children = []
    conversation.messages[message.id] = message
    if parent.children is None:
        parent.children = []
    parent.children.append(message.id)
    return message.id


def add_sibling(conversation: Conversation, message: Message, sibling_id: UUID) -> UUID:
    """Insert ``message`` next to ``sibling_id`` under the same parent.

    The new id lands right after the sibling in the parent's children.
    """
    if not conversation.messages:
        raise InvalidOperationError("Cannot add a sibling to an empty conversation")
    if conversation.root_message_id is None:
        raise InvalidOperationError("Cannot add a sibling to a legacy conversation")

    sibling = _get(conversation, sibling_id)
    if not sibling.ancestors:
        raise InvalidOperationError("The root message cannot have siblings")
    if message.id in conversation.messages:
        raise InvalidOperationError(f"Message {message.id} is already in the conversation")

    parent = _get(conversation, sibling.ancestors[-1])
    message.ancestors = list(sibling.ancestors)
    message.children = []
    conversation.messages[message.id] = message

    if parent.children is None:
        parent.children = []
    try:
        position = parent.children.index(sibling_id) + 1
    except ValueError:
        position = len(parent.children)
    parent.children.insert(position, message.id)
    return message.id


def path_to_root(conversation: Conversation, node_id: UUID) -> List[Message]:
    """Messages from the root down to ``node_id`` inclusive."""
    node = _get(conversation, node_id)
    return [_get(conversation, ancestor) for ancestor in node.ancestors or []] + [node]


def check_tree_consistency(conversation: Conversation) -> None:
    """Raise InvalidOperationError naming the first broken tree invariant."""
    roots = [m.id for m in conversation.messages.values() if not m.ancestors]
    if conversation.messages and roots != [conversation.root_message_id]:
        raise InvalidOperationError(f"Expected exactly one root, found {roots}")

    seen_children = set()
    for message in conversation.messages.values():
        if message.ancestors is None or message.children is None:
            raise InvalidOperationError(f"Message {message.id} has no tree fields")
        for child_id in message.children:
            if child_id in seen_children:
                raise InvalidOperationError(f"Message {child_id} has two parents")
            seen_children.add(child_id)
            child = conversation.messages.get(child_id)
            if child is None:
                raise InvalidOperationError(f"Dangling child {child_id} under {message.id}")
            if child.ancestors != [*message.ancestors, message.id]:
                raise InvalidOperationError(f"Ancestors of {child_id} do not match its parent")
        if message.ancestors:
            parent = conversation.messages.get(message.ancestors[-1])
            if parent is None or message.id not in (parent.children or []):
                raise InvalidOperationError(f"Message {message.id} is orphaned")
