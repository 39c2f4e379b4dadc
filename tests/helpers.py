"""Shared test doubles for generation and persistence."""

import json
from typing import Any, AsyncIterator, Dict, List, Tuple

from branching_chat.domain.errors import PersistenceError
from branching_chat.domain.models import Conversation, Message
from branching_chat.domain.updates import FinalAnswerUpdate, MessageUpdate, StreamUpdate
from branching_chat.repositories.memory import InMemoryRepository
from branching_chat.services.generation import GenerationContext, TextGenerator


class ScriptedGenerator(TextGenerator):
    """Plays back one script per generation pass.

    A script is a list of events; an exception in the list is raised at that
    point of the stream.
    """

    def __init__(self, *scripts: List[Any]):
        self.scripts = list(scripts)
        self.contexts: List[GenerationContext] = []
        self.prompts: List[List[Tuple[str, str]]] = []

    def queue(self, *scripts: List[Any]) -> None:
        self.scripts.extend(scripts)

    async def generate(self, context: GenerationContext) -> AsyncIterator[MessageUpdate]:
        self.contexts.append(context)
        self.prompts.append([(m.from_, m.content) for m in context.messages])
        if self.scripts:
            script = self.scripts.pop(0)
        else:
            script = [StreamUpdate(token="ok"), FinalAnswerUpdate(text="ok")]
        for item in script:
            if isinstance(item, BaseException):
                raise item
            yield item


class FailingRepository(InMemoryRepository):
    """Rejects the next ``failures`` calls to replace_messages."""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures
        self.replace_calls = 0

    async def replace_messages(self, conversation_id, messages, title):
        self.replace_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceError("write not acknowledged")
        await super().replace_messages(conversation_id, messages, title)


def make_conversation(preprompt: str = "", model: str = "test-model", **fields) -> Conversation:
    """Fresh conversation holding only its system root."""
    root = Message(from_="system", content=preprompt, ancestors=[], children=[])
    return Conversation(
        model=model,
        preprompt=preprompt,
        root_message_id=root.id,
        messages={root.id: root},
        **fields,
    )


async def collect(stream: AsyncIterator[str]) -> str:
    return "".join([chunk async for chunk in stream])


def parse_events(body: str) -> List[Dict[str, Any]]:
    """JSON objects of a streamed body, ignoring the whitespace bursts."""
    return [json.loads(line) for line in body.split("\n") if line.strip()]


def errors_in(events: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [e for e in events if e["type"] == "status" and e["status"] == "error"]
