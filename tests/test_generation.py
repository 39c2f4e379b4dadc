"""Test suite for the Gemini generation backend with a fake model."""

from types import SimpleNamespace

import pytest
from google.api_core import exceptions

from branching_chat.domain.errors import GenerationError
from branching_chat.domain.models import Message
from branching_chat.domain.updates import FinalAnswerUpdate, StreamUpdate, TitleUpdate
from branching_chat.services import generation
from branching_chat.services.generation import (
    GeminiGenerator,
    GenerationContext,
    fallback_title,
    needs_title,
)
from helpers import make_conversation


def chunk(text, finish_reason=None):
    candidate = SimpleNamespace(finish_reason=SimpleNamespace(name=finish_reason or "STOP"))
    return SimpleNamespace(text=text, candidates=[candidate])


class FakeModel:
    """Stands in for ``genai.GenerativeModel``."""

    chunks = []
    error = None
    instances = []

    def __init__(self, model_name, system_instruction=None):
        self.model_name = model_name
        self.system_instruction = system_instruction
        self.requests = []
        FakeModel.instances.append(self)

    async def generate_content_async(self, contents, stream=False):
        self.requests.append(contents)
        if not stream:
            return SimpleNamespace(text='"Greetings"')
        if FakeModel.error is not None:
            raise FakeModel.error
        return self._stream()

    async def _stream(self):
        for item in FakeModel.chunks:
            yield item


@pytest.fixture
def fake_model(monkeypatch):
    FakeModel.chunks = []
    FakeModel.error = None
    FakeModel.instances = []
    monkeypatch.setattr(generation.genai, "GenerativeModel", FakeModel)
    return FakeModel


def context_for(*turns, title="New Chat", is_continue=False):
    conversation = make_conversation(preprompt="Be brief")
    conversation.title = title
    messages = [conversation.messages[conversation.root_message_id]]
    messages += [Message(from_=role, content=content) for role, content in turns]
    return GenerationContext(
        conversation=conversation,
        messages=messages,
        model="gemini-test",
        is_continue=is_continue,
    )


async def run(generator, context):
    return [event async for event in generator.generate(context)]


def test_needs_title_only_on_first_exchange():
    assert needs_title(context_for(("user", "Hello")))
    assert not needs_title(context_for(("user", "Hello"), title="Renamed"))
    assert not needs_title(context_for(("user", "a"), ("assistant", "b"), ("user", "c")))
    assert not needs_title(context_for(("user", "Hello"), is_continue=True))


def test_fallback_title():
    assert fallback_title("  many   spaces ") == "many spaces"
    assert fallback_title("") == "New Chat"
    assert len(fallback_title("x" * 300)) == 100


@pytest.mark.asyncio
async def test_stream_then_final_answer(fake_model):
    fake_model.chunks = [chunk("Hel"), chunk("lo")]

    events = await run(GeminiGenerator(), context_for(("user", "Hi")))

    assert events[0] == TitleUpdate(title="Greetings")
    assert [e.token for e in events if isinstance(e, StreamUpdate)] == ["Hel", "lo"]
    assert events[-1] == FinalAnswerUpdate(text="Hello", interrupted=False)
    streaming = fake_model.instances[0]
    assert streaming.system_instruction == "Be brief"
    assert streaming.requests[0] == [{"role": "user", "parts": ["Hi"]}]


@pytest.mark.asyncio
async def test_roles_and_empty_placeholders(fake_model):
    fake_model.chunks = [chunk("ok")]
    context = context_for(("user", "a"), ("assistant", "b"), ("user", "c"), ("assistant", ""))

    await run(GeminiGenerator(), context)

    assert fake_model.instances[0].requests[0] == [
        {"role": "user", "parts": ["a"]},
        {"role": "model", "parts": ["b"]},
        {"role": "user", "parts": ["c"]},
    ]


@pytest.mark.asyncio
async def test_max_tokens_marks_interrupted(fake_model):
    fake_model.chunks = [chunk("cut", finish_reason="MAX_TOKENS")]

    events = await run(GeminiGenerator(), context_for(("user", "Hi"), title="Set"))

    assert events[-1] == FinalAnswerUpdate(text="cut", interrupted=True)


@pytest.mark.asyncio
async def test_api_errors_are_wrapped(fake_model):
    fake_model.error = exceptions.ResourceExhausted("quota")

    with pytest.raises(GenerationError, match="quota"):
        await run(GeminiGenerator(), context_for(("user", "Hi"), title="Set"))
