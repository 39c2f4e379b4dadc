"""Text generation backends producing a stream of message updates."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import google.generativeai as genai
import structlog
from google.api_core import exceptions

from ..domain.errors import GenerationError
from ..domain.models import Assistant, Conversation, Message
from ..domain.updates import (
    FinalAnswerUpdate,
    MessageUpdate,
    StreamUpdate,
    TitleUpdate,
)

logger = structlog.get_logger()

DEFAULT_TITLE = "New Chat"
TITLE_MAX_LENGTH = 100


@dataclass
class GenerationContext:
    """Everything one generation pass needs."""

    conversation: Conversation
    messages: List[Message]
    model: str
    assistant: Optional[Assistant] = None
    is_continue: bool = False
    prompted_at: Optional[datetime] = None


class TextGenerator(ABC):
    """Produces the events of one generation pass."""

    @abstractmethod
    def generate(self, context: GenerationContext) -> AsyncIterator[MessageUpdate]:
        """Yield updates until the answer is final."""


def needs_title(context: GenerationContext) -> bool:
    """A title is generated once, on the first exchange of a fresh conversation."""
    if context.is_continue or context.conversation.title != DEFAULT_TITLE:
        return False
    return sum(1 for m in context.messages if m.from_ == "user") == 1


def fallback_title(text: str) -> str:
    title = " ".join(text.split())
    if len(title) > TITLE_MAX_LENGTH:
        title = title[: TITLE_MAX_LENGTH - 3].rstrip() + "..."
    return title or DEFAULT_TITLE


class GeminiGenerator(TextGenerator):
    """Generation backend using Google's Gemini models with streaming."""

    def __init__(self, api_key: str = "", title_model: Optional[str] = None):
        """Initialize the Gemini client."""
        if api_key:
            genai.configure(api_key=api_key)
        self.title_model = title_model
        logger.info("gemini_generator_init", configured=bool(api_key), title_model=title_model)

    def _contents(self, messages: List[Message]) -> List[Dict[str, Any]]:
        contents = []
        for message in messages:
            if message.from_ == "system" or not message.content:
                continue
            role = "model" if message.from_ == "assistant" else "user"
            contents.append({"role": role, "parts": [message.content]})
        return contents

    async def _generate_title(self, context: GenerationContext) -> str:
        question = next(m.content for m in context.messages if m.from_ == "user")
        model = genai.GenerativeModel(self.title_model or context.model)
        prompt = (
            "Summarize the following request as a conversation title of at most "
            "five words. Reply with the title only.\n\n" + question
        )
        try:
            response = await model.generate_content_async(prompt)
            return fallback_title(response.text.strip().strip('"'))
        except (exceptions.GoogleAPIError, ValueError) as e:
            logger.warning("title_generation_failed", error=str(e))
            return fallback_title(question)

    async def generate(self, context: GenerationContext) -> AsyncIterator[MessageUpdate]:
        system = context.messages[0].content if context.messages and context.messages[0].from_ == "system" else ""
        model = genai.GenerativeModel(context.model, system_instruction=system or None)

        if needs_title(context):
            yield TitleUpdate(title=await self._generate_title(context))

        text = ""
        finish_reason = None
        try:
            response = await model.generate_content_async(self._contents(context.messages), stream=True)
            async for chunk in response:
                if chunk.candidates:
                    finish_reason = chunk.candidates[0].finish_reason
                try:
                    token = chunk.text
                except ValueError:
                    # chunk without text parts, e.g. blocked by safety filters
                    continue
                if token:
                    text += token
                    yield StreamUpdate(token=token)
        except exceptions.ResourceExhausted as e:
            logger.warning("gemini_quota_exhausted", model=context.model)
            raise GenerationError(f"Model quota exhausted: {e.message}") from e
        except exceptions.GoogleAPIError as e:
            logger.error("gemini_generation_error", model=context.model, error=str(e))
            raise GenerationError(str(e)) from e

        interrupted = getattr(finish_reason, "name", "") == "MAX_TOKENS"
        logger.info(
            "generation_finished",
            model=context.model,
            length=len(text),
            interrupted=interrupted,
        )
        yield FinalAnswerUpdate(text=text, interrupted=interrupted)
