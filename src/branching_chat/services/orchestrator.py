"""Turn orchestration: tree grafting, generation passes and checkpoints.

A turn runs in two phases. ``prepare_turn`` checks every precondition,
grafts the new nodes into the tree and commits the tree shape; errors here
reach the caller before any response is streamed. ``stream_turn`` then folds
over the bound assistants, one generation pass each, and yields the response
body. From that point on errors only travel in-band as ``status: error``
events.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, List, Optional, Tuple
from uuid import UUID

import structlog

from ..config import UsageLimits
from ..domain.errors import (
    InvalidOperationError,
    NotFoundError,
    PayloadTooLargeError,
    PersistenceError,
    RateLimitedError,
)
from ..domain.models import Assistant, Conversation, Message, MessageFile, TurnRequest
from ..domain.updates import MessageUpdateStatus, StatusUpdate
from ..metrics import GENERATION_ERRORS, LATENCY
from ..repositories.base import Repository
from ..tree.legacy import convert_legacy_conversation, is_tree_conversation
from ..tree.primitives import add_child, add_sibling, is_message_id
from ..tree.prompt import build_subtree, substitute_preprompt
from .files import FileStore, check_file_size, decode_base64_file
from .generation import GenerationContext, TextGenerator
from .rate_limiter import RateLimiter
from .sink import DEFAULT_FLUSH_SIZE, DEFAULT_PAD_LENGTH, MessageState, UpdateSink, format_event

logger = structlog.get_logger()

NO_OUTPUT_MESSAGE = "No output was generated. Something went wrong."
TERMINAL_SAVE_ATTEMPTS = 2


def start_of_hour(moment: datetime) -> datetime:
    return moment.replace(minute=0, second=0, microsecond=0)


@dataclass
class TurnPlan:
    """Outcome of the grafting phase of a turn."""

    conversation: Conversation
    write_to_id: UUID
    prompt: List[Message]
    model: str
    assistants: List[Assistant] = field(default_factory=list)
    is_continue: bool = False
    prompted_at: datetime = field(default_factory=datetime.utcnow)
    # Set only once the terminal checkpoint has been written.
    completed: bool = False

    @property
    def multi_assistant(self) -> bool:
        return len(self.assistants) > 1


@dataclass
class AssistantPass:
    """One step of the fold over assistants."""

    index: int
    message: Message
    prompt: List[Message]
    assistant: Optional[Assistant] = None
    multi_assistant: bool = False

    @property
    def stamp(self) -> Optional[str]:
        """Assistant id put on every event of the pass in multi-assistant turns."""
        if self.multi_assistant and self.assistant is not None:
            return self.assistant.id
        return None


class TurnOrchestrator:
    """Runs turns against a repository and a generation backend."""

    def __init__(
        self,
        repository: Repository,
        generator: TextGenerator,
        file_store: FileStore,
        rate_limiter: Optional[RateLimiter] = None,
        limits: Optional[UsageLimits] = None,
        models: Optional[List[str]] = None,
        default_model: str = "",
        pad_length: int = DEFAULT_PAD_LENGTH,
        flush_size: int = DEFAULT_FLUSH_SIZE,
    ):
        self.repository = repository
        self.generator = generator
        self.file_store = file_store
        self.rate_limiter = rate_limiter
        self.limits = limits or UsageLimits()
        self.models = models or []
        self.default_model = default_model
        self.pad_length = pad_length
        self.flush_size = flush_size

    async def load_conversation(self, conversation_id: UUID) -> Conversation:
        """Load a conversation in tree layout, persisting a legacy conversion."""
        conversation = await self.repository.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        if not is_tree_conversation(conversation):
            converted = convert_legacy_conversation(conversation)
            if converted is not conversation:
                await self.repository.save_conversation(converted)
            conversation = converted
        return conversation

    async def prepare_turn(
        self,
        conversation_id: UUID,
        request: TurnRequest,
        client_key: str = "unknown",
    ) -> TurnPlan:
        """Validate the request, graft placeholder nodes and commit the tree."""
        conversation = await self.load_conversation(conversation_id)
        assistants = await self._resolve_assistants(conversation)
        model = conversation.model or self.default_model
        if self.models and model not in self.models:
            raise NotFoundError("Model not available anymore")

        await self._check_usage(conversation, request, client_key)
        files = await self._upload_files(conversation, request.files)

        write_to_id, prompt = self._graft(conversation, request, files)
        if not prompt:
            raise InvalidOperationError("Failed to create prompt")

        await self._commit(conversation)
        logger.info(
            "turn_prepared",
            conversation_id=str(conversation.id),
            write_to_id=str(write_to_id),
            is_retry=request.is_retry,
            is_continue=request.is_continue,
            assistants=len(assistants),
        )
        return TurnPlan(
            conversation=conversation,
            write_to_id=write_to_id,
            prompt=prompt,
            model=model,
            assistants=assistants,
            is_continue=request.is_continue,
        )

    async def _resolve_assistants(self, conversation: Conversation) -> List[Assistant]:
        assistant_ids = conversation.bound_assistant_ids()
        if not assistant_ids:
            return []
        assistants = await self.repository.get_assistants(assistant_ids)
        missing = set(assistant_ids) - {a.id for a in assistants}
        if missing:
            raise NotFoundError(f"Assistant not found: {', '.join(sorted(missing))}")
        return assistants

    async def _check_usage(
        self, conversation: Conversation, request: TurnRequest, client_key: str
    ) -> None:
        limits = self.limits
        if self.rate_limiter is not None:
            await self.rate_limiter.check_rate_limit(client_key)

        if limits.messages and len(conversation.messages) > limits.messages:
            raise RateLimitedError(
                f"This conversation has more than {limits.messages} messages. "
                "Start a new one to continue"
            )
        if limits.message_length and len(request.inputs or "") > limits.message_length:
            raise InvalidOperationError("Message too long.")
        if limits.files and len(request.files) > limits.files:
            raise PayloadTooLargeError(f"Too many files, at most {limits.files} allowed")

    async def _upload_files(
        self, conversation: Conversation, files: List[MessageFile]
    ) -> List[MessageFile]:
        """Upload base64 attachments and return hash references.

        Sizes are checked for every file before anything is stored.
        """
        hash_files = [f for f in files if f.type == "hash"]
        decoded = [(f, decode_base64_file(f)) for f in files if f.type == "base64"]
        for file, data in decoded:
            check_file_size(file.name, data, self.limits.file_size)

        uploaded = [
            await self.file_store.upload(file.name, file.mime, data, conversation.id)
            for file, data in decoded
        ]
        return uploaded + hash_files

    def _graft(
        self, conversation: Conversation, request: TurnRequest, files: List[MessageFile]
    ) -> Tuple[UUID, List[Message]]:
        """Apply the tree mutation for the request.

        Returns the id of the message to stream into and the prompt for it.
        """
        message_id = request.id
        if message_id is not None and not is_message_id(conversation, message_id):
            raise NotFoundError("Message not found")

        if request.is_continue and message_id is not None:
            if conversation.messages[message_id].children:
                raise InvalidOperationError("Can only continue the last message")
            return message_id, build_subtree(conversation, message_id)

        if request.is_retry and message_id is not None:
            target = conversation.messages[message_id]
            if target.from_ == "user":
                if not request.inputs:
                    raise InvalidOperationError("Retrying a user message needs a new prompt")
                new_user_id = add_sibling(
                    conversation,
                    Message(from_="user", content=request.inputs, files=files),
                    message_id,
                )
                write_to_id = add_child(conversation, Message(from_="assistant"), new_user_id)
                return write_to_id, build_subtree(conversation, new_user_id)
            if target.from_ == "assistant":
                write_to_id = add_sibling(conversation, Message(from_="assistant"), message_id)
                prompt = build_subtree(conversation, message_id)
                prompt.pop()
                return write_to_id, prompt
            raise InvalidOperationError("System messages cannot be retried")

        new_user_id = add_child(
            conversation,
            Message(from_="user", content=request.inputs or "", files=files),
            message_id,
        )
        write_to_id = add_child(conversation, Message(from_="assistant"), new_user_id)
        return write_to_id, build_subtree(conversation, new_user_id)

    async def _commit(self, conversation: Conversation) -> None:
        try:
            await self.repository.replace_messages(
                conversation.id, conversation.messages, conversation.title
            )
        except PersistenceError:
            raise
        except Exception as e:
            logger.error("turn_commit_failed", conversation_id=str(conversation.id), error=str(e))
            raise PersistenceError("Failed to save the conversation") from e

    def prepare_pass(
        self,
        conversation: Conversation,
        prior_id: UUID,
        assistant: Optional[Assistant],
        index: int,
        plan: TurnPlan,
    ) -> AssistantPass:
        """Placeholder and prompt for pass ``index``.

        The first pass writes to the turn's placeholder. Later passes get a
        new placeholder chained under ``prior_id`` and see everything above it.
        The assistant preprompt goes into a copy of the system message only.
        """
        if index == 0:
            message = conversation.messages[plan.write_to_id]
            prompt = list(plan.prompt)
        else:
            new_id = add_child(conversation, Message(from_="assistant"), prior_id)
            message = conversation.messages[new_id]
            prompt = build_subtree(conversation, new_id)
            prompt.pop()

        if assistant is not None:
            # a continued reply keeps the assistant that wrote it
            if message.assistant_id is None:
                message.assistant_id = assistant.id
            if plan.multi_assistant or assistant.preprompt:
                prompt = substitute_preprompt(prompt, assistant.preprompt)

        return AssistantPass(
            index=index,
            message=message,
            prompt=prompt,
            assistant=assistant,
            multi_assistant=plan.multi_assistant,
        )

    async def run_pass(self, plan: TurnPlan, step: AssistantPass) -> AsyncIterator[str]:
        """Stream one generation pass into its placeholder message."""
        conversation = plan.conversation
        sink = UpdateSink(
            conversation,
            step.message,
            self.repository,
            assistant_id=step.stamp,
            accept_title=step.index == 0,
            pad_length=self.pad_length,
            flush_size=self.flush_size,
        )
        if step.stamp is not None:
            yield format_event(
                StatusUpdate(
                    status=MessageUpdateStatus.STARTED,
                    message=f"{step.assistant.name} is responding...",
                    assistant_id=step.stamp,
                )
            )

        context = GenerationContext(
            conversation=conversation,
            messages=step.prompt,
            model=plan.model,
            assistant=step.assistant,
            is_continue=plan.is_continue,
            prompted_at=plan.prompted_at,
        )
        failed = False
        try:
            async for event in self.generator.generate(context):
                for chunk in await sink.apply(event):
                    yield chunk
        except Exception as e:
            failed = True
            GENERATION_ERRORS.labels(model=plan.model).inc()
            logger.error(
                "generation_pass_failed",
                conversation_id=str(conversation.id),
                message_id=str(step.message.id),
                assistant_id=step.assistant.id if step.assistant else None,
                error=str(e),
            )
            detail = NO_OUTPUT_MESSAGE if sink.content_unchanged else (str(e) or NO_OUTPUT_MESSAGE)
            error_event = StatusUpdate(status=MessageUpdateStatus.ERROR, message=detail)
            for chunk in await sink.apply(error_event):
                yield chunk

        if not failed and sink.content_unchanged and not sink.error_reported:
            no_output = StatusUpdate(status=MessageUpdateStatus.ERROR, message=NO_OUTPUT_MESSAGE)
            for chunk in await sink.apply(no_output):
                yield chunk

        if sink.state == MessageState.STREAMING:
            # tokens arrived but no final answer
            step.message.interrupted = True
        elif sink.state == MessageState.FINALIZED:
            LATENCY.labels(model=plan.model).observe(
                (datetime.utcnow() - plan.prompted_at).total_seconds()
            )
        step.message.updated_at = datetime.utcnow()

    async def _finish_pass(self, plan: TurnPlan, step: AssistantPass, last: bool) -> List[str]:
        conversation = plan.conversation
        if step.assistant is not None:
            try:
                await self.repository.increment_assistant_usage(
                    step.assistant.id, start_of_hour(datetime.utcnow())
                )
            except Exception as e:
                logger.error(
                    "assistant_usage_update_failed", assistant_id=step.assistant.id, error=str(e)
                )

        if last:
            return []
        try:
            await self.repository.replace_messages(
                conversation.id, conversation.messages, conversation.title
            )
        except Exception as e:
            logger.error(
                "pass_checkpoint_failed",
                conversation_id=str(conversation.id),
                message_id=str(step.message.id),
                error=str(e),
            )
            event = StatusUpdate(
                status=MessageUpdateStatus.ERROR,
                message="Failed to save the response",
                assistant_id=step.stamp,
            )
            step.message.updates.append(event)
            return [format_event(event)]
        return []

    async def _terminal_save(self, plan: TurnPlan) -> Tuple[bool, List[str]]:
        conversation = plan.conversation
        for attempt in range(1, TERMINAL_SAVE_ATTEMPTS + 1):
            try:
                await self.repository.replace_messages(
                    conversation.id, conversation.messages, conversation.title
                )
                return True, []
            except Exception as e:
                logger.warning(
                    "terminal_save_failed",
                    conversation_id=str(conversation.id),
                    attempt=attempt,
                    error=str(e),
                )
        logger.error(
            "generated_content_lost",
            conversation_id=str(conversation.id),
            message_id=str(plan.write_to_id),
        )
        error_event = StatusUpdate(
            status=MessageUpdateStatus.ERROR,
            message="Failed to save the conversation",
        )
        return False, [format_event(error_event)]

    async def stream_turn(self, plan: TurnPlan) -> AsyncIterator[str]:
        """Response body of a prepared turn, one chunk at a time."""
        conversation = plan.conversation
        passes: List[Optional[Assistant]] = list(plan.assistants) or [None]
        placeholder_id = plan.write_to_id
        try:
            for index, assistant in enumerate(passes):
                step = self.prepare_pass(conversation, placeholder_id, assistant, index, plan)
                placeholder_id = step.message.id
                async for chunk in self.run_pass(plan, step):
                    yield chunk
                for chunk in await self._finish_pass(plan, step, last=index == len(passes) - 1):
                    yield chunk

            saved, chunks = await self._terminal_save(plan)
            for chunk in chunks:
                yield chunk
            plan.completed = saved
            logger.info(
                "turn_finished",
                saved=saved,
                conversation_id=str(conversation.id),
                passes=len(passes),
            )
        finally:
            if not plan.completed:
                logger.warning(
                    "turn_not_completed",
                    conversation_id=str(conversation.id),
                    message_id=str(placeholder_id),
                )
