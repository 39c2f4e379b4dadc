"""
FastAPI Application Module

Chat API for branching conversations with one or more AI assistants.
Responses are streamed back as JSON lines while the conversation tree is
updated and checkpointed.

Key Features:
- Conversation trees with retry, edit and continue branches
- Sequential multi-assistant turns
- Rate limiting and usage quotas checked before any mutation
- Structured logging, Prometheus metrics and OpenTelemetry tracing
"""

from contextlib import asynccontextmanager
from typing import List
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import generate_latest
from structlog import get_logger

from ..config import UsageLimits, config, configure_logging
from ..domain.errors import ChatError
from ..domain.models import Assistant, Conversation, Message, TurnRequest
from ..metrics import CONVERSATIONS, CUSTOM_REGISTRY, ERRORS, MESSAGES, REQUESTS
from ..repositories.base import Repository
from ..repositories.memory import InMemoryRepository
from ..services.conversations import ConversationService
from ..services.files import FileStore
from ..services.generation import GeminiGenerator, TextGenerator
from ..services.orchestrator import TurnOrchestrator
from ..services.rate_limiter import RateLimiter
from .schemas import AssistantCreate, ConversationCreate, ConversationPatch, VoteRequest

configure_logging()
logger = get_logger()

# Core service instances
repository = InMemoryRepository()
file_store = FileStore()
text_generator = GeminiGenerator(api_key=config.GEMINI_API_KEY)
usage_limits = UsageLimits.from_config()
rate_limiter = RateLimiter(
    rate_limit=usage_limits.messages_per_minute,
    time_window=usage_limits.rate_limit_window,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles app startup/shutdown and resource management"""
    if rate_limiter.rate_limit:
        await rate_limiter.start()
    logger.info("application_startup_complete")

    yield

    await rate_limiter.stop()
    logger.info("application_shutdown_complete")


def get_repository() -> Repository:
    """Returns the conversation storage instance"""
    return repository


def get_file_store() -> FileStore:
    return file_store


def get_text_generator() -> TextGenerator:
    """Returns the generation backend"""
    return text_generator


def get_rate_limiter() -> RateLimiter:
    """Returns the rate limiting service"""
    return rate_limiter


def get_usage_limits() -> UsageLimits:
    return usage_limits


def get_conversation_service(
    repository: Repository = Depends(get_repository),
    limits: UsageLimits = Depends(get_usage_limits),
) -> ConversationService:
    return ConversationService(
        repository,
        limits=limits,
        models=config.MODELS,
        default_model=config.DEFAULT_MODEL,
    )


def get_orchestrator(
    repository: Repository = Depends(get_repository),
    generator: TextGenerator = Depends(get_text_generator),
    file_store: FileStore = Depends(get_file_store),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    limits: UsageLimits = Depends(get_usage_limits),
) -> TurnOrchestrator:
    return TurnOrchestrator(
        repository,
        generator,
        file_store,
        rate_limiter=rate_limiter,
        limits=limits,
        models=config.MODELS,
        default_model=config.DEFAULT_MODEL,
        pad_length=config.STREAM_PAD_LENGTH,
        flush_size=config.BUFFER_FLUSH_SIZE,
    )


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _http_error(event: str, error: ChatError, **context) -> HTTPException:
    """Log a domain error and translate it to its HTTP status"""
    log = logger.error if error.status_code >= 500 else logger.warning
    log(event, status_code=error.status_code, error=error.message, **context)
    return HTTPException(status_code=error.status_code, detail=error.message)


app = FastAPI(
    title="Branching Chat API",
    description="Branching conversations with streamed multi-assistant generation",
    version="0.1.0",
    lifespan=lifespan
)

# Enable cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set up request tracing
FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Tracks requests and failures"""
    REQUESTS.inc()
    logger.info("request_started", method=request.method, path=request.url.path)
    try:
        response = await call_next(request)
    except Exception as e:
        ERRORS.inc()
        logger.error("request_failed", path=request.url.path, error=str(e))
        raise
    if response.status_code >= 500:
        ERRORS.inc()
    return response


@app.get("/conversations", response_model=List[Conversation])
async def list_conversations(
    limit: int = 100,
    offset: int = 0,
    service: ConversationService = Depends(get_conversation_service)
) -> List[Conversation]:
    """Gets paginated conversation list with specified limit and offset"""
    return await service.list_conversations(limit=limit, offset=offset)


@app.post("/conversations", response_model=Conversation)
async def create_conversation(
    body: ConversationCreate,
    service: ConversationService = Depends(get_conversation_service)
) -> Conversation:
    """Starts a new conversation with its system root message"""
    try:
        conversation = await service.create(
            model=body.model,
            preprompt=body.preprompt,
            assistant_id=body.assistant_id,
            assistant_ids=body.assistant_ids,
        )
    except ChatError as e:
        raise _http_error("create_conversation_error", e)
    CONVERSATIONS.labels(model=conversation.model).inc()
    return conversation


@app.get("/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(
    conversation_id: UUID,
    service: ConversationService = Depends(get_conversation_service)
) -> Conversation:
    """Retrieves a conversation in tree layout"""
    try:
        return await service.get(conversation_id)
    except ChatError as e:
        raise _http_error("get_conversation_error", e, conversation_id=str(conversation_id))


@app.post("/conversations/{conversation_id}")
async def create_turn(
    conversation_id: UUID,
    turn: TurnRequest,
    request: Request,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator)
) -> StreamingResponse:
    """
    Grafts the request into the conversation tree and streams the
    assistant response(s) as JSON lines.
    Precondition failures are returned before streaming starts.
    """
    try:
        plan = await orchestrator.prepare_turn(
            conversation_id, turn, client_key=_client_key(request)
        )
    except ChatError as e:
        raise _http_error("create_turn_error", e, conversation_id=str(conversation_id))
    except Exception as e:
        logger.error("create_turn_error", conversation_id=str(conversation_id), error=str(e))
        raise HTTPException(status_code=500, detail="Failed to process message")

    MESSAGES.labels(model=plan.model).inc()
    return StreamingResponse(
        orchestrator.stream_turn(plan),
        media_type="application/jsonl",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.patch("/conversations/{conversation_id}", response_model=Conversation)
async def update_conversation(
    conversation_id: UUID,
    body: ConversationPatch,
    service: ConversationService = Depends(get_conversation_service)
) -> Conversation:
    """Renames a conversation or switches its model"""
    try:
        return await service.update(conversation_id, title=body.title, model=body.model)
    except ChatError as e:
        raise _http_error("update_conversation_error", e, conversation_id=str(conversation_id))


@app.delete("/conversations/{conversation_id}", status_code=204)
async def delete_conversation(
    conversation_id: UUID,
    service: ConversationService = Depends(get_conversation_service)
) -> Response:
    try:
        await service.delete(conversation_id)
    except ChatError as e:
        raise _http_error("delete_conversation_error", e, conversation_id=str(conversation_id))
    return Response(status_code=204)


@app.post("/conversations/{conversation_id}/message/{message_id}/vote", response_model=Message)
async def vote_message(
    conversation_id: UUID,
    message_id: UUID,
    body: VoteRequest,
    service: ConversationService = Depends(get_conversation_service)
) -> Message:
    """Stores user feedback on a message"""
    try:
        return await service.vote(conversation_id, message_id, body.score)
    except ChatError as e:
        raise _http_error("vote_message_error", e, conversation_id=str(conversation_id))


@app.get("/conversations/{conversation_id}/output/{sha}")
async def get_file(
    conversation_id: UUID,
    sha: str,
    file_store: FileStore = Depends(get_file_store)
) -> Response:
    """Serves a file attached to a conversation"""
    stored = await file_store.get(sha, conversation_id=conversation_id)
    if stored is None:
        logger.warning("file_not_found", conversation_id=str(conversation_id), sha=sha)
        raise HTTPException(status_code=404, detail="File not found")
    return Response(
        content=stored.data,
        media_type=stored.mime,
        headers={"Content-Disposition": f'attachment; filename="{stored.name}"'},
    )


@app.post("/assistants", response_model=Assistant)
async def create_assistant(
    body: AssistantCreate,
    repository: Repository = Depends(get_repository)
) -> Assistant:
    """Registers an assistant persona"""
    return await repository.create_assistant(
        Assistant(name=body.name, preprompt=body.preprompt)
    )


@app.get("/assistants/{assistant_id}", response_model=Assistant)
async def get_assistant(
    assistant_id: str,
    repository: Repository = Depends(get_repository)
) -> Assistant:
    assistant = await repository.get_assistant(assistant_id)
    if assistant is None:
        logger.warning("assistant_not_found", assistant_id=assistant_id)
        raise HTTPException(status_code=404, detail="Assistant not found")
    return assistant


@app.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")
