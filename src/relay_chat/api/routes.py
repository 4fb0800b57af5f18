import asyncio
import json
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from ..bot.events import BOT_REPLY_EVENT, STOP_BOT_EVENT
from ..bot.providers import parse_config, parse_options
from ..config import SUBJECT_MAX_CHARS
from ..data.models import (
    ConversationListItem,
    ConversationOptions,
    Message,
    Model,
    NewConversation,
    NewMessage,
    NewModel,
    SeedMessage,
    Setting,
)
from ..errors import (
    ChatError,
    CompletionError,
    InvalidStateError,
    NotFoundError,
    ProviderConfigError,
    ReplyCancelledError,
)
from .models import (
    ConversationIn,
    ConversationOut,
    MessageIn,
    ModelIn,
    OptionsIn,
    StopResult,
    StreamReplyAccepted,
    StreamReplyRequest,
)
from .sse import sse_bot_reply, sse_init

logger = logging.getLogger(__name__)
router = APIRouter()


def _status_for(exc: ChatError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (InvalidStateError, ReplyCancelledError)):
        return 409
    if isinstance(exc, CompletionError):
        return 502
    return 500


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    logger.warning("%s %s failed: [%s] %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=_status_for(exc), content=exc.to_dict())


def make_subject(message: str) -> str:
    subject = message.strip()
    if len(subject) > SUBJECT_MAX_CHARS:
        subject = subject[: SUBJECT_MAX_CHARS - 3] + "..."
    return subject


# --- Models & settings ---


@router.post("/api/models")
async def create_model(body: ModelIn, request: Request) -> Model:
    store = request.app.state.store
    new_model = NewModel(name=body.name, provider=body.provider, config=json.dumps(body.config))
    try:
        parse_config(new_model)
    except ProviderConfigError as e:
        raise HTTPException(status_code=422, detail=e.message) from e
    return await store.create_model(new_model)


@router.get("/api/models")
async def list_models(request: Request) -> list[Model]:
    return await request.app.state.store.list_models()


@router.get("/api/settings")
async def list_settings(request: Request) -> list[Setting]:
    return await request.app.state.store.list_settings()


@router.put("/api/settings")
async def upsert_setting(setting: Setting, request: Request) -> Setting:
    return await request.app.state.store.upsert_setting(setting)


# --- Conversations & messages ---


@router.post("/api/conversations")
async def create_conversation(body: ConversationIn, request: Request) -> ConversationOut:
    store = request.app.state.store
    conversation, message = await store.create_conversation_with_message(
        NewConversation(model_id=body.model_id, subject=make_subject(body.message)),
        SeedMessage(content=body.message),
    )
    return ConversationOut(conversation=conversation, message=message)


@router.get("/api/conversations")
async def list_conversations(request: Request) -> list[ConversationListItem]:
    return await request.app.state.store.list_conversations()


@router.post("/api/messages")
async def create_message(body: MessageIn, request: Request) -> Message:
    store = request.app.state.store
    return await store.create_message(
        NewMessage(conversation_id=body.conversation_id, role=body.role, content=body.content)
    )


@router.get("/api/conversations/{conversation_id}/messages")
async def list_messages(conversation_id: int, request: Request) -> list[Message]:
    return await request.app.state.store.list_messages(conversation_id)


@router.get("/api/conversations/{conversation_id}/options")
async def get_options(conversation_id: int, request: Request) -> ConversationOptions:
    return await request.app.state.store.get_conversation_options(conversation_id)


@router.put("/api/conversations/{conversation_id}/options")
async def update_options(
    conversation_id: int, body: OptionsIn, request: Request
) -> ConversationOptions:
    store = request.app.state.store
    current = await store.get_conversation_options(conversation_id)
    try:
        parse_options(body.options, current.provider)
    except ProviderConfigError as e:
        raise HTTPException(status_code=422, detail=e.message) from e
    return await store.update_conversation_options(conversation_id, body.options)


# --- Bot replies ---


@router.post("/api/conversations/{conversation_id}/reply")
async def reply(conversation_id: int, request: Request) -> Message:
    return await request.app.state.orchestrator.reply(conversation_id)


@router.post("/api/conversations/{conversation_id}/reply/stream", status_code=202)
async def stream_reply(
    conversation_id: int, body: StreamReplyRequest, request: Request
) -> StreamReplyAccepted:
    channels = request.app.state.channels
    channel = channels.get(body.session_id)
    try:
        await request.app.state.orchestrator.start_reply(conversation_id, channel)
    except ChatError:
        channels.discard_if_idle(body.session_id)
        raise
    return StreamReplyAccepted(conversation_id=conversation_id, session_id=body.session_id)


@router.post("/api/messages/{message_id}/reply")
async def reply_to_message(message_id: int, request: Request) -> Message:
    message = await request.app.state.store.get_message(message_id)
    return await request.app.state.orchestrator.reply_to_message(message)


# --- Subscriber sessions ---


@router.get("/api/sessions/{session_id}/events")
async def session_events(session_id: str, request: Request):
    channels = request.app.state.channels

    async def event_generator():
        queue: asyncio.Queue[str] = asyncio.Queue()
        channel = channels.get(session_id)
        with channel.subscribed(BOT_REPLY_EVENT, queue.put_nowait):
            yield sse_init({"session_id": session_id})
            while True:
                payload = await queue.get()
                yield sse_bot_reply(payload)

    return EventSourceResponse(event_generator(), ping=15)


@router.post("/api/sessions/{session_id}/stop")
async def stop_bot(session_id: str, request: Request) -> StopResult:
    channel = request.app.state.channels.find(session_id)
    if channel is None:
        return StopResult(delivered=False)
    return StopResult(delivered=channel.emit(STOP_BOT_EVENT, ""))
