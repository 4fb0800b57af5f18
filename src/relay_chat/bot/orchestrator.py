import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass

from ..channel import EventChannel
from ..data.models import ConversationOptions, Message, Model, NewMessage, Role
from ..errors import CompletionError, InvalidStateError, ReplyCancelledError, StorageError
from .completion import CancellationToken
from .events import BOT_REPLY_EVENT, STOP_BOT_EVENT, ReplyEvent

logger = logging.getLogger(__name__)


def deliver(channel: EventChannel, event: str, payload: str) -> bool:
    """Emit with at most one retry. A second failure is logged and dropped."""
    if channel.emit(event, payload):
        return True
    logger.error("Failed to emit %s %r on channel %s, retrying", event, payload[:40], channel.name)
    if channel.emit(event, payload):
        return True
    logger.warning("Dropped %s %r on channel %s", event, payload[:40], channel.name)
    return False


def _deliver_reply(channel: EventChannel, event: ReplyEvent) -> bool:
    return deliver(channel, BOT_REPLY_EVENT, event.payload)


@dataclass
class ReplyRequest:
    message: Message
    options: ConversationOptions
    model: Model

    @property
    def conversation_id(self) -> int:
        return self.message.conversation_id


class ReplyOrchestrator:
    """Generates, delivers and persists one bot reply per run.

    A run validates that the conversation's last message is from the user,
    calls the completion client and persists the reply as a Bot message.
    Runs for the same conversation are serialized by a per-conversation lock.
    A lock is dropped once no run holds or awaits it.
    """

    def __init__(self, store, completion_client) -> None:
        self._store = store
        self._client = completion_client
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_claims: dict[int, int] = {}
        self._tasks: set[asyncio.Task] = set()

    def _claim_lock(self, conversation_id: int) -> asyncio.Lock:
        self._lock_claims[conversation_id] = self._lock_claims.get(conversation_id, 0) + 1
        return self._locks.setdefault(conversation_id, asyncio.Lock())

    def _drop_claim(self, conversation_id: int) -> None:
        remaining = self._lock_claims.pop(conversation_id) - 1
        if remaining:
            self._lock_claims[conversation_id] = remaining
        else:
            del self._locks[conversation_id]

    @asynccontextmanager
    async def _conversation_locked(self, conversation_id: int):
        lock = self._claim_lock(conversation_id)
        try:
            async with lock:
                yield
        finally:
            self._drop_claim(conversation_id)

    async def _last_user_message(self, conversation_id: int) -> Message:
        last_message = await self._store.get_last_message(conversation_id)
        if last_message.role != Role.USER:
            raise InvalidStateError(
                f"The last message of conversation with id = {conversation_id} is not from user"
            )
        return last_message

    async def _prepare(self, conversation_id: int) -> ReplyRequest:
        last_message = await self._last_user_message(conversation_id)
        options = await self._store.get_conversation_options(conversation_id)
        model = await self._store.get_conversation_config(conversation_id)
        logger.info(
            "Calling bot for conversation %d with message %d, provider %s",
            conversation_id,
            last_message.id,
            model.provider,
        )
        return ReplyRequest(last_message, options, model)

    async def _persist(self, conversation_id: int, reply: str) -> Message:
        return await self._store.create_message(
            NewMessage(conversation_id=conversation_id, role=Role.BOT, content=reply)
        )

    # --- Blocking mode ---

    async def reply(self, conversation_id: int) -> Message:
        """Run the full round trip on the caller's task and return the bot message."""
        t0 = time.time()
        async with self._conversation_locked(conversation_id):
            req = await self._prepare(conversation_id)
            reply = await self._client.complete(req.message, req.options, req.model)
            result = await self._persist(conversation_id, reply)
        logger.info("[Timer] reply: %dms", round((time.time() - t0) * 1000))
        return result

    async def reply_to_message(self, message: Message) -> Message:
        """Reply to a given message with the model's default options.

        The message must be the conversation's latest one and come from the user.
        """
        t0 = time.time()
        async with self._conversation_locked(message.conversation_id):
            last_message = await self._last_user_message(message.conversation_id)
            if last_message.id != message.id:
                raise InvalidStateError(
                    f"Message with id = {message.id} is not the last message "
                    f"of conversation with id = {message.conversation_id}"
                )
            model = await self._store.get_model_of_message(message)
            logger.info("Calling bot with message %d and model %d", message.id, model.id)
            reply = await self._client.complete_with_model(message, model)
            result = await self._persist(message.conversation_id, reply)
        logger.info("[Timer] reply_to_message: %dms", round((time.time() - t0) * 1000))
        return result

    # --- Detached mode ---

    async def start_reply(self, conversation_id: int, channel: EventChannel) -> asyncio.Task:
        """Validate, then run the reply in the background, reporting on channel.

        Precondition and storage failures are raised here, before any event
        is emitted. The returned task resolves to the persisted bot message,
        or None if the run failed or was stopped.
        """
        t0 = time.time()
        if conversation_id in self._locks:
            raise InvalidStateError(
                f"A reply is already in progress for conversation with id = {conversation_id}"
            )
        lock = self._claim_lock(conversation_id)
        await lock.acquire()
        try:
            req = await self._prepare(conversation_id)
        except BaseException:
            lock.release()
            self._drop_claim(conversation_id)
            raise

        task = asyncio.create_task(self._run(req, channel, lock))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("[Timer] start_reply: %dms", round((time.time() - t0) * 1000))
        return task

    async def _run(
        self, req: ReplyRequest, channel: EventChannel, lock: asyncio.Lock
    ) -> Message | None:
        token = CancellationToken()
        try:
            _deliver_reply(channel, ReplyEvent.start())
            with channel.subscribed(STOP_BOT_EVENT, lambda _payload: token.cancel()):
                try:
                    reply = await self._complete_unless_stopped(req, token)
                except ReplyCancelledError:
                    logger.info("Reply for conversation %d stopped", req.conversation_id)
                    _deliver_reply(channel, ReplyEvent.stopped())
                    return None
                except CompletionError as e:
                    logger.error(
                        "Completion failed for conversation %d: %s", req.conversation_id, e
                    )
                    _deliver_reply(channel, ReplyEvent.error(e.message))
                    return None
                except Exception as e:
                    logger.exception(
                        "Unexpected failure replying to conversation %d", req.conversation_id
                    )
                    _deliver_reply(channel, ReplyEvent.error(str(e) or type(e).__name__))
                    return None

                _deliver_reply(channel, ReplyEvent.chunk(reply))
                _deliver_reply(channel, ReplyEvent.done())
                try:
                    return await self._persist(req.conversation_id, reply)
                except StorageError:
                    logger.exception(
                        "Failed to store bot reply for conversation %d", req.conversation_id
                    )
                    return None
        finally:
            lock.release()
            self._drop_claim(req.conversation_id)

    async def _complete_unless_stopped(self, req: ReplyRequest, token: CancellationToken) -> str:
        completion = asyncio.create_task(
            self._client.complete(req.message, req.options, req.model, token=token)
        )
        stopped = asyncio.create_task(token.wait())
        try:
            done, _ = await asyncio.wait({completion, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [t for t in (completion, stopped) if not t.done()]
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if completion in done:
            return completion.result()
        raise ReplyCancelledError("Reply was stopped")

    async def wait_idle(self) -> None:
        """Wait for every detached run started so far."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
