import asyncio
import json

import pytest
import pytest_asyncio

from relay_chat.bot.events import BOT_REPLY_EVENT
from relay_chat.bot.orchestrator import ReplyOrchestrator
from relay_chat.channel import EventChannel
from relay_chat.data.models import NewConversation, NewModel, SeedMessage
from relay_chat.data.sqlite_store import SQLiteStore
from relay_chat.errors import CompletionError


class FakeCompletionClient:
    """Scripted stand-in for CompletionClient that records every call."""

    def __init__(self) -> None:
        self.reply = "hello"
        self.error: str | None = None
        self.crash: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.calls: list[tuple[str, int]] = []

    async def _answer(self) -> str:
        if self.gate is not None:
            await self.gate.wait()
        if self.crash is not None:
            raise self.crash
        if self.error is not None:
            raise CompletionError(self.error)
        return self.reply

    async def complete(self, message, options, model, token=None) -> str:
        self.calls.append(("complete", message.id))
        return await self._answer()

    async def complete_with_model(self, message, model, token=None) -> str:
        self.calls.append(("complete_with_model", message.id))
        return await self._answer()


@pytest_asyncio.fixture
async def sqlite_store(tmp_path):
    store = SQLiteStore(str(tmp_path / "test.db"))
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def model(sqlite_store):
    return await sqlite_store.create_model(
        NewModel(
            name="gpt",
            provider="OpenAI",
            config=json.dumps({"api_key": "sk-test", "model": "gpt-4o-mini"}),
        )
    )


@pytest_asyncio.fixture
async def conversation(sqlite_store, model):
    conv, _ = await sqlite_store.create_conversation_with_message(
        NewConversation(model_id=model.id, subject="hi"), SeedMessage(content="hi")
    )
    return conv


@pytest.fixture
def completion_client():
    return FakeCompletionClient()


@pytest.fixture
def orchestrator(sqlite_store, completion_client):
    return ReplyOrchestrator(sqlite_store, completion_client)


@pytest.fixture
def channel():
    return EventChannel("test-session")


@pytest.fixture
def received(channel):
    payloads: list[str] = []
    channel.subscribe(BOT_REPLY_EVENT, payloads.append)
    return payloads
