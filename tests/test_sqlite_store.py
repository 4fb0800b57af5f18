import asyncio

import pytest

from relay_chat.data.models import (
    NewConversation,
    NewMessage,
    Role,
    SeedMessage,
    Setting,
)
from relay_chat.errors import NotFoundError, StorageError


async def _insert_bare_conversation(store, model_id: int) -> int:
    cursor = await store.db.execute(
        "INSERT INTO conversations (model_id, subject, options, created_at) VALUES (?, 'empty', '', '')",
        (model_id,),
    )
    await store.db.commit()
    return cursor.lastrowid


def _hold_seed_insert(store, monkeypatch) -> tuple[asyncio.Event, asyncio.Event]:
    """Park the message INSERT of a conversation create until release is set."""
    blocked, release = asyncio.Event(), asyncio.Event()
    execute = store.db.execute

    async def held_execute(sql, parameters=None):
        if sql.startswith("INSERT INTO messages"):
            blocked.set()
            await release.wait()
        return await execute(sql, parameters)

    monkeypatch.setattr(store.db, "execute", held_execute)
    return blocked, release


@pytest.mark.asyncio
async def test_conversation_lifecycle(sqlite_store, model):
    conv, seed = await sqlite_store.create_conversation_with_message(
        NewConversation(model_id=model.id, subject="Hello"), SeedMessage(content="Hello")
    )
    assert conv.options == ""
    assert seed.conversation_id == conv.id
    assert seed.role == Role.USER

    last = await sqlite_store.get_last_message(conv.id)
    assert last.id == seed.id
    assert last.role == Role.USER

    await sqlite_store.create_message(
        NewMessage(conversation_id=conv.id, role=Role.BOT, content="Hi there")
    )
    msgs = await sqlite_store.list_messages(conv.id)
    assert [m.content for m in msgs] == ["Hello", "Hi there"]
    assert [m.role for m in msgs] == [Role.USER, Role.BOT]

    convs = await sqlite_store.list_conversations()
    assert len(convs) == 1
    assert convs[0].id == conv.id
    assert convs[0].model_provider == "OpenAI"
    assert convs[0].message_count == 2


@pytest.mark.asyncio
async def test_get_last_message_of_empty_conversation(sqlite_store, model):
    cid = await _insert_bare_conversation(sqlite_store, model.id)

    with pytest.raises(NotFoundError):
        await sqlite_store.get_last_message(cid)

    convs = await sqlite_store.list_conversations()
    assert [(c.id, c.message_count) for c in convs] == [(cid, 0)]


@pytest.mark.asyncio
async def test_list_conversations_skips_missing_model(sqlite_store, model, conversation):
    await sqlite_store.db.execute("PRAGMA foreign_keys = OFF")
    await _insert_bare_conversation(sqlite_store, 999)
    await sqlite_store.db.execute("PRAGMA foreign_keys = ON")

    convs = await sqlite_store.list_conversations()
    assert [c.id for c in convs] == [conversation.id]


@pytest.mark.asyncio
async def test_failed_seed_message_leaves_no_conversation(sqlite_store, model):
    # Role 7 violates the messages CHECK constraint after the conversation row is written.
    bad_seed = SeedMessage.model_construct(role=7, content="Hello")

    with pytest.raises(StorageError):
        await sqlite_store.create_conversation_with_message(
            NewConversation(model_id=model.id, subject="Hello"), bad_seed
        )

    assert await sqlite_store.list_conversations() == []
    cursor = await sqlite_store.db.execute("SELECT COUNT(*) FROM conversations")
    row = await cursor.fetchone()
    assert row[0] == 0


@pytest.mark.asyncio
async def test_cancelled_create_leaves_no_conversation(sqlite_store, model, monkeypatch):
    blocked, _ = _hold_seed_insert(sqlite_store, monkeypatch)
    create = asyncio.create_task(
        sqlite_store.create_conversation_with_message(
            NewConversation(model_id=model.id, subject="Hello"), SeedMessage(content="Hello")
        )
    )
    await blocked.wait()
    create.cancel()
    with pytest.raises(asyncio.CancelledError):
        await create

    # A later unrelated write must not commit the interrupted conversation.
    await sqlite_store.upsert_setting(Setting(key="k", value="v"))
    assert await sqlite_store.list_conversations() == []
    cursor = await sqlite_store.db.execute("SELECT COUNT(*) FROM conversations")
    assert (await cursor.fetchone())[0] == 0


@pytest.mark.asyncio
async def test_reads_wait_for_pending_create(sqlite_store, model, monkeypatch):
    blocked, release = _hold_seed_insert(sqlite_store, monkeypatch)
    create = asyncio.create_task(
        sqlite_store.create_conversation_with_message(
            NewConversation(model_id=model.id, subject="Hello"), SeedMessage(content="Hello")
        )
    )
    await blocked.wait()
    listing = asyncio.create_task(sqlite_store.list_conversations())
    await asyncio.sleep(0.05)
    assert not listing.done()

    release.set()
    conv, _ = await create
    convs = await listing
    assert [(c.id, c.message_count) for c in convs] == [(conv.id, 1)]

@pytest.mark.asyncio
async def test_create_message_for_unknown_conversation(sqlite_store):
    with pytest.raises(StorageError):
        await sqlite_store.create_message(
            NewMessage(conversation_id=12345, role=Role.USER, content="orphan")
        )


@pytest.mark.asyncio
async def test_upsert_setting_is_idempotent(sqlite_store):
    setting = Setting(key="display:language", value="en")
    await sqlite_store.upsert_setting(setting)
    await sqlite_store.upsert_setting(setting)
    assert await sqlite_store.list_settings() == [setting]

    await sqlite_store.upsert_setting(Setting(key="display:language", value="fr"))
    assert await sqlite_store.list_settings() == [Setting(key="display:language", value="fr")]


@pytest.mark.asyncio
async def test_conversation_options(sqlite_store, conversation):
    opts = await sqlite_store.get_conversation_options(conversation.id)
    assert opts.options == ""
    assert opts.provider == "OpenAI"

    updated = await sqlite_store.update_conversation_options(
        conversation.id, '{"temperature": 0.2}'
    )
    assert updated.options == '{"temperature": 0.2}'
    assert (await sqlite_store.get_conversation_options(conversation.id)) == updated

    with pytest.raises(NotFoundError):
        await sqlite_store.update_conversation_options(999, "{}")


@pytest.mark.asyncio
async def test_model_resolution(sqlite_store, model, conversation):
    assert await sqlite_store.list_models() == [model]

    config = await sqlite_store.get_conversation_config(conversation.id)
    assert config == model

    message = await sqlite_store.get_last_message(conversation.id)
    assert await sqlite_store.get_model_of_message(message) == model

    with pytest.raises(NotFoundError):
        await sqlite_store.get_conversation_config(999)
