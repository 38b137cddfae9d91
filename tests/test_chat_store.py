import pytest
from sqlalchemy.exc import OperationalError

from storage.chat_store import ChatStore, legacy_timestamp, normalize_legacy_blob
from storage.db import Conversation
from storage.models import ChatMessage
from utils.errors import AppError


def msg(id, content, role="user", ts=1_700_000_000_000, files=None):
    return ChatMessage(id=id, role=role, content=content, timestamp=ts, selected_files=files or [])


@pytest.fixture
def store(db):
    return ChatStore(db)


async def test_messages_round_trip_in_timestamp_order(store):
    assert await store.save_message(msg("m2", "second", role="assistant", ts=2000), "o", "r", "github", "alice@example.com")
    assert await store.save_message(msg("m1", "first", ts=1000, files=["a.py"]), "o", "r", "github", "alice@example.com")

    messages = await store.get_messages("o", "r", "github", "alice@example.com")
    assert [m.id for m in messages] == ["m1", "m2"]
    assert messages[0].selected_files == ["a.py"]
    assert await store.get_messages("o", "r", "github", "bob@example.com") == []
    assert await store.get_messages("o", "r", "gitlab", "alice@example.com") == []


async def test_one_conversation_per_user_and_repo(store):
    first = await store.get_or_create_conversation("u", "github", "o", "r")
    again = await store.get_or_create_conversation("u", "github", "o", "r")
    other = await store.get_or_create_conversation("u", "gitlab", "o", "r")
    assert first == again
    assert first != other


async def test_title_follows_latest_user_message(store):
    await store.save_message(msg("m1", "How does   the\nrouter work?"), "o", "r", "github", "u")
    await store.save_message(msg("m2", "It dispatches requests.", role="assistant", ts=2), "o", "r", "github", "u")
    [conv] = await store.list_conversations("u")
    assert conv.title == "How does the router work?"

    long_question = "Explain " + "very " * 20 + "carefully"
    await store.save_message(msg("m3", long_question, ts=3), "o", "r", "github", "u")
    [conv] = await store.list_conversations("u")
    assert len(conv.title) == 50
    assert conv.title.endswith("...")


async def test_duplicate_message_id_is_ignored(store):
    await store.save_message(msg("m1", "hello"), "o", "r", "github", "u")
    assert await store.save_message(msg("m1", "changed"), "o", "r", "github", "u")
    [only] = await store.get_messages("o", "r", "github", "u")
    assert only.content == "hello"


async def test_save_retries_then_succeeds(store, monkeypatch):
    real = store._save_once
    attempts = []

    async def flaky(*args):
        attempts.append(1)
        if len(attempts) < 3:
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        await real(*args)

    monkeypatch.setattr(store, "_save_once", flaky)
    assert await store.save_message(msg("m1", "hi"), "o", "r", "github", "u")
    assert len(attempts) == 3


async def test_save_gives_up_after_retries(store, monkeypatch):
    attempts = []

    async def broken(*args):
        attempts.append(1)
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(store, "_save_once", broken)
    assert await store.save_message(msg("m1", "hi"), "o", "r", "github", "u") is False
    assert len(attempts) == 3


def test_normalize_legacy_blob_shapes():
    entry = {"role": "user", "content": "hi"}
    assert normalize_legacy_blob([entry, "junk"]) == [entry]
    assert normalize_legacy_blob({"1": {"content": "b"}, "0": {"content": "a"}, "meta": 1}) == [{"content": "a"}, {"content": "b"}]
    assert normalize_legacy_blob('[{"role": "user", "content": "hi"}]') == [entry]
    assert normalize_legacy_blob("{broken") == []
    assert normalize_legacy_blob({"meta": True}) == []
    assert normalize_legacy_blob(None) == []


async def test_legacy_messages_are_migrated_on_read(store, db):
    async with db.sessionmaker() as session:
        session.add(Conversation(
            id="legacy-1", user_id="u", provider="github", owner="o", repo="r", title="o/r",
            legacy_messages={
                "1": {"id": "b", "role": "assistant", "content": "answer", "timestamp": 2000},
                "0": {"id": "a", "role": "user", "content": "question", "timestamp": 1000, "selectedFiles": ["x.py"]},
                "2": {"role": "tool", "content": "dropped"},
            },
        ))
        await session.commit()

    messages = await store.get_messages("o", "r", "github", "u")
    assert [(m.id, m.role) for m in messages] == [("a", "user"), ("b", "assistant")]
    assert messages[0].selected_files == ["x.py"]

    async with db.sessionmaker() as session:
        conv = await session.get(Conversation, "legacy-1")
        assert conv.legacy_messages is None

    assert len(await store.get_messages("o", "r", "github", "u")) == 2
    assert await store.migrate_legacy_messages("legacy-1") == 0


async def test_delete_message_checks_ownership(store):
    await store.save_message(msg("m1", "hi"), "o", "r", "github", "alice")
    assert await store.delete_message("m1", "mallory") is False
    assert await store.delete_message("m1", "alice") is True
    assert await store.get_messages("o", "r", "github", "alice") == []
    assert await store.delete_message("m1", "alice") is False


async def test_clear_history(store):
    await store.save_message(msg("m1", "hi"), "o", "r", "github", "u")
    await store.save_message(msg("m2", "there", role="assistant", ts=2), "o", "r", "github", "u")
    assert await store.clear_history("o", "r", "github", "u") is True
    assert await store.get_messages("o", "r", "github", "u") == []
    assert await store.clear_history("x", "y", "github", "u") is True


async def test_conversations_newest_first(store):
    await store.save_message(msg("m1", "about a"), "o", "a", "github", "u")
    await store.save_message(msg("m2", "about b"), "o", "b", "github", "u")
    await store.save_message(msg("m3", "a again", ts=5), "o", "a", "github", "u")
    assert [c.repo for c in await store.list_conversations("u")] == ["a", "b"]
    assert await store.list_conversations("someone-else") == []


async def test_feedback(store):
    await store.save_message(msg("m1", "hi"), "o", "r", "github", "u")
    [conv] = await store.list_conversations("u")

    with pytest.raises(AppError) as exc:
        await store.set_feedback(conv.id, "u", "meh")
    assert exc.value.status_code == 400
    with pytest.raises(AppError) as exc:
        await store.set_feedback("missing", "u", "like")
    assert exc.value.status_code == 404
    with pytest.raises(AppError) as exc:
        await store.set_feedback(conv.id, "intruder", "like")
    assert exc.value.status_code == 403

    assert await store.get_feedback(conv.id, "u") is None
    await store.set_feedback(conv.id, "u", "dislike")
    assert await store.get_feedback(conv.id, "u") == "dislike"
    [conv] = await store.list_conversations("u")
    assert conv.feedback == "dislike"


def test_legacy_timestamp_falls_back_to_now():
    assert legacy_timestamp({"timestamp": 1500}) == 1500
    assert legacy_timestamp({"timestamp": "2500"}) == 2500
    assert legacy_timestamp({"timestamp": "yesterday"}) > 1500
    assert legacy_timestamp({"timestamp": [1]}) > 1500
    assert legacy_timestamp({}) > 1500


async def test_legacy_message_with_unreadable_timestamp_is_migrated(store, db):
    async with db.sessionmaker() as session:
        session.add(Conversation(
            id="legacy-2", user_id="u", provider="github", owner="o", repo="r", title="o/r",
            legacy_messages=[{"id": "m1", "role": "user", "content": "q", "timestamp": "yesterday"}],
        ))
        await session.commit()

    messages = await store.get_messages("o", "r", "github", "u")
    assert [(m.id, m.content) for m in messages] == [("m1", "q")]
    assert messages[0].timestamp > 0

    async with db.sessionmaker() as session:
        assert (await session.get(Conversation, "legacy-2")).legacy_messages is None
