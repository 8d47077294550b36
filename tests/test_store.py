"""Unit tests for conversation persistence and the conversation library."""

import asyncio
import json

import pytest

from dualchat.library import ConversationLibrary
from dualchat.manager import ConversationScheduler
from dualchat.states import (
    BotIdentity,
    ConversationMode,
    ConversationRecord,
    GenerationParams,
    Message,
)
from dualchat.store import STORAGE_KEY, ConversationStore, DebouncedSaver

A, B = BotIdentity.A, BotIdentity.B


@pytest.fixture
def store(tmp_path):
    return ConversationStore(tmp_path / "conversations.json")


class TestConversationStore:
    """Tests for the single-key JSON store."""

    def test_missing_file_loads_empty(self, store):
        assert store.load() == []

    def test_corrupt_file_loads_empty(self, store):
        store.path.write_text("{oops", encoding="utf-8")
        assert store.load() == []

    def test_save_then_load(self, store):
        record = ConversationRecord(title="Chess talk", mode=ConversationMode.SEMI_AUTO, base_url="http://localhost:8080")
        record.bots[B].params = GenerationParams(temperature=1.2, max_tokens=None)
        record.messages.append(Message(author=B, content="e4?"))

        store.save([record])
        loaded = store.load()

        assert len(loaded) == 1
        got = loaded[0]
        assert got.id == record.id
        assert got.title == "Chess talk"
        assert got.mode is ConversationMode.SEMI_AUTO
        assert got.base_url == "http://localhost:8080"
        assert got.bots[B].params.temperature == 1.2
        assert got.bots[B].params.max_tokens is None
        assert [(m.id, m.author, m.content) for m in got.messages] == [(record.messages[0].id, B, "e4?")]

    def test_persisted_shape(self, store):
        """Records are stored under one fixed key in the camelCase layout."""
        store.save([ConversationRecord()])

        raw = json.loads(store.path.read_text(encoding="utf-8"))
        item = raw[STORAGE_KEY][0]
        assert {"id", "title", "createdAt", "updatedAt", "baseUrl", "mode", "bots", "messages"} <= set(item)
        assert item["bots"]["A"]["systemPrompt"] == "You are Bot A. Be concise, helpful, and engaging."
        assert item["mode"] == "full-auto"

    def test_other_keys_preserved(self, store):
        store.path.write_text(json.dumps({"theme": "dark"}), encoding="utf-8")
        store.save([])
        assert json.loads(store.path.read_text(encoding="utf-8"))["theme"] == "dark"

    def test_non_dict_entries_skipped(self, store):
        good = ConversationRecord().to_dict()
        store.path.write_text(json.dumps({STORAGE_KEY: [good, "junk", 7]}), encoding="utf-8")

        assert [r.id for r in store.load()] == [good["id"]]

    def test_bad_fields_keep_the_conversation(self, store):
        """A bad message or param drops only that value, and a later save keeps the record."""
        other = ConversationRecord(title="other")
        damaged = ConversationRecord(title="keep me").to_dict()
        damaged["messages"] = [
            {"id": "m1", "author": "A", "content": "hello"},
            {"id": "m2", "author": "bot-b", "content": "unknown author"},
            {"id": "m3", "author": "B", "content": "hi", "createdAt": "yesterday"},
        ]
        damaged["bots"]["A"]["params"]["temperature"] = "warm"
        damaged["bots"]["B"]["model"] = 42
        damaged["mode"] = ["full-auto"]
        store.path.write_text(json.dumps({STORAGE_KEY: [damaged, other.to_dict()]}), encoding="utf-8")

        loaded = store.load()
        store.save(loaded)
        saved = store.load()

        assert [r.title for r in saved] == ["keep me", "other"]
        kept = saved[0]
        assert [(m.id, m.author, m.content) for m in kept.messages] == [("m1", A, "hello"), ("m3", B, "hi")]
        assert kept.messages[1].created_at > 0
        assert kept.bots[A].params.temperature == 0.7
        assert kept.bots[B].model_id == "gpt-3.5-turbo"
        assert kept.mode is ConversationMode.FULL_AUTO


@pytest.mark.asyncio
class TestDebouncedSaver:
    async def test_bursts_coalesce(self, store):
        writes = []
        saver = DebouncedSaver(store, lambda: writes.append(1) or [], delay=0.01)

        for _ in range(5):
            saver.schedule()
        assert saver.pending
        await asyncio.sleep(0.05)

        assert writes == [1]
        assert not saver.pending

    async def test_flush_writes_now(self, store):
        saver = DebouncedSaver(store, lambda: [ConversationRecord()], delay=10)
        saver.schedule()
        saver.flush()
        assert len(store.load()) == 1
        assert not saver.pending


@pytest.fixture
async def library(client, store):
    scheduler = ConversationScheduler(client, turn_delay=0)
    lib = ConversationLibrary(store, scheduler, save_delay=0.01)
    yield lib
    lib.close()


@pytest.mark.asyncio
class TestConversationLibrary:
    """Tests for new/select/delete/rename and autosave."""

    async def test_open_empty_store_creates_conversation(self, library, store):
        record = library.open()

        assert library.current is record
        assert [r.id for r in store.load()] == [record.id]

    async def test_open_resumes_first_saved(self, library, store):
        first = ConversationRecord(messages=[Message(author=A, content="hi")])
        store.save([first, ConversationRecord()])

        record = library.open()

        assert record.id == first.id
        assert library.scheduler.next_speaker is B

    async def test_new_conversation_is_prepended(self, library):
        first = library.open()
        second = library.new_conversation()

        assert [r.id for r in library.records] == [second.id, first.id]
        assert library.current is second
        assert second.mode is ConversationMode.FULL_AUTO

    async def test_select(self, library):
        first = library.open()
        library.new_conversation()

        assert library.select(first.id) is first
        assert library.current is first
        assert library.select("missing") is None

    async def test_delete_current_falls_back(self, library, store):
        first = library.open()
        second = library.new_conversation()

        library.delete(second.id)

        assert library.current is first
        assert [r.id for r in store.load()] == [first.id]

    async def test_delete_last_creates_new(self, library):
        only = library.open()
        library.delete(only.id)

        assert len(library.records) == 1
        assert library.current.id != only.id

    async def test_rename(self, library, store):
        record = library.open()

        library.rename(record.id, "  Debate  ")
        assert store.load()[0].title == "Debate"

        library.rename(record.id, "   ")
        assert store.load()[0].title == "Debate"

    async def test_autosave_after_mutation(self, library, store):
        text = "An opening line that is long enough to be cut for the title"
        record = library.open()
        library.scheduler.set_mode(ConversationMode.MANUAL)
        library.scheduler.send(text, A)
        assert library.saver.pending

        await asyncio.sleep(0.05)

        saved = store.load()[0]
        assert saved.id == record.id
        assert saved.mode is ConversationMode.MANUAL
        assert [m.content for m in saved.messages] == [text]
        assert saved.title == text[:48].strip()
        assert len(saved.title) <= 48

    async def test_conversations_sorted_by_update(self, library):
        first = library.open()
        second = library.new_conversation()
        first.updated_at = second.updated_at + 1000

        assert [r.id for r in library.conversations()] == [first.id, second.id]

    async def test_refresh_models_switches_unavailable(self, library, gateway):
        record = library.open()
        gateway.models = ["llama-3", "qwen"]
        record.bots[B].model_id = "qwen"

        models = await library.refresh_models()

        assert models == ["llama-3", "qwen"]
        assert record.bots[A].model_id == "llama-3"
        assert record.bots[B].model_id == "qwen"

    async def test_refresh_models_without_client(self, store):
        lib = ConversationLibrary(store, ConversationScheduler(turn_delay=0), save_delay=0.01)
        record = lib.open()
        before = record.bots[A].model_id

        assert await lib.refresh_models() == []
        assert record.bots[A].model_id == before
        lib.close()
