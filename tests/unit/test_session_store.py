"""
Unit Tests for the Session Store

Creation, restore, deletion and inactivity eviction of live chats.
"""

import asyncio
import os
import sys
import threading
from datetime import datetime

import pytest

project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "course_tutor_chat", "src"))

from conftest import ScriptedLLMProvider
from course_tutor_chat.config import ChatCoreConfig
from course_tutor_chat.errors import PersistenceError, SessionNotFoundError
from course_tutor_chat.models import ChatMessage, PersistedChat, Sender
from course_tutor_chat.prompts import get_system_prompt
from course_tutor_chat.session_store import SessionStore

START = datetime(2025, 1, 27, 10, 0, 0)


def message(text: str, sender: Sender, index: int) -> ChatMessage:
    return ChatMessage(id=f"m{index}", sender=sender, user_id="u1", course_name="CHBE241", text=text, timestamp_ms=index)


class TestSessionCreation:
    @pytest.fixture
    def llm(self):
        return ScriptedLLMProvider()

    @pytest.fixture
    def store(self, llm, document_store, config):
        store = SessionStore(llm, document_store, config=config)
        yield store
        store.shutdown()

    @pytest.mark.asyncio
    async def test_initialize_session(self, store, llm):
        chat_id, greeting = await store.initialize_session("u1", "CHBE241", START)

        assert chat_id.startswith("u1-CHBE241-")
        assert greeting.sender == Sender.BOT
        assert store.history(chat_id) == [greeting]
        roles = [m["role"] for m in llm.conversations[0].history()]
        assert roles == ["system", "assistant"]

    @pytest.mark.asyncio
    async def test_system_prompt_has_objectives_and_struggle_words(self, store, llm, document_store):
        user = await document_store.find_course_user("CHBE241", "u1")
        await document_store.initialize_struggle_profile("CHBE241", user)
        await document_store.update_struggle_words("CHBE241", "u1", ["entropy"])

        await store.initialize_session("u1", "CHBE241", START)

        system_prompt = llm.conversations[0].history()[0]["content"]
        assert "[Week 3 - Entropy]: Define entropy as a state function" in system_prompt
        assert "Student struggles with: entropy" in system_prompt

    @pytest.mark.asyncio
    async def test_reinitialize_is_noop_that_rearms(self, store, llm):
        chat_id, greeting = await store.initialize_session("u1", "CHBE241", START)
        generation = store.get_session(chat_id).timer_generation

        again_id, again_greeting = await store.initialize_session("u1", "CHBE241", START)

        assert (again_id, again_greeting) == (chat_id, greeting)
        assert len(llm.conversations) == 1
        assert len(store) == 1
        assert store.get_session(chat_id).timer_generation == generation + 1

    @pytest.mark.asyncio
    async def test_prompt_data_failures_do_not_block_creation(self, store, llm, document_store, monkeypatch):
        async def broken(*args, **kwargs):
            raise PersistenceError("database unavailable")

        monkeypatch.setattr(document_store, "get_course_by_name", broken)
        monkeypatch.setattr(document_store, "get_struggle_profile", broken)

        chat_id, _ = await store.initialize_session("u1", "CHBE241", START)

        assert store.is_live(chat_id)
        assert llm.conversations[0].history()[0]["content"] == get_system_prompt("CHBE241", [], [])


class TestSessionRestore:
    @pytest.fixture
    def llm(self):
        return ScriptedLLMProvider()

    @pytest.fixture
    def store(self, llm, document_store, config):
        store = SessionStore(llm, document_store, config=config)
        yield store
        store.shutdown()

    async def persist_chat(self, document_store, chat_id="u1-CHBE241-saved", is_deleted=False):
        chat = PersistedChat(
            id=chat_id,
            course_name="CHBE241",
            user_id="u1",
            title="Entropy basics",
            is_deleted=is_deleted,
            messages=[
                message("Hello! How can I help?", Sender.BOT, 0),
                message("What is entropy?", Sender.USER, 1),
                message("What do you think disorder means?", Sender.BOT, 2),
            ],
        )
        await document_store.add_chat_to_user("CHBE241", "u1", chat)
        return chat

    @pytest.mark.asyncio
    async def test_restore_replays_messages(self, store, llm, document_store):
        chat = await self.persist_chat(document_store)

        assert await store.restore_session(chat.id, "CHBE241", "u1") is True

        history = llm.conversations[0].history()
        assert [m["role"] for m in history] == ["system", "assistant", "user", "assistant"]
        assert history[2]["content"] == "What is entropy?"
        assert store.history(chat.id) == chat.messages

    @pytest.mark.asyncio
    async def test_restore_is_idempotent(self, store, llm, document_store):
        chat = await self.persist_chat(document_store)
        await store.restore_session(chat.id, "CHBE241", "u1")

        assert await store.restore_session(chat.id, "CHBE241", "u1") is True

        assert len(store.history(chat.id)) == 3
        assert len(llm.conversations) == 1

    @pytest.mark.asyncio
    async def test_restore_missing_chat(self, store):
        with pytest.raises(SessionNotFoundError):
            await store.restore_session("u1-CHBE241-missing", "CHBE241", "u1")
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_restore_deleted_chat(self, store, document_store):
        chat = await self.persist_chat(document_store, is_deleted=True)

        with pytest.raises(SessionNotFoundError):
            await store.restore_session(chat.id, "CHBE241", "u1")
        assert not store.is_live(chat.id)

    @pytest.mark.asyncio
    async def test_failed_rebuild_registers_nothing(self, store, llm, document_store):
        chat = await self.persist_chat(document_store)

        def broken_conversation():
            raise RuntimeError("provider unavailable")

        llm.create_conversation = broken_conversation

        with pytest.raises(RuntimeError):
            await store.restore_session(chat.id, "CHBE241", "u1")
        assert not store.is_live(chat.id)


class TestSessionRemoval:
    @pytest.fixture
    def store(self, document_store):
        store = SessionStore(ScriptedLLMProvider(), document_store, config=ChatCoreConfig(inactivity_timeout_seconds=0.1))
        yield store
        store.shutdown()

    @pytest.mark.asyncio
    async def test_delete_session(self, store):
        chat_id, _ = await store.initialize_session("u1", "CHBE241", START)
        timer = store.get_session(chat_id).timer

        assert store.delete_session(chat_id) is True
        assert store.delete_session(chat_id) is False
        assert timer.cancelled()
        with pytest.raises(SessionNotFoundError):
            store.history(chat_id)

    @pytest.mark.asyncio
    async def test_inactive_session_is_evicted(self, store):
        chat_id, _ = await store.initialize_session("u1", "CHBE241", START)

        await asyncio.sleep(0.3)

        assert not store.is_live(chat_id)
        assert store.live_chat_ids() == []

    @pytest.mark.asyncio
    async def test_touch_postpones_eviction(self, store):
        chat_id, _ = await store.initialize_session("u1", "CHBE241", START)

        for _ in range(4):
            await asyncio.sleep(0.03)
            assert store.touch(chat_id) is True

        assert store.is_live(chat_id)
        await asyncio.sleep(0.3)
        assert not store.is_live(chat_id)
        assert store.touch(chat_id) is False

    @pytest.mark.asyncio
    async def test_stale_timer_does_nothing(self, store):
        chat_id, _ = await store.initialize_session("u1", "CHBE241", START)
        stale_generation = store.get_session(chat_id).timer_generation
        store.touch(chat_id)

        assert store.evict_inactive(chat_id, stale_generation) is False
        assert store.is_live(chat_id)

    @pytest.mark.asyncio
    async def test_eviction_races_delete(self, store):
        for second in range(20):
            chat_id, _ = await store.initialize_session("u1", "CHBE241", datetime(2025, 1, 27, 10, 0, second))
            generation = store.get_session(chat_id).timer_generation
            barrier = threading.Barrier(2)
            outcomes = []

            def evict():
                barrier.wait()
                outcomes.append(store.evict_inactive(chat_id, generation))

            def delete():
                barrier.wait()
                outcomes.append(store.delete_session(chat_id))

            threads = [threading.Thread(target=evict), threading.Thread(target=delete)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            assert sorted(outcomes) == [False, True]
            assert not store.is_live(chat_id)

        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_append_after_eviction_is_rejected(self, store):
        chat_id, _ = await store.initialize_session("u1", "CHBE241", START)
        session = store.get_session(chat_id)
        store.evict_inactive(chat_id, session.timer_generation)

        with pytest.raises(SessionNotFoundError):
            store.append_user_turn(session, "What is entropy?", message("What is entropy?", Sender.USER, 1))
        assert len(session.turn_log) == 1

    @pytest.mark.asyncio
    async def test_shutdown_cancels_timers(self, store):
        timers = []
        for second in range(3):
            chat_id, _ = await store.initialize_session("u1", "CHBE241", datetime(2025, 1, 27, 10, 0, second))
            timers.append(store.get_session(chat_id).timer)

        store.shutdown()

        assert all(timer.cancelled() for timer in timers)
        await asyncio.sleep(0.2)
        assert len(store) == 3
