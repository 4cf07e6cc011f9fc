"""
Session Store

Registry of live chat sessions. Each entry owns its provider conversation,
its caller-visible turn log and a single inactivity timer. Sessions leave
the registry through delete_session or when their timer fires.

Registry mutations (insert, remove, timer swap) happen under one
threading.Lock and never span an await. Timers are asyncio TimerHandles
tagged with a generation number: a timer that fires after it was replaced
or after its session was removed finds a different generation (or no entry)
and does nothing.
"""

import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from course_tutor_chat.config import ChatCoreConfig
from course_tutor_chat.document_store import DocumentStore
from course_tutor_chat.errors import SessionNotFoundError
from course_tutor_chat.id_generator import IDGenerator
from course_tutor_chat.llm_client import Role
from course_tutor_chat.models import ChatMessage, LearningObjective, Sender
from course_tutor_chat.prompts import get_initial_assistant_message, get_system_prompt
from course_tutor_chat.session_state import LiveSession

logger = logging.getLogger(__name__)


def epoch_millis(moment: datetime) -> int:
    # Naive datetimes are UTC, matching id_generator.to_iso_millis
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


class SessionStore:
    def __init__(
        self,
        llm_provider,
        document_store: DocumentStore,
        id_generator: Optional[IDGenerator] = None,
        config: Optional[ChatCoreConfig] = None,
    ):
        """
        Args:
            llm_provider: object with ``create_conversation()``
            document_store: source of learning objectives, struggle words and persisted chats
            id_generator: chat/message ID builder
            config: supplies the inactivity timeout
        """
        self.llm_provider = llm_provider
        self.document_store = document_store
        self.id_generator = id_generator or IDGenerator()
        self.config = config or ChatCoreConfig()

        self._lock = threading.Lock()
        self._sessions: Dict[str, LiveSession] = {}

    # ------------------------------------------------------------------
    # Creation and restore
    # ------------------------------------------------------------------

    async def initialize_session(self, user_id: str, course_name: str, date: datetime) -> Tuple[str, ChatMessage]:
        """Start (or rejoin) the chat for ``date``. Returns the chat ID and the opening tutor message."""
        session, _ = await self.create_session(user_id, course_name, date)
        return session.chat_id, session.turn_log[0]

    async def create_session(self, user_id: str, course_name: str, date: datetime) -> Tuple[LiveSession, bool]:
        """
        Like initialize_session but returns the LiveSession itself and whether
        it was newly created (False when the chat was already live).
        """
        chat_id = self.id_generator.chat_id(user_id, course_name, date)

        with self._lock:
            existing = self._sessions.get(chat_id)
            if existing is not None:
                self._arm_timer_locked(existing)
                logger.info(f"💾 [SessionStore] Chat {chat_id} already live, timer rearmed")
                return existing, False

        system_prompt = await self.build_system_prompt(user_id, course_name)

        conversation = self.llm_provider.create_conversation()
        conversation.add_message(Role.SYSTEM, system_prompt)

        greeting_text = get_initial_assistant_message()
        conversation.add_message(Role.ASSISTANT, greeting_text)
        greeting = ChatMessage(
            id=self.id_generator.message_id(greeting_text, chat_id, date),
            sender=Sender.BOT,
            user_id=user_id,
            course_name=course_name,
            text=greeting_text,
            timestamp_ms=epoch_millis(date),
        )

        session = LiveSession(
            chat_id=chat_id,
            user_id=user_id,
            course_name=course_name,
            conversation=conversation,
            turn_log=[greeting],
        )

        with self._lock:
            # Another initialize for the same chat may have finished while we awaited
            existing = self._sessions.get(chat_id)
            if existing is not None:
                self._arm_timer_locked(existing)
                return existing, False
            self._sessions[chat_id] = session
            self._arm_timer_locked(session)

        logger.info(f"✅ [SessionStore] Initialized chat {chat_id}")
        return session, True

    async def restore_session(self, chat_id: str, course_name: str, user_id: str) -> bool:
        """
        Bring a persisted chat back into memory.

        Idempotent for live chats. Raises SessionNotFoundError when the chat
        does not exist or was soft-deleted. The session is registered only
        after it has been rebuilt completely.
        """
        with self._lock:
            existing = self._sessions.get(chat_id)
            if existing is not None:
                self._arm_timer_locked(existing)
                return True

        chats = await self.document_store.get_user_chats(course_name, user_id)
        chat = next((c for c in chats if c.id == chat_id), None)
        if chat is None:
            raise SessionNotFoundError(chat_id, "Chat not found")
        if chat.is_deleted:
            raise SessionNotFoundError(chat_id, "Chat has been deleted")

        system_prompt = await self.build_system_prompt(user_id, course_name)

        conversation = self.llm_provider.create_conversation()
        conversation.add_message(Role.SYSTEM, system_prompt)
        for message in chat.messages:
            role = Role.USER if message.sender == Sender.USER else Role.ASSISTANT
            conversation.add_message(role, message.text)

        session = LiveSession(
            chat_id=chat_id,
            user_id=user_id,
            course_name=course_name,
            conversation=conversation,
            turn_log=list(chat.messages),
        )

        with self._lock:
            existing = self._sessions.get(chat_id)
            if existing is not None:
                self._arm_timer_locked(existing)
                return True
            self._sessions[chat_id] = session
            self._arm_timer_locked(session)

        logger.info(f"✅ [SessionStore] Restored chat {chat_id} with {len(chat.messages)} messages")
        return True

    async def build_system_prompt(self, user_id: str, course_name: str) -> str:
        """System prompt with learning objectives and struggle words; either may be missing."""
        objectives: List[LearningObjective] = []
        struggle_words: List[str] = []

        try:
            course = await self.document_store.get_course_by_name(course_name)
            if course is not None:
                objectives = await self.document_store.get_all_learning_objectives(course.id)
        except Exception as e:
            logger.warning(f"⚠️ [SessionStore] Could not load learning objectives for {course_name}: {e}", exc_info=True)

        try:
            profile = await self.document_store.get_struggle_profile(course_name, user_id)
            if profile is not None:
                struggle_words = list(profile.struggle_words)
        except Exception as e:
            logger.warning(f"⚠️ [SessionStore] Could not load struggle words for user {user_id[:20]}: {e}", exc_info=True)

        return get_system_prompt(course_name, objectives, struggle_words)

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def delete_session(self, chat_id: str) -> bool:
        """Remove a live chat. False if it was not live (already deleted or evicted)."""
        with self._lock:
            session = self._sessions.pop(chat_id, None)
            if session is None:
                return False
            self._cancel_timer_locked(session)
        logger.info(f"🗑️ [SessionStore] Deleted chat {chat_id}")
        return True

    def evict_inactive(self, chat_id: str, generation: int) -> bool:
        """
        Timer callback. Removes the chat only if ``generation`` is still its
        current timer; returns whether anything was removed.
        """
        with self._lock:
            session = self._sessions.get(chat_id)
            if session is None or session.timer_generation != generation:
                return False
            del self._sessions[chat_id]
            session.timer = None
        logger.info(f"⏰ [SessionStore] Evicted inactive chat {chat_id}")
        return True

    def shutdown(self) -> None:
        """Cancel every outstanding timer."""
        with self._lock:
            for session in self._sessions.values():
                self._cancel_timer_locked(session)
            count = len(self._sessions)
        logger.info(f"💾 [SessionStore] Shutdown: cancelled timers for {count} live chat(s)")

    # ------------------------------------------------------------------
    # Turn support
    # ------------------------------------------------------------------

    def touch(self, chat_id: str) -> bool:
        """Rearm the inactivity timer. False if the chat is not live."""
        with self._lock:
            session = self._sessions.get(chat_id)
            if session is None:
                return False
            session.last_activity = datetime.now()
            self._arm_timer_locked(session)
            return True

    def get_session(self, chat_id: str) -> Optional[LiveSession]:
        with self._lock:
            return self._sessions.get(chat_id)

    def require_session(self, chat_id: str) -> LiveSession:
        session = self.get_session(chat_id)
        if session is None:
            raise SessionNotFoundError(chat_id)
        return session

    def append_user_turn(self, session: LiveSession, prompt: str, message: ChatMessage) -> None:
        """Add the provider prompt and the visible user message; rejected if the session is gone."""
        with self._lock:
            self._ensure_registered_locked(session)
            session.conversation.add_message(Role.USER, prompt)
            session.turn_log.append(message)

    def append_bot_turn(self, session: LiveSession, message: ChatMessage) -> None:
        with self._lock:
            self._ensure_registered_locked(session)
            session.conversation.add_message(Role.ASSISTANT, message.text)
            session.turn_log.append(message)

    def history(self, chat_id: str) -> List[ChatMessage]:
        with self._lock:
            session = self._sessions.get(chat_id)
            if session is None:
                raise SessionNotFoundError(chat_id)
            return list(session.turn_log)

    def is_live(self, chat_id: str) -> bool:
        with self._lock:
            return chat_id in self._sessions

    def live_chat_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    # ------------------------------------------------------------------
    # Internals (caller holds self._lock)
    # ------------------------------------------------------------------

    def _ensure_registered_locked(self, session: LiveSession) -> None:
        if self._sessions.get(session.chat_id) is not session:
            raise SessionNotFoundError(session.chat_id, "Chat is no longer live")

    def _arm_timer_locked(self, session: LiveSession) -> None:
        self._cancel_timer_locked(session)
        session.timer_generation += 1
        loop = asyncio.get_running_loop()
        session.timer = loop.call_later(
            self.config.inactivity_timeout_seconds,
            self.evict_inactive,
            session.chat_id,
            session.timer_generation,
        )

    @staticmethod
    def _cancel_timer_locked(session: LiveSession) -> None:
        if session.timer is not None:
            session.timer.cancel()
            session.timer = None
