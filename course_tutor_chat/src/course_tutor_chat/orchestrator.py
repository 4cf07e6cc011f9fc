"""
Conversation Orchestrator

Entry point used by the transport layer. Owns the live sessions and runs
each student turn through a fixed pipeline:

1. rearm the chat's inactivity timer
2. validate (chat is live, turn cap not reached)
3. struggle analysis over the turns so far (best-effort)
4. retrieval of published course material (best-effort)
5. prompt assembly (RAG template only when something was retrieved)
6. append the user turn and stream the tutor's reply
7. append the reply with the documents it was grounded on
8. title maintenance and message persistence (best-effort)

Steps 1, 2 and 6 can fail the turn; everything else is reported through
SideChannelResult and logged.
"""

import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Tuple

from course_tutor_chat.config import ChatCoreConfig
from course_tutor_chat.developer_mode import DeveloperModeChatProvider, generate_mock_streaming_response
from course_tutor_chat.document_store import DocumentStore, InMemoryDocumentStore, SupabaseDocumentStore
from course_tutor_chat.errors import (
    GenerationError,
    RateLimitExceededError,
    SessionNotFoundError,
    SideChannelResult,
)
from course_tutor_chat.id_generator import IDGenerator
from course_tutor_chat.llm_client import OpenAIChatProvider
from course_tutor_chat.logger import get_logger, setup_logging
from course_tutor_chat.memory_agent import StruggleTopicAnalyzer
from course_tutor_chat.models import NEW_CHAT_TITLE, ChatMessage, PersistedChat, Sender
from course_tutor_chat.prompts import format_rag_prompt
from course_tutor_chat.retrieval import RetrievalGateway, RetrievalProvider, format_context
from course_tutor_chat.session_state import LiveSession
from course_tutor_chat.session_store import SessionStore
from course_tutor_chat.struggle_responses import (
    random_already_resolved_response,
    random_confident_response,
    random_needs_practice_response,
)
from course_tutor_chat.supabase_client import get_supabase_client
from course_tutor_chat.vector_store import ChromaRetrievalProvider

log = get_logger(__name__)

TITLE_CHANNEL = "title_maintenance"
PERSIST_CHANNEL = "persist_messages"
PERSIST_CHAT_CHANNEL = "persist_chat"

TITLE_WORD_LIMIT = 10


def generate_chat_title(text: str) -> str:
    """First ten words of ``text`` with math, HTML and punctuation removed."""
    cleaned = re.sub(r"\$\$[\s\S]*?\$\$", " ", text or "")
    cleaned = re.sub(r"\$[^$]*\$", " ", cleaned)
    cleaned = re.sub(r"<[^>]*>", " ", cleaned)
    cleaned = re.sub(r"[^\w\s]", " ", cleaned)
    words = cleaned.split()
    return " ".join(words[:TITLE_WORD_LIMIT]) or NEW_CHAT_TITLE


def _ignore_chunk(chunk: str) -> None:
    pass


@dataclass
class TurnResult:
    message: ChatMessage
    side_channels: List[SideChannelResult] = field(default_factory=list)

    def side_channel(self, name: str) -> Optional[SideChannelResult]:
        return next((result for result in self.side_channels if result.name == name), None)


class ConversationOrchestrator:
    """Session lifecycle plus the per-turn pipeline for tutoring chats."""

    def __init__(
        self,
        llm_provider,
        document_store: DocumentStore,
        retrieval_provider: Optional[RetrievalProvider] = None,
        config: Optional[ChatCoreConfig] = None,
        id_generator: Optional[IDGenerator] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or ChatCoreConfig()
        self.document_store = document_store
        self.id_generator = id_generator or IDGenerator()
        self.clock = clock

        self.session_store = SessionStore(llm_provider, document_store, self.id_generator, self.config)
        self.retrieval = RetrievalGateway(retrieval_provider, document_store, self.config.developer_mode)
        self.analyzer = StruggleTopicAnalyzer(llm_provider, document_store, self.config)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def initialize_session(
        self,
        user_id: str,
        course_name: str,
        date: Optional[datetime] = None,
    ) -> Tuple[str, ChatMessage]:
        """
        Open the chat for ``date`` (now by default) and persist it if it is new.

        A chat that is not live but already persisted (e.g. evicted earlier
        the same day) is restored with its stored history instead of being
        recreated.
        """
        date = date or datetime.now(timezone.utc)
        chat_id = self.id_generator.chat_id(user_id, course_name, date)

        if not self.session_store.is_live(chat_id):
            persisted = await self._find_persisted_chat(course_name, user_id, chat_id)
            if persisted is not None and not persisted.is_deleted and persisted.messages:
                await self.session_store.restore_session(chat_id, course_name, user_id)
                log.info(f"[Orchestrator] Chat {chat_id} was already persisted, restored instead of recreated")
                return chat_id, self.session_store.require_session(chat_id).turn_log[0]

        session, created = await self.session_store.create_session(user_id, course_name, date)
        greeting = session.turn_log[0]

        if created:
            await self._persist_new_chat(session, greeting)
        return session.chat_id, greeting

    async def restore_session(self, chat_id: str, course_name: str, user_id: str) -> bool:
        return await self.session_store.restore_session(chat_id, course_name, user_id)

    def delete_session(self, chat_id: str) -> bool:
        return self.session_store.delete_session(chat_id)

    def shutdown(self) -> None:
        self.session_store.shutdown()

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def submit_turn(
        self,
        chat_id: str,
        user_id: str,
        course_name: str,
        text: str,
        on_chunk: Optional[Callable[[str], Any]] = None,
    ) -> ChatMessage:
        """Run one student turn and return the tutor's reply."""
        result = await self.submit_turn_with_report(chat_id, user_id, course_name, text, on_chunk)
        return result.message

    async def submit_turn_with_report(
        self,
        chat_id: str,
        user_id: str,
        course_name: str,
        text: str,
        on_chunk: Optional[Callable[[str], Any]] = None,
    ) -> TurnResult:
        """
        Same as submit_turn, also returning the outcome of every best-effort step.

        Raises:
            SessionNotFoundError: the chat is not live (never initialized, evicted or deleted)
            RateLimitExceededError: the chat already holds the maximum number of student turns
            GenerationError: the model failed; the student turn stays in the log unanswered
        """
        on_chunk = on_chunk or _ignore_chunk
        side_channels: List[SideChannelResult] = []

        # 1. Rearm before anything can suspend
        if not self.session_store.touch(chat_id):
            raise SessionNotFoundError(chat_id)

        # 2. Validate
        session = self.session_store.require_session(chat_id)
        if session.user_turn_count() >= self.config.max_turns_per_chat:
            log.warning(f"[Orchestrator] Rate limit reached for chat {chat_id}", {
                "limit": self.config.max_turns_per_chat,
            })
            raise RateLimitExceededError(chat_id, self.config.max_turns_per_chat)

        # 3. Struggle analysis on the conversation before this turn
        side_channels.append(
            await self.analyzer.analyze(user_id, course_name, session.conversation.history())
        )

        # 4. Retrieval
        chunks, retrieval_report = await self.retrieval.retrieve_with_report(
            text,
            course_name,
            limit=self.config.retrieval_limit,
            score_threshold=self.config.retrieval_score_threshold,
        )
        side_channels.append(retrieval_report)

        # 5. Prompt assembly
        prompt = format_rag_prompt(format_context(chunks), text) if chunks else text

        # 6. Append and generate
        user_message = self._new_message(text, chat_id, user_id, course_name, Sender.USER)
        self.session_store.append_user_turn(session, prompt, user_message)

        try:
            if self.config.developer_mode:
                response = await generate_mock_streaming_response(on_chunk)
            else:
                response = await session.conversation.stream(on_chunk)
        except Exception as e:
            log.error(f"[Orchestrator] Generation failed for chat {chat_id}", e)
            raise GenerationError(chat_id, e) from e

        # 7. Finalize
        bot_message = self._new_message(
            response,
            chat_id,
            user_id,
            course_name,
            Sender.BOT,
            retrieved_documents=[chunk.content for chunk in chunks],
        )
        self.session_store.append_bot_turn(session, bot_message)

        # 8. Bookkeeping
        side_channels.append(await self._maintain_title(session, response))
        side_channels.append(await self._persist_messages(session, [user_message, bot_message]))

        log.info(f"[Orchestrator] Turn complete for chat {chat_id}", {
            "retrieved_chunks": len(chunks),
            "response_chars": len(response),
            "failed_side_channels": [r.name for r in side_channels if not r.succeeded],
        })
        return TurnResult(message=bot_message, side_channels=side_channels)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_chat_history(self, chat_id: str) -> List[ChatMessage]:
        return self.session_store.history(chat_id)

    def get_message(self, chat_id: str, message_id: str) -> ChatMessage:
        for message in self.session_store.history(chat_id):
            if message.id == message_id:
                return message
        raise SessionNotFoundError(chat_id, f"Message {message_id} not found")

    def validate_chat_exists(self, chat_id: str) -> bool:
        return self.session_store.is_live(chat_id)

    def live_chat_ids(self) -> List[str]:
        return self.session_store.live_chat_ids()

    # ------------------------------------------------------------------
    # Struggle topics
    # ------------------------------------------------------------------

    async def get_struggle_words(self, user_id: str, course_name: str) -> List[str]:
        return await self.analyzer.get_struggle_words(user_id, course_name)

    async def resolve_struggle_topic(self, user_id: str, course_name: str, topic: str, confident: bool) -> str:
        """
        Handle the student's answer to "are you confident with <topic> now?".

        Confident students have the topic removed from their profile; others
        keep it. Returns the tutor's canned reply.
        """
        if not confident:
            return random_needs_practice_response()

        removed = await self.analyzer.remove_struggle_word(user_id, course_name, topic)
        if not removed:
            log.info(f"[Orchestrator] Struggle topic '{topic}' was already resolved")
            return random_already_resolved_response()
        return random_confident_response()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _new_message(
        self,
        text: str,
        chat_id: str,
        user_id: str,
        course_name: str,
        sender: Sender,
        retrieved_documents: Optional[List[str]] = None,
    ) -> ChatMessage:
        timestamp_ms = self._now_ms()
        return ChatMessage(
            id=self.id_generator.message_id(text, chat_id, timestamp_ms),
            sender=sender,
            user_id=user_id,
            course_name=course_name,
            text=text,
            timestamp_ms=timestamp_ms,
            retrieved_documents=retrieved_documents,
        )

    async def _find_persisted_chat(self, course_name: str, user_id: str, chat_id: str) -> Optional[PersistedChat]:
        try:
            return await self.document_store.get_chat(course_name, user_id, chat_id)
        except Exception as e:
            # The store refuses to overwrite, so a fresh session is still safe
            log.warning(f"[Orchestrator] Could not look up persisted chat {chat_id}: {e}")
            return None

    async def _persist_new_chat(self, session: LiveSession, greeting: ChatMessage) -> SideChannelResult:
        chat = PersistedChat(
            id=session.chat_id,
            course_name=session.course_name,
            user_id=session.user_id,
            title=NEW_CHAT_TITLE,
            messages=[greeting],
        )
        try:
            await self.document_store.add_chat_to_user(session.course_name, session.user_id, chat)
        except Exception as e:
            log.error(f"[Orchestrator] Could not persist new chat {session.chat_id}", e)
            return SideChannelResult.failed(PERSIST_CHAT_CHANNEL, e)
        return SideChannelResult(PERSIST_CHAT_CHANNEL)

    async def _maintain_title(self, session: LiveSession, response: str) -> SideChannelResult:
        try:
            chat = await self.document_store.get_chat(session.course_name, session.user_id, session.chat_id)
            if chat is None:
                return SideChannelResult.skipped(TITLE_CHANNEL, "chat not persisted")
            if not chat.has_sentinel_title():
                return SideChannelResult.skipped(TITLE_CHANNEL, "title already set")

            title = generate_chat_title(response)
            if title == NEW_CHAT_TITLE:
                return SideChannelResult.skipped(TITLE_CHANNEL, "response has no title words")

            await self.document_store.update_chat_title(session.course_name, session.user_id, session.chat_id, title)
        except Exception as e:
            log.error(f"[Orchestrator] Title update failed for chat {session.chat_id}", e)
            return SideChannelResult.failed(TITLE_CHANNEL, e)

        log.success(f"[Orchestrator] Titled chat {session.chat_id}: {title}")
        return SideChannelResult(TITLE_CHANNEL, detail=title)

    async def _persist_messages(self, session: LiveSession, messages: List[ChatMessage]) -> SideChannelResult:
        try:
            for message in messages:
                await self.document_store.add_message_to_chat(
                    session.course_name, session.user_id, session.chat_id, message
                )
        except Exception as e:
            log.error(f"[Orchestrator] Could not persist messages for chat {session.chat_id}", e)
            return SideChannelResult.failed(PERSIST_CHANNEL, e)
        return SideChannelResult(PERSIST_CHANNEL, detail=f"{len(messages)} message(s)")


def create_orchestrator_from_env(dotenv_path: Optional[str] = None) -> ConversationOrchestrator:
    """Wire the production collaborators (or the offline ones in developer mode)."""
    config = ChatCoreConfig.from_env(dotenv_path)
    setup_logging()

    if config.developer_mode:
        log.warning("[Orchestrator] DEVELOPING_MODE is on: mock responses, in-memory storage, no retrieval")
        return ConversationOrchestrator(
            DeveloperModeChatProvider(),
            InMemoryDocumentStore(),
            retrieval_provider=None,
            config=config,
        )

    llm_provider = OpenAIChatProvider(
        api_key=config.openai_api_key,
        model=config.openai_model,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
    )
    retrieval_provider = ChromaRetrievalProvider(
        db_path=config.chroma_db_path,
        collection_name=config.chroma_collection,
        embedding_model=config.embedding_model,
    )
    document_store = SupabaseDocumentStore(get_supabase_client())
    return ConversationOrchestrator(llm_provider, document_store, retrieval_provider, config)
