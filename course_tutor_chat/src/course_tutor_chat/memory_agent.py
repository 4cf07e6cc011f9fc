"""
Struggle Topic Analyzer ("memory agent")

Looks at the last few turns of a conversation, asks the LLM whether the
student is struggling with a specific topic, and merges any new topic into
the student's per-course struggle profile. The profile feeds the system
prompt of every later chat so the tutor explains those topics directly.

Automatic updates only ever add topics; the student removes a topic
explicitly through remove_struggle_word.
"""

import logging
import re
from typing import Dict, Iterable, List, Optional

from course_tutor_chat.config import ChatCoreConfig
from course_tutor_chat.developer_mode import MOCK_STRUGGLE_WORDS
from course_tutor_chat.document_store import DocumentStore
from course_tutor_chat.errors import AnalysisError, SideChannelResult
from course_tutor_chat.llm_client import Role
from course_tutor_chat.prompts import (
    build_struggle_analysis_prompt,
    parse_struggle_topics,
    strip_course_materials,
)

logger = logging.getLogger(__name__)

ANALYSIS_CHANNEL = "struggle_analysis"


def normalize_topic(topic: str) -> str:
    return topic.strip().lower()


def _topic_words(topic: str) -> List[str]:
    return re.findall(r"\w+", normalize_topic(topic))


def _contains_words(words: List[str], part: List[str]) -> bool:
    size = len(part)
    return any(words[i:i + size] == part for i in range(len(words) - size + 1))


def is_near_duplicate(candidate: str, existing_topics: Iterable[str]) -> bool:
    """
    True when the candidate's words equal a known topic's words or one
    appears as a contiguous run inside the other ("entropy" vs "entropy
    change"). Partial words never match: "heat" does not cover "wheatstone".
    """
    candidate_words = _topic_words(candidate)
    if not candidate_words:
        return False
    for existing in existing_topics:
        existing_words = _topic_words(existing)
        if not existing_words:
            continue
        if _contains_words(candidate_words, existing_words) or _contains_words(existing_words, candidate_words):
            return True
    return False


class StruggleTopicAnalyzer:
    def __init__(self, llm_provider, document_store: DocumentStore, config: Optional[ChatCoreConfig] = None):
        """
        Args:
            llm_provider: object with ``create_conversation()`` (None in developer mode)
            document_store: persistence for struggle profiles and the course roster
            config: thresholds and developer-mode switch
        """
        self.llm_provider = llm_provider
        self.document_store = document_store
        self.config = config or ChatCoreConfig()

    def should_analyze(self, messages: List[Dict[str, str]]) -> bool:
        non_system = [m for m in messages if m["role"] != Role.SYSTEM.value]
        return len(non_system) > self.config.memory_agent_min_messages

    def build_window(self, messages: List[Dict[str, str]]) -> str:
        """Format the most recent non-system messages as a Student / AI Tutor transcript."""
        non_system = [m for m in messages if m["role"] != Role.SYSTEM.value]
        window = non_system[-self.config.memory_agent_window:]

        lines = []
        for message in window:
            if message["role"] == Role.USER.value:
                lines.append(f"Student: {strip_course_materials(message['content'])}")
            else:
                lines.append(f"AI Tutor: {message['content'].strip()}")
        return "\n\n".join(lines)

    async def analyze(self, user_id: str, course_name: str, messages: List[Dict[str, str]]) -> SideChannelResult:
        """
        Run one analysis pass over ``messages`` (a provider conversation history).

        Never raises: short conversations are skipped and every failure is
        logged and returned as a failed SideChannelResult.
        """
        if not user_id:
            logger.warning("⚠️ [MemoryAgent] Invalid user id, skipping struggle analysis")
            return SideChannelResult.skipped(ANALYSIS_CHANNEL, "invalid user id")
        if not self.should_analyze(messages):
            return SideChannelResult.skipped(ANALYSIS_CHANNEL, "conversation too short")

        try:
            existing = await self.get_struggle_words(user_id, course_name)
            window = self.build_window(messages)

            if self.config.developer_mode:
                candidates = list(MOCK_STRUGGLE_WORDS)
            else:
                logger.info(f"🔍 [MemoryAgent] Analyzing conversation for struggle topics ({course_name})")
                candidates = (await self.extract_topics(window, existing))[:1]

            new_topics = [topic for topic in candidates if not is_near_duplicate(topic, existing)]
            if not new_topics:
                return SideChannelResult(ANALYSIS_CHANNEL, detail="no new topics")

            merged = await self.update_struggle_words(user_id, course_name, new_topics)
            return SideChannelResult(ANALYSIS_CHANNEL, detail=f"added {new_topics}, total {len(merged)}")
        except Exception as e:
            logger.error(f"❌ [MemoryAgent] Struggle analysis failed for user {user_id[:20]}: {e}", exc_info=True)
            return SideChannelResult.failed(ANALYSIS_CHANNEL, e)

    async def extract_topics(self, window: str, existing_topics: List[str]) -> List[str]:
        if self.llm_provider is None:
            raise AnalysisError("No LLM provider configured for struggle analysis")

        conversation = self.llm_provider.create_conversation()
        conversation.add_message(Role.USER, build_struggle_analysis_prompt(window, existing_topics))
        try:
            response = await conversation.send()
        except Exception as e:
            raise AnalysisError(f"Struggle analysis LLM call failed: {e}") from e

        topics = parse_struggle_topics(response.content)
        logger.debug(f"[MemoryAgent] LLM proposed topics: {topics}")
        return topics

    async def get_struggle_words(self, user_id: str, course_name: str) -> List[str]:
        profile = await self.document_store.get_struggle_profile(course_name, user_id)
        return list(profile.struggle_words) if profile else []

    async def update_struggle_words(self, user_id: str, course_name: str, new_topics: List[str]) -> List[str]:
        """
        Union ``new_topics`` into the stored profile and persist the sorted result.

        The profile is created from the course roster on first use.
        Returns the merged list.
        """
        if not user_id:
            logger.warning("⚠️ [MemoryAgent] Invalid user id, skipping struggle words update")
            return []

        profile = await self.document_store.get_struggle_profile(course_name, user_id)
        if profile is None:
            course_user = await self.document_store.find_course_user(course_name, user_id)
            if course_user is None:
                raise AnalysisError(f"User {user_id} is not enrolled in {course_name}")
            profile = await self.document_store.initialize_struggle_profile(course_name, course_user)
            logger.info(f"✅ [MemoryAgent] Created struggle profile for user {user_id[:20]} in {course_name}")

        existing = {normalize_topic(word) for word in profile.struggle_words if normalize_topic(word)}
        incoming = {normalize_topic(word) for word in new_topics if normalize_topic(word)}
        merged = sorted(existing | incoming)

        await self.document_store.update_struggle_words(course_name, user_id, merged)
        added = len(merged) - len(existing)
        logger.info(
            f"✅ [MemoryAgent] Updated struggle words for user {user_id[:20]}: "
            f"{len(merged)} total ({f'+{added} new' if added else 'no new words'})"
        )
        return merged

    async def remove_struggle_word(self, user_id: str, course_name: str, topic: str) -> bool:
        """Remove a topic the student says they have mastered. False if it was not on file."""
        profile = await self.document_store.get_struggle_profile(course_name, user_id)
        if profile is None:
            return False

        target = normalize_topic(topic)
        remaining = [word for word in profile.struggle_words if normalize_topic(word) != target]
        if len(remaining) == len(profile.struggle_words):
            return False

        await self.document_store.update_struggle_words(course_name, user_id, remaining)
        logger.info(f"✅ [MemoryAgent] Removed struggle topic '{target}' for user {user_id[:20]}")
        return True
