"""
Document Store

Persistence for courses, learning objectives, chats and struggle profiles.

Two implementations share the DocumentStore interface:
- InMemoryDocumentStore: dict-backed, used in developer mode and tests
- SupabaseDocumentStore: Postgres tables through the Supabase client
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from course_tutor_chat.errors import PersistenceError
from course_tutor_chat.models import (
    ChatMessage,
    Course,
    CourseUser,
    LearningObjective,
    PersistedChat,
    StruggleProfile,
)

logger = logging.getLogger(__name__)


class DocumentStore(ABC):
    """Async persistence interface consumed by the chat core."""

    @abstractmethod
    async def get_course_by_name(self, course_name: str) -> Optional[Course]:
        ...

    @abstractmethod
    async def get_all_learning_objectives(self, course_id: str) -> List[LearningObjective]:
        ...

    @abstractmethod
    async def get_user_chats(self, course_name: str, user_id: str) -> List[PersistedChat]:
        ...

    @abstractmethod
    async def get_chat(self, course_name: str, user_id: str, chat_id: str) -> Optional[PersistedChat]:
        ...

    @abstractmethod
    async def add_chat_to_user(self, course_name: str, user_id: str, chat: PersistedChat) -> None:
        """Create a chat. Raises PersistenceError if the id is already taken."""
        ...

    @abstractmethod
    async def add_message_to_chat(self, course_name: str, user_id: str, chat_id: str, message: ChatMessage) -> None:
        ...

    @abstractmethod
    async def update_chat_title(self, course_name: str, user_id: str, chat_id: str, title: str) -> None:
        ...

    @abstractmethod
    async def get_struggle_profile(self, course_name: str, user_id: str) -> Optional[StruggleProfile]:
        ...

    @abstractmethod
    async def initialize_struggle_profile(self, course_name: str, user: CourseUser) -> StruggleProfile:
        ...

    @abstractmethod
    async def update_struggle_words(self, course_name: str, user_id: str, struggle_words: List[str]) -> None:
        ...

    @abstractmethod
    async def find_course_user(self, course_name: str, user_id: str) -> Optional[CourseUser]:
        ...


def objectives_from_course(course: Course) -> List[LearningObjective]:
    """Flatten a course's week/topic items into labelled learning objectives."""
    objectives: List[LearningObjective] = []
    for instance in course.topic_or_week_instances:
        for item in instance.items:
            for objective in item.learning_objectives:
                objectives.append(objective.model_copy(update={
                    "course_name": objective.course_name or course.course_name,
                    "topic_or_week_title": objective.topic_or_week_title or instance.title,
                    "item_title": objective.item_title or item.item_title,
                }))
    return objectives


class InMemoryDocumentStore(DocumentStore):
    """Keeps every record in process memory; nothing survives a restart."""

    def __init__(self):
        self._courses: Dict[str, Course] = {}
        self._chats: Dict[Tuple[str, str], Dict[str, PersistedChat]] = {}
        self._profiles: Dict[Tuple[str, str], StruggleProfile] = {}
        self._course_users: Dict[Tuple[str, str], CourseUser] = {}

    # Seeding helpers

    def add_course(self, course: Course) -> None:
        self._courses[course.course_name] = course

    def add_course_user(self, user: CourseUser) -> None:
        self._course_users[(user.course_name, user.user_id)] = user

    # DocumentStore

    async def get_course_by_name(self, course_name: str) -> Optional[Course]:
        return self._courses.get(course_name)

    async def get_all_learning_objectives(self, course_id: str) -> List[LearningObjective]:
        for course in self._courses.values():
            if course.id == course_id:
                return objectives_from_course(course)
        return []

    async def get_user_chats(self, course_name: str, user_id: str) -> List[PersistedChat]:
        chats = self._chats.get((course_name, user_id), {})
        return [chat.model_copy(deep=True) for chat in chats.values()]

    async def get_chat(self, course_name: str, user_id: str, chat_id: str) -> Optional[PersistedChat]:
        chat = self._chats.get((course_name, user_id), {}).get(chat_id)
        return chat.model_copy(deep=True) if chat else None

    async def add_chat_to_user(self, course_name: str, user_id: str, chat: PersistedChat) -> None:
        chats = self._chats.setdefault((course_name, user_id), {})
        if chat.id in chats:
            raise PersistenceError(f"Chat {chat.id} already exists for {user_id} in {course_name}")
        chats[chat.id] = chat.model_copy(deep=True)

    async def add_message_to_chat(self, course_name: str, user_id: str, chat_id: str, message: ChatMessage) -> None:
        chat = self._require_chat(course_name, user_id, chat_id)
        if any(existing.id == message.id for existing in chat.messages):
            return
        chat.messages.append(message)

    async def update_chat_title(self, course_name: str, user_id: str, chat_id: str, title: str) -> None:
        self._require_chat(course_name, user_id, chat_id).title = title

    async def get_struggle_profile(self, course_name: str, user_id: str) -> Optional[StruggleProfile]:
        profile = self._profiles.get((course_name, user_id))
        return profile.model_copy(deep=True) if profile else None

    async def initialize_struggle_profile(self, course_name: str, user: CourseUser) -> StruggleProfile:
        profile = StruggleProfile(
            user_id=user.user_id,
            course_name=course_name,
            name=user.name,
            affiliation=user.affiliation,
            struggle_words=[],
            updated_at=datetime.now(),
        )
        self._profiles[(course_name, user.user_id)] = profile
        return profile.model_copy(deep=True)

    async def update_struggle_words(self, course_name: str, user_id: str, struggle_words: List[str]) -> None:
        profile = self._profiles.get((course_name, user_id))
        if profile is None:
            raise PersistenceError(f"No struggle profile for {user_id} in {course_name}")
        profile.struggle_words = list(struggle_words)
        profile.updated_at = datetime.now()

    async def find_course_user(self, course_name: str, user_id: str) -> Optional[CourseUser]:
        return self._course_users.get((course_name, user_id))

    def _require_chat(self, course_name: str, user_id: str, chat_id: str) -> PersistedChat:
        chat = self._chats.get((course_name, user_id), {}).get(chat_id)
        if chat is None:
            raise PersistenceError(f"Chat {chat_id} not found for {user_id} in {course_name}")
        return chat


class SupabaseDocumentStore(DocumentStore):
    """
    Supabase-backed store.

    Tables: courses, learning_objectives, chats, struggle_profiles,
    course_users. Chat messages live in the ``messages`` JSON column of
    their chat row. Any client error surfaces as PersistenceError.
    """

    def __init__(self, supabase_client):
        self.supabase = supabase_client

    async def _execute(self, query, action: str) -> List[Dict[str, Any]]:
        try:
            # supabase-py is synchronous
            result = await asyncio.to_thread(query.execute)
        except Exception as e:
            logger.error(f"❌ [SupabaseDocumentStore] Error while {action}: {e}", exc_info=True)
            raise PersistenceError(f"Error while {action}: {e}") from e
        return result.data or []

    def _chat_query(self, course_name: str, user_id: str, chat_id: str, query):
        return query.eq('id', chat_id).eq('course_name', course_name).eq('user_id', user_id)

    async def get_course_by_name(self, course_name: str) -> Optional[Course]:
        rows = await self._execute(
            self.supabase.table('courses').select('*').eq('course_name', course_name),
            f"loading course {course_name}",
        )
        return Course.model_validate(rows[0]) if rows else None

    async def get_all_learning_objectives(self, course_id: str) -> List[LearningObjective]:
        rows = await self._execute(
            self.supabase.table('learning_objectives').select('*').eq('course_id', course_id),
            f"loading learning objectives for course {course_id}",
        )
        return [LearningObjective.model_validate(row) for row in rows]

    async def get_user_chats(self, course_name: str, user_id: str) -> List[PersistedChat]:
        rows = await self._execute(
            self.supabase.table('chats')
            .select('*')
            .eq('course_name', course_name)
            .eq('user_id', user_id),
            f"loading chats for user {user_id[:20]}",
        )
        return [PersistedChat.model_validate(row) for row in rows]

    async def get_chat(self, course_name: str, user_id: str, chat_id: str) -> Optional[PersistedChat]:
        rows = await self._execute(
            self._chat_query(course_name, user_id, chat_id, self.supabase.table('chats').select('*')),
            f"loading chat {chat_id}",
        )
        return PersistedChat.model_validate(rows[0]) if rows else None

    async def add_chat_to_user(self, course_name: str, user_id: str, chat: PersistedChat) -> None:
        # Chats are created once; later writes go through add_message_to_chat and update_chat_title
        if await self.get_chat(course_name, user_id, chat.id) is not None:
            raise PersistenceError(f"Chat {chat.id} already exists for {user_id} in {course_name}")

        row = chat.model_dump(mode='json')
        row.update({'course_name': course_name, 'user_id': user_id})
        await self._execute(self.supabase.table('chats').insert(row), f"creating chat {chat.id}")

    async def add_message_to_chat(self, course_name: str, user_id: str, chat_id: str, message: ChatMessage) -> None:
        chat = await self.get_chat(course_name, user_id, chat_id)
        if chat is None:
            raise PersistenceError(f"Chat {chat_id} not found for {user_id} in {course_name}")
        if any(existing.id == message.id for existing in chat.messages):
            return

        messages = [m.model_dump(mode='json') for m in chat.messages]
        messages.append(message.model_dump(mode='json'))
        await self._execute(
            self._chat_query(
                course_name, user_id, chat_id,
                self.supabase.table('chats').update({'messages': messages}),
            ),
            f"appending message to chat {chat_id}",
        )

    async def update_chat_title(self, course_name: str, user_id: str, chat_id: str, title: str) -> None:
        await self._execute(
            self._chat_query(
                course_name, user_id, chat_id,
                self.supabase.table('chats').update({'title': title}),
            ),
            f"updating title of chat {chat_id}",
        )

    async def get_struggle_profile(self, course_name: str, user_id: str) -> Optional[StruggleProfile]:
        rows = await self._execute(
            self.supabase.table('struggle_profiles')
            .select('*')
            .eq('course_name', course_name)
            .eq('user_id', user_id),
            f"loading struggle profile for user {user_id[:20]}",
        )
        return StruggleProfile.model_validate(rows[0]) if rows else None

    async def initialize_struggle_profile(self, course_name: str, user: CourseUser) -> StruggleProfile:
        profile = StruggleProfile(
            user_id=user.user_id,
            course_name=course_name,
            name=user.name,
            affiliation=user.affiliation,
            struggle_words=[],
            updated_at=datetime.now(),
        )
        await self._execute(
            self.supabase.table('struggle_profiles').insert(profile.model_dump(mode='json')),
            f"creating struggle profile for user {user.user_id[:20]}",
        )
        return profile

    async def update_struggle_words(self, course_name: str, user_id: str, struggle_words: List[str]) -> None:
        await self._execute(
            self.supabase.table('struggle_profiles')
            .update({'struggle_words': list(struggle_words), 'updated_at': datetime.now().isoformat()})
            .eq('course_name', course_name)
            .eq('user_id', user_id),
            f"updating struggle words for user {user_id[:20]}",
        )

    async def find_course_user(self, course_name: str, user_id: str) -> Optional[CourseUser]:
        rows = await self._execute(
            self.supabase.table('course_users')
            .select('*')
            .eq('course_name', course_name)
            .eq('user_id', user_id),
            f"looking up user {user_id[:20]} in {course_name}",
        )
        return CourseUser.model_validate(rows[0]) if rows else None
