"""
Data Models

Pydantic models for everything that is read from or written to the
document store, plus the lightweight RetrievedChunk produced per turn.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

NEW_CHAT_TITLE = "New Chat"


class Sender(str, Enum):
    USER = "user"
    BOT = "bot"


class ChatMessage(BaseModel):
    """One caller-visible message in a chat's turn log."""
    id: str
    sender: Sender
    user_id: str = ""
    course_name: str = ""
    text: str
    timestamp_ms: int
    retrieved_documents: Optional[List[str]] = None

    model_config = {"frozen": True}


class LearningObjective(BaseModel):
    id: str = ""
    learning_objective: str
    course_name: str = ""
    topic_or_week_title: str = ""
    item_title: str = ""


class CourseItem(BaseModel):
    id: str = ""
    item_title: str
    learning_objectives: List[LearningObjective] = Field(default_factory=list)


class TopicOrWeekInstance(BaseModel):
    id: str = ""
    title: str = ""
    published: bool = False
    items: List[CourseItem] = Field(default_factory=list)


class Course(BaseModel):
    id: str
    course_name: str
    topic_or_week_instances: List[TopicOrWeekInstance] = Field(default_factory=list)

    def published_item_titles(self) -> List[str]:
        """Unique item titles under published topics/weeks, in course order."""
        titles: List[str] = []
        for instance in self.topic_or_week_instances:
            if not instance.published:
                continue
            for item in instance.items:
                if item.item_title and item.item_title not in titles:
                    titles.append(item.item_title)
        return titles


class PersistedChat(BaseModel):
    id: str
    course_name: str
    user_id: str
    title: str = NEW_CHAT_TITLE
    messages: List[ChatMessage] = Field(default_factory=list)
    is_deleted: bool = False
    is_pinned: bool = False

    def has_sentinel_title(self) -> bool:
        return self.title in (NEW_CHAT_TITLE, "")


class CourseUser(BaseModel):
    user_id: str
    course_name: str
    name: str = ""
    affiliation: str = "student"


class StruggleProfile(BaseModel):
    """Per (user, course) record of topics the student struggles with."""
    user_id: str
    course_name: str
    name: str = ""
    affiliation: str = "student"
    struggle_words: List[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


@dataclass
class RetrievedChunk:
    """A chunk of course material returned by the retrieval provider."""
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    score: Optional[float] = None
