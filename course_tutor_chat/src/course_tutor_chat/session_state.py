"""
Live Session State

One LiveSession per chat that is currently held in memory.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from course_tutor_chat.llm_client import Conversation
from course_tutor_chat.models import ChatMessage, Sender


@dataclass
class LiveSession:
    """In-memory state of one chat: provider conversation, visible turn log and eviction timer."""
    chat_id: str
    user_id: str
    course_name: str
    conversation: Conversation
    turn_log: List[ChatMessage] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    # Owned by SessionStore; only touched while holding its lock
    timer: Optional[asyncio.TimerHandle] = None
    timer_generation: int = 0

    def user_turn_count(self) -> int:
        return sum(1 for message in self.turn_log if message.sender == Sender.USER)
