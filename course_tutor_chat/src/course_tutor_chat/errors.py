"""
Error Types for the Chat Core

Critical-path failures (session lookup, rate limit, generation) are raised
to the caller. Side-channel failures (retrieval, analysis, title and message
persistence) are caught where they happen and reported as SideChannelResult.
"""

from dataclasses import dataclass
from typing import Optional


class ChatCoreError(Exception):
    """Base class for every error raised by the chat core."""

    code = "chat_core_error"
    user_message = "Something went wrong. Please try again."


class SessionNotFoundError(ChatCoreError):
    """Chat is not live in memory, or the persisted chat is missing/deleted."""

    code = "chat_not_found"
    user_message = "This chat is no longer available. Please start a new chat."

    def __init__(self, chat_id: str, reason: str = "Chat not found"):
        super().__init__(f"{reason}: {chat_id}")
        self.chat_id = chat_id


class RateLimitExceededError(ChatCoreError):
    """The chat has reached its maximum number of user turns."""

    code = "rate_limit_exceeded"
    user_message = "This chat is full. Please start a new chat to continue."

    def __init__(self, chat_id: str, limit: int):
        super().__init__(f"Rate limit exceeded: Maximum {limit} messages per chat ({chat_id})")
        self.chat_id = chat_id
        self.limit = limit


class GenerationError(ChatCoreError):
    """The LLM provider failed while streaming a response."""

    code = "generation_failed"
    user_message = "Could not generate a response, please retry."

    def __init__(self, chat_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"Generation failed for chat {chat_id}")
        self.chat_id = chat_id
        self.__cause__ = cause


class RetrievalError(ChatCoreError):
    code = "retrieval_failed"


class AnalysisError(ChatCoreError):
    code = "analysis_failed"


class PersistenceError(ChatCoreError):
    code = "persistence_failed"


@dataclass
class SideChannelResult:
    """Outcome of a best-effort step that must never fail the turn."""
    name: str
    attempted: bool = True
    succeeded: bool = True
    error: Optional[BaseException] = None
    detail: Optional[str] = None

    @classmethod
    def skipped(cls, name: str, detail: Optional[str] = None) -> "SideChannelResult":
        return cls(name=name, attempted=False, succeeded=True, detail=detail)

    @classmethod
    def failed(cls, name: str, error: BaseException, detail: Optional[str] = None) -> "SideChannelResult":
        return cls(name=name, attempted=True, succeeded=False, error=error, detail=detail)
