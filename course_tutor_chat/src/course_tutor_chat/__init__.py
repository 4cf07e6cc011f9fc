"""Chat session core for the course tutor"""
from .config import ChatCoreConfig
from .errors import (
    ChatCoreError,
    GenerationError,
    RateLimitExceededError,
    SessionNotFoundError,
    SideChannelResult,
)
from .models import ChatMessage, Sender
from .orchestrator import ConversationOrchestrator, TurnResult, create_orchestrator_from_env

__all__ = [
    "ChatCoreConfig",
    "ChatCoreError",
    "ChatMessage",
    "ConversationOrchestrator",
    "GenerationError",
    "RateLimitExceededError",
    "Sender",
    "SessionNotFoundError",
    "SideChannelResult",
    "TurnResult",
    "create_orchestrator_from_env",
]
