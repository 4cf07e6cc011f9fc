"""
Chat Core Configuration

All settings come from environment variables (a local .env file is loaded
first). Defaults match the production deployment.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() == "true"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


@dataclass
class ChatCoreConfig:
    """Runtime settings for sessions, retrieval, memory agent and LLM calls."""
    # Sessions
    inactivity_timeout_seconds: float = 5 * 60
    max_turns_per_chat: int = 50
    # Memory agent
    memory_agent_min_messages: int = 6
    memory_agent_window: int = 3
    # Retrieval
    retrieval_limit: int = 3
    retrieval_score_threshold: float = 0.4
    chroma_db_path: str = os.path.join("data", "chroma_db")
    chroma_collection: str = "course_materials"
    embedding_model: str = "all-MiniLM-L6-v2"
    # LLM
    openai_model: str = "gpt-4o-mini"
    openai_api_key: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 800
    # Skip LLM and vector store calls, stream a canned response
    developer_mode: bool = False

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "ChatCoreConfig":
        """Build a config from the process environment."""
        load_dotenv(dotenv_path)

        config = cls(
            inactivity_timeout_seconds=_env_float("CHAT_INACTIVITY_TIMEOUT_SECONDS", 5 * 60),
            max_turns_per_chat=_env_int("CHAT_MAX_TURNS", 50),
            memory_agent_min_messages=_env_int("MEMORY_AGENT_MIN_MESSAGES", 6),
            memory_agent_window=_env_int("MEMORY_AGENT_WINDOW", 3),
            retrieval_limit=_env_int("RAG_RETRIEVAL_LIMIT", 3),
            retrieval_score_threshold=_env_float("RAG_SCORE_THRESHOLD", 0.4),
            chroma_db_path=os.getenv("CHROMA_DB_PATH", os.path.join("data", "chroma_db")),
            chroma_collection=os.getenv("CHROMA_COLLECTION", "course_materials"),
            embedding_model=os.getenv("EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            temperature=_env_float("OPENAI_TEMPERATURE", 0.7),
            max_tokens=_env_int("OPENAI_MAX_TOKENS", 800),
            developer_mode=_env_bool("DEVELOPING_MODE"),
        )

        if config.inactivity_timeout_seconds <= 0:
            raise ValueError("CHAT_INACTIVITY_TIMEOUT_SECONDS must be positive")
        if config.memory_agent_window < 1:
            raise ValueError("MEMORY_AGENT_WINDOW must be at least 1")

        return config
