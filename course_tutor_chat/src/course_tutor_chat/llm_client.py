"""
LLM Provider

Thin conversation wrapper around AsyncOpenAI chat completions. Each chat
session owns one Conversation holding its role-tagged message list.
"""

import os
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


async def emit_chunk(on_chunk: Callable[[str], Any], chunk: str) -> None:
    """Call ``on_chunk`` whether it is a plain function or a coroutine function."""
    result = on_chunk(chunk)
    if inspect.isawaitable(result):
        await result


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class LLMResponse:
    content: str


class Conversation(ABC):
    """Ordered message list plus the calls that generate the next reply."""

    def __init__(self):
        self._messages: List[Dict[str, str]] = []

    def add_message(self, role: Role, content: str) -> None:
        self._messages.append({"role": Role(role).value, "content": content})

    def history(self) -> List[Dict[str, str]]:
        return [dict(message) for message in self._messages]

    def non_system_messages(self) -> List[Dict[str, str]]:
        return [dict(m) for m in self._messages if m["role"] != Role.SYSTEM.value]

    @abstractmethod
    async def stream(self, on_chunk: Callable[[str], Any]) -> str:
        """Generate a reply, passing each text increment to ``on_chunk``; return the full text."""

    @abstractmethod
    async def send(self) -> LLMResponse:
        """Generate a reply without streaming."""


class OpenAIConversation(Conversation):
    def __init__(self, client: AsyncOpenAI, model: str, temperature: float = 0.7, max_tokens: int = 800):
        super().__init__()
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def stream(self, on_chunk: Callable[[str], Any]) -> str:
        full_response = ""
        stream = await self.client.chat.completions.create(
            model=self.model,
            messages=self.history(),
            stream=True,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )

        async for chunk in stream:
            if chunk.choices and len(chunk.choices) > 0:
                delta = chunk.choices[0].delta
                if delta and delta.content:
                    full_response += delta.content
                    await emit_chunk(on_chunk, delta.content)

        return full_response

    async def send(self) -> LLMResponse:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=self.history(),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        return LLMResponse(content=response.choices[0].message.content or "")


class OpenAIChatProvider:
    """Creates OpenAI-backed conversations sharing one client."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 800,
        client: Optional[AsyncOpenAI] = None,
    ):
        if client is None:
            api_key = api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ValueError("OPENAI_API_KEY not found in environment variables")
            client = AsyncOpenAI(api_key=api_key)
        self.client = client
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        self.temperature = temperature
        self.max_tokens = max_tokens
        logger.info(f"✅ [OpenAIChatProvider] Using model {self.model}")

    def create_conversation(self) -> OpenAIConversation:
        return OpenAIConversation(self.client, self.model, self.temperature, self.max_tokens)
