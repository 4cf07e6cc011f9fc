"""
Developer Mode

Canned streaming output and struggle topics so the chat core can run end
to end without an OpenAI key or a vector store (DEVELOPING_MODE=true).
"""

import asyncio
from typing import Any, Callable, List

from course_tutor_chat.llm_client import Conversation, LLMResponse, emit_chunk

MOCK_RESPONSE = "This is a test response in developer mode."

MOCK_STRUGGLE_WORDS: List[str] = ["test-concept", "sample-topic"]


async def generate_mock_streaming_response(
    on_chunk: Callable[[str], Any],
    chunk_size: int = 15,
    delay: float = 0.03,
) -> str:
    """Stream MOCK_RESPONSE in fixed-size pieces and return it whole."""
    for start in range(0, len(MOCK_RESPONSE), chunk_size):
        await emit_chunk(on_chunk, MOCK_RESPONSE[start:start + chunk_size])
        if delay:
            await asyncio.sleep(delay)
    return MOCK_RESPONSE


class DeveloperModeConversation(Conversation):
    """Keeps the message list like a real conversation but never calls a model."""

    async def stream(self, on_chunk: Callable[[str], Any]) -> str:
        return await generate_mock_streaming_response(on_chunk)

    async def send(self) -> LLMResponse:
        return LLMResponse(content=", ".join(MOCK_STRUGGLE_WORDS))


class DeveloperModeChatProvider:
    def create_conversation(self) -> DeveloperModeConversation:
        return DeveloperModeConversation()
