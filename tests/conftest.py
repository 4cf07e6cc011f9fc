"""
Shared fixtures and collaborator fakes for the chat core tests.

No test touches the network: the LLM, the vector store and Supabase are
replaced by the scripted fakes below.
"""

import asyncio
import os
import sys
from typing import Any, Callable, Dict, List, Optional

import pytest

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.join(project_root, "course_tutor_chat", "src"))

from course_tutor_chat.config import ChatCoreConfig
from course_tutor_chat.document_store import InMemoryDocumentStore
from course_tutor_chat.llm_client import Conversation, LLMResponse, emit_chunk
from course_tutor_chat.models import (
    Course,
    CourseItem,
    CourseUser,
    LearningObjective,
    RetrievedChunk,
    TopicOrWeekInstance,
)
from course_tutor_chat.orchestrator import ConversationOrchestrator

DEFAULT_RESPONSE = "Good question! What do you already know about how disorder changes in a system?"


# ----------------------------------------------------------------------
# LLM fakes
# ----------------------------------------------------------------------

class ScriptedConversation(Conversation):
    def __init__(self, provider: "ScriptedLLMProvider"):
        super().__init__()
        self.provider = provider

    async def stream(self, on_chunk: Callable[[str], Any]) -> str:
        self.provider.streamed_histories.append(self.history())
        if self.provider.stream_error is not None:
            raise self.provider.stream_error

        response = self.provider.next_response()
        for index, word in enumerate(response.split(" ")):
            await emit_chunk(on_chunk, word + " ")
            # Pause after the first chunk to simulate a slow upstream
            if index == 0 and self.provider.stream_delay:
                await asyncio.sleep(self.provider.stream_delay)
        return response

    async def send(self) -> LLMResponse:
        self.provider.analysis_histories.append(self.history())
        if self.provider.send_error is not None:
            raise self.provider.send_error
        return LLMResponse(content=self.provider.analysis_response)


class ScriptedLLMProvider:
    """Returns scripted responses in order, repeating the last one when they run out."""

    def __init__(self, responses: Optional[List[str]] = None, analysis_response: str = '{"struggle_topics": []}'):
        self.responses = list(responses or [DEFAULT_RESPONSE])
        self.analysis_response = analysis_response
        self.stream_error: Optional[BaseException] = None
        self.send_error: Optional[BaseException] = None
        self.stream_delay = 0.0
        self.streamed_histories: List[List[Dict[str, str]]] = []
        self.analysis_histories: List[List[Dict[str, str]]] = []
        self.conversations: List[ScriptedConversation] = []
        self._calls = 0

    def next_response(self) -> str:
        response = self.responses[min(self._calls, len(self.responses) - 1)]
        self._calls += 1
        return response

    def create_conversation(self) -> ScriptedConversation:
        conversation = ScriptedConversation(self)
        self.conversations.append(conversation)
        return conversation

    def last_user_prompt(self) -> str:
        history = self.streamed_histories[-1]
        return [m for m in history if m["role"] == "user"][-1]["content"]


# ----------------------------------------------------------------------
# Retrieval fake
# ----------------------------------------------------------------------

class ScriptedRetrievalProvider:
    def __init__(self, chunks: Optional[List[RetrievedChunk]] = None):
        self.chunks = list(chunks or [])
        self.error: Optional[BaseException] = None
        self.calls: List[Dict[str, Any]] = []

    async def retrieve_context(self, query, limit=3, score_threshold=0.4, retrieval_filter=None):
        self.calls.append({
            "query": query,
            "limit": limit,
            "score_threshold": score_threshold,
            "filter": retrieval_filter,
        })
        if self.error is not None:
            raise self.error
        return list(self.chunks)


# ----------------------------------------------------------------------
# Supabase fake
# ----------------------------------------------------------------------

class FakeResult:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """Supports the select / insert / update + eq chains the document store builds."""

    def __init__(self, client: "FakeSupabase", table: str):
        self.client = client
        self.table_name = table
        self.action = "select"
        self.payload: Optional[Dict[str, Any]] = None
        self.filters: List[tuple] = []

    def select(self, *columns):
        self.action = "select"
        return self

    def insert(self, row: Dict[str, Any]):
        self.action = "insert"
        self.payload = row
        return self

    def update(self, data: Dict[str, Any]):
        self.action = "update"
        self.payload = data
        return self

    def eq(self, column: str, value: Any):
        self.filters.append((column, value))
        return self

    def _matches(self, row: Dict[str, Any]) -> bool:
        return all(row.get(column) == value for column, value in self.filters)

    def execute(self) -> FakeResult:
        if self.table_name in self.client.failing_tables:
            raise ConnectionError(f"{self.table_name} unavailable")

        rows = self.client.tables.setdefault(self.table_name, [])
        if self.action == "insert":
            rows.append(dict(self.payload))
            return FakeResult([dict(self.payload)])
        if self.action == "update":
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(self.payload)
                    updated.append(dict(row))
            return FakeResult(updated)
        return FakeResult([dict(row) for row in rows if self._matches(row)])


class FakeSupabase:
    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tables = tables or {}
        self.failing_tables = set()

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------

def make_course(published: bool = True) -> Course:
    return Course(
        id="course-chbe241",
        course_name="CHBE241",
        topic_or_week_instances=[
            TopicOrWeekInstance(
                id="week-3",
                title="Week 3",
                published=published,
                items=[
                    CourseItem(
                        id="item-entropy",
                        item_title="Entropy",
                        learning_objectives=[
                            LearningObjective(id="lo-1", learning_objective="Define entropy as a state function"),
                        ],
                    ),
                ],
            ),
            TopicOrWeekInstance(
                id="week-4",
                title="Week 4",
                published=False,
                items=[CourseItem(id="item-cycles", item_title="Power Cycles")],
            ),
        ],
    )


@pytest.fixture
def config():
    return ChatCoreConfig(inactivity_timeout_seconds=300)


@pytest.fixture
def document_store():
    store = InMemoryDocumentStore()
    store.add_course(make_course(published=True))
    store.add_course_user(CourseUser(user_id="u1", course_name="CHBE241", name="Ada Student"))
    return store


@pytest.fixture
def llm_provider():
    return ScriptedLLMProvider()


@pytest.fixture
def retrieval_provider():
    return ScriptedRetrievalProvider([
        RetrievedChunk(content="Entropy is...", metadata={"topicOrWeekTitle": "Week 3"}, score=0.82),
    ])


@pytest.fixture
def orchestrator(llm_provider, document_store, retrieval_provider, config):
    orchestrator = ConversationOrchestrator(llm_provider, document_store, retrieval_provider, config)
    yield orchestrator
    orchestrator.shutdown()
