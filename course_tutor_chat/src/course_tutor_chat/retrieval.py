"""
Retrieval Gateway

Scopes every vector search to the published material of one course and
formats the retrieved chunks into the <course_materials> block injected
ahead of the student's question. Retrieval never fails a turn: a missing
course, an unpublished course or a provider error all yield no chunks.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple

from course_tutor_chat.document_store import DocumentStore
from course_tutor_chat.errors import SideChannelResult
from course_tutor_chat.models import RetrievedChunk
from course_tutor_chat.prompts import COURSE_MATERIALS_CLOSE, COURSE_MATERIALS_OPEN
from course_tutor_chat.vector_store import RetrievalFilter

logger = logging.getLogger(__name__)

RETRIEVAL_CHANNEL = "retrieval"


class RetrievalProvider(Protocol):
    async def retrieve_context(
        self,
        query: str,
        limit: int = 3,
        score_threshold: float = 0.4,
        retrieval_filter: Optional[RetrievalFilter] = None,
    ) -> List[RetrievedChunk]:
        ...


class RetrievalGateway:
    def __init__(
        self,
        provider: Optional[RetrievalProvider],
        document_store: DocumentStore,
        developer_mode: bool = False,
    ):
        self.provider = provider
        self.document_store = document_store
        self.developer_mode = developer_mode

    async def retrieve(
        self,
        query: str,
        course_name: str,
        limit: int = 3,
        score_threshold: float = 0.4,
    ) -> List[RetrievedChunk]:
        chunks, _ = await self.retrieve_with_report(query, course_name, limit, score_threshold)
        return chunks

    async def retrieve_with_report(
        self,
        query: str,
        course_name: str,
        limit: int = 3,
        score_threshold: float = 0.4,
    ) -> Tuple[List[RetrievedChunk], SideChannelResult]:
        """Same as ``retrieve`` but also reports whether the search ran and how it ended."""
        if self.developer_mode:
            return [], SideChannelResult.skipped(RETRIEVAL_CHANNEL, "developer mode")
        if self.provider is None:
            logger.warning("⚠️ [RetrievalGateway] No retrieval provider configured, skipping")
            return [], SideChannelResult.skipped(RETRIEVAL_CHANNEL, "no provider")

        try:
            course = await self.document_store.get_course_by_name(course_name)
        except Exception as e:
            logger.error(f"❌ [RetrievalGateway] Course lookup failed for {course_name}: {e}", exc_info=True)
            return [], SideChannelResult.failed(RETRIEVAL_CHANNEL, e, "course lookup failed")

        if course is None:
            logger.warning(f"⚠️ [RetrievalGateway] Course not found: {course_name}, skipping retrieval")
            return [], SideChannelResult.skipped(RETRIEVAL_CHANNEL, "course not found")

        published_titles = course.published_item_titles()
        if not published_titles:
            logger.debug(f"[RetrievalGateway] No published items for course: {course_name}")
            return [], SideChannelResult.skipped(RETRIEVAL_CHANNEL, "no published items")

        retrieval_filter = RetrievalFilter(course_name=course_name, item_titles=published_titles)
        try:
            chunks = await self.provider.retrieve_context(
                query,
                limit=limit,
                score_threshold=score_threshold,
                retrieval_filter=retrieval_filter,
            )
        except Exception as e:
            logger.error(f"❌ [RetrievalGateway] Retrieval failed for {course_name}: {e}", exc_info=True)
            return [], SideChannelResult.failed(RETRIEVAL_CHANNEL, e)

        chunks = list(chunks)
        logger.info(f"📚 [RetrievalGateway] Retrieved {len(chunks)} chunk(s) for {course_name}")
        return chunks, SideChannelResult(RETRIEVAL_CHANNEL, detail=f"{len(chunks)} chunk(s)")


def _metadata_dict(metadata: Any) -> Dict[str, Any]:
    if isinstance(metadata, dict):
        return metadata
    if isinstance(metadata, str):
        try:
            parsed = json.loads(metadata)
            return parsed if isinstance(parsed, dict) else {}
        except json.JSONDecodeError:
            logger.warning("⚠️ [RetrievalGateway] Could not parse chunk metadata")
    return {}


def _objective_texts(raw: Any) -> List[str]:
    # Chroma only stores scalar metadata, so ingestion may have written a JSON string
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return [raw] if raw.strip() else []
    if not isinstance(raw, list):
        return []

    texts = []
    for objective in raw:
        if isinstance(objective, dict):
            text = (
                objective.get("text")
                or objective.get("LearningObjective")
                or objective.get("learningObjective")
                or ""
            )
        else:
            text = str(objective)
        if text:
            texts.append(text)
    return texts


def format_context(chunks: List[RetrievedChunk]) -> str:
    """
    Render chunks as a <course_materials> block.

    Each document lists its chapter and learning objectives before the
    content. No chunks means no block at all, not an empty wrapper.
    """
    if not chunks:
        return ""

    context = f"\n\n{COURSE_MATERIALS_OPEN}\n"
    for index, chunk in enumerate(chunks, 1):
        context += f"\n--- Document {index} ---\n"

        metadata = _metadata_dict(chunk.metadata)
        chapter = metadata.get("topicOrWeekTitle") or ""
        objectives = _objective_texts(metadata.get("learningObjectives"))

        if chapter:
            context += f"chapter: {chapter}\n"
        if objectives:
            context += "learningObjectives:\n"
            for objective_index, text in enumerate(objectives, 1):
                context += f"  {objective_index}. {text}\n"

        context += f"content: {chunk.content}\n\n"

    context += f"\n{COURSE_MATERIALS_CLOSE}\n"
    return context
