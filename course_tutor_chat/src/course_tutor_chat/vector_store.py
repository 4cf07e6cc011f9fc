"""
Chroma Retrieval Provider

Semantic search over ingested course material. Chunks carry the metadata
written at ingestion time (courseName, itemTitle, topicOrWeekTitle,
learningObjectives), which the filter and the context formatter rely on.
"""

import os
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from langchain_chroma import Chroma
from langchain_core.documents import Document
from langchain_huggingface import HuggingFaceEmbeddings

from course_tutor_chat.errors import RetrievalError
from course_tutor_chat.models import RetrievedChunk

# Disable ChromaDB telemetry to avoid PostHog connection errors
os.environ["ANONYMIZED_TELEMETRY"] = "False"

logger = logging.getLogger(__name__)


@dataclass
class RetrievalFilter:
    """Restricts a search to one course and a set of published item titles."""
    course_name: str
    item_titles: List[str] = field(default_factory=list)

    def to_chroma_where(self) -> Dict[str, Any]:
        return {
            "$and": [
                {"courseName": {"$eq": self.course_name}},
                {"itemTitle": {"$in": list(self.item_titles)}},
            ]
        }


class ChromaRetrievalProvider:
    """Wraps a persisted Chroma collection behind ``retrieve_context``."""

    def __init__(
        self,
        db_path: str,
        collection_name: str = "course_materials",
        embedding_model: str = "all-MiniLM-L6-v2",
        vector_store: Optional[Chroma] = None,
    ):
        if vector_store is None:
            embeddings = HuggingFaceEmbeddings(
                model_name=embedding_model,
                model_kwargs={'device': 'cpu'},
                encode_kwargs={'normalize_embeddings': True}
            )
            vector_store = Chroma(
                collection_name=collection_name,
                persist_directory=db_path,
                embedding_function=embeddings,
            )
            logger.info(f"📚 [ChromaRetrievalProvider] Opened collection '{collection_name}' at {db_path}")
        self.vector_store = vector_store

    async def retrieve_context(
        self,
        query: str,
        limit: int = 3,
        score_threshold: float = 0.4,
        retrieval_filter: Optional[RetrievalFilter] = None,
    ) -> List[RetrievedChunk]:
        where = retrieval_filter.to_chroma_where() if retrieval_filter else None
        try:
            # Chroma and the embedding model are synchronous
            results = await asyncio.to_thread(
                self.vector_store.similarity_search_with_relevance_scores,
                query,
                k=limit,
                filter=where,
                score_threshold=score_threshold,
            )
        except Exception as e:
            raise RetrievalError(f"Vector search failed: {e}") from e

        return [self._to_chunk(doc, score) for doc, score in results]

    @staticmethod
    def _to_chunk(doc: Document, score: float) -> RetrievedChunk:
        return RetrievedChunk(content=doc.page_content, metadata=dict(doc.metadata or {}), score=score)
