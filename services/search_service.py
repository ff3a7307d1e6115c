# services/search_service.py
import logging
import math
import re
from typing import Any, List, Optional, Sequence

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from core.domain import SearchHit, SearchQuery, ThresholdValidation
from core.interfaces import IChunkStore, IEmbeddingService, IRanker
from database.session import get_session
from infrastructure.repositories import SQLFileRepository

logger = logging.getLogger(settings.LOGGER_NAME)

_SPECIAL_CHARS = re.compile(r"[^a-zA-Z0-9\s]")


def validate_similarity_threshold(value: Any) -> ThresholdValidation:
    """
    Check a caller-supplied similarity threshold.

    Non-numbers and NaN fall back to the default search threshold;
    out-of-range numbers are clamped into [0, 1]. Both are reported invalid.
    """
    default = settings.SEARCH_DEFAULT_THRESHOLD
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        return ThresholdValidation(False, default, "Threshold must be a valid number")
    if value < 0 or value > 1:
        return ThresholdValidation(False, max(0.0, min(1.0, float(value))),
                                   "Threshold must be between 0 and 1")
    return ThresholdValidation(True, float(value))


def process_search_query(query: str) -> SearchQuery:
    clean_query = (query or "").strip().lower()
    return SearchQuery(
        clean_query=clean_query,
        terms=[term for term in clean_query.split() if term],
        has_special_chars=bool(_SPECIAL_CHARS.search(clean_query)),
    )


class DocumentSearchService:
    """Query path: embed -> chunk store search -> resolve files -> rank"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        embedding_service: IEmbeddingService,
        chunk_store: IChunkStore,
        ranker: IRanker,
    ):
        self.session_factory = session_factory
        self.embedding_service = embedding_service
        self.chunk_store = chunk_store
        self.ranker = ranker

    async def search(
        self,
        query: str,
        threshold: float = settings.SEARCH_DEFAULT_THRESHOLD,
        limit: int = settings.SEARCH_DEFAULT_LIMIT,
        file_ids: Optional[Sequence[str]] = None,
    ) -> List[SearchHit]:
        """
        Ranked hits for a natural-language query.

        Embedding provider errors propagate unchanged; callers decide whether
        to recover (chat) or surface them (search endpoint).
        """
        if not query or not query.strip():
            return []

        query_embedding = await self.embedding_service.generate_embedding(query)
        raw = await self.chunk_store.search(query_embedding, threshold, limit, file_ids)
        if not raw:
            logger.info(f"No chunks above threshold {threshold} for query '{query[:50]}'")
            return []

        async with get_session(self.session_factory) as session:
            files = await SQLFileRepository(session).get_many([chunk.file_id for chunk, _ in raw])

        hits = [
            SearchHit(chunk=chunk, similarity=similarity, file=files.get(chunk.file_id))
            for chunk, similarity in raw
        ]
        ranked = self.ranker.rank(hits, query)
        logger.info(f"Search returned {len(ranked)} hits for query '{query[:50]}'")
        return ranked
