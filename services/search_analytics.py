# services/search_analytics.py
import logging
from collections import Counter
from datetime import timedelta
from typing import List, Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from core.domain import PopularQuery, SearchAnalyticsRecord, SearchAnalyticsSummary
from database.session import get_session
from infrastructure.repositories import SQLSearchAnalyticsRepository
from services.search_service import process_search_query
from utils.common import utcnow

logger = logging.getLogger(settings.LOGGER_NAME)


class SearchAnalyticsService:
    """
    Records executed searches and answers usage questions about them.

    Tracking is best-effort: a failed write is logged and never breaks the
    search that triggered it.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def track_search(
        self,
        user_id: str,
        query: str,
        results_count: int,
        similarity_threshold: float,
        execution_time_ms: Optional[int] = None,
    ) -> Optional[str]:
        """Returns the analytics id, or None when the record could not be written"""
        query = query.strip()
        record = SearchAnalyticsRecord(
            id=str(uuid4()),
            user_id=user_id,
            query=query,
            normalized_query=" ".join(process_search_query(query).terms),
            results_count=results_count,
            similarity_threshold=similarity_threshold,
            execution_time_ms=execution_time_ms,
        )
        try:
            async with get_session(self.session_factory) as session:
                await SQLSearchAnalyticsRepository(session).create(record)
        except Exception as e:
            logger.error(f"Failed to track search for user {user_id}: {e}")
            return None
        return record.id

    async def track_click(self, analytics_id: str, result_id: str) -> bool:
        async with get_session(self.session_factory) as session:
            found = await SQLSearchAnalyticsRepository(session).add_click(analytics_id, result_id)
        if not found:
            logger.warning(f"Click on result {result_id} for unknown search {analytics_id}")
        return found

    async def get(self, analytics_id: str) -> Optional[SearchAnalyticsRecord]:
        async with get_session(self.session_factory) as session:
            return await SQLSearchAnalyticsRepository(session).get(analytics_id)

    async def history(self, user_id: str, limit: int = settings.SEARCH_HISTORY_LIMIT) -> List[SearchAnalyticsRecord]:
        async with get_session(self.session_factory) as session:
            return await SQLSearchAnalyticsRepository(session).list_by_user(user_id, limit)

    async def popular_queries(
        self,
        limit: int = settings.SEARCH_POPULAR_LIMIT,
        days_back: int = settings.SEARCH_ANALYTICS_DAYS_BACK,
    ) -> List[PopularQuery]:
        since = utcnow() - timedelta(days=days_back)
        async with get_session(self.session_factory) as session:
            return await SQLSearchAnalyticsRepository(session).popular_queries(since, limit)

    async def summary(self, user_id: str, days_back: int = settings.SEARCH_ANALYTICS_DAYS_BACK) -> SearchAnalyticsSummary:
        since = utcnow() - timedelta(days=days_back)
        async with get_session(self.session_factory) as session:
            records = await SQLSearchAnalyticsRepository(session).list_since(since, user_id=user_id)

        total = len(records)
        if not total:
            return SearchAnalyticsSummary(0, 0.0, 0.0, [], [])

        timed = [r.execution_time_ms for r in records if r.execution_time_ms is not None]
        query_counts = Counter(r.normalized_query for r in records)
        results_by_query: dict = {}
        for r in records:
            results_by_query.setdefault(r.normalized_query, []).append(r.results_count)
        top = [
            PopularQuery(query=q, count=n, avg_results=round(sum(results_by_query[q]) / n, 2))
            for q, n in query_counts.most_common(settings.SEARCH_SUMMARY_TOP_QUERIES)
        ]
        # records are oldest first, so insertion order is chronological
        per_day = Counter(r.created_at.date().isoformat() for r in records if r.created_at)

        return SearchAnalyticsSummary(
            total_searches=total,
            avg_results_per_search=round(sum(r.results_count for r in records) / total, 2),
            avg_execution_time_ms=round(sum(timed) / len(timed), 2) if timed else 0.0,
            top_queries=top,
            search_trends=[{"date": day, "count": count} for day, count in per_day.items()],
        )

    async def cleanup(self, days_to_keep: int = settings.SEARCH_ANALYTICS_RETENTION_DAYS) -> int:
        cutoff = utcnow() - timedelta(days=days_to_keep)
        async with get_session(self.session_factory) as session:
            deleted = await SQLSearchAnalyticsRepository(session).delete_before(cutoff)
        logger.info(f"Removed {deleted} search analytics records older than {days_to_keep} days")
        return deleted
