"""Database repository implementations"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.domain import (
    ActiveTask, FileAsset, JobStatus, JobType, PopularQuery, ProcessingJob,
    SearchAnalyticsRecord, UserProfile, UserRole
)
from core.interfaces import (
    IFileRepository, IJobRepository, IProfileRepository, ISearchAnalyticsRepository,
    ITaskRepository
)
from database.session import (
    FileEntity, JobEntity, ProfileEntity, SearchAnalyticsEntity, TaskEntity
)
from config import settings

logger = logging.getLogger(settings.LOGGER_NAME)

ACTIVE_TASK_STATUSES = ("pending", "in_progress")


class SQLFileRepository(IFileRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_domain(self, db_file: Optional[FileEntity]) -> Optional[FileAsset]:
        """Converts an SQLAlchemy entity to a domain model."""
        if db_file is None:
            return None
        return FileAsset(
            id=db_file.id, # type: ignore
            filename=db_file.filename, # type: ignore
            media_type=db_file.media_type, # type: ignore
            byte_size=db_file.byte_size, # type: ignore
            owner_id=db_file.owner_id, # type: ignore
            processed=bool(db_file.is_processed),
            created_at=db_file.created_at, # type: ignore
            stored_filename=db_file.stored_filename, # type: ignore
            processing_error=db_file.processing_error, # type: ignore
        )

    async def create(self, file: FileAsset) -> FileAsset:
        db_file = FileEntity(
            id=file.id,
            filename=file.filename,
            media_type=file.media_type,
            byte_size=file.byte_size,
            owner_id=file.owner_id,
            stored_filename=file.stored_filename,
            is_processed=False,
        )
        self.session.add(db_file)
        await self.session.commit()
        await self.session.refresh(db_file)
        logger.info(f"Created file {file.id} ('{file.filename}') in database")

        result = self._to_domain(db_file)
        assert result is not None, "Created file should never be None"
        return result

    async def get_by_id(self, file_id: str) -> Optional[FileAsset]:
        db_file = await self.session.get(FileEntity, file_id)
        return self._to_domain(db_file)

    async def get_many(self, file_ids: Sequence[str]) -> Dict[str, FileAsset]:
        """Single query replaces N individual lookups."""
        if not file_ids:
            return {}
        result = await self.session.execute(
            select(FileEntity).where(FileEntity.id.in_(list(set(file_ids))))
        )
        files = [self._to_domain(f) for f in result.scalars().all()]
        return {f.id: f for f in files if f is not None}

    async def set_processed(self, file_id: str, processed: bool, error: Optional[str] = None) -> bool:
        db_file = await self.session.get(FileEntity, file_id)
        if not db_file:
            return False
        db_file.is_processed = processed
        db_file.processing_error = error
        await self.session.commit()
        return True

    async def list_unprocessed(self, limit: Optional[int] = None) -> List[FileAsset]:
        stmt = (
            select(FileEntity)
            .where(FileEntity.is_processed.is_(False))
            .order_by(FileEntity.created_at.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        files = [self._to_domain(f) for f in result.scalars().all()]
        return [f for f in files if f is not None]

    async def stats(self) -> Dict[str, int]:
        result = await self.session.execute(
            select(FileEntity.is_processed, func.count()).group_by(FileEntity.is_processed)
        )
        counts = {bool(processed): count for processed, count in result.all()}
        processed = counts.get(True, 0)
        unprocessed = counts.get(False, 0)
        return {
            "total_files": processed + unprocessed,
            "processed_files": processed,
            "unprocessed_files": unprocessed,
        }


class SQLJobRepository(IJobRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_domain(self, db_job: Optional[JobEntity]) -> Optional[ProcessingJob]:
        if db_job is None:
            return None
        return ProcessingJob(
            id=db_job.id, # type: ignore
            type=JobType(db_job.type),
            payload=dict(db_job.payload or {}),
            status=JobStatus(db_job.status),
            retry_count=db_job.retry_count, # type: ignore
            max_retries=db_job.max_retries, # type: ignore
            created_at=db_job.created_at, # type: ignore
            started_at=db_job.started_at, # type: ignore
            completed_at=db_job.completed_at, # type: ignore
            error=db_job.error, # type: ignore
            result=db_job.result, # type: ignore
            available_at=db_job.available_at, # type: ignore
        )

    async def create(self, job: ProcessingJob) -> ProcessingJob:
        db_job = JobEntity(
            id=job.id,
            type=job.type.value,
            payload=job.payload,
            status=job.status.value,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
        )
        self.session.add(db_job)
        await self.session.commit()
        await self.session.refresh(db_job)

        result = self._to_domain(db_job)
        assert result is not None, "Created job should never be None"
        return result

    async def get(self, job_id: str) -> Optional[ProcessingJob]:
        db_job = await self.session.get(JobEntity, job_id)
        return self._to_domain(db_job)

    async def fetch_pending(self, limit: int, now: datetime) -> List[ProcessingJob]:
        result = await self.session.execute(
            select(JobEntity)
            .where(JobEntity.status == JobStatus.PENDING.value)
            .where(or_(JobEntity.available_at.is_(None), JobEntity.available_at <= now))
            .order_by(JobEntity.created_at.asc())
            .limit(limit)
        )
        jobs = [self._to_domain(j) for j in result.scalars().all()]
        return [j for j in jobs if j is not None]

    async def list_stale_processing(self, started_before: datetime) -> List[ProcessingJob]:
        result = await self.session.execute(
            select(JobEntity)
            .where(JobEntity.status == JobStatus.PROCESSING.value)
            .where(JobEntity.started_at < started_before)
            .order_by(JobEntity.started_at.asc())
        )
        jobs = [self._to_domain(j) for j in result.scalars().all()]
        return [j for j in jobs if j is not None]

    async def update(self, job_id: str, **fields: Any) -> None:
        values = {
            key: (value.value if isinstance(value, JobStatus) else value)
            for key, value in fields.items()
        }
        await self.session.execute(
            update(JobEntity).where(JobEntity.id == job_id).values(**values)
        )
        await self.session.commit()

    async def count_by_status(self) -> Dict[str, int]:
        result = await self.session.execute(
            select(JobEntity.status, func.count()).group_by(JobEntity.status)
        )
        return {status: count for status, count in result.all()}

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            delete(JobEntity)
            .where(JobEntity.status.in_([s.value for s in JobStatus if s.is_terminal]))
            .where(JobEntity.completed_at < cutoff)
        )
        await self.session.commit()
        return result.rowcount or 0

    async def list_by_file(self, file_id: str) -> List[ProcessingJob]:
        # Payload is JSON; filter in Python to stay portable across SQLite/Postgres
        result = await self.session.execute(
            select(JobEntity)
            .where(JobEntity.type == JobType.FILE_PROCESSING.value)
            .order_by(JobEntity.created_at.desc())
        )
        jobs = [self._to_domain(j) for j in result.scalars().all()]
        return [j for j in jobs if j is not None and j.file_id == file_id]


class SQLTaskRepository(ITaskRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_active_tasks(self, user_id: str, limit: int = 3) -> List[ActiveTask]:
        result = await self.session.execute(
            select(TaskEntity)
            .where(or_(TaskEntity.assigned_to == user_id, TaskEntity.created_by == user_id))
            .where(TaskEntity.status.in_(ACTIVE_TASK_STATUSES))
            .order_by(TaskEntity.created_at.desc())
            .limit(limit)
        )
        return [
            ActiveTask(id=t.id, title=t.title, status=t.status, priority=t.priority)
            for t in result.scalars().all()
        ]


class SQLProfileRepository(IProfileRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        db_profile = await self.session.get(ProfileEntity, user_id)
        if db_profile is None:
            return None
        return UserProfile(
            id=db_profile.id,
            role=UserRole.from_string(db_profile.role),
            full_name=db_profile.full_name,
            email=db_profile.email,
        )


class SQLSearchAnalyticsRepository(ISearchAnalyticsRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_domain(self, row: Optional[SearchAnalyticsEntity]) -> Optional[SearchAnalyticsRecord]:
        if row is None:
            return None
        return SearchAnalyticsRecord(
            id=row.id, # type: ignore
            user_id=row.user_id, # type: ignore
            query=row.query, # type: ignore
            normalized_query=row.normalized_query, # type: ignore
            results_count=row.results_count, # type: ignore
            similarity_threshold=row.similarity_threshold, # type: ignore
            execution_time_ms=row.execution_time_ms, # type: ignore
            clicked_result_ids=list(row.clicked_result_ids or []),
            created_at=row.created_at, # type: ignore
        )

    async def create(self, record: SearchAnalyticsRecord) -> SearchAnalyticsRecord:
        row = SearchAnalyticsEntity(
            id=record.id,
            user_id=record.user_id,
            query=record.query,
            normalized_query=record.normalized_query,
            results_count=record.results_count,
            similarity_threshold=record.similarity_threshold,
            execution_time_ms=record.execution_time_ms,
            clicked_result_ids=list(record.clicked_result_ids),
        )
        self.session.add(row)
        await self.session.commit()
        await self.session.refresh(row)

        result = self._to_domain(row)
        assert result is not None, "Created analytics record should never be None"
        return result

    async def get(self, analytics_id: str) -> Optional[SearchAnalyticsRecord]:
        return self._to_domain(await self.session.get(SearchAnalyticsEntity, analytics_id))

    async def add_click(self, analytics_id: str, result_id: str) -> bool:
        row = await self.session.get(SearchAnalyticsEntity, analytics_id)
        if row is None:
            return False
        clicked = list(row.clicked_result_ids or [])
        if result_id not in clicked:
            # Assign a new list; in-place mutation of a JSON column is not tracked
            row.clicked_result_ids = clicked + [result_id]
            await self.session.commit()
        return True

    async def list_by_user(self, user_id: str, limit: int) -> List[SearchAnalyticsRecord]:
        result = await self.session.execute(
            select(SearchAnalyticsEntity)
            .where(SearchAnalyticsEntity.user_id == user_id)
            .order_by(SearchAnalyticsEntity.created_at.desc())
            .limit(limit)
        )
        records = [self._to_domain(r) for r in result.scalars().all()]
        return [r for r in records if r is not None]

    async def list_since(self, since: datetime, user_id: Optional[str] = None) -> List[SearchAnalyticsRecord]:
        stmt = select(SearchAnalyticsEntity).where(SearchAnalyticsEntity.created_at >= since)
        if user_id is not None:
            stmt = stmt.where(SearchAnalyticsEntity.user_id == user_id)
        result = await self.session.execute(stmt.order_by(SearchAnalyticsEntity.created_at.asc()))
        records = [self._to_domain(r) for r in result.scalars().all()]
        return [r for r in records if r is not None]

    async def popular_queries(self, since: datetime, limit: int) -> List[PopularQuery]:
        hits = func.count().label("hits")
        result = await self.session.execute(
            select(
                SearchAnalyticsEntity.normalized_query,
                hits,
                func.avg(SearchAnalyticsEntity.results_count),
            )
            .where(SearchAnalyticsEntity.created_at >= since)
            .group_by(SearchAnalyticsEntity.normalized_query)
            .order_by(hits.desc(), SearchAnalyticsEntity.normalized_query.asc())
            .limit(limit)
        )
        return [
            PopularQuery(query=query, count=count, avg_results=round(float(avg or 0), 2))
            for query, count, avg in result.all()
        ]

    async def delete_before(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            delete(SearchAnalyticsEntity).where(SearchAnalyticsEntity.created_at < cutoff)
        )
        await self.session.commit()
        return result.rowcount or 0
