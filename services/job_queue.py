"""Retryable background job queue for file processing"""
import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from core.domain import JobStatus, JobType, ProcessingJob, ProcessingOptions
from core.exceptions import DocumentPipelineError
from database.session import get_session
from infrastructure.repositories import SQLJobRepository
from services.file_processing import FileProcessingPipeline, default_processing_options
from utils.common import utcnow

logger = logging.getLogger(settings.LOGGER_NAME)


class JobQueue:
    """
    Owns every ProcessingJob row. Jobs are executed one at a time by
    `drain_pending`; the only retry boundary is the whole job.

    State machine:
        pending -> processing -> completed
                              -> pending (retry_count < max_retries, after backoff)
                              -> failed  (retry cap reached or fatal error)
        processing (stale) -> pending or failed, counted as one attempt
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        pipeline: FileProcessingPipeline,
        max_retries: int = settings.JOB_MAX_RETRIES,
        retry_backoff_seconds: float = settings.JOB_RETRY_BACKOFF_SECONDS,
        drain_batch_size: int = settings.JOB_DRAIN_BATCH_SIZE,
        stale_after_seconds: float = settings.JOB_STALE_AFTER_SECONDS,
    ):
        self.session_factory = session_factory
        self.pipeline = pipeline
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.drain_batch_size = drain_batch_size
        self.stale_after_seconds = stale_after_seconds
        self._drain_lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    async def enqueue(self, file_id: str, options: Optional[ProcessingOptions] = None) -> str:
        """Insert a pending job. Never runs it inline."""
        options = options or default_processing_options()
        job = ProcessingJob(
            id=str(uuid4()),
            type=JobType.FILE_PROCESSING,
            payload={"file_id": file_id, "options": options.to_dict()},
            status=JobStatus.PENDING,
            retry_count=0,
            max_retries=self.max_retries,
        )
        async with get_session(self.session_factory) as session:
            await SQLJobRepository(session).create(job)
        logger.info(f"[JOBS] Queued job {job.id} for file {file_id}")
        return job.id

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    async def drain_pending(self, limit: Optional[int] = None) -> int:
        """
        Run up to `limit` of the oldest eligible pending jobs, sequentially.

        Concurrent callers queue behind one lock so the same job is never
        picked up twice inside this process.

        Returns:
            int: Number of jobs that were executed
        """
        limit = limit or self.drain_batch_size
        async with self._drain_lock:
            await self._reclaim_stale()
            async with get_session(self.session_factory) as session:
                jobs = await SQLJobRepository(session).fetch_pending(limit, utcnow())

            if not jobs:
                return 0

            logger.info(f"[JOBS] Draining {len(jobs)} pending job(s)")
            for job in jobs:
                await self._run_job(job)
            return len(jobs)

    async def _reclaim_stale(self) -> None:
        """
        A job still in `processing` long after it started was abandoned by a
        crashed worker. Treat the lost run as one failed attempt.
        """
        cutoff = utcnow() - timedelta(seconds=self.stale_after_seconds)
        async with get_session(self.session_factory) as session:
            stale = await SQLJobRepository(session).list_stale_processing(cutoff)
        for job in stale:
            logger.warning(f"[JOBS] Reclaiming job {job.id}, processing since {job.started_at}")
            await self._record_failure(
                job, DocumentPipelineError(f"Job abandoned while processing (started {job.started_at})")
            )

    def _backoff_for(self, retry_count: int) -> timedelta:
        if self.retry_backoff_seconds <= 0:
            return timedelta(0)
        return timedelta(seconds=self.retry_backoff_seconds * (2 ** (retry_count - 1)))

    async def _update(self, job_id: str, **fields: Any) -> None:
        async with get_session(self.session_factory) as session:
            await SQLJobRepository(session).update(job_id, **fields)

    async def _run_job(self, job: ProcessingJob) -> None:
        await self._update(job.id, status=JobStatus.PROCESSING, started_at=utcnow())

        try:
            if not job.file_id:
                raise DocumentPipelineError(f"Job {job.id} has no file_id in its payload")
            options = ProcessingOptions.from_dict(
                job.payload.get("options"), defaults=default_processing_options()
            )
            result = await self.pipeline.process_file(job.file_id, options)
        except Exception as e:
            await self._record_failure(job, e)
            return

        await self._update(
            job.id,
            status=JobStatus.COMPLETED,
            completed_at=utcnow(),
            result=result,
            error=None,
        )
        logger.info(f"[JOBS] Job {job.id} completed: {result.get('chunks_created', 0)} chunks")

    async def _record_failure(self, job: ProcessingJob, error: Exception) -> None:
        retry_count = job.retry_count + 1
        message = str(error)
        retryable = error.retryable if isinstance(error, DocumentPipelineError) else True

        if retryable and retry_count < job.max_retries:
            available_at = utcnow() + self._backoff_for(retry_count)
            await self._update(
                job.id,
                status=JobStatus.PENDING,
                retry_count=retry_count,
                error=message,
                started_at=None,
                available_at=available_at,
            )
            logger.warning(
                f"[JOBS] Job {job.id} failed (attempt {retry_count}/{job.max_retries}), "
                f"retrying after {available_at.isoformat()}: {message}"
            )
            return

        await self._update(
            job.id,
            status=JobStatus.FAILED,
            retry_count=retry_count,
            error=message,
            completed_at=utcnow(),
        )
        if retryable:
            logger.error(f"[JOBS] Job {job.id} failed permanently after {retry_count} attempts: {message}")
        else:
            logger.error(f"[JOBS] Job {job.id} failed with a non-retryable error: {message}")

        if job.file_id:
            try:
                await self.pipeline.mark_unprocessable(job.file_id, message)
            except Exception as e:
                logger.error(f"[JOBS] Could not record failure on file {job.file_id}: {e}")

    # ------------------------------------------------------------------
    # Introspection and maintenance
    # ------------------------------------------------------------------

    async def status(self, job_id: str) -> Optional[ProcessingJob]:
        async with get_session(self.session_factory) as session:
            return await SQLJobRepository(session).get(job_id)

    async def stats_by_status(self) -> Dict[str, int]:
        async with get_session(self.session_factory) as session:
            counts = await SQLJobRepository(session).count_by_status()
        stats = {status.value: counts.get(status.value, 0) for status in JobStatus}
        stats["total"] = sum(stats.values())
        return stats

    async def jobs_for_file(self, file_id: str) -> List[ProcessingJob]:
        async with get_session(self.session_factory) as session:
            return await SQLJobRepository(session).list_by_file(file_id)

    async def cleanup(self, older_than_days: int = settings.JOB_RETENTION_DAYS) -> int:
        """Delete completed/failed jobs that finished before the retention window"""
        cutoff = utcnow() - timedelta(days=older_than_days)
        async with get_session(self.session_factory) as session:
            deleted = await SQLJobRepository(session).delete_terminal_before(cutoff)
        logger.info(f"[JOBS] Cleaned up {deleted} job(s) older than {older_than_days} days")
        return deleted

    # ------------------------------------------------------------------
    # Periodic drain loop
    # ------------------------------------------------------------------

    async def _loop(self, interval: float) -> None:
        while True:
            try:
                await self.drain_pending()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[JOBS] Drain loop iteration failed: {e}", exc_info=True)
            await asyncio.sleep(interval)

    def start(self, interval: float = settings.JOB_DRAIN_INTERVAL_SECONDS) -> None:
        if self._loop_task and not self._loop_task.done():
            return
        self._loop_task = asyncio.create_task(self._loop(interval))
        logger.info(f"[JOBS] Drain loop started (every {interval}s)")

    async def stop(self) -> None:
        if not self._loop_task:
            return
        # Wait for an in-flight drain so no job is abandoned in `processing`
        async with self._drain_lock:
            self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None
        logger.info("[JOBS] Drain loop stopped")
