"""Tests for the file-processing pipeline and the retrying job queue."""

import asyncio
from uuid import uuid4
from datetime import timedelta

import pytest

from core.domain import DocumentChunk, ErrorCode, JobStatus, ProcessingOptions
from core.exceptions import (
    CompletionProviderError, DocumentPipelineError, EmbeddingProviderError,
    FileNotFoundForProcessing, InsufficientContext, StorageWriteError, UnsupportedMediaType,
)
from database.session import get_session
from infrastructure.repositories import SQLFileRepository, SQLJobRepository
from infrastructure.vector_stores import ChromaDBChunkStore
from services.file_processing import FileProcessingPipeline
from services.job_queue import JobQueue
from tests.fakes import FailingEmbeddingService, THREE_SENTENCES
from utils.common import utcnow

SMALL_CHUNKS = ProcessingOptions(chunk_size=80, chunk_overlap=0, max_chunks=100)


@pytest.fixture
def pipeline(session_factory, file_storage, embedding_service, chunk_store):
    return FileProcessingPipeline(session_factory, file_storage, embedding_service, chunk_store)


@pytest.fixture
def queue(session_factory, pipeline):
    return JobQueue(session_factory, pipeline, max_retries=3, retry_backoff_seconds=0, drain_batch_size=5)


async def load_file(session_factory, file_id):
    async with get_session(session_factory) as session:
        return await SQLFileRepository(session).get_by_id(file_id)


class TestEnqueueAndDrain:
    """Happy path through the state machine."""

    @pytest.mark.asyncio
    async def test_enqueue_never_runs_inline(self, queue, make_file, chunk_store):
        asset = await make_file(THREE_SENTENCES.encode())

        job_id = await queue.enqueue(asset.id, SMALL_CHUNKS)
        job = await queue.status(job_id)

        assert job.status == JobStatus.PENDING
        assert job.retry_count == 0
        assert job.payload == {"file_id": asset.id, "options": SMALL_CHUNKS.to_dict()}
        assert await chunk_store.count(asset.id) == 0

    @pytest.mark.asyncio
    async def test_drain_completes_job(self, queue, make_file, chunk_store, session_factory):
        asset = await make_file(THREE_SENTENCES.encode())
        job_id = await queue.enqueue(asset.id, SMALL_CHUNKS)

        assert await queue.drain_pending() == 1

        job = await queue.status(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.started_at is not None and job.completed_at is not None
        assert job.result == {"chunks_created": 3, "processing_completed": True}
        assert (await load_file(session_factory, asset.id)).processed is True

        chunks = await chunk_store.get_chunks(asset.id)
        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        assert chunks[1].content == "Replace the hydraulic filter before restarting the pump assembly."
        assert chunks[0].metadata["total_chunks"] == 3
        assert chunks[0].metadata["filename"] == "manual.txt"

    @pytest.mark.asyncio
    async def test_drain_respects_limit(self, queue, make_file):
        for _ in range(3):
            asset = await make_file(b"Short note about the boiler.")
            await queue.enqueue(asset.id)

        assert await queue.drain_pending(limit=2) == 2
        assert (await queue.stats_by_status())["pending"] == 1

    @pytest.mark.asyncio
    async def test_max_chunks_caps_output(self, queue, make_file, chunk_store):
        asset = await make_file(THREE_SENTENCES.encode())
        await queue.enqueue(asset.id, ProcessingOptions(chunk_size=80, chunk_overlap=0, max_chunks=2))

        await queue.drain_pending()

        assert await chunk_store.count(asset.id) == 2


class TestRetries:
    """Failure handling and the retry cap."""

    @pytest.fixture
    def failing_queue(self, session_factory, file_storage, chunk_store):
        embedder = FailingEmbeddingService(EmbeddingProviderError("provider down"))
        pipeline = FileProcessingPipeline(session_factory, file_storage, embedder, chunk_store)
        return JobQueue(session_factory, pipeline, max_retries=3, retry_backoff_seconds=0)

    @pytest.mark.asyncio
    async def test_transient_failure_returns_to_pending(self, failing_queue, make_file):
        asset = await make_file(THREE_SENTENCES.encode())
        job_id = await failing_queue.enqueue(asset.id)

        await failing_queue.drain_pending()

        job = await failing_queue.status(job_id)
        assert job.status == JobStatus.PENDING
        assert job.retry_count == 1
        assert "provider down" in job.error
        assert job.started_at is None

    @pytest.mark.asyncio
    async def test_fails_after_max_retries_and_never_requeues(self, failing_queue, make_file, session_factory):
        asset = await make_file(THREE_SENTENCES.encode())
        job_id = await failing_queue.enqueue(asset.id)

        for _ in range(3):
            assert await failing_queue.drain_pending() == 1

        job = await failing_queue.status(job_id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 3
        assert job.completed_at is not None

        # A fourth drain finds nothing to do
        assert await failing_queue.drain_pending() == 0
        assert (await failing_queue.status(job_id)).status == JobStatus.FAILED

        stored = await load_file(session_factory, asset.id)
        assert stored.processed is False
        assert "provider down" in stored.processing_error

    @pytest.mark.asyncio
    async def test_unsupported_type_fails_without_retry(self, queue, make_file, session_factory):
        asset = await make_file(b"\x89PNG....", filename="photo.png", media_type="image/png")
        job_id = await queue.enqueue(asset.id)

        await queue.drain_pending()

        job = await queue.status(job_id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 1
        assert ErrorCode.UNSUPPORTED_MEDIA_TYPE.value in job.error
        assert ErrorCode.UNSUPPORTED_MEDIA_TYPE.value in (await load_file(session_factory, asset.id)).processing_error

    @pytest.mark.asyncio
    async def test_empty_file_is_insufficient_context(self, queue, make_file):
        asset = await make_file(b"   \n  ")
        job_id = await queue.enqueue(asset.id)

        await queue.drain_pending()

        job = await queue.status(job_id)
        assert job.status == JobStatus.FAILED
        assert ErrorCode.NO_TEXT_FOUND.value in job.error

    @pytest.mark.asyncio
    async def test_missing_file_fails_without_retry(self, queue):
        job_id = await queue.enqueue("does-not-exist")

        await queue.drain_pending()

        job = await queue.status(job_id)
        assert job.status == JobStatus.FAILED
        assert ErrorCode.FILE_NOT_FOUND.value in job.error

    @pytest.mark.asyncio
    async def test_backoff_delays_retry(self, session_factory, file_storage, chunk_store, make_file):
        embedder = FailingEmbeddingService(EmbeddingProviderError("busy"))
        pipeline = FileProcessingPipeline(session_factory, file_storage, embedder, chunk_store)
        queue = JobQueue(session_factory, pipeline, max_retries=3, retry_backoff_seconds=60)
        asset = await make_file(THREE_SENTENCES.encode())
        job_id = await queue.enqueue(asset.id)

        await queue.drain_pending()
        job = await queue.status(job_id)

        assert job.status == JobStatus.PENDING
        assert job.available_at > utcnow() + timedelta(seconds=30)
        assert await queue.drain_pending() == 0
        assert embedder.attempts == 1

    def test_every_error_code_is_raised_by_some_error(self):
        errors = [
            DocumentPipelineError, UnsupportedMediaType, InsufficientContext, FileNotFoundForProcessing,
            StorageWriteError, EmbeddingProviderError, CompletionProviderError,
        ]

        assert {e.error_code for e in errors} == set(ErrorCode)


class TestAbandonedJobs:
    """Jobs left in `processing` by a crashed worker."""

    @pytest.fixture
    def reclaiming_queue(self, session_factory, pipeline):
        return JobQueue(session_factory, pipeline, max_retries=3, retry_backoff_seconds=0,
                        stale_after_seconds=60)

    async def abandon(self, session_factory, job_id, **fields):
        async with get_session(session_factory) as session:
            await SQLJobRepository(session).update(
                job_id, status=JobStatus.PROCESSING, started_at=utcnow() - timedelta(hours=1), **fields
            )

    @pytest.mark.asyncio
    async def test_stale_job_is_reclaimed_and_completed(self, reclaiming_queue, make_file, session_factory):
        asset = await make_file(THREE_SENTENCES.encode())
        job_id = await reclaiming_queue.enqueue(asset.id, SMALL_CHUNKS)
        await self.abandon(session_factory, job_id)

        assert await reclaiming_queue.drain_pending() == 1

        job = await reclaiming_queue.status(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.retry_count == 1

    @pytest.mark.asyncio
    async def test_stale_job_on_last_attempt_fails(self, reclaiming_queue, make_file, session_factory):
        asset = await make_file(THREE_SENTENCES.encode())
        job_id = await reclaiming_queue.enqueue(asset.id)
        await self.abandon(session_factory, job_id, retry_count=2)

        assert await reclaiming_queue.drain_pending() == 0

        job = await reclaiming_queue.status(job_id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 3
        assert "abandoned" in job.error
        assert "abandoned" in (await load_file(session_factory, asset.id)).processing_error

    @pytest.mark.asyncio
    async def test_recent_processing_job_is_left_alone(self, reclaiming_queue, make_file, session_factory):
        asset = await make_file(THREE_SENTENCES.encode())
        job_id = await reclaiming_queue.enqueue(asset.id)
        async with get_session(session_factory) as session:
            await SQLJobRepository(session).update(job_id, status=JobStatus.PROCESSING, started_at=utcnow())

        assert await reclaiming_queue.drain_pending() == 0
        assert (await reclaiming_queue.status(job_id)).status == JobStatus.PROCESSING


class FlakySwapStore(ChromaDBChunkStore):
    """Fails the step that removes older generations after an insert"""

    async def delete_chunks(self, file_id, keep_generation=None, only_generation=None):
        if keep_generation is not None:
            raise StorageWriteError("delete timed out")
        await super().delete_chunks(file_id, keep_generation, only_generation)


class BrokenCleanupStore(ChromaDBChunkStore):
    """Swap and rollback both fail until `healthy` is set"""

    healthy = False

    async def delete_chunks(self, file_id, keep_generation=None, only_generation=None):
        if not self.healthy and keep_generation is not None:
            raise StorageWriteError("delete timed out")
        if not self.healthy and only_generation is not None:
            raise RuntimeError("store connection lost")
        await super().delete_chunks(file_id, keep_generation, only_generation)


class TestReprocessing:
    """Generation swap when a file is processed again."""

    @pytest.mark.asyncio
    async def test_reprocess_replaces_chunks(self, pipeline, make_file, chunk_store):
        asset = await make_file(THREE_SENTENCES.encode())

        await pipeline.process_file(asset.id, SMALL_CHUNKS)
        first = {c.metadata["generation"] for c in await chunk_store.get_chunks(asset.id)}
        await pipeline.process_file(asset.id, ProcessingOptions(chunk_size=1000, chunk_overlap=0))
        chunks = await chunk_store.get_chunks(asset.id)

        assert len(chunks) == 1
        assert chunks[0].metadata["generation"] not in first

    @pytest.mark.asyncio
    async def test_failed_swap_keeps_previous_generation(
        self, chroma_client, session_factory, file_storage, embedding_service, make_file
    ):
        store = FlakySwapStore(chroma_client, collection_name=f"flaky_{uuid4().hex}")
        asset = await make_file(THREE_SENTENCES.encode())
        generation = "g-old"
        vectors = await embedding_service.generate_embeddings(["old content"])
        await store.insert_chunks([DocumentChunk(
            id=f"{asset.id}:{generation}:0", content="old content", file_id=asset.id,
            chunk_index=0, metadata={"generation": generation}, embedding=vectors[0],
        )])
        pipeline = FileProcessingPipeline(session_factory, file_storage, embedding_service, store)

        with pytest.raises(StorageWriteError):
            await pipeline.process_file(asset.id, SMALL_CHUNKS)

        chunks = await store.get_chunks(asset.id)
        assert [c.content for c in chunks] == ["old content"]
        assert (await load_file(session_factory, asset.id)).processed is False

    @pytest.mark.asyncio
    async def test_failed_rollback_keeps_original_error(
        self, chroma_client, session_factory, file_storage, embedding_service, make_file
    ):
        store = BrokenCleanupStore(chroma_client, collection_name=f"broken_{uuid4().hex}")
        asset = await make_file(THREE_SENTENCES.encode())
        pipeline = FileProcessingPipeline(session_factory, file_storage, embedding_service, store)

        with pytest.raises(StorageWriteError):
            await pipeline.process_file(asset.id, SMALL_CHUNKS)

        # The next successful attempt leaves exactly one generation behind
        store.healthy = True
        await pipeline.process_file(asset.id, SMALL_CHUNKS)
        chunks = await store.get_chunks(asset.id)

        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        assert len({c.metadata["generation"] for c in chunks}) == 1


class TestIntrospection:

    @pytest.mark.asyncio
    async def test_stats_include_total(self, queue, make_file):
        first = await make_file(b"Check the valve pressure.")
        await queue.enqueue(first.id)
        await queue.drain_pending()
        second = await make_file(b"Inspect the belts.")
        await queue.enqueue(second.id)

        stats = await queue.stats_by_status()

        assert stats == {"pending": 1, "processing": 0, "completed": 1, "failed": 0, "total": 2}

    @pytest.mark.asyncio
    async def test_jobs_for_file(self, queue, make_file):
        asset = await make_file(b"Check the valve pressure.")
        other = await make_file(b"Inspect the belts.")
        first = await queue.enqueue(asset.id)
        second = await queue.enqueue(asset.id)
        await queue.enqueue(other.id)

        jobs = await queue.jobs_for_file(asset.id)

        assert {j.id for j in jobs} == {first, second}

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_old_terminal_jobs(self, queue, make_file, session_factory):
        asset = await make_file(b"Check the valve pressure.")
        old_job = await queue.enqueue(asset.id)
        await queue.drain_pending()
        async with get_session(session_factory) as session:
            await SQLJobRepository(session).update(old_job, completed_at=utcnow() - timedelta(days=10))
        recent_job = await queue.enqueue(asset.id)
        await queue.drain_pending()
        pending_job = await queue.enqueue(asset.id)

        deleted = await queue.cleanup(older_than_days=7)

        assert deleted == 1
        assert await queue.status(old_job) is None
        assert await queue.status(recent_job) is not None
        assert await queue.status(pending_job) is not None


class TestDrainLoop:

    @pytest.mark.asyncio
    async def test_loop_processes_queued_jobs(self, queue, make_file):
        asset = await make_file(b"Check the valve pressure.")
        job_id = await queue.enqueue(asset.id)

        queue.start(interval=0.01)
        try:
            for _ in range(200):
                if (await queue.status(job_id)).status == JobStatus.COMPLETED:
                    break
                await asyncio.sleep(0.02)
        finally:
            await queue.stop()

        assert (await queue.status(job_id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, queue):
        await queue.stop()
