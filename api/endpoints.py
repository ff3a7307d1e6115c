# api/endpoints.py
"""
API endpoints for the field-service document assistant.

Errors are returned as `{"error": ...}` JSON bodies; tracebacks stay in the log.
"""
import logging
import time
from typing import List, Optional
from uuid import uuid4

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Query, UploadFile
from fastapi.responses import JSONResponse

from api.schemas import (
    BatchItemResult, BatchProcessRequest, BatchProcessResponse, ChatContextResponse,
    ChatRequest, ChatResponse, ChatSearchResult, ChunkResponse, ChunksResponse,
    AnalyticsCleanupResponse, CleanupResponse, FileResponse, JobListResponse, JobResponse,
    PopularQueryResponse, ProcessingStatusDetail, ProcessingStatusFile, ProcessingStatusResponse,
    ProcessQueuedResponse, ProcessRequest, SearchAnalyticsResponse, SearchHistoryItem,
    SearchHitResponse, SearchRequest, SearchResponse, SearchSummaryResponse, SearchTrend,
    StatusResponse, TrackClickRequest, TrackClickResponse, TrackSearchRequest,
    TrackSearchResponse, UploadResponse,
)
from config import settings
from core.domain import (
    DocumentChunk, FileAsset, PopularQuery, ProcessingJob, ProcessingOptions,
    SearchAnalyticsRecord, SearchHit,
)
from core.exceptions import EmbeddingRateLimitError, ProviderError
from database.session import get_session
from infrastructure.document_processors import can_process_media_type, should_auto_process
from infrastructure.repositories import SQLFileRepository
from services.chat_heuristics import snippet
from services.chat_service import ChatRateLimited, ChatService, conversation_from_dicts
from services.factory import (
    ServiceContainer, get_chat_service, get_job_queue, get_search_analytics, get_services,
)
from services.job_queue import JobQueue
from services.search_analytics import SearchAnalyticsService
from services.search_service import validate_similarity_threshold
from utils.common import sanitize_filename

logger = logging.getLogger(settings.LOGGER_NAME)

router = APIRouter()


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _chunk_response(chunk: DocumentChunk) -> ChunkResponse:
    return ChunkResponse(
        id=chunk.id, content=chunk.content, chunk_index=chunk.chunk_index, metadata=chunk.metadata
    )


def _file_response(file: FileAsset) -> FileResponse:
    return FileResponse(
        id=file.id,
        filename=file.filename,
        media_type=file.media_type,
        byte_size=file.byte_size,
        is_processed=file.processed,
        processing_error=file.processing_error,
        created_at=file.created_at,
    )


def _job_response(job: ProcessingJob) -> JobResponse:
    return JobResponse(
        id=job.id,
        type=job.type.value,
        status=job.status.value,
        file_id=job.file_id,
        retry_count=job.retry_count,
        max_retries=job.max_retries,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        available_at=job.available_at,
        error=job.error,
        result=job.result,
    )


def _hit_response(hit: SearchHit) -> SearchHitResponse:
    return SearchHitResponse(
        id=hit.chunk.id,
        file_id=hit.chunk.file_id,
        filename=hit.filename,
        content=hit.chunk.content,
        chunk_index=hit.chunk.chunk_index,
        similarity=hit.similarity,
        combined_score=hit.combined_score,
        metadata=hit.chunk.metadata,
    )


async def _get_file(services: ServiceContainer, file_id: str) -> Optional[FileAsset]:
    async with get_session(services.session_factory) as session:
        return await SQLFileRepository(session).get_by_id(file_id)


# ---------- Chat ----------
@router.post("/ai/chat", response_model=ChatResponse)
async def chat_endpoint(
    chat_request: ChatRequest,
    chat_service: ChatService = Depends(get_chat_service),
):
    if not chat_request.message or not chat_request.user_id:
        return _error("Missing required fields", 400)

    history = conversation_from_dicts([turn.model_dump() for turn in chat_request.conversation_history])
    try:
        result = await chat_service.respond(chat_request.message, chat_request.user_id, history)
    except ChatRateLimited as e:
        return _error(e.message, 429)
    except Exception as e:
        logger.error(f"Error in AI chat: {e}", exc_info=True)
        return _error("Internal server error", 500)

    context = result.context
    return ChatResponse(
        response=result.response,
        context=ChatContextResponse(
            user_role=context.user_role.value,
            conversation_length=context.conversation_length,
            rag_search_performed=context.rag_search_performed,
            rag_results_count=context.rag_results_count,
            search_query=context.search_query,
            task_context_included=context.task_context_included,
            timestamp=context.timestamp,
            fallback=context.fallback,
            retrieval_status=context.retrieval_status.value,
            task_context_status=context.task_context_status.value,
        ),
        search_results=[
            ChatSearchResult(
                filename=hit.filename,
                similarity=hit.similarity,
                content=snippet(hit.chunk.content),
            )
            for hit in result.search_hits
        ],
        message_id=result.message_id,
    )


# ---------- Document search ----------
async def _run_search(
    services: ServiceContainer,
    query: Optional[str],
    threshold: Optional[float],
    limit: Optional[int],
    file_ids: Optional[List[str]],
    user_id: Optional[str] = None,
):
    if not query or not query.strip():
        return _error("Search query is required", 400)

    validation = validate_similarity_threshold(
        settings.SEARCH_DEFAULT_THRESHOLD if threshold is None else threshold
    )
    if not validation.valid:
        logger.warning(f"{validation.error}; using {validation.normalized}")
    limit = limit if limit and limit > 0 else settings.SEARCH_DEFAULT_LIMIT

    started = time.perf_counter()
    try:
        hits = await services.search_service.search(
            query.strip(), threshold=validation.normalized, limit=limit, file_ids=file_ids
        )
    except EmbeddingRateLimitError:
        return _error("Embedding service temporarily unavailable. Please try again in a moment.", 429)
    except ProviderError as e:
        logger.error(f"Embedding provider failed during search: {e}")
        return _error("Embedding service unavailable", 502)
    except Exception as e:
        logger.error(f"Error in document search: {e}", exc_info=True)
        return _error("Internal server error", 500)

    elapsed_ms = int((time.perf_counter() - started) * 1000)
    logger.info(f"Search '{query.strip()}' returned {len(hits)} hits in {elapsed_ms}ms")
    analytics_id = await services.search_analytics.track_search(
        user_id or "anonymous", query, len(hits), validation.normalized, elapsed_ms
    )
    return SearchResponse(
        results=[_hit_response(hit) for hit in hits],
        query=query.strip(),
        count=len(hits),
        analytics_id=analytics_id,
    )


@router.post("/documents/search", response_model=SearchResponse)
async def search_documents(
    search_request: SearchRequest,
    services: ServiceContainer = Depends(get_services),
):
    options = search_request.options
    return await _run_search(
        services, search_request.query, options.match_threshold, options.match_count, options.file_ids,
        user_id=search_request.user_id,
    )


@router.get("/documents/search", response_model=SearchResponse)
async def search_documents_get(
    q: Optional[str] = Query(None),
    threshold: Optional[float] = Query(None),
    count: Optional[int] = Query(None),
    file_ids: Optional[str] = Query(None, alias="fileIds"),
    user_id: Optional[str] = Query(None, alias="userId"),
    services: ServiceContainer = Depends(get_services),
):
    ids = [fid for fid in (file_ids or "").split(",") if fid] or None
    return await _run_search(services, q, threshold, count, ids, user_id=user_id)


@router.get("/documents/chunks/{file_id}", response_model=ChunksResponse)
async def get_document_chunks(
    file_id: str,
    services: ServiceContainer = Depends(get_services),
):
    try:
        chunks = await services.chunk_store.get_chunks(file_id)
    except Exception as e:
        logger.error(f"Error fetching document chunks: {e}", exc_info=True)
        return _error("Internal server error", 500)
    return ChunksResponse(chunks=[_chunk_response(c) for c in chunks], count=len(chunks))


# ---------- Search analytics ----------
ANALYTICS_TYPES = ("history", "summary", "popular")


def _history_item(record: SearchAnalyticsRecord) -> SearchHistoryItem:
    return SearchHistoryItem(
        id=record.id,
        query=record.query,
        results_count=record.results_count,
        similarity_threshold=record.similarity_threshold,
        execution_time_ms=record.execution_time_ms,
        clicked_result_ids=record.clicked_result_ids,
        created_at=record.created_at,
    )


def _popular_response(popular: PopularQuery) -> PopularQueryResponse:
    return PopularQueryResponse(query=popular.query, count=popular.count, avg_results=popular.avg_results)


@router.post("/search/analytics", response_model=TrackSearchResponse)
async def track_search(
    track_request: TrackSearchRequest,
    analytics: SearchAnalyticsService = Depends(get_search_analytics),
):
    if not track_request.user_id or not track_request.query or not track_request.query.strip():
        return _error("User ID and query are required", 400)

    threshold = track_request.similarity_threshold
    analytics_id = await analytics.track_search(
        track_request.user_id,
        track_request.query,
        track_request.results_count,
        settings.SEARCH_DEFAULT_THRESHOLD if threshold is None else threshold,
        track_request.execution_time,
    )
    if analytics_id is None:
        return _error("Failed to track search", 500)
    return TrackSearchResponse(analytics_id=analytics_id)


@router.get("/search/analytics", response_model=SearchAnalyticsResponse)
async def get_search_analytics_data(
    user_id: Optional[str] = Query(None, alias="userId"),
    analytics_type: str = Query("history", alias="type"),
    limit: int = Query(settings.SEARCH_HISTORY_LIMIT, gt=0),
    days_back: int = Query(settings.SEARCH_ANALYTICS_DAYS_BACK, gt=0, alias="daysBack"),
    analytics: SearchAnalyticsService = Depends(get_search_analytics),
):
    if not user_id:
        return _error("User ID is required", 400)
    if analytics_type not in ANALYTICS_TYPES:
        return _error("Invalid analytics type", 400)

    try:
        if analytics_type == "history":
            data = [_history_item(r) for r in await analytics.history(user_id, limit)]
        elif analytics_type == "popular":
            data = [_popular_response(p) for p in await analytics.popular_queries(limit, days_back)]
        else:
            summary = await analytics.summary(user_id, days_back)
            data = SearchSummaryResponse(
                total_searches=summary.total_searches,
                avg_results_per_search=summary.avg_results_per_search,
                avg_execution_time=summary.avg_execution_time_ms,
                top_queries=[_popular_response(p) for p in summary.top_queries],
                search_trends=[SearchTrend(**trend) for trend in summary.search_trends],
            )
    except Exception as e:
        logger.error(f"Error fetching search analytics: {e}", exc_info=True)
        return _error("Internal server error", 500)
    return SearchAnalyticsResponse(type=analytics_type, data=data)


@router.post("/search/analytics/{analytics_id}/click", response_model=TrackClickResponse)
async def track_result_click(
    analytics_id: str,
    click_request: TrackClickRequest,
    analytics: SearchAnalyticsService = Depends(get_search_analytics),
):
    if not click_request.result_id:
        return _error("Analytics ID and Result ID are required", 400)

    try:
        found = await analytics.track_click(analytics_id, click_request.result_id)
    except Exception as e:
        logger.error(f"Error tracking result click: {e}", exc_info=True)
        return _error("Failed to track result click", 500)
    if not found:
        return _error("Search not found", 404)
    return TrackClickResponse(message="Result click tracked")


@router.delete("/search/analytics", response_model=AnalyticsCleanupResponse)
async def cleanup_search_analytics(
    days_to_keep: int = Query(settings.SEARCH_ANALYTICS_RETENTION_DAYS, ge=0, alias="daysToKeep"),
    analytics: SearchAnalyticsService = Depends(get_search_analytics),
):
    deleted = await analytics.cleanup(days_to_keep)
    return AnalyticsCleanupResponse(deleted=deleted, days_to_keep=days_to_keep)


# ---------- Files ----------
@router.post("/files", response_model=UploadResponse)
async def upload_file(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    owner_id: str = Form("anonymous"),
    services: ServiceContainer = Depends(get_services),
    job_queue: JobQueue = Depends(get_job_queue),
):
    content = await file.read()
    if len(content) > settings.MAX_FILE_SIZE:
        return _error(f"File exceeds maximum size of {settings.MAX_FILE_SIZE} bytes", 400)

    filename = file.filename or "upload"
    media_type = file.content_type or "application/octet-stream"
    file_id = str(uuid4())
    stored_filename = f"{file_id}_{sanitize_filename(filename)}"

    await services.file_storage.save(content, stored_filename)
    try:
        async with get_session(services.session_factory) as session:
            asset = await SQLFileRepository(session).create(FileAsset(
                id=file_id,
                filename=filename,
                media_type=media_type,
                byte_size=len(content),
                owner_id=owner_id,
                stored_filename=stored_filename,
            ))
    except Exception as e:
        logger.error(f"Failed to record upload '{filename}': {e}", exc_info=True)
        await services.file_storage.delete(stored_filename)
        return _error("Internal server error", 500)

    job_id = None
    if should_auto_process(media_type):
        job_id = await job_queue.enqueue(asset.id)
        background_tasks.add_task(job_queue.drain_pending)

    return UploadResponse(file=_file_response(asset), job_id=job_id, queued=job_id is not None)


@router.post("/files/process-batch", response_model=BatchProcessResponse)
async def process_batch(
    batch_request: BatchProcessRequest,
    background_tasks: BackgroundTasks,
    services: ServiceContainer = Depends(get_services),
    job_queue: JobQueue = Depends(get_job_queue),
):
    options = ProcessingOptions(
        chunk_size=batch_request.chunk_size,
        chunk_overlap=batch_request.chunk_overlap,
        max_chunks=batch_request.max_chunks,
    )

    async with get_session(services.session_factory) as session:
        repo = SQLFileRepository(session)
        if batch_request.file_ids:
            found = await repo.get_many(batch_request.file_ids)
            candidates = [found.get(fid) for fid in batch_request.file_ids]
            file_ids = list(batch_request.file_ids)
        elif batch_request.process_unprocessed_only:
            candidates = [f for f in await repo.list_unprocessed() if can_process_media_type(f.media_type)]
            file_ids = [f.id for f in candidates]
        else:
            candidates, file_ids = [], []

    if not file_ids:
        return BatchProcessResponse(message="No files to process", queued=0, skipped=0, total=0, results=[])

    pairs = list(zip(file_ids, candidates))[:settings.BATCH_PROCESS_MAX_FILES]
    results: List[BatchItemResult] = []
    for file_id, asset in pairs:
        if asset is None:
            results.append(BatchItemResult(file_id=file_id, queued=False, error="File not found"))
        elif not can_process_media_type(asset.media_type):
            results.append(BatchItemResult(
                file_id=file_id, queued=False,
                error=f"File type {asset.media_type} cannot be processed"
            ))
        else:
            job_id = await job_queue.enqueue(file_id, options)
            results.append(BatchItemResult(file_id=file_id, queued=True, job_id=job_id))

    queued = sum(1 for r in results if r.queued)
    if queued:
        background_tasks.add_task(job_queue.drain_pending)
    return BatchProcessResponse(
        message=f"Batch queued. {queued} files queued, {len(results) - queued} skipped.",
        queued=queued,
        skipped=len(results) - queued,
        total=len(results),
        results=results,
    )


@router.post("/files/{file_id}/process", response_model=ProcessQueuedResponse)
async def process_file(
    file_id: str,
    background_tasks: BackgroundTasks,
    process_request: Optional[ProcessRequest] = None,
    services: ServiceContainer = Depends(get_services),
    job_queue: JobQueue = Depends(get_job_queue),
):
    process_request = process_request or ProcessRequest()
    asset = await _get_file(services, file_id)
    if asset is None:
        return _error("File not found", 404)
    if not can_process_media_type(asset.media_type):
        return _error(f"File type {asset.media_type} cannot be processed for RAG", 400)

    if process_request.reprocess:
        await services.pipeline.reset_processed(file_id)

    options = ProcessingOptions(
        chunk_size=process_request.chunk_size,
        chunk_overlap=process_request.chunk_overlap,
        max_chunks=process_request.max_chunks,
    )
    job_id = await job_queue.enqueue(file_id, options)
    background_tasks.add_task(job_queue.drain_pending)
    action = "Reprocessing" if process_request.reprocess else "Processing"
    return ProcessQueuedResponse(message=f"{action} queued for '{asset.filename}'", job_id=job_id)


@router.get("/files/{file_id}/process", response_model=ProcessingStatusResponse)
async def get_processing_status(
    file_id: str,
    services: ServiceContainer = Depends(get_services),
):
    asset = await _get_file(services, file_id)
    if asset is None:
        return _error("File not found", 404)

    try:
        sample = await services.chunk_store.get_chunks(file_id, limit=5)
        total = await services.chunk_store.count(file_id)
    except Exception as e:
        logger.error(f"Error fetching chunks for {file_id}: {e}")
        sample, total = [], 0

    return ProcessingStatusResponse(
        file=ProcessingStatusFile(
            id=asset.id,
            filename=asset.filename,
            is_processed=asset.processed,
            mime_type=asset.media_type,
            file_size=asset.byte_size,
            can_process=can_process_media_type(asset.media_type),
            processing_error=asset.processing_error,
        ),
        processing=ProcessingStatusDetail(
            total_chunks=total,
            sample_chunks=[_chunk_response(c) for c in sample],
        ),
    )


@router.get("/files/{file_id}/jobs", response_model=JobListResponse)
async def get_file_jobs(file_id: str, job_queue: JobQueue = Depends(get_job_queue)):
    jobs = await job_queue.jobs_for_file(file_id)
    return JobListResponse(jobs=[_job_response(j) for j in jobs], count=len(jobs))


# ---------- Jobs ----------
@router.get("/jobs/stats")
async def get_job_stats(job_queue: JobQueue = Depends(get_job_queue)):
    return await job_queue.stats_by_status()


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, job_queue: JobQueue = Depends(get_job_queue)):
    job = await job_queue.status(job_id)
    if job is None:
        return _error("Job not found", 404)
    return _job_response(job)


@router.delete("/jobs", response_model=CleanupResponse)
async def cleanup_jobs(
    older_than_days: int = Query(settings.JOB_RETENTION_DAYS, ge=0, alias="olderThanDays"),
    job_queue: JobQueue = Depends(get_job_queue),
):
    deleted = await job_queue.cleanup(older_than_days)
    return CleanupResponse(deleted=deleted, older_than_days=older_than_days)


# ---------- Status ----------
@router.get("/status", response_model=StatusResponse)
async def get_status(
    services: ServiceContainer = Depends(get_services),
    job_queue: JobQueue = Depends(get_job_queue),
):
    async with get_session(services.session_factory) as session:
        file_stats = await SQLFileRepository(session).stats()
    total_chunks = await services.chunk_store.count()
    return StatusResponse(
        **file_stats,
        total_chunks=total_chunks,
        jobs=await job_queue.stats_by_status(),
        ready_for_queries=total_chunks > 0,
    )
