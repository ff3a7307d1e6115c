# api/schemas.py
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """JSON bodies use camelCase; Python code uses snake_case"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------- Chat ----------
class ConversationMessage(BaseModel):
    role: str
    content: str


class ChatRequest(CamelModel):
    message: Optional[str] = None
    user_id: Optional[str] = None
    conversation_history: List[ConversationMessage] = Field(default_factory=list)


class ChatContextResponse(CamelModel):
    user_role: str
    conversation_length: int
    rag_search_performed: bool
    rag_results_count: int
    search_query: Optional[str] = None
    task_context_included: bool
    timestamp: datetime
    fallback: bool = False
    retrieval_status: str
    task_context_status: str


class ChatSearchResult(BaseModel):
    filename: Optional[str] = None
    similarity: float
    content: str


class ChatResponse(CamelModel):
    response: str
    context: ChatContextResponse
    search_results: List[ChatSearchResult]
    message_id: str


# ---------- Document search ----------
class SearchOptions(CamelModel):
    match_threshold: Optional[float] = None
    match_count: Optional[int] = None
    file_ids: Optional[List[str]] = None


class SearchRequest(CamelModel):
    query: Optional[str] = None
    user_id: Optional[str] = None
    options: SearchOptions = Field(default_factory=SearchOptions)


class SearchHitResponse(BaseModel):
    id: str
    file_id: str
    filename: Optional[str] = None
    content: str
    chunk_index: int
    similarity: float
    combined_score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchResponse(BaseModel):
    success: bool = True
    results: List[SearchHitResponse]
    query: str
    count: int
    analytics_id: Optional[str] = None


class ChunkResponse(BaseModel):
    id: str
    content: str
    chunk_index: int
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChunksResponse(BaseModel):
    success: bool = True
    chunks: List[ChunkResponse]
    count: int


# ---------- Search analytics ----------
class TrackSearchRequest(CamelModel):
    user_id: Optional[str] = None
    query: Optional[str] = None
    similarity_threshold: Optional[float] = None
    results_count: int = Field(default=0, ge=0)
    execution_time: Optional[int] = Field(default=None, ge=0)  # milliseconds


class TrackSearchResponse(CamelModel):
    success: bool = True
    analytics_id: str


class TrackClickRequest(CamelModel):
    result_id: Optional[str] = None


class TrackClickResponse(BaseModel):
    success: bool = True
    message: str


class SearchHistoryItem(BaseModel):
    id: str
    query: str
    results_count: int
    similarity_threshold: float
    execution_time_ms: Optional[int] = None
    clicked_result_ids: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None


class PopularQueryResponse(BaseModel):
    query: str
    count: int
    avg_results: float


class SearchTrend(BaseModel):
    date: str
    count: int


class SearchSummaryResponse(CamelModel):
    total_searches: int
    avg_results_per_search: float
    avg_execution_time: float
    top_queries: List[PopularQueryResponse]
    search_trends: List[SearchTrend]


class SearchAnalyticsResponse(BaseModel):
    success: bool = True
    type: str
    data: Union[List[SearchHistoryItem], List[PopularQueryResponse], SearchSummaryResponse]


class AnalyticsCleanupResponse(CamelModel):
    deleted: int
    days_to_keep: int


# ---------- Files & processing ----------
class FileResponse(BaseModel):
    id: str
    filename: str
    media_type: str
    byte_size: int
    is_processed: bool
    processing_error: Optional[str] = None
    created_at: Optional[datetime] = None


class UploadResponse(BaseModel):
    file: FileResponse
    job_id: Optional[str] = None
    queued: bool = False


class ProcessRequest(CamelModel):
    reprocess: bool = False
    chunk_size: int = Field(default=1000, gt=0)
    chunk_overlap: int = Field(default=100, ge=0)
    max_chunks: int = Field(default=100, gt=0)


class ProcessQueuedResponse(BaseModel):
    success: bool = True
    message: str
    job_id: str


class ProcessingStatusFile(BaseModel):
    id: str
    filename: str
    is_processed: bool
    mime_type: str
    file_size: int
    can_process: bool
    processing_error: Optional[str] = None


class ProcessingStatusDetail(BaseModel):
    total_chunks: int
    sample_chunks: List[ChunkResponse]


class ProcessingStatusResponse(BaseModel):
    file: ProcessingStatusFile
    processing: ProcessingStatusDetail


class BatchProcessRequest(CamelModel):
    file_ids: List[str] = Field(default_factory=list)
    process_unprocessed_only: bool = True
    chunk_size: int = Field(default=1000, gt=0)
    chunk_overlap: int = Field(default=100, ge=0)
    max_chunks: int = Field(default=100, gt=0)


class BatchItemResult(BaseModel):
    file_id: str
    queued: bool
    job_id: Optional[str] = None
    error: Optional[str] = None


class BatchProcessResponse(BaseModel):
    message: str
    queued: int
    skipped: int
    total: int
    results: List[BatchItemResult]


# ---------- Jobs ----------
class JobResponse(BaseModel):
    id: str
    type: str
    status: str
    file_id: Optional[str] = None
    retry_count: int
    max_retries: int
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    available_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class JobListResponse(BaseModel):
    jobs: List[JobResponse]
    count: int


class CleanupResponse(BaseModel):
    deleted: int
    older_than_days: int


class StatusResponse(BaseModel):
    total_files: int
    processed_files: int
    unprocessed_files: int
    total_chunks: int
    jobs: Dict[str, int]
    ready_for_queries: bool
