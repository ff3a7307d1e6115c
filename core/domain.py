"""Domain enumerations and models shared across the application."""
from enum import Enum

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import List, Dict, Any, Optional

# ============= Enums =============

class ErrorCode(str, Enum):
    """Error codes attached to pipeline failures."""
    UNSUPPORTED_MEDIA_TYPE = "UNSUPPORTED_MEDIA_TYPE"
    NO_TEXT_FOUND = "NO_TEXT_FOUND"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    EMBEDDING_FAILED = "EMBEDDING_FAILED"
    STORAGE_WRITE_FAILED = "STORAGE_WRITE_FAILED"
    COMPLETION_FAILED = "COMPLETION_FAILED"
    PROCESSING_FAILED = "PROCESSING_FAILED"

    @property
    def is_retryable(self) -> bool:
        """Transient failures are retried by the job queue, fatal ones are not."""
        return self in (
            ErrorCode.EMBEDDING_FAILED,
            ErrorCode.STORAGE_WRITE_FAILED,
            ErrorCode.PROCESSING_FAILED,
        )


class ProviderErrorCode(str, Enum):
    """Machine-readable codes for embedding/completion provider failures."""
    AUTHENTICATION = "authentication_failed"
    QUOTA_EXCEEDED = "insufficient_quota"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    PROVIDER_ERROR = "provider_error"

    @staticmethod
    def from_string(code: Optional[str]) -> 'ProviderErrorCode':
        try:
            return ProviderErrorCode(code)
        except ValueError:
            return ProviderErrorCode.PROVIDER_ERROR


class JobStatus(str, Enum):
    """Background job lifecycle."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobType(str, Enum):
    FILE_PROCESSING = "file_processing"


class UserRole(str, Enum):
    ADMIN = "admin"
    SUPERVISOR = "supervisor"
    TECHNICIAN = "technician"

    @property
    def is_elevated(self) -> bool:
        return self in (UserRole.ADMIN, UserRole.SUPERVISOR)

    @staticmethod
    def from_string(role: Optional[str]) -> 'UserRole':
        """Convert string to UserRole; unknown roles get technician rights."""
        try:
            return UserRole((role or "").lower())
        except ValueError:
            return UserRole.TECHNICIAN


class RetrievalDecision(str, Enum):
    SEARCH = "search"
    SKIP = "skip"


class FallbackTopic(str, Enum):
    """Template families for the deterministic fallback responder."""
    TASKS = "tasks"
    SEARCH = "search"
    HELP = "help"
    TROUBLESHOOTING = "troubleshooting"
    GENERAL = "general"


class CompletionFailure(str, Enum):
    AUTH_OR_QUOTA = "auth_or_quota"
    RATE_LIMITED = "rate_limited"
    UNCLASSIFIED = "unclassified"


class ContextStatus(str, Enum):
    """Outcome of fetching one optional block of prompt context."""
    INCLUDED = "included"
    EMPTY = "empty"
    SKIPPED = "skipped"
    FAILED = "failed"


# ============= Domain Models =============

@dataclass
class FileAsset:
    """Uploaded file known to the processing pipeline"""
    id: str
    filename: str
    media_type: str
    byte_size: int
    owner_id: str
    processed: bool = False
    created_at: Optional[datetime] = None
    stored_filename: Optional[str] = None
    processing_error: Optional[str] = None


@dataclass
class ProcessingOptions:
    chunk_size: int = 1000
    chunk_overlap: int = 100
    max_chunks: int = 100

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], defaults: Optional['ProcessingOptions'] = None) -> 'ProcessingOptions':
        base = defaults or cls()
        data = data or {}
        overlap = data.get("chunk_overlap")
        return cls(
            chunk_size=int(data.get("chunk_size") or base.chunk_size),
            chunk_overlap=int(base.chunk_overlap if overlap is None else overlap),
            max_chunks=int(data.get("max_chunks") or base.max_chunks),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DocumentChunk:
    """Domain model for document chunks"""
    id: str
    content: str
    file_id: str
    chunk_index: int
    metadata: Dict[str, Any]
    embedding: Optional[List[float]] = None # Vector of float numbers


@dataclass
class ProcessingJob:
    """One unit of retryable background work"""
    id: str
    type: JobType
    payload: Dict[str, Any]
    status: JobStatus
    retry_count: int
    max_retries: int
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    available_at: Optional[datetime] = None

    @property
    def file_id(self) -> Optional[str]:
        return self.payload.get("file_id")


@dataclass
class SearchHit:
    """Transient search result; never persisted"""
    chunk: DocumentChunk
    similarity: float
    combined_score: float = 0.0
    file: Optional[FileAsset] = None

    @property
    def filename(self) -> Optional[str]:
        if self.file is not None:
            return self.file.filename
        return self.chunk.metadata.get("filename")


@dataclass
class ConversationTurn:
    role: str
    content: str


@dataclass
class UserProfile:
    id: str
    role: UserRole
    full_name: Optional[str] = None
    email: Optional[str] = None


@dataclass
class ActiveTask:
    id: str
    title: str
    status: str
    priority: str


@dataclass
class ContextBlock:
    """Result of an optional context lookup: rendered text or the reason it is missing"""
    status: ContextStatus
    text: str = ""
    reason: Optional[str] = None
    hits: List[SearchHit] = field(default_factory=list)

    @property
    def included(self) -> bool:
        return self.status == ContextStatus.INCLUDED


@dataclass
class ChatContext:
    user_role: UserRole
    conversation_length: int
    rag_search_performed: bool
    rag_results_count: int
    search_query: Optional[str]
    task_context_included: bool
    timestamp: datetime
    fallback: bool = False
    retrieval_status: ContextStatus = ContextStatus.SKIPPED
    task_context_status: ContextStatus = ContextStatus.SKIPPED


@dataclass
class ChatResult:
    response: str
    context: ChatContext
    search_hits: List[SearchHit]
    message_id: str


@dataclass
class ThresholdValidation:
    valid: bool
    normalized: float
    error: Optional[str] = None


@dataclass
class SearchQuery:
    clean_query: str
    terms: List[str]
    has_special_chars: bool


@dataclass
class SearchAnalyticsRecord:
    """One executed document search, kept for history and usage reports"""
    id: str
    user_id: str
    query: str
    normalized_query: str
    results_count: int
    similarity_threshold: float
    execution_time_ms: Optional[int] = None
    clicked_result_ids: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None


@dataclass
class PopularQuery:
    query: str
    count: int
    avg_results: float


@dataclass
class SearchAnalyticsSummary:
    total_searches: int
    avg_results_per_search: float
    avg_execution_time_ms: float
    top_queries: List[PopularQuery]
    search_trends: List[Dict[str, Any]]  # [{"date": "YYYY-MM-DD", "count": n}], oldest first
