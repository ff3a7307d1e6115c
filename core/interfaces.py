"""Core interfaces for the document retrieval pipeline"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Dict, Any, Optional, Sequence, Tuple

from core.domain import (
    ActiveTask, DocumentChunk, FileAsset, PopularQuery, ProcessingJob,
    SearchAnalyticsRecord, SearchHit, UserProfile
)

# ============= Chunk Store Interface =============
class IChunkStore(ABC):
    """
    Persists chunks + vectors and answers similarity queries.

    Nearest-neighbour search is delegated to the backing store's own operator;
    implementations only translate its scores to similarity in [0, 1].
    """

    @abstractmethod
    async def insert_chunks(self, chunks: List[DocumentChunk]) -> None:
        """Insert all chunks or none. Raises StorageWriteError on failure."""
        pass

    @abstractmethod
    async def delete_chunks(
        self,
        file_id: str,
        keep_generation: Optional[str] = None,
        only_generation: Optional[str] = None,
    ) -> None:
        """Delete all chunks for a file, or all but / only one generation of them"""
        pass

    @abstractmethod
    async def search(
        self,
        query_embedding: List[float],
        threshold: float,
        limit: int,
        file_ids: Optional[Sequence[str]] = None,
    ) -> List[Tuple[DocumentChunk, float]]:
        """
        Return (chunk, similarity) pairs with similarity >= threshold,
        ordered by similarity descending and capped at `limit`.
        """
        pass

    @abstractmethod
    async def get_chunks(self, file_id: str, limit: Optional[int] = None) -> List[DocumentChunk]:
        """Chunks of one file ordered by chunk_index"""
        pass

    @abstractmethod
    async def count(self, file_id: Optional[str] = None) -> int:
        """Total chunks, or chunks of one file"""
        pass

# ============= Embedding Service Interface =============
class IEmbeddingService(ABC):
    """Interface for embedding generation"""

    @abstractmethod
    async def generate_embeddings(self, texts: List[str]) -> List[List[float]]:
        """One vector per input text, in input order"""
        pass

    @abstractmethod
    async def generate_embedding(self, text: str) -> List[float]:
        """Embedding for a single text (search queries)"""
        pass

# ============= Completion Provider Interface =============
class ICompletionProvider(ABC):
    """Opaque text-generation backend used by the chat assistant"""

    @abstractmethod
    async def complete(self, messages: List[Dict[str, str]]) -> str:
        """
        Generate a reply for role/content messages; an empty string means no reply.
        Raises CompletionProviderError with a ProviderErrorCode on failure.
        """
        pass

# ============= Ranking Interface =============
class IRanker(ABC):
    """Re-orders raw similarity hits"""

    @abstractmethod
    def rank(self, hits: List[SearchHit], query_text: str) -> List[SearchHit]:
        pass

# ============= Repository Interfaces =============
class IFileRepository(ABC):
    """
    File metadata persistence. Physical bytes live in IFileStorage and
    vectors in IChunkStore.
    """

    @abstractmethod
    async def create(self, file: FileAsset) -> FileAsset:
        pass

    @abstractmethod
    async def get_by_id(self, file_id: str) -> Optional[FileAsset]:
        pass

    @abstractmethod
    async def get_many(self, file_ids: Sequence[str]) -> Dict[str, FileAsset]:
        """Resolve several files in one query, keyed by id"""
        pass

    @abstractmethod
    async def set_processed(self, file_id: str, processed: bool, error: Optional[str] = None) -> bool:
        pass

    @abstractmethod
    async def list_unprocessed(self, limit: Optional[int] = None) -> List[FileAsset]:
        pass

    @abstractmethod
    async def stats(self) -> Dict[str, int]:
        pass


class IJobRepository(ABC):
    """Persistence for background jobs. Only the job queue writes through it."""

    @abstractmethod
    async def create(self, job: ProcessingJob) -> ProcessingJob:
        pass

    @abstractmethod
    async def get(self, job_id: str) -> Optional[ProcessingJob]:
        pass

    @abstractmethod
    async def fetch_pending(self, limit: int, now: datetime) -> List[ProcessingJob]:
        """Oldest pending jobs that are eligible to run at `now`"""
        pass

    @abstractmethod
    async def list_stale_processing(self, started_before: datetime) -> List[ProcessingJob]:
        """Jobs still marked processing that started before the cutoff"""
        pass

    @abstractmethod
    async def update(self, job_id: str, **fields: Any) -> None:
        pass

    @abstractmethod
    async def count_by_status(self) -> Dict[str, int]:
        pass

    @abstractmethod
    async def delete_terminal_before(self, cutoff: datetime) -> int:
        pass

    @abstractmethod
    async def list_by_file(self, file_id: str) -> List[ProcessingJob]:
        pass


class ITaskRepository(ABC):
    """Read-only access to task data owned by the task management screens"""

    @abstractmethod
    async def get_active_tasks(self, user_id: str, limit: int = 3) -> List[ActiveTask]:
        pass


class IProfileRepository(ABC):
    """Read-only access to user profiles owned by the auth subsystem"""

    @abstractmethod
    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        pass


class ISearchAnalyticsRepository(ABC):
    """Append-mostly log of executed searches"""

    @abstractmethod
    async def create(self, record: SearchAnalyticsRecord) -> SearchAnalyticsRecord:
        pass

    @abstractmethod
    async def get(self, analytics_id: str) -> Optional[SearchAnalyticsRecord]:
        pass

    @abstractmethod
    async def add_click(self, analytics_id: str, result_id: str) -> bool:
        """Remember a clicked result once; False when the record is unknown"""
        pass

    @abstractmethod
    async def list_by_user(self, user_id: str, limit: int) -> List[SearchAnalyticsRecord]:
        """Newest first"""
        pass

    @abstractmethod
    async def list_since(self, since: datetime, user_id: Optional[str] = None) -> List[SearchAnalyticsRecord]:
        pass

    @abstractmethod
    async def popular_queries(self, since: datetime, limit: int) -> List[PopularQuery]:
        pass

    @abstractmethod
    async def delete_before(self, cutoff: datetime) -> int:
        pass

# ============= File Storage Interface =============
class IFileStorage(ABC):
    """Interface for physical file storage operations"""

    @abstractmethod
    async def save(self, content: bytes, filename: str) -> str:
        """
        Write bytes under `filename` (already sanitized and unique).

        Returns:
            str: Full absolute path to the saved file
        """
        pass

    @abstractmethod
    async def read(self, filename: str) -> bytes:
        """Read a stored file. Raises FileNotFoundError if missing."""
        pass

    @abstractmethod
    async def delete(self, filename: str) -> bool:
        """Delete a stored file."""
        pass
