# services/factory.py
from dataclasses import dataclass
from typing import Any, Optional

import chromadb
from fastapi import Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from core.interfaces import ICompletionProvider, IChunkStore, IEmbeddingService, IFileStorage
from database.session import AsyncSessionLocal
from infrastructure.embedding_services import OpenAIEmbeddingService, SentenceTransformerEmbedding
from infrastructure.file_storage import LocalFileStorage
from infrastructure.reranker import TermFrequencyReranker
from infrastructure.vector_stores import ChromaDBChunkStore
from services.chat_service import ChatService
from services.file_processing import FileProcessingPipeline
from services.job_queue import JobQueue
from services.llm_service import LLMService
from services.search_analytics import SearchAnalyticsService
from services.search_service import DocumentSearchService


# Builders for long-lived clients; called once from the app lifespan
def get_chroma_client() -> Any:
    """Create the Chroma client based on configuration."""
    if settings.VECTOR_STORE_TYPE == "chromadb":
        return chromadb.PersistentClient(path=settings.VECTOR_DB_PATH)
    raise ValueError(f"Unknown vector store type: {settings.VECTOR_STORE_TYPE}")


def get_chunk_store(client: Any) -> IChunkStore:
    return ChromaDBChunkStore(
        client,
        collection_name=settings.CHUNK_COLLECTION_NAME,
        timeout=settings.STORE_TIMEOUT_SECONDS,
    )


def get_embedding_service() -> IEmbeddingService:
    """Create embedding service based on configuration."""
    if settings.EMBEDDING_PROVIDER == "openai":
        return OpenAIEmbeddingService(
            base_url=settings.EMBEDDING_API_BASE_URL,
            model=settings.EMBEDDING_MODEL_NAME,
            api_key=settings.EMBEDDING_API_KEY,
            batch_size=settings.EMBEDDING_BATCH_SIZE,
            timeout=settings.REQUEST_TIMEOUT,
        )
    if settings.EMBEDDING_PROVIDER == "sentence_transformers":
        return SentenceTransformerEmbedding(
            settings.EMBEDDING_MODEL_NAME, batch_size=settings.EMBEDDING_BATCH_SIZE
        )
    raise ValueError(f"Unknown embedding provider: {settings.EMBEDDING_PROVIDER}")


def get_completion_provider() -> ICompletionProvider:
    return LLMService(
        base_url=settings.LLM_BASE_URL,
        model=settings.LLM_MODEL_NAME,
        provider=settings.LLM_PROVIDER,
        api_key=settings.LLM_API_KEY,
        max_tokens=settings.LLM_MAX_TOKENS,
        temperature=settings.LLM_TEMPERATURE,
        timeout=settings.REQUEST_TIMEOUT,
    )


def get_file_storage() -> IFileStorage:
    """Create file storage based on configuration."""
    return LocalFileStorage(base_path=settings.UPLOADS_DIR)


@dataclass
class ServiceContainer:
    """Everything request handlers need, wired once per process"""
    session_factory: async_sessionmaker
    file_storage: IFileStorage
    chunk_store: IChunkStore
    search_service: DocumentSearchService
    chat_service: ChatService
    pipeline: FileProcessingPipeline
    job_queue: JobQueue
    search_analytics: SearchAnalyticsService


def build_services(
    session_factory: Optional[async_sessionmaker] = None,
    embedding_service: Optional[IEmbeddingService] = None,
    chunk_store: Optional[IChunkStore] = None,
    completion: Optional[ICompletionProvider] = None,
    file_storage: Optional[IFileStorage] = None,
) -> ServiceContainer:
    """
    Wire the service graph. Every argument can be replaced, which is how
    tests swap in in-memory stores and fake providers.
    """
    session_factory = session_factory or AsyncSessionLocal
    embedding_service = embedding_service or get_embedding_service()
    chunk_store = chunk_store or get_chunk_store(get_chroma_client())
    completion = completion or get_completion_provider()
    file_storage = file_storage or get_file_storage()

    search_service = DocumentSearchService(
        session_factory,
        embedding_service,
        chunk_store,
        TermFrequencyReranker(weight=settings.TERM_FREQUENCY_WEIGHT),
    )
    pipeline = FileProcessingPipeline(session_factory, file_storage, embedding_service, chunk_store)
    return ServiceContainer(
        session_factory=session_factory,
        file_storage=file_storage,
        chunk_store=chunk_store,
        search_service=search_service,
        chat_service=ChatService(session_factory, search_service, completion),
        pipeline=pipeline,
        job_queue=JobQueue(session_factory, pipeline),
        search_analytics=SearchAnalyticsService(session_factory),
    )


# Provider functions for FastAPI dependency injection
def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_chat_service(request: Request) -> ChatService:
    return get_services(request).chat_service


def get_job_queue(request: Request) -> JobQueue:
    return get_services(request).job_queue


def get_search_analytics(request: Request) -> SearchAnalyticsService:
    return get_services(request).search_analytics
