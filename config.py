"""Application configuration"""
from typing import List
from pydantic_settings import BaseSettings
from utils.common import get_log_file_path, get_project_root

class Settings(BaseSettings):
    """Application configuration"""

    # Logger configuration
    LOG_FILE_PATH: str = get_log_file_path()
    LOGGER_NAME: str = "fieldservice_rag"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./fieldservice.db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE: int = 3600  # Recycle connections after 1 hour

    # Chunk store
    VECTOR_DB_PATH: str = "./vector_db"
    VECTOR_STORE_TYPE: str = "chromadb"
    CHUNK_COLLECTION_NAME: str = "document_chunks"
    STORE_TIMEOUT_SECONDS: float = 30.0

    # Embedding provider
    EMBEDDING_PROVIDER: str = "sentence_transformers"  # Options: sentence_transformers, openai
    EMBEDDING_MODEL_NAME: str = "paraphrase-multilingual-mpnet-base-v2"
    EMBEDDING_BATCH_SIZE: int = 64
    EMBEDDING_API_BASE_URL: str = "https://api.openai.com/v1"
    EMBEDDING_API_KEY: str = ""

    # Completion provider (Ollama or any OpenAI-compatible chat endpoint)
    LLM_PROVIDER: str = "ollama"  # Options: ollama, openai
    LLM_BASE_URL: str = "http://localhost:11434"
    LLM_MODEL_NAME: str = "llama3.1:8b"
    LLM_API_KEY: str = ""
    LLM_MAX_TOKENS: int = 500
    LLM_TEMPERATURE: float = 0.7

    # Document processing
    CHUNK_SIZE: int = 1000
    CHUNK_OVERLAP: int = 100
    MAX_CHUNKS_PER_FILE: int = 100
    MAX_FILE_SIZE: int = 50 * 1024 * 1024
    UPLOADS_DIR: str = f"{get_project_root()}/uploads"

    AUTO_PROCESS_MEDIA_TYPES: List[str] = [
        "text/plain", "text/csv", "application/json", "text/html"
    ]

    # Search quality controls
    SEARCH_DEFAULT_THRESHOLD: float = 0.78
    SEARCH_DEFAULT_LIMIT: int = 10
    TERM_FREQUENCY_WEIGHT: float = 0.1
    SNIPPET_LENGTH: int = 200

    # Chat context assembly
    CHAT_SEARCH_THRESHOLD: float = 0.75
    CHAT_SEARCH_LIMIT: int = 5
    CHAT_EXCERPT_LENGTH: int = 300
    CHAT_HISTORY_LIMIT: int = 10
    CHAT_TASK_LIMIT: int = 3
    DEFAULT_USER_ROLE: str = "technician"

    # Background jobs
    JOB_MAX_RETRIES: int = 3
    JOB_DRAIN_INTERVAL_SECONDS: float = 30.0
    JOB_DRAIN_BATCH_SIZE: int = 5
    JOB_RETRY_BACKOFF_SECONDS: float = 15.0
    JOB_RETENTION_DAYS: int = 7
    JOB_STALE_AFTER_SECONDS: float = 900.0  # processing jobs older than this were abandoned by a crash
    BATCH_PROCESS_MAX_FILES: int = 10

    # Search analytics
    SEARCH_HISTORY_LIMIT: int = 20
    SEARCH_POPULAR_LIMIT: int = 10
    SEARCH_ANALYTICS_DAYS_BACK: int = 30
    SEARCH_ANALYTICS_RETENTION_DAYS: int = 90
    SEARCH_SUMMARY_TOP_QUERIES: int = 5

    # API settings
    REQUEST_TIMEOUT: int = 60

    # App metadata
    APP_TITLE: str = "Field Service Document Assistant"
    APP_VERSION: str = "1.0.0"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

settings = Settings()
