"""Error taxonomy for the document retrieval pipeline"""
from typing import Optional

from core.domain import ErrorCode, ProviderErrorCode


class DocumentPipelineError(Exception):
    """Base error carrying a machine-readable error code"""

    error_code: ErrorCode = ErrorCode.PROCESSING_FAILED

    def __init__(self, message: str, error_code: Optional[ErrorCode] = None):
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.error_code.is_retryable

    def __str__(self):
        # Format used for logging and the job error column
        return f"[{self.error_code.value}] {self.message}"


class UnsupportedMediaType(DocumentPipelineError):
    """Raised by the text extractor for media types it cannot handle"""
    error_code = ErrorCode.UNSUPPORTED_MEDIA_TYPE

    def __init__(self, media_type: str):
        self.media_type = media_type
        super().__init__(f"Unsupported file type: {media_type or 'unknown'}")


class InsufficientContext(DocumentPipelineError):
    """Raised when a file yields no chunks"""
    error_code = ErrorCode.NO_TEXT_FOUND


class FileNotFoundForProcessing(DocumentPipelineError):
    error_code = ErrorCode.FILE_NOT_FOUND


class StorageWriteError(DocumentPipelineError):
    """Chunk store write failed; the whole job is retried"""
    error_code = ErrorCode.STORAGE_WRITE_FAILED


class ProviderError(DocumentPipelineError):
    """Base for errors raised by external embedding/completion providers"""

    def __init__(
        self,
        message: str,
        code: ProviderErrorCode = ProviderErrorCode.PROVIDER_ERROR,
        status_code: Optional[int] = None,
    ):
        self.code = code
        self.status_code = status_code
        super().__init__(message)

    def __str__(self):
        return f"[{self.error_code.value}:{self.code.value}] {self.message}"


class EmbeddingProviderError(ProviderError):
    error_code = ErrorCode.EMBEDDING_FAILED


class EmbeddingRateLimitError(EmbeddingProviderError):
    """Embedding provider throttled the request"""

    def __init__(self, message: str, status_code: Optional[int] = 429):
        super().__init__(message, code=ProviderErrorCode.RATE_LIMITED, status_code=status_code)


class CompletionProviderError(ProviderError):
    error_code = ErrorCode.COMPLETION_FAILED


def embedding_error_for(code: ProviderErrorCode, message: str,
                        status_code: Optional[int] = None) -> EmbeddingProviderError:
    """Build the right embedding error subtype for a provider error code."""
    if code == ProviderErrorCode.RATE_LIMITED:
        return EmbeddingRateLimitError(message, status_code=status_code)
    return EmbeddingProviderError(message, code=code, status_code=status_code)
