"""Per-file processing: extract -> chunk -> embed -> store"""
import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from core.domain import DocumentChunk, FileAsset, ProcessingOptions
from core.exceptions import FileNotFoundForProcessing, InsufficientContext
from core.interfaces import IChunkStore, IEmbeddingService, IFileStorage
from database.session import get_session
from infrastructure.document_processors import TextChunker, TextExtractor
from infrastructure.repositories import SQLFileRepository
from infrastructure.vector_stores import chunk_id
from utils.common import utcnow

logger = logging.getLogger(settings.LOGGER_NAME)


def default_processing_options() -> ProcessingOptions:
    return ProcessingOptions(
        chunk_size=settings.CHUNK_SIZE,
        chunk_overlap=settings.CHUNK_OVERLAP,
        max_chunks=settings.MAX_CHUNKS_PER_FILE,
    )


class FileProcessingPipeline:
    """
    Turns one stored file into embedded chunks.

    Never retries on its own: any error propagates to the job queue, which
    retries the whole file. New chunks are written under a fresh generation
    and older generations are removed only after the insert succeeded, so a
    file is never left without chunks mid-reprocess.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        file_storage: IFileStorage,
        embedding_service: IEmbeddingService,
        chunk_store: IChunkStore,
        extractor: Optional[TextExtractor] = None,
    ):
        self.session_factory = session_factory
        self.file_storage = file_storage
        self.embedding_service = embedding_service
        self.chunk_store = chunk_store
        self.extractor = extractor or TextExtractor()

    async def _load_file(self, file_id: str) -> FileAsset:
        async with get_session(self.session_factory) as session:
            file = await SQLFileRepository(session).get_by_id(file_id)
        if file is None:
            raise FileNotFoundForProcessing(f"File {file_id} not found")
        return file

    async def _read_bytes(self, file: FileAsset) -> bytes:
        if not file.stored_filename:
            raise FileNotFoundForProcessing(f"File {file.id} has no stored content")
        try:
            return await self.file_storage.read(file.stored_filename)
        except FileNotFoundError as e:
            raise FileNotFoundForProcessing(f"Failed to download file {file.id}: {e}") from e

    def _build_chunks(self, file: FileAsset, pieces, embeddings, generation: str) -> list:
        processed_at = utcnow().isoformat()
        return [
            DocumentChunk(
                id=chunk_id(file.id, generation, index),
                content=piece,
                file_id=file.id,
                chunk_index=index,
                metadata={
                    "filename": file.filename,
                    "media_type": file.media_type,
                    "chunk_length": len(piece),
                    "total_chunks": len(pieces),
                    "processed_at": processed_at,
                    "generation": generation,
                },
                embedding=embedding,
            )
            for index, (piece, embedding) in enumerate(zip(pieces, embeddings))
        ]

    async def process_file(self, file_id: str, options: Optional[ProcessingOptions] = None) -> Dict[str, Any]:
        options = options or default_processing_options()
        file = await self._load_file(file_id)
        content = await self._read_bytes(file)

        text = self.extractor.extract(content, file.media_type, file.filename)
        chunker = TextChunker(max_size=options.chunk_size, overlap=options.chunk_overlap)
        pieces = chunker.split(text)[:options.max_chunks]
        if not pieces:
            raise InsufficientContext(f"No content could be extracted from '{file.filename}'")

        logger.info(f"Created {len(pieces)} chunks for file: {file.filename}")
        embeddings = await self.embedding_service.generate_embeddings(pieces)

        generation = uuid4().hex[:12]
        chunks = self._build_chunks(file, pieces, embeddings, generation)
        try:
            await self.chunk_store.insert_chunks(chunks)
            await self.chunk_store.delete_chunks(file.id, keep_generation=generation)
        except Exception:
            logger.warning(f"Storing chunks for file {file.id} failed; dropping generation {generation}")
            try:
                await self.chunk_store.delete_chunks(file.id, only_generation=generation)
            except Exception as cleanup_error:
                # The next attempt's swap removes this generation
                logger.error(
                    f"Could not drop generation {generation} of file {file.id}: {cleanup_error}"
                )
            raise

        # Chunks are now a complete single generation; a retry swaps in a newer one
        async with get_session(self.session_factory) as session:
            await SQLFileRepository(session).set_processed(file.id, True)

        logger.info(f"Successfully processed document: {file.filename}")
        return {"chunks_created": len(chunks), "processing_completed": True}

    async def reset_processed(self, file_id: str) -> bool:
        """Clear the processed flag before a reprocess is queued"""
        async with get_session(self.session_factory) as session:
            return await SQLFileRepository(session).set_processed(file_id, False)

    async def mark_unprocessable(self, file_id: str, error: str) -> None:
        async with get_session(self.session_factory) as session:
            await SQLFileRepository(session).set_processed(file_id, False, error=error)
