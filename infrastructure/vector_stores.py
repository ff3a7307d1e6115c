"""ChromaDB-backed chunk store"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.domain import DocumentChunk
from core.exceptions import StorageWriteError
from core.interfaces import IChunkStore

from config import settings

logger = logging.getLogger(settings.LOGGER_NAME)


def chunk_id(file_id: str, generation: str, chunk_index: int) -> str:
    return f"{file_id}:{generation}:{chunk_index}"


def _clean_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Chroma only stores flat str/int/float/bool values"""
    return {
        key: value for key, value in metadata.items()
        if isinstance(value, (str, int, float, bool))
    }


class ChromaDBChunkStore(IChunkStore):
    """
    Chunk store on a ChromaDB collection with normalized similarity scoring (0-1 scale).

    Each row carries `file_id`, `chunk_index` and `generation` in its metadata so
    a reprocessed file can be swapped to a new generation without a window in
    which it has no chunks.
    """

    def __init__(
        self,
        client: Any,
        collection_name: str = "document_chunks",
        timeout: float = settings.STORE_TIMEOUT_SECONDS,
    ):
        self._client = client
        self._collection_name = collection_name
        self._collection: Any = None
        self._timeout = timeout

    async def _call(self, fn, *args, **kwargs):
        """Run a blocking Chroma call off the event loop with a timeout"""
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args, **kwargs),
            timeout=self._timeout
        )

    async def _ensure_collection(self):
        """Lazy initialization of collection"""
        if not self._collection:
            self._collection = await self._call(
                self._client.get_or_create_collection,
                name=self._collection_name
            )

    @staticmethod
    def _to_chunk(chunk_id_: str, content: str, metadata: Dict[str, Any]) -> DocumentChunk:
        metadata = dict(metadata or {})
        return DocumentChunk(
            id=chunk_id_,
            content=content,
            file_id=metadata.get("file_id", ""),
            chunk_index=int(metadata.get("chunk_index", 0)),
            metadata=metadata,
        )

    async def insert_chunks(self, chunks: List[DocumentChunk]) -> None:
        """Add chunks in one call; on failure remove whatever landed and raise"""
        if not chunks:
            return

        ids = [chunk.id for chunk in chunks]
        if any(chunk.embedding is None for chunk in chunks):
            raise StorageWriteError("Every chunk needs an embedding before storage")

        try:
            await self._ensure_collection()
            await self._call(
                self._collection.add,
                ids=ids,
                documents=[chunk.content for chunk in chunks],
                metadatas=[
                    _clean_metadata({
                        **chunk.metadata,
                        "file_id": chunk.file_id,
                        "chunk_index": chunk.chunk_index,
                    })
                    for chunk in chunks
                ],
                embeddings=[chunk.embedding for chunk in chunks],
            )
        except Exception as e:
            logger.error(f"Failed to add {len(chunks)} chunks to ChromaDB: {e}")
            try:
                if self._collection is not None:
                    await self._call(self._collection.delete, ids=ids)
            except Exception as cleanup_error:
                logger.error(f"Rollback of partial chunk insert failed: {cleanup_error}")
            raise StorageWriteError(f"Failed to store chunks: {e}") from e

        logger.info(f"Stored {len(chunks)} chunks for file {chunks[0].file_id}")

    async def delete_chunks(
        self,
        file_id: str,
        keep_generation: Optional[str] = None,
        only_generation: Optional[str] = None,
    ) -> None:
        if only_generation is not None:
            where: Dict[str, Any] = {"$and": [
                {"file_id": file_id},
                {"generation": only_generation},
            ]}
        elif keep_generation is not None:
            where = {"$and": [
                {"file_id": file_id},
                {"generation": {"$ne": keep_generation}},
            ]}
        else:
            where = {"file_id": file_id}

        try:
            await self._ensure_collection()
            await self._call(self._collection.delete, where=where)
        except Exception as e:
            logger.error(f"Failed to delete chunks for file {file_id}: {e}")
            raise StorageWriteError(f"Failed to delete chunks: {e}") from e

    async def search(
        self,
        query_embedding: List[float],
        threshold: float,
        limit: int,
        file_ids: Optional[Sequence[str]] = None,
    ) -> List[Tuple[DocumentChunk, float]]:
        """
        Nearest neighbours from Chroma, converted to similarity and thresholded.

        ChromaDB's default space returns squared L2 distance; for unit vectors
        that is 2(1 - cos), so similarity = 1 - distance / 2.
        """
        if limit <= 0:
            return []

        await self._ensure_collection()
        if await self._call(self._collection.count) == 0:
            return []

        where = None
        if file_ids:
            ids = list(file_ids)
            where = {"file_id": ids[0]} if len(ids) == 1 else {"file_id": {"$in": ids}}

        results = await self._call(
            self._collection.query,
            query_embeddings=[query_embedding],
            n_results=limit,
            where=where,
            include=['metadatas', 'documents', 'distances']
        )

        hits: List[Tuple[DocumentChunk, float]] = []
        if results['ids'] and results['ids'][0]:
            for i in range(len(results['ids'][0])):
                distance = results['distances'][0][i]
                similarity = max(0.0, min(1.0, 1.0 - (distance / 2.0)))
                if similarity < threshold:
                    continue
                chunk = self._to_chunk(
                    results['ids'][0][i],
                    results['documents'][0][i],
                    results['metadatas'][0][i],
                )
                hits.append((chunk, similarity))

        hits.sort(key=lambda hit: hit[1], reverse=True)
        return hits[:limit]

    async def get_chunks(self, file_id: str, limit: Optional[int] = None) -> List[DocumentChunk]:
        await self._ensure_collection()
        results = await self._call(
            self._collection.get,
            where={"file_id": file_id},
            include=['metadatas', 'documents']
        )
        chunks = [
            self._to_chunk(cid, doc, meta)
            for cid, doc, meta in zip(results['ids'], results['documents'], results['metadatas'])
        ]
        chunks.sort(key=lambda c: c.chunk_index)
        return chunks[:limit] if limit else chunks

    async def count(self, file_id: Optional[str] = None) -> int:
        await self._ensure_collection()
        if file_id is None:
            return await self._call(self._collection.count)
        results = await self._call(self._collection.get, where={"file_id": file_id}, include=[])
        return len(results['ids'])
