"""Shared fixtures: in-process Chroma, temp SQLite, deterministic embeddings, fake providers."""

from pathlib import Path
from uuid import uuid4

import chromadb
import pytest
import pytest_asyncio
from chromadb.config import Settings as ChromaSettings
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.domain import FileAsset
from database.session import create_engine_for, get_session, init_models
from infrastructure.file_storage import LocalFileStorage
from infrastructure.repositories import SQLFileRepository
from infrastructure.vector_stores import ChromaDBChunkStore
from tests.fakes import FakeCompletionProvider, HashingEmbeddingService


@pytest.fixture(scope="session")
def chroma_client():
    """One ephemeral Chroma system per test session; tests isolate by collection name."""
    return chromadb.EphemeralClient(settings=ChromaSettings(anonymized_telemetry=False))


@pytest.fixture
def chunk_store(chroma_client) -> ChromaDBChunkStore:
    return ChromaDBChunkStore(chroma_client, collection_name=f"test_{uuid4().hex}", timeout=10)


@pytest.fixture
def embedding_service() -> HashingEmbeddingService:
    return HashingEmbeddingService()


@pytest.fixture
def completion() -> FakeCompletionProvider:
    return FakeCompletionProvider()


@pytest.fixture
def file_storage(tmp_path: Path) -> LocalFileStorage:
    return LocalFileStorage(base_path=tmp_path / "uploads")


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path):
    """Fresh SQLite database file per test."""
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_models(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def make_file(session_factory, file_storage):
    """Store bytes and register a FileAsset for them."""

    async def _make(content: bytes, filename: str = "manual.txt",
                    media_type: str = "text/plain", owner_id: str = "user-1") -> FileAsset:
        file_id = str(uuid4())
        stored = f"{file_id}_{filename}"
        await file_storage.save(content, stored)
        async with get_session(session_factory) as session:
            return await SQLFileRepository(session).create(FileAsset(
                id=file_id,
                filename=filename,
                media_type=media_type,
                byte_size=len(content),
                owner_id=owner_id,
                stored_filename=stored,
            ))

    return _make
