# database/session.py

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String, Text
from sqlalchemy.ext.asyncio import (AsyncEngine, AsyncSession,
                                    async_sessionmaker, create_async_engine)
from sqlalchemy.orm import declarative_base

from config import settings
from utils.common import utcnow


# ============= Engine =============

logger = logging.getLogger(settings.LOGGER_NAME)


def create_engine_for(url: str) -> AsyncEngine:
    """Async engine; pool sizing only applies to pooled (non in-memory) databases."""
    if ":memory:" in url:
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        echo=False,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True  # Check connection health before using
    )


async_engine = create_engine_for(settings.DATABASE_URL)
AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False)
Base = declarative_base()

# --- SQLAlchemy Models ---

class FileEntity(Base):
    __tablename__ = "files"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    filename = Column(String, nullable=False)  # The original filename
    media_type = Column(String, nullable=False)
    byte_size = Column(Integer, nullable=False, default=0)
    owner_id = Column(String, index=True, nullable=False)
    stored_filename = Column(String, nullable=True, unique=True)
    is_processed = Column(Boolean, nullable=False, default=False, index=True)
    processing_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class JobEntity(Base):
    __tablename__ = "background_jobs"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String, nullable=False, index=True)  # pending/processing/completed/failed
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    created_at = Column(DateTime, default=utcnow, index=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    available_at = Column(DateTime, nullable=True)  # retry backoff gate
    error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)


# Owned by the task and auth screens; read-only here
class TaskEntity(Base):
    __tablename__ = "tasks"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String, nullable=False)
    status = Column(String, nullable=False)
    priority = Column(String, nullable=False, default="medium")
    assigned_to = Column(String, index=True, nullable=True)
    created_by = Column(String, index=True, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class ProfileEntity(Base):
    __tablename__ = "profiles"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=True)
    full_name = Column(String, nullable=True)
    role = Column(String, nullable=False, default="technician")


class SearchAnalyticsEntity(Base):
    __tablename__ = "search_analytics"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, index=True, nullable=False)
    query = Column(Text, nullable=False)
    normalized_query = Column(String, index=True, nullable=False)  # grouping key for popular queries
    results_count = Column(Integer, nullable=False, default=0)
    similarity_threshold = Column(Float, nullable=False)
    execution_time_ms = Column(Integer, nullable=True)
    clicked_result_ids = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=utcnow, index=True)


# ============= Session Factory =============

@asynccontextmanager
async def get_session(
    factory: Optional[async_sessionmaker] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a new database session with proper cleanup.

    Used by background processors where request-scoped sessions are unavailable.
    Ensures proper rollback on errors and explicit closure.
    """
    async with (factory or AsyncSessionLocal)() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_models(engine: Optional[AsyncEngine] = None) -> None:
    """Create tables that do not exist yet"""
    async with (engine or async_engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
