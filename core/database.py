"""
SQLAlchemy models and async session management for jobs and guides.
"""

import enum
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text, text
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.pool import StaticPool

Base = declarative_base()


# ========================================
# Enums
# ========================================

class JobStatus(enum.Enum):
    """Pipeline job status. Order of declaration is the forward order."""
    PENDING = "pending"
    DOWNLOADING = "downloading"
    EXTRACTING_AUDIO = "extracting_audio"
    TRANSCRIBING = "transcribing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ERROR)


TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.ERROR.value)


class GuideStatus(enum.Enum):
    GENERATING = "generating"
    COMPLETED = "completed"
    ERROR = "error"


def _new_id() -> str:
    return str(uuid.uuid4())


# ========================================
# Models
# ========================================

class ProcessingJob(Base):
    """One submission of one video URL by one user."""
    __tablename__ = 'jobs'

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(255), nullable=False, index=True)
    video_id = Column(String(64), nullable=False, index=True)
    video_url = Column(Text, nullable=False)

    status = Column(String(32), nullable=False, default=JobStatus.PENDING.value)
    progress = Column(Integer, nullable=False, default=0)
    step = Column(String(64), nullable=False, default=JobStatus.PENDING.value)
    error = Column(Text)
    failed_stage = Column(String(32))

    transcription_job_id = Column(String(128))
    transcript_text = Column(Text)
    transcript_words = Column(JSON)
    video_metadata = Column(JSON)
    guide_config = Column(JSON)
    guide_id = Column(String(36))

    revision = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint('progress >= 0 AND progress <= 100', name='ck_jobs_progress_range'),
        CheckConstraint(
            "status IN ('pending', 'downloading', 'extracting_audio', 'transcribing', 'completed', 'error')",
            name='ck_jobs_status'
        ),
        # At most one in-flight job per (user, video)
        Index(
            'uq_jobs_active_user_video', 'user_id', 'video_id',
            unique=True,
            sqlite_where=text("status NOT IN ('completed', 'error')"),
            postgresql_where=text("status NOT IN ('completed', 'error')"),
        ),
        Index('idx_jobs_user_created', 'user_id', 'created_at'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, include_transcript: bool = False) -> dict:
        data = {
            'job_id': self.id,
            'user_id': self.user_id,
            'video_id': self.video_id,
            'video_url': self.video_url,
            'status': self.status,
            'progress': self.progress,
            'step': self.step,
            'error': self.error,
            'failed_stage': self.failed_stage,
            'transcription_job_id': self.transcription_job_id,
            'video_metadata': self.video_metadata,
            'guide_config': self.guide_config,
            'guide_id': self.guide_id,
            'revision': self.revision,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }
        if include_transcript:
            data['transcript'] = (
                {'text': self.transcript_text, 'words': self.transcript_words or []}
                if self.transcript_text is not None else None
            )
        return data

    def __repr__(self):
        return f"<ProcessingJob {self.id} {self.video_id} {self.status} {self.progress}%>"


class Guide(Base):
    __tablename__ = 'guides'

    id = Column(String(36), primary_key=True, default=_new_id)
    video_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    job_id = Column(String(36), ForeignKey('jobs.id', ondelete='SET NULL'))

    title = Column(Text, nullable=False, default='')
    summary = Column(Text)
    keywords = Column(JSON)
    difficulty = Column(String(32))
    status = Column(String(32), nullable=False, default=GuideStatus.GENERATING.value)
    error = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    sections = relationship(
        'GuideSection',
        back_populates='guide',
        cascade='all, delete-orphan',
        order_by='GuideSection.section_order',
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('generating', 'completed', 'error')", name='ck_guides_status'
        ),
        CheckConstraint(
            "difficulty IS NULL OR difficulty IN ('beginner', 'intermediate', 'advanced')",
            name='ck_guides_difficulty'
        ),
    )

    def to_dict(self, include_sections: bool = False) -> dict:
        data = {
            'guide_id': self.id,
            'video_id': self.video_id,
            'user_id': self.user_id,
            'job_id': self.job_id,
            'title': self.title,
            'summary': self.summary,
            'keywords': self.keywords or [],
            'difficulty': self.difficulty,
            'status': self.status,
            'error': self.error,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_sections:
            data['sections'] = [s.to_dict() for s in self.sections]
        return data


class GuideSection(Base):
    __tablename__ = 'guide_sections'

    id = Column(Integer, primary_key=True, autoincrement=True)
    guide_id = Column(String(36), ForeignKey('guides.id', ondelete='CASCADE'), nullable=False, index=True)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    start_ms = Column(Integer)
    end_ms = Column(Integer)
    section_order = Column(Integer, nullable=False)

    guide = relationship('Guide', back_populates='sections')

    def to_dict(self) -> dict:
        return {
            'title': self.title,
            'content': self.content,
            'start_ms': self.start_ms,
            'end_ms': self.end_ms,
            'order': self.section_order,
        }


# ========================================
# Session management
# ========================================

class DatabaseManager:
    """Async database connection and session management."""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///data/howtube.db"):
        self.database_url = database_url
        self.engine = None
        self.session_factory = None

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith('sqlite')

    @property
    def is_memory(self) -> bool:
        return self.is_sqlite and ':memory:' in self.database_url

    async def initialize(self):
        """Initialize async database engine and session factory."""
        engine_kwargs = {
            "echo": False,
        }

        if self.is_sqlite:
            engine_kwargs["connect_args"] = {
                "check_same_thread": False,
                "timeout": 30,
            }
            if self.is_memory:
                # One shared connection, otherwise every session sees an empty database
                engine_kwargs["poolclass"] = StaticPool
            else:
                db_path = Path(self.database_url.split(":///", 1)[1])
                db_path.parent.mkdir(exist_ok=True, parents=True)
        else:
            engine_kwargs.update({
                "pool_size": 5,
                "max_overflow": 5,
                "pool_timeout": 30,
                "pool_recycle": 1800,
                "pool_pre_ping": True,
            })

        self.engine = create_async_engine(self.database_url, **engine_kwargs)

        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def get_session(self):
        """Get an async database session, committed on success."""
        if not self.session_factory:
            await self.initialize()

        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            else:
                await session.commit()

    async def close(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.session_factory = None


async def create_database(database_url: Optional[str] = None) -> DatabaseManager:
    """Create and initialize the database."""
    if database_url is None:
        from config import get_database_url
        database_url = get_database_url()
    manager = DatabaseManager(database_url)
    await manager.initialize()
    return manager


async def reset_database(database_url: Optional[str] = None) -> DatabaseManager:
    """Drop and recreate every table. Development only."""
    manager = DatabaseManager(database_url) if database_url else DatabaseManager()
    await manager.initialize()
    async with manager.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    return manager
