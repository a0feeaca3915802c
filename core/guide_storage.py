"""
Persistence for generated guides and their ordered sections.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import desc, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from .database import DatabaseManager, Guide, GuideSection, GuideStatus
from .error_handling import AuthorizationError, NotFoundError, StorageError
from .models import Difficulty, GeneratedGuide

logger = logging.getLogger(__name__)


def to_difficulty(value: Optional[str]) -> str:
    """Coerce a free-form audience label into a stored difficulty."""
    if value in {d.value for d in Difficulty}:
        return value
    return Difficulty.BEGINNER.value


class GuideStorage:
    """Guide repository. Reads and deletes are scoped to the owning user."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def create_guide(self, video_id: str, user_id: str, job_id: Optional[str] = None) -> str:
        """Insert an empty guide in ``generating`` state and return its id."""
        try:
            async with self.db_manager.get_session() as session:
                guide = Guide(
                    video_id=video_id,
                    user_id=user_id,
                    job_id=job_id,
                    title='',
                    status=GuideStatus.GENERATING.value,
                )
                session.add(guide)
                await session.flush()
                guide_id = guide.id
        except SQLAlchemyError as e:
            logger.error(f"Failed to create guide for {video_id}: {e}")
            raise StorageError("Could not create guide", cause=e)

        logger.info(f"Created guide {guide_id} for video {video_id}")
        return guide_id

    async def save_guide(self, guide_id: str, generated: GeneratedGuide) -> Guide:
        """Store generated content, replacing any existing sections."""
        try:
            async with self.db_manager.get_session() as session:
                guide = await self._load(session, guide_id)

                guide.title = generated.title
                guide.summary = generated.summary
                guide.keywords = list(generated.keywords)
                guide.difficulty = to_difficulty(generated.difficulty)
                guide.status = GuideStatus.COMPLETED.value
                guide.error = None
                guide.updated_at = datetime.utcnow()

                guide.sections.clear()
                await session.flush()
                for order, section in enumerate(generated.sections):
                    guide.sections.append(GuideSection(
                        title=section.title,
                        content=section.content,
                        start_ms=section.start_ms,
                        end_ms=section.end_ms,
                        section_order=order,
                    ))
        except SQLAlchemyError as e:
            logger.error(f"Failed to save guide {guide_id}: {e}")
            raise StorageError(f"Could not save guide {guide_id}", cause=e)

        logger.info(f"Saved guide {guide_id} with {len(generated.sections)} sections")
        return guide

    async def mark_guide_error(self, guide_id: str, error: str) -> None:
        try:
            async with self.db_manager.get_session() as session:
                guide = await self._load(session, guide_id)
                if guide.status == GuideStatus.COMPLETED.value:
                    return
                guide.status = GuideStatus.ERROR.value
                guide.error = error
                guide.updated_at = datetime.utcnow()
        except SQLAlchemyError as e:
            logger.error(f"Failed to mark guide {guide_id} as failed: {e}")
            raise StorageError(f"Could not update guide {guide_id}", cause=e)

    async def get_guide(self, guide_id: str, user_id: str) -> Guide:
        """Load a guide with its sections, checking ownership."""
        try:
            async with self.db_manager.get_session() as session:
                guide = await self._load(session, guide_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load guide {guide_id}: {e}")
            raise StorageError(f"Could not load guide {guide_id}", cause=e)

        if guide.user_id != user_id:
            raise AuthorizationError(f"Guide {guide_id} does not belong to this user")
        return guide

    async def get_guide_sections(self, guide_id: str, user_id: str) -> List[GuideSection]:
        guide = await self.get_guide(guide_id, user_id)
        return list(guide.sections)

    async def list_guides(self, user_id: str, video_id: Optional[str] = None) -> List[Guide]:
        """List a user's guides, newest first."""
        stmt = select(Guide).where(Guide.user_id == user_id)
        if video_id:
            stmt = stmt.where(Guide.video_id == video_id)
        stmt = stmt.order_by(desc(Guide.created_at))

        try:
            async with self.db_manager.get_session() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Failed to list guides for {user_id}: {e}")
            raise StorageError("Could not list guides", cause=e)

    async def delete_guide(self, guide_id: str, user_id: str) -> None:
        """Delete a guide and its sections. Ownership is checked before anything is removed."""
        try:
            async with self.db_manager.get_session() as session:
                guide = await self._load(session, guide_id)
                if guide.user_id != user_id:
                    raise AuthorizationError(f"Guide {guide_id} does not belong to this user")
                await session.delete(guide)
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete guide {guide_id}: {e}")
            raise StorageError(f"Could not delete guide {guide_id}", cause=e)

        logger.info(f"Deleted guide {guide_id}")

    async def _load(self, session, guide_id: str) -> Guide:
        stmt = select(Guide).options(selectinload(Guide.sections)).where(Guide.id == guide_id)
        result = await session.execute(stmt)
        guide = result.scalar_one_or_none()
        if guide is None:
            raise NotFoundError(f"Guide {guide_id} not found")
        return guide
