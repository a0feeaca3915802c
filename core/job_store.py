"""
Persistent job store for the video-to-guide pipeline.

The store owns the job state machine: status only ever moves forward along
pending -> downloading -> extracting_audio -> transcribing -> completed, may
jump to error from any non-terminal state, and a terminal job is immutable.
Every accepted update bumps ``revision`` so that status consumers can order
what they have already seen against what they receive.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import and_, delete, desc, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .database import TERMINAL_STATUSES, DatabaseManager, JobStatus, ProcessingJob
from .error_handling import (
    AuthorizationError, DuplicateJobError, InvalidTransitionError, JobStateError,
    NotFoundError, StorageError, ValidationError
)

# Forward order of non-error statuses
STATUS_ORDER = [
    JobStatus.PENDING,
    JobStatus.DOWNLOADING,
    JobStatus.EXTRACTING_AUDIO,
    JobStatus.TRANSCRIBING,
    JobStatus.COMPLETED,
]

UPDATABLE_FIELDS = {
    'status', 'progress', 'step', 'error', 'failed_stage', 'transcription_job_id',
    'transcript_text', 'transcript_words', 'video_metadata', 'guide_id',
}


def check_transition(current: Union[JobStatus, str], new: Union[JobStatus, str]) -> None:
    """
    Raise InvalidTransitionError unless ``current -> new`` is allowed.

    Staying in the same non-terminal status is allowed (progress and step
    updates within a stage).
    """
    current = JobStatus(current)
    new = JobStatus(new)

    if current.is_terminal:
        raise InvalidTransitionError(
            f"Job is already {current.value}; cannot move to {new.value}"
        )
    if new == JobStatus.ERROR:
        return
    if STATUS_ORDER.index(new) < STATUS_ORDER.index(current):
        raise InvalidTransitionError(
            f"Cannot move job backwards from {current.value} to {new.value}"
        )


class JobStore:
    """
    Async job repository backed by SQLAlchemy.

    Features:
    - Admission control (one in-flight job per user and video)
    - Forward-only status transitions with terminal immutability
    - Ownership checks for reads and deletes
    - Cleanup of old terminal jobs
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

        self.logger = logging.getLogger("store.JobStore")
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

    async def create(
        self,
        video_id: str,
        user_id: str,
        video_url: str,
        guide_config: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Create a pending job.

        Args:
            video_id: Platform video identifier
            user_id: Id of the authenticated submitter
            video_url: URL as submitted
            guide_config: Guide options captured at submission time

        Returns:
            The new job id

        Raises:
            DuplicateJobError: A non-terminal job exists for the same user and video
            StorageError: If the database operation fails
        """
        if not video_id or not user_id or not video_url:
            raise ValidationError("video_id, user_id and video_url are required")

        try:
            async with self.db_manager.get_session() as session:
                existing = await self._find_active(session, user_id, video_id)
                if existing:
                    self.logger.info(
                        f"Rejected duplicate submission of {video_id} for user {user_id} "
                        f"(active job {existing.id}, status {existing.status})"
                    )
                    raise DuplicateJobError(
                        f"Video {video_id} is already being processed",
                        existing_job_id=existing.id,
                    )

                job = ProcessingJob(
                    user_id=user_id,
                    video_id=video_id,
                    video_url=video_url,
                    status=JobStatus.PENDING.value,
                    progress=0,
                    step=JobStatus.PENDING.value,
                    guide_config=guide_config,
                    revision=0,
                )
                session.add(job)
                await session.flush()
                job_id = job.id

            self.logger.info(f"Created job {job_id} for video {video_id} (user {user_id})")
            return job_id

        except IntegrityError as e:
            # Lost a race against a concurrent submission
            self.logger.warning(f"Duplicate job for {video_id} rejected by constraint: {e}")
            raise DuplicateJobError(f"Video {video_id} is already being processed", cause=e)
        except SQLAlchemyError as e:
            self.logger.error(f"Database error while creating job: {e}")
            raise StorageError("Could not create job", cause=e)

    async def get(self, job_id: str) -> ProcessingJob:
        """Fetch a job by id, raising NotFoundError if it does not exist."""
        try:
            async with self.db_manager.get_session() as session:
                job = await session.get(ProcessingJob, job_id)
        except SQLAlchemyError as e:
            self.logger.error(f"Database error while loading job {job_id}: {e}")
            raise StorageError(f"Could not load job {job_id}", cause=e)

        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def get_owned(self, job_id: str, user_id: str) -> ProcessingJob:
        """Fetch a job and check that ``user_id`` owns it."""
        job = await self.get(job_id)
        if job.user_id != user_id:
            raise AuthorizationError(f"Job {job_id} does not belong to this user")
        return job

    async def update_state(self, job_id: str, **fields: Any) -> ProcessingJob:
        """
        Apply a partial update to a job.

        Raises:
            NotFoundError: Unknown job
            InvalidTransitionError: The job is terminal or the status would move backwards
            ValidationError: Unknown field or progress outside 0..100
            StorageError: If the database operation fails
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update job fields: {', '.join(sorted(unknown))}")

        if 'status' in fields:
            fields['status'] = JobStatus(fields['status']).value
        if 'progress' in fields:
            progress = fields['progress']
            if not isinstance(progress, int) or not 0 <= progress <= 100:
                raise ValidationError(f"progress must be an integer in 0..100, got {progress!r}")

        try:
            async with self.db_manager.get_session() as session:
                job = await session.get(ProcessingJob, job_id, with_for_update=True)
                if job is None:
                    raise NotFoundError(f"Job {job_id} not found")

                new_status = fields.get('status', job.status)
                check_transition(job.status, new_status)

                for key, value in fields.items():
                    setattr(job, key, value)

                job.revision = (job.revision or 0) + 1
                job.updated_at = datetime.utcnow()
                if new_status in TERMINAL_STATUSES:
                    job.completed_at = job.updated_at

            self.logger.debug(
                f"Job {job_id} -> {job.status} {job.progress}% ({job.step}) rev {job.revision}"
            )
            return job

        except SQLAlchemyError as e:
            self.logger.error(f"Database error while updating job {job_id}: {e}")
            raise StorageError(f"Could not update job {job_id}", cause=e)

    async def find_active(self, user_id: str, video_id: str) -> Optional[ProcessingJob]:
        """Return the caller's in-flight job for ``video_id`` if there is one."""
        try:
            async with self.db_manager.get_session() as session:
                return await self._find_active(session, user_id, video_id)
        except SQLAlchemyError as e:
            self.logger.error(f"Database error while looking up active job: {e}")
            raise StorageError("Could not look up active jobs", cause=e)

    async def list_for_user(self, user_id: str, video_id: Optional[str] = None) -> List[ProcessingJob]:
        """List a user's jobs, newest first."""
        stmt = select(ProcessingJob).where(ProcessingJob.user_id == user_id)
        if video_id:
            stmt = stmt.where(ProcessingJob.video_id == video_id)
        stmt = stmt.order_by(desc(ProcessingJob.created_at))

        try:
            async with self.db_manager.get_session() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(f"Database error while listing jobs: {e}")
            raise StorageError("Could not list jobs", cause=e)

    async def delete(self, job_id: str, user_id: str) -> None:
        """Delete a finished job owned by ``user_id``."""
        job = await self.get_owned(job_id, user_id)
        if not job.is_terminal:
            raise JobStateError(f"Job {job_id} is still {job.status} and cannot be deleted")

        try:
            async with self.db_manager.get_session() as session:
                await session.execute(delete(ProcessingJob).where(ProcessingJob.id == job_id))
        except SQLAlchemyError as e:
            self.logger.error(f"Database error while deleting job {job_id}: {e}")
            raise StorageError(f"Could not delete job {job_id}", cause=e)

        self.logger.info(f"Deleted job {job_id}")

    async def cleanup_old_jobs(self, days: int = 30) -> int:
        """
        Remove terminal jobs finished more than ``days`` ago.

        Returns:
            Number of jobs removed
        """
        cutoff = datetime.utcnow() - timedelta(days=days)
        stmt = delete(ProcessingJob).where(
            and_(
                ProcessingJob.status.in_(TERMINAL_STATUSES),
                ProcessingJob.completed_at < cutoff
            )
        )

        try:
            async with self.db_manager.get_session() as session:
                result = await session.execute(stmt)
                removed = result.rowcount or 0
        except SQLAlchemyError as e:
            self.logger.error(f"Database error during job cleanup: {e}")
            raise StorageError("Could not clean up old jobs", cause=e)

        if removed:
            self.logger.info(f"Cleaned up {removed} jobs older than {days} days")
        return removed

    async def _find_active(self, session, user_id: str, video_id: str) -> Optional[ProcessingJob]:
        stmt = select(ProcessingJob).where(
            and_(
                ProcessingJob.user_id == user_id,
                ProcessingJob.video_id == video_id,
                ProcessingJob.status.notin_(TERMINAL_STATUSES)
            )
        ).limit(1)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()
