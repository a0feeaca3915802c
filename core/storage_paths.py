"""
Per-job working directories.

Layout:
/storage_path/
└── jobs/
    └── {job_id}/
        ├── {video_id}.mp4      # downloaded video
        └── {video_id}.mp3      # extracted audio

A job's directory is removed once the job reaches a terminal state.
"""

import logging
import re
import shutil
import threading
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r'^[A-Za-z0-9_-]+$')


class StoragePaths:
    """Job-scoped working file management."""

    def __init__(self, base_path: Optional[Path] = None):
        """
        Args:
            base_path: Override default storage path from settings
        """
        if base_path is None:
            from config import get_settings
            base_path = get_settings().storage_path
        self.base_path = Path(base_path)
        self._lock = threading.RLock()

    @property
    def jobs_root(self) -> Path:
        return self.base_path / "jobs"

    def get_job_dir(self, job_id: str, create: bool = True) -> Path:
        """Return the working directory for ``job_id``."""
        if not job_id or not _SAFE_ID.match(job_id):
            raise ValueError(f"Unsafe job id for a path: {job_id!r}")
        path = self.jobs_root / job_id
        if create:
            with self._lock:
                path.mkdir(parents=True, exist_ok=True)
        return path

    def get_audio_path(self, job_id: str, video_id: str) -> Path:
        return self.get_job_dir(job_id) / f"{video_id}.mp3"

    def cleanup_job(self, job_id: str) -> bool:
        """
        Remove a job's working directory.

        Returns:
            True if something was removed
        """
        path = self.get_job_dir(job_id, create=False)
        with self._lock:
            if not path.exists():
                return False
            try:
                shutil.rmtree(path)
            except OSError as e:
                logger.warning(f"Failed to remove working files for job {job_id}: {e}")
                return False
        logger.debug(f"Removed working files for job {job_id}")
        return True
