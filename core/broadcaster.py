"""
Live status fan-out for waiting clients.

The orchestrator publishes one ``StatusEvent`` per persisted transition. Each
connected observer owns a ``StatusChannel`` (an asyncio queue) registered in a
``StatusBroadcaster``. Events published while nobody is subscribed are dropped;
the job store remains the source of truth.
"""

import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .database import TERMINAL_STATUSES

logger = logging.getLogger(__name__)


@dataclass
class StatusEvent:
    """One status update for one job."""
    job_id: str
    status: str
    progress: int
    step: str
    revision: int = 0
    error: Optional[str] = None
    transcription_job_id: Optional[str] = None
    transcript: Optional[Dict[str, Any]] = None
    type: str = "status"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_job(cls, job, include_transcript: bool = False) -> "StatusEvent":
        """Build an event from a persisted ``ProcessingJob`` row."""
        transcript = None
        if include_transcript and job.transcript_text is not None:
            transcript = {'text': job.transcript_text, 'words': job.transcript_words or []}
        return cls(
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            step=job.step,
            revision=job.revision or 0,
            error=job.error,
            transcription_job_id=job.transcription_job_id,
            transcript=transcript,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'type': self.type,
            'job_id': self.job_id,
            'status': self.status,
            'progress': self.progress,
            'step': self.step,
            'revision': self.revision,
        }
        for key in ('error', 'transcription_job_id', 'transcript'):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    def to_sse(self) -> str:
        """Format as a Server-Sent Events ``data:`` frame."""
        return f"data: {json.dumps(self.to_dict())}\n\n"


class StatusChannel:
    """A single observer's queue of events for one job."""

    def __init__(self, job_id: str, maxsize: int = 0):
        self.job_id = job_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def put(self, event: StatusEvent) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Observer queue full for job {self.job_id}, event dropped")
            return False
        return True

    async def get(self, timeout: Optional[float] = None) -> Optional[StatusEvent]:
        """Wait for the next event; ``None`` when ``timeout`` elapses first."""
        if timeout is None:
            return await self.queue.get()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def close(self):
        self.closed = True


class StatusBroadcaster:
    """
    Registry of observers keyed by job id.

    The registry is injected (or created per instance) so that tests and
    separate apps never share observers. Several observers may watch the same
    job; each receives every event published after it subscribed.
    """

    def __init__(self, registry: Optional[Dict[str, List[StatusChannel]]] = None):
        self._registry = registry if registry is not None else {}
        self._lock = threading.Lock()

    def subscribe(self, job_id: str) -> StatusChannel:
        channel = StatusChannel(job_id)
        with self._lock:
            self._registry.setdefault(job_id, []).append(channel)
        logger.debug(f"Observer subscribed to job {job_id}")
        return channel

    def unsubscribe(self, job_id: str, channel: Optional[StatusChannel] = None) -> None:
        """Remove one observer, or every observer of ``job_id`` when ``channel`` is None."""
        with self._lock:
            channels = self._registry.get(job_id)
            if not channels:
                return
            if channel is None:
                removed = self._registry.pop(job_id)
            else:
                removed = [c for c in channels if c is channel]
                remaining = [c for c in channels if c is not channel]
                if remaining:
                    self._registry[job_id] = remaining
                else:
                    self._registry.pop(job_id, None)
        for c in removed:
            c.close()

    def publish(self, job_id: str, event: StatusEvent) -> int:
        """
        Deliver ``event`` to every observer of ``job_id``.

        Returns:
            Number of observers the event was delivered to
        """
        with self._lock:
            channels = list(self._registry.get(job_id, ()))
        if not channels:
            logger.debug(f"No observers for job {job_id}, dropping {event.step}")
            return 0
        return sum(1 for channel in channels if channel.put(event))

    def observer_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._registry.get(job_id, ()))
