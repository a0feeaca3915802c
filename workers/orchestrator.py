"""
Pipeline orchestrator: drives one job from submission to a terminal state.

Stages run strictly in order for a job:

    downloading -> extracting_audio -> transcribing -> (guide generation) -> completed

Every transition is persisted through the JobStore first and then published
through the StatusBroadcaster. Any exception, including cancellation, ends the
job in ``error`` with the failed stage and a readable cause, and the job's
working directory is always removed.

A status change that cannot be stored is retried once and then treated as a
pipeline failure. Progress-only updates that cannot be stored are still
published from the in-memory snapshot and the pipeline carries on.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from core.audio import AudioExtractor
from core.broadcaster import StatusBroadcaster, StatusEvent
from core.database import DatabaseManager, JobStatus
from core.downloader import YouTubeDownloader
from core.error_handling import PipelineError, StorageError, analyze_error, describe_error
from core.guide_generator import GuideGenerator
from core.guide_storage import GuideStorage
from core.job_store import JobStore
from core.models import GuideConfig
from core.storage_paths import StoragePaths
from core.transcription import (
    PROCESSING, QUEUED, AssemblyAIClient, TranscriptionConfig, TranscriptionStatus
)
from core.url_parser import require_video_id
from workers.base import BaseWorker


class PipelineStage(Enum):
    """Stage recorded as ``failed_stage`` when a job errors."""
    DOWNLOAD = "downloading"
    EXTRACT_AUDIO = "extracting_audio"
    TRANSCRIBE = "transcribing"
    GENERATE_GUIDE = "generating_guide"


# Progress reported while the provider is working on the transcript
TRANSCRIPTION_SUBSTEPS = {
    QUEUED: (60, "transcription_queued"),
    PROCESSING: (70, "transcription_processing"),
}


@dataclass
class _Snapshot:
    """Last known state of a job, used when the store cannot be written."""
    job_id: str
    status: str = JobStatus.PENDING.value
    progress: int = 0
    step: str = JobStatus.PENDING.value
    revision: int = 0
    error: Optional[str] = None
    transcription_job_id: Optional[str] = None

    def apply(self, fields: Dict[str, Any]) -> None:
        for key in ('status', 'progress', 'step', 'error', 'transcription_job_id'):
            if key in fields:
                value = fields[key]
                setattr(self, key, value.value if isinstance(value, JobStatus) else value)
        self.revision += 1

    def to_event(self, transcript: Optional[Dict[str, Any]] = None) -> StatusEvent:
        return StatusEvent(
            job_id=self.job_id,
            status=self.status,
            progress=self.progress,
            step=self.step,
            revision=self.revision,
            error=self.error,
            transcription_job_id=self.transcription_job_id,
            transcript=transcript,
        )


class PipelineOrchestrator(BaseWorker):
    """
    Runs the video-to-guide pipeline for individual jobs.

    One call to ``process_job`` handles one job. Different jobs may be
    processed concurrently; they share only the job store and the broadcaster.
    """

    def __init__(
        self,
        job_store: JobStore,
        guide_storage: GuideStorage,
        broadcaster: StatusBroadcaster,
        downloader: YouTubeDownloader,
        audio_extractor: AudioExtractor,
        transcriber: AssemblyAIClient,
        guide_generator: GuideGenerator,
        storage_paths: StoragePaths,
        poll_interval: float = 2.0,
        max_poll_attempts: int = 300,
        transcription_config: Optional[TranscriptionConfig] = None,
        default_guide_config: Optional[GuideConfig] = None,
        delete_remote_transcripts: bool = False,
        log_level: str = "INFO",
    ):
        super().__init__("orchestrator", log_level=log_level)
        self.job_store = job_store
        self.guide_storage = guide_storage
        self.broadcaster = broadcaster
        self.downloader = downloader
        self.audio_extractor = audio_extractor
        self.transcriber = transcriber
        self.guide_generator = guide_generator
        self.storage_paths = storage_paths
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.transcription_config = transcription_config or TranscriptionConfig()
        self.default_guide_config = default_guide_config or GuideConfig()
        self.delete_remote_transcripts = delete_remote_transcripts

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def submit(self, url: str, user_id: str,
                     guide_config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Validate a submission and create its pending job.

        Raises:
            ValidationError: Bad URL or guide options; nothing is created
            DuplicateJobError: The user already has this video in flight
        """
        video_id = require_video_id(url)
        config = GuideConfig.from_dict(guide_config, defaults=self.default_guide_config)

        job_id = await self.job_store.create(
            video_id=video_id,
            user_id=user_id,
            video_url=url.strip(),
            guide_config=config.to_dict(),
        )
        self.log_with_context("Accepted submission", extra_context={"job_id": job_id, "video_id": video_id})
        return {'job_id': job_id, 'video_id': video_id, 'status': JobStatus.PENDING.value}

    # ------------------------------------------------------------------
    # BaseWorker interface
    # ------------------------------------------------------------------

    def validate_input(self, input_data: Dict[str, Any]) -> bool:
        return bool(input_data.get('job_id'))

    async def execute(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        final_status = await self.process_job(
            input_data['job_id'],
            url=input_data.get('url'),
            user_id=input_data.get('user_id'),
            guide_config=input_data.get('guide_config'),
        )
        return {'job_id': input_data['job_id'], 'final_status': final_status}

    def handle_error(self, error: Exception) -> Dict[str, Any]:
        return analyze_error(error, {'worker': self.name}).to_dict()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def process_job(
        self,
        job_id: str,
        url: Optional[str] = None,
        user_id: Optional[str] = None,
        guide_config: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Drive a pending job to a terminal state.

        Failures are recorded on the job rather than raised; cancellation is
        recorded and then re-raised.

        Returns:
            The terminal status reached (``completed`` or ``error``), or the
            current status if the job was not pending
        """
        job = await self.job_store.get(job_id)
        if job.status != JobStatus.PENDING.value:
            self.log_with_context(
                f"Job is {job.status}, not pending; skipping",
                level="WARNING",
                extra_context={"job_id": job_id}
            )
            return job.status

        url = url or job.video_url
        user_id = user_id or job.user_id
        video_id = job.video_id
        config = GuideConfig.from_dict(guide_config or job.guide_config, defaults=self.default_guide_config)

        snapshot = _Snapshot(job_id=job_id, revision=job.revision or 0)
        stage = PipelineStage.DOWNLOAD
        guide_id = None

        self.log_with_context("Processing job", extra_context={"job_id": job_id, "video_id": video_id})

        try:
            with self._execution_timer():
                # Stage 1: download
                await self._transition(snapshot, status=JobStatus.DOWNLOADING, progress=0, step="downloading")
                work_dir = self.storage_paths.get_job_dir(job_id)
                download = await self.downloader.download(url, work_dir, video_id)

                # Stage 2: audio extraction
                stage = PipelineStage.EXTRACT_AUDIO
                await self._transition(
                    snapshot,
                    status=JobStatus.EXTRACTING_AUDIO, progress=25, step="extracting_audio",
                    video_metadata=download.info.to_dict(),
                )
                audio_path = await self.audio_extractor.extract(
                    download.video_path, self.storage_paths.get_audio_path(job_id, video_id)
                )

                # Stage 3: transcription
                stage = PipelineStage.TRANSCRIBE
                await self._transition(
                    snapshot, status=JobStatus.TRANSCRIBING, progress=50, step="submitting_transcription"
                )
                external_id = await self.transcriber.submit(audio_path, self.transcription_config)
                await self._transition(
                    snapshot, progress=55, step="transcription_submitted", transcription_job_id=external_id
                )

                async def on_status_change(status: TranscriptionStatus):
                    substep = TRANSCRIPTION_SUBSTEPS.get(status.status)
                    if substep:
                        progress, step = substep
                        await self._transition(snapshot, progress=progress, step=step)

                transcript = await self.transcriber.wait_until_terminal(
                    external_id,
                    interval_seconds=self.poll_interval,
                    max_attempts=self.max_poll_attempts,
                    on_status_change=on_status_change,
                )
                await self._transition(
                    snapshot,
                    include_transcript=True,
                    progress=80, step="transcription_complete",
                    transcript_text=transcript.text,
                    transcript_words=transcript.words_as_dicts(),
                )
                if self.delete_remote_transcripts:
                    await self.transcriber.delete(external_id)

                # Stage 4: guide generation
                stage = PipelineStage.GENERATE_GUIDE
                guide_id = await self.guide_storage.create_guide(video_id, user_id, job_id)
                await self._transition(snapshot, progress=85, step="generating_guide", guide_id=guide_id)
                generated = await self.guide_generator.generate_guide(transcript.text, config, transcript.words)
                await self.guide_storage.save_guide(guide_id, generated)

                await self._transition(
                    snapshot, status=JobStatus.COMPLETED, progress=100, step="pipeline_complete"
                )

            self.log_with_context("Job completed", extra_context={"job_id": job_id, "guide_id": guide_id})
            return JobStatus.COMPLETED.value

        except asyncio.CancelledError:
            await self._fail(snapshot, stage, "Processing was cancelled", guide_id)
            raise
        except Exception as e:
            await self._fail(snapshot, stage, describe_error(e), guide_id, error=e)
            return JobStatus.ERROR.value
        finally:
            await asyncio.to_thread(self.storage_paths.cleanup_job, job_id)

    async def _persist(self, job_id: str, fields: Dict[str, Any]):
        """Write one state change, retrying once when it changes the status."""
        attempts = 2 if 'status' in fields else 1
        for attempt in range(1, attempts + 1):
            try:
                return await self.job_store.update_state(job_id, **fields)
            except StorageError as e:
                self.log_with_context(
                    f"Could not persist transition to {fields.get('step')} "
                    f"(attempt {attempt}/{attempts}): {e.message}",
                    level="ERROR",
                    extra_context={"job_id": job_id}
                )
                if attempt == attempts:
                    raise

    async def _transition(self, snapshot: _Snapshot, include_transcript: bool = False, **fields: Any) -> None:
        """
        Persist then publish one state change.

        Raises:
            StorageError: A status change could not be stored
        """
        if 'status' in fields and isinstance(fields['status'], JobStatus):
            fields['status'] = fields['status'].value

        try:
            job = await self._persist(snapshot.job_id, fields)
        except StorageError:
            if 'status' in fields:
                raise
            snapshot.apply(fields)
            transcript = None
            if include_transcript:
                transcript = {
                    'text': fields.get('transcript_text'),
                    'words': fields.get('transcript_words') or [],
                }
            event = snapshot.to_event(transcript=transcript)
        else:
            snapshot.apply(fields)
            snapshot.revision = job.revision
            event = StatusEvent.from_job(job, include_transcript=include_transcript)

        self.broadcaster.publish(snapshot.job_id, event)

    async def _fail(self, snapshot: _Snapshot, stage: PipelineStage, message: str,
                    guide_id: Optional[str], error: Optional[BaseException] = None) -> None:
        """Record the job as failed, publish the error event and mark the guide."""
        self.log_with_context(
            f"Job failed during {stage.value}: {message}",
            level="ERROR",
            extra_context={"job_id": snapshot.job_id, "error_type": type(error).__name__ if error else None}
        )

        fields = {
            'status': JobStatus.ERROR.value,
            'step': "error",
            'error': message,
            'failed_stage': stage.value,
        }
        try:
            job = await self._persist(snapshot.job_id, fields)
        except PipelineError as e:
            self.log_with_context(
                f"Could not persist failure: {e.message}", level="ERROR",
                extra_context={"job_id": snapshot.job_id}
            )
            snapshot.apply(fields)
            event = snapshot.to_event()
        else:
            snapshot.apply(fields)
            snapshot.revision = job.revision
            event = StatusEvent.from_job(job)

        self.broadcaster.publish(snapshot.job_id, event)

        if guide_id:
            try:
                await self.guide_storage.mark_guide_error(guide_id, message)
            except PipelineError as e:
                self.log_with_context(f"Could not mark guide {guide_id} as failed: {e.message}", level="ERROR")


def build_orchestrator(settings, db_manager: DatabaseManager,
                       broadcaster: StatusBroadcaster) -> PipelineOrchestrator:
    """Wire a production orchestrator from settings."""
    return PipelineOrchestrator(
        job_store=JobStore(db_manager),
        guide_storage=GuideStorage(db_manager),
        broadcaster=broadcaster,
        downloader=YouTubeDownloader(
            format_str=settings.download_format,
            socket_timeout=settings.download_socket_timeout,
        ),
        audio_extractor=AudioExtractor(
            timeout=settings.audio_extraction_timeout,
            ffmpeg_binary=settings.ffmpeg_binary,
        ),
        transcriber=AssemblyAIClient(
            api_key=settings.assemblyai_api_key,
            base_url=settings.assemblyai_base_url,
            request_timeout=settings.transcription_request_timeout,
        ),
        guide_generator=GuideGenerator(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            temperature=settings.openai_temperature,
            keywords_temperature=settings.keywords_temperature,
        ),
        storage_paths=StoragePaths(settings.storage_path),
        poll_interval=settings.transcription_poll_interval,
        max_poll_attempts=settings.transcription_max_attempts,
        transcription_config=TranscriptionConfig(language_code=settings.transcription_language),
        default_guide_config=GuideConfig(
            style=settings.guide_style,
            target_audience=settings.guide_target_audience,
            max_length=settings.guide_max_length,
            include_timestamps=settings.guide_include_timestamps,
        ),
        delete_remote_transcripts=settings.delete_remote_transcripts,
        log_level=settings.log_level.value,
    )
