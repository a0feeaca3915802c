"""
Shared fixtures: a throwaway database per test and fakes for the external
tools (yt-dlp, ffmpeg, AssemblyAI, OpenAI).
"""

import asyncio
from pathlib import Path
from typing import List, Optional

import pytest
import pytest_asyncio

from core.audio import AudioExtractionError
from core.broadcaster import StatusBroadcaster
from core.database import DatabaseManager
from core.downloader import DownloadResult
from core.guide_storage import GuideStorage
from core.job_store import JobStore
from core.models import (
    GeneratedGuide, GuideSectionContent, TranscriptionResult, TranscriptWord, VideoInfo
)
from core.storage_paths import StoragePaths
from core.transcription import (
    COMPLETED, ERROR, PROCESSING, QUEUED, TranscriptionFailedError, TranscriptionStatus
)
from workers.orchestrator import PipelineOrchestrator

VIDEO_ID = "dQw4w9WgXcQ"
VIDEO_URL = f"https://www.youtube.com/watch?v={VIDEO_ID}"


class FakeDownloader:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls = []

    async def download(self, url, work_dir: Path, video_id: str) -> DownloadResult:
        self.calls.append(url)
        if self.error:
            raise self.error
        work_dir.mkdir(parents=True, exist_ok=True)
        path = work_dir / f"{video_id}.mp4"
        path.write_bytes(b"fake video")
        return DownloadResult(video_path=path, info=VideoInfo(video_id=video_id, title="Fake video", duration=42))


class FakeAudioExtractor:
    def __init__(self, error: Optional[Exception] = None, empty: bool = False):
        self.error = error
        self.empty = empty

    async def extract(self, video_path: Path, output_path: Path) -> Path:
        if self.error:
            raise self.error
        output_path.write_bytes(b"" if self.empty else b"fake audio")
        if self.empty:
            raise AudioExtractionError(f"Audio extraction produced no output at {output_path}")
        return output_path


class FakeTranscriber:
    """Replays a scripted list of provider statuses."""

    def __init__(self, statuses: Optional[List[str]] = None, text: str = "First mix flour and water. Then knead the dough.",
                 submit_error: Optional[Exception] = None, failure_message: str = "audio too short"):
        self.statuses = statuses or [QUEUED, PROCESSING, PROCESSING, COMPLETED]
        self.text = text
        self.submit_error = submit_error
        self.failure_message = failure_message
        self.submitted = []
        self.deleted = []

    async def submit(self, audio_location, config=None) -> str:
        if self.submit_error:
            raise self.submit_error
        self.submitted.append(str(audio_location))
        return "tx-123"

    async def wait_until_terminal(self, external_id, interval_seconds=2.0, max_attempts=300, on_status_change=None):
        last = None
        for status in self.statuses:
            if status != last and on_status_change:
                await on_status_change(TranscriptionStatus(external_id=external_id, status=status))
            last = status
            if status == ERROR:
                raise TranscriptionFailedError(f"Transcription failed: {self.failure_message}")
            await asyncio.sleep(0)
        words = [
            TranscriptWord(text=w, start_ms=i * 500, end_ms=i * 500 + 400)
            for i, w in enumerate(self.text.split())
        ]
        return TranscriptionResult(external_id=external_id, text=self.text, words=words)

    async def delete(self, external_id) -> bool:
        self.deleted.append(external_id)
        return True


class FakeGuideGenerator:
    def __init__(self, error: Optional[Exception] = None, block: Optional[asyncio.Event] = None):
        self.error = error
        self.block = block
        self.calls = []

    async def generate_guide(self, transcript, config=None, words=None) -> GeneratedGuide:
        self.calls.append((transcript, config))
        if self.block:
            await self.block.wait()
        if self.error:
            raise self.error
        return GeneratedGuide(
            title="Making Bread",
            summary="How to make bread.",
            sections=[
                GuideSectionContent(title="Mixing", content="Mix flour and water.", start_ms=0, end_ms=1900),
                GuideSectionContent(title="Kneading", content="Knead the dough."),
            ],
            keywords=["bread", "dough"],
            difficulty=config.target_audience if config else "intermediate",
        )


@pytest_asyncio.fixture
async def db_manager(tmp_path):
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def job_store(db_manager):
    return JobStore(db_manager)


@pytest.fixture
def guide_storage(db_manager):
    return GuideStorage(db_manager)


@pytest.fixture
def broadcaster():
    return StatusBroadcaster()


@pytest.fixture
def storage_paths(tmp_path):
    return StoragePaths(tmp_path / "work")


@pytest.fixture
def make_orchestrator(job_store, guide_storage, broadcaster, storage_paths):
    """Build an orchestrator around fakes; override any collaborator by keyword."""
    def factory(**overrides):
        kwargs = dict(
            job_store=job_store,
            guide_storage=guide_storage,
            broadcaster=broadcaster,
            downloader=FakeDownloader(),
            audio_extractor=FakeAudioExtractor(),
            transcriber=FakeTranscriber(),
            guide_generator=FakeGuideGenerator(),
            storage_paths=storage_paths,
            poll_interval=0,
            max_poll_attempts=5,
        )
        kwargs.update(overrides)
        return PipelineOrchestrator(**kwargs)
    return factory
