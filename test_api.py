"""
API tests through FastAPI's TestClient. External tools are replaced by fakes;
background processing runs to completion before each response is returned.
"""

import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from config import Settings
from conftest import (
    VIDEO_ID, VIDEO_URL, FakeAudioExtractor, FakeDownloader, FakeGuideGenerator, FakeTranscriber
)
from core.downloader import DownloadError
from core.guide_storage import GuideStorage
from core.job_store import JobStore
from core.storage_paths import StoragePaths
from workers.orchestrator import PipelineOrchestrator

OWNER = {"X-User-Id": "user-1"}
STRANGER = {"X-User-Id": "user-2"}


class IdleOrchestrator(PipelineOrchestrator):
    """Accepts jobs but never starts them, so they stay pending."""

    async def process_job(self, job_id, url=None, user_id=None, guide_config=None):
        return "pending"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        storage_path=tmp_path / "work",
        sse_keepalive_seconds=0.05,
    )


@pytest.fixture
def make_client(settings):
    clients = []

    def factory(orchestrator_cls=PipelineOrchestrator, **fakes):
        def build(app_settings, manager, broadcaster):
            kwargs = dict(
                job_store=JobStore(manager),
                guide_storage=GuideStorage(manager),
                broadcaster=broadcaster,
                downloader=FakeDownloader(),
                audio_extractor=FakeAudioExtractor(),
                transcriber=FakeTranscriber(),
                guide_generator=FakeGuideGenerator(),
                storage_paths=StoragePaths(app_settings.storage_path),
                poll_interval=0,
                max_poll_attempts=5,
            )
            kwargs.update(fakes)
            return orchestrator_cls(**kwargs)

        client = TestClient(create_app(settings, orchestrator_factory=build))
        client.__enter__()
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.__exit__(None, None, None)


def submit(client, url=VIDEO_URL, headers=OWNER, **body):
    return client.post("/jobs", json={"url": url, **body}, headers=headers)


class TestJobs:

    def test_health(self, make_client):
        response = make_client().get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_requires_identity(self, make_client):
        client = make_client()
        assert submit(client, headers={}).status_code == 401
        assert client.get("/jobs").status_code == 401

    def test_invalid_url_rejected_without_job(self, make_client):
        client = make_client()

        response = submit(client, url="https://example.com/watch")

        assert response.status_code == 400
        assert response.json()["category"] == "validation"
        assert client.get("/jobs", headers=OWNER).json()["total"] == 0

    def test_invalid_guide_config_rejected(self, make_client):
        response = submit(make_client(), guide_config={"style": "poetic"})
        assert response.status_code == 400

    def test_submit_runs_pipeline(self, make_client):
        client = make_client()

        response = submit(client, guide_config={"target_audience": "beginner"})

        assert response.status_code == 202
        body = response.json()
        assert body["video_id"] == VIDEO_ID
        assert body["status"] == "pending"

        job = client.get(f"/jobs/{body['job_id']}", headers=OWNER).json()
        assert job["status"] == "completed"
        assert job["progress"] == 100
        assert job["guide_config"]["target_audience"] == "beginner"
        assert job["transcript"]

        guide = client.get(f"/guides/{job['guide_id']}", headers=OWNER).json()
        assert guide["title"] == "Making Bread"
        assert guide["difficulty"] == "beginner"
        assert [s["title"] for s in guide["sections"]] == ["Mixing", "Kneading"]

    def test_failed_job_reports_stage(self, make_client):
        client = make_client(downloader=FakeDownloader(error=DownloadError("Download failed (unavailable): Private video")))

        job_id = submit(client).json()["job_id"]

        job = client.get(f"/jobs/{job_id}", headers=OWNER).json()
        assert job["status"] == "error"
        assert job["failed_stage"] == "downloading"
        assert "Private video" in job["error"]

    def test_duplicate_submission_conflict(self, make_client):
        client = make_client(orchestrator_cls=IdleOrchestrator)

        first = submit(client)
        second = submit(client, url=f"https://youtu.be/{VIDEO_ID}")

        assert first.status_code == 202
        assert second.status_code == 409
        assert second.json()["existing_job_id"] == first.json()["job_id"]
        assert submit(client, headers=STRANGER).status_code == 202

    def test_job_ownership(self, make_client):
        client = make_client()
        job_id = submit(client).json()["job_id"]

        assert client.get(f"/jobs/{job_id}", headers=STRANGER).status_code == 403
        assert client.get("/jobs/not-a-job", headers=OWNER).status_code == 404
        assert client.get("/jobs", headers=STRANGER).json()["total"] == 0

    def test_delete_job(self, make_client):
        client = make_client(orchestrator_cls=IdleOrchestrator)
        pending_id = submit(client).json()["job_id"]
        assert client.delete(f"/jobs/{pending_id}", headers=OWNER).status_code == 409

        client = make_client()
        job_id = submit(client, url="https://youtu.be/aaaaaaaaaaa").json()["job_id"]
        assert client.delete(f"/jobs/{job_id}", headers=STRANGER).status_code == 403
        assert client.delete(f"/jobs/{job_id}", headers=OWNER).status_code == 200
        assert client.get(f"/jobs/{job_id}", headers=OWNER).status_code == 404


class TestEvents:

    def test_stream_of_finished_job_sends_snapshot_and_closes(self, make_client):
        client = make_client()
        job_id = submit(client).json()["job_id"]

        response = client.get(f"/jobs/{job_id}/events", headers=OWNER)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        frames = [f for f in response.text.split("\n\n") if f.startswith("data: ")]
        assert len(frames) == 1
        event = json.loads(frames[0][len("data: "):])
        assert event["type"] == "status"
        assert event["job_id"] == job_id
        assert event["status"] == "completed"
        assert event["progress"] == 100
        assert event["transcript"]

        assert client.app.state.broadcaster.observer_count(job_id) == 0

    def test_stream_requires_ownership(self, make_client):
        client = make_client()
        job_id = submit(client).json()["job_id"]

        assert client.get(f"/jobs/{job_id}/events", headers=STRANGER).status_code == 403
        assert client.get("/jobs/missing/events", headers=OWNER).status_code == 404
        assert client.app.state.broadcaster.observer_count(job_id) == 0
        assert client.app.state.broadcaster.observer_count("missing") == 0


class TestGuides:

    def test_list_and_filter(self, make_client):
        client = make_client()
        submit(client)
        submit(client, url="https://youtu.be/aaaaaaaaaaa")

        assert client.get("/guides", headers=OWNER).json()["total"] == 2
        filtered = client.get("/guides", params={"video_id": VIDEO_ID}, headers=OWNER).json()
        assert [g["video_id"] for g in filtered["guides"]] == [VIDEO_ID]
        assert client.get("/guides", headers=STRANGER).json()["total"] == 0

    def test_delete_checks_ownership_first(self, make_client):
        client = make_client()
        job_id = submit(client).json()["job_id"]
        guide_id = client.get(f"/jobs/{job_id}", headers=OWNER).json()["guide_id"]

        response = client.delete(f"/guides/{guide_id}", headers=STRANGER)
        assert response.status_code == 403
        assert response.json()["category"] == "authorization"
        assert len(client.get(f"/guides/{guide_id}", headers=OWNER).json()["sections"]) == 2

        assert client.delete(f"/guides/{guide_id}", headers=OWNER).status_code == 200
        assert client.get(f"/guides/{guide_id}", headers=OWNER).status_code == 404


class TestLiveEvents:

    @pytest.mark.asyncio
    async def test_stream_follows_running_job(self, settings):
        release = asyncio.Event()

        def build(app_settings, manager, broadcaster):
            return PipelineOrchestrator(
                job_store=JobStore(manager),
                guide_storage=GuideStorage(manager),
                broadcaster=broadcaster,
                downloader=FakeDownloader(),
                audio_extractor=FakeAudioExtractor(),
                transcriber=FakeTranscriber(),
                guide_generator=FakeGuideGenerator(block=release),
                storage_paths=StoragePaths(app_settings.storage_path),
                poll_interval=0,
                max_poll_attempts=5,
            )

        app = create_app(settings, orchestrator_factory=build)
        async with app.router.lifespan_context(app):
            orchestrator = app.state.orchestrator
            status_broadcaster = app.state.broadcaster
            job_id = (await orchestrator.submit(VIDEO_URL, "user-1"))["job_id"]

            watcher = status_broadcaster.subscribe(job_id)
            pipeline = asyncio.create_task(orchestrator.process_job(job_id))
            while True:
                delivered = await watcher.get(timeout=5)
                assert delivered is not None
                if delivered.step == "generating_guide":
                    break

            snapshot_read = asyncio.Event()
            get_owned = orchestrator.job_store.get_owned

            async def get_owned_and_signal(*args, **kwargs):
                job = await get_owned(*args, **kwargs)
                snapshot_read.set()
                return job

            orchestrator.job_store.get_owned = get_owned_and_signal

            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
                stream = asyncio.create_task(client.get(f"/jobs/{job_id}/events", headers=OWNER))
                await asyncio.wait_for(snapshot_read.wait(), timeout=5)

                # Already covered by the snapshot; must not be sent again
                status_broadcaster.publish(job_id, delivered)
                release.set()
                response = await asyncio.wait_for(stream, timeout=10)

            assert await pipeline == "completed"
            status_broadcaster.unsubscribe(job_id, watcher)

            assert response.status_code == 200
            events = [
                json.loads(frame[len("data: "):])
                for frame in response.text.split("\n\n")
                if frame.startswith("data: ")
            ]
            assert [e["step"] for e in events] == ["generating_guide", "pipeline_complete"]
            revisions = [e["revision"] for e in events]
            assert revisions == sorted(set(revisions))
            assert [e["status"] for e in events].count("completed") == 1
            assert events[-1]["status"] == "completed"
            assert events[0]["transcript"]["text"]
            assert events[0]["transcript"]["words"]
            assert status_broadcaster.observer_count(job_id) == 0
