"""Tests for the AssemblyAI client, with the HTTP API mocked by respx."""

import json

import httpx
import pytest
import respx

from core.transcription import (
    AssemblyAIClient, TranscriptionConfig, TranscriptionFailedError, TranscriptionStatusError,
    TranscriptionSubmitError, TranscriptionTimeoutError
)

BASE = "https://api.assemblyai.com/v2"


async def no_sleep(seconds):
    return None


@pytest.fixture
def client():
    return AssemblyAIClient(api_key="test-key", sleep=no_sleep)


def status_response(status, **extra):
    return httpx.Response(200, json={"id": "tx-1", "status": status, **extra})


class TestSubmit:

    @pytest.mark.asyncio
    @respx.mock
    async def test_submit_remote_url(self, client):
        route = respx.post(f"{BASE}/transcript").mock(
            return_value=httpx.Response(200, json={"id": "tx-1", "status": "queued"})
        )

        external_id = await client.submit("https://cdn.example.com/audio.mp3")

        assert external_id == "tx-1"
        request = route.calls.last.request
        assert request.headers["authorization"] == "test-key"
        body = json.loads(request.content)
        assert body == {
            "audio_url": "https://cdn.example.com/audio.mp3",
            "language_code": "en",
            "punctuate": True,
            "format_text": True,
            "speaker_labels": True,
        }

    @pytest.mark.asyncio
    @respx.mock
    async def test_submit_local_file_uploads_first(self, client, tmp_path):
        audio = tmp_path / "audio.mp3"
        audio.write_bytes(b"ID3 fake audio")
        upload = respx.post(f"{BASE}/upload").mock(
            return_value=httpx.Response(200, json={"upload_url": "https://cdn.assemblyai.com/upload/abc"})
        )
        submit = respx.post(f"{BASE}/transcript").mock(
            return_value=httpx.Response(200, json={"id": "tx-2"})
        )

        external_id = await client.submit(audio, TranscriptionConfig(language_code="de", speaker_labels=False))

        assert external_id == "tx-2"
        assert upload.calls.last.request.content == b"ID3 fake audio"
        body = json.loads(submit.calls.last.request.content)
        assert body["audio_url"] == "https://cdn.assemblyai.com/upload/abc"
        assert body["language_code"] == "de"
        assert body["speaker_labels"] is False

    @pytest.mark.asyncio
    @respx.mock
    async def test_submit_rejected(self, client):
        respx.post(f"{BASE}/transcript").mock(return_value=httpx.Response(401, json={"error": "bad key"}))

        with pytest.raises(TranscriptionSubmitError) as exc_info:
            await client.submit("https://cdn.example.com/audio.mp3")
        assert "401" in exc_info.value.message
        assert isinstance(exc_info.value.cause, httpx.HTTPStatusError)

    @pytest.mark.asyncio
    @respx.mock
    async def test_submit_transport_failure(self, client):
        respx.post(f"{BASE}/transcript").mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(TranscriptionSubmitError):
            await client.submit("https://cdn.example.com/audio.mp3")

    @pytest.mark.asyncio
    async def test_submit_missing_local_file(self, client, tmp_path):
        with pytest.raises(TranscriptionSubmitError):
            await client.submit(tmp_path / "missing.mp3")

    def test_api_key_required(self):
        with pytest.raises(ValueError):
            AssemblyAIClient(api_key="")


class TestPolling:

    @pytest.mark.asyncio
    @respx.mock
    async def test_poll_status_completed_parses_words(self, client):
        respx.get(f"{BASE}/transcript/tx-1").mock(return_value=status_response(
            "completed",
            text="Hello world",
            words=[
                {"text": "Hello", "start": 0, "end": 400, "confidence": 0.98, "speaker": "A"},
                {"text": "world", "start": 450, "end": 900, "confidence": 0.95},
            ],
        ))

        status = await client.poll_status("tx-1")

        assert status.status == "completed"
        assert status.is_terminal
        assert [w.text for w in status.words] == ["Hello", "world"]
        assert status.words[0].speaker == "A"
        assert status.words[1].end_ms == 900

    @pytest.mark.asyncio
    @respx.mock
    async def test_poll_status_http_error(self, client):
        respx.get(f"{BASE}/transcript/tx-1").mock(return_value=httpx.Response(500))

        with pytest.raises(TranscriptionStatusError):
            await client.poll_status("tx-1")

    @pytest.mark.asyncio
    @respx.mock
    async def test_wait_reports_only_status_changes(self, client):
        respx.get(f"{BASE}/transcript/tx-1").mock(side_effect=[
            status_response("queued"),
            status_response("queued"),
            status_response("processing"),
            status_response("processing"),
            status_response("processing"),
            status_response("completed", text="done", words=[]),
        ])
        seen = []

        result = await client.wait_until_terminal("tx-1", on_status_change=lambda s: seen.append(s.status))

        assert seen == ["queued", "processing", "completed"]
        assert result.text == "done"
        assert result.external_id == "tx-1"

    @pytest.mark.asyncio
    @respx.mock
    async def test_wait_accepts_async_callback(self, client):
        respx.get(f"{BASE}/transcript/tx-1").mock(side_effect=[
            status_response("processing"),
            status_response("completed", text="ok"),
        ])
        seen = []

        async def callback(status):
            seen.append(status.status)

        await client.wait_until_terminal("tx-1", on_status_change=callback)
        assert seen == ["processing", "completed"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_wait_provider_error(self, client):
        respx.get(f"{BASE}/transcript/tx-1").mock(side_effect=[
            status_response("queued"),
            status_response("error", error="Audio file is too short"),
        ])

        with pytest.raises(TranscriptionFailedError) as exc_info:
            await client.wait_until_terminal("tx-1")
        assert exc_info.value.message == "Transcription failed: Audio file is too short"

    @pytest.mark.asyncio
    @respx.mock
    async def test_wait_times_out_after_max_attempts(self):
        sleeps = []

        async def record_sleep(seconds):
            sleeps.append(seconds)

        client = AssemblyAIClient(api_key="test-key", sleep=record_sleep)
        route = respx.get(f"{BASE}/transcript/tx-1").mock(return_value=status_response("processing"))

        with pytest.raises(TranscriptionTimeoutError):
            await client.wait_until_terminal("tx-1", interval_seconds=2.0, max_attempts=3)

        assert route.call_count == 3
        assert sleeps == [2.0, 2.0]


class TestDelete:

    @pytest.mark.asyncio
    @respx.mock
    async def test_delete_success(self, client):
        respx.delete(f"{BASE}/transcript/tx-1").mock(return_value=httpx.Response(200, json={"id": "tx-1"}))
        assert await client.delete("tx-1") is True

    @pytest.mark.asyncio
    @respx.mock
    async def test_delete_failure_is_not_raised(self, client):
        respx.delete(f"{BASE}/transcript/tx-1").mock(return_value=httpx.Response(404))
        assert await client.delete("tx-1") is False
