"""Tests for status fan-out."""

import json

import pytest

from core.broadcaster import StatusBroadcaster, StatusEvent
from core.database import ProcessingJob


def make_event(status="downloading", progress=0, step="downloading", revision=1, **kwargs):
    return StatusEvent(job_id="job-1", status=status, progress=progress, step=step, revision=revision, **kwargs)


class TestStatusEvent:

    def test_to_dict_omits_empty_optionals(self):
        data = make_event().to_dict()
        assert data == {
            'type': 'status', 'job_id': 'job-1', 'status': 'downloading',
            'progress': 0, 'step': 'downloading', 'revision': 1,
        }

    def test_to_sse_frame(self):
        frame = make_event(status="error", step="error", error="boom").to_sse()
        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        payload = json.loads(frame[len("data: "):])
        assert payload['error'] == "boom"

    def test_from_job_carries_transcript_words(self):
        words = [{'text': 'Knead', 'start_ms': 0, 'end_ms': 400}]
        job = ProcessingJob(
            id="job-1", status="transcribing", progress=80, step="transcription_complete",
            revision=6, transcription_job_id="tx-1", transcript_text="Knead", transcript_words=words,
        )

        event = StatusEvent.from_job(job, include_transcript=True)

        assert event.transcript == {'text': 'Knead', 'words': words}
        assert json.loads(event.to_sse()[len("data: "):])['transcript']['words'][0]['text'] == 'Knead'
        assert StatusEvent.from_job(job).transcript is None

    def test_terminal(self):
        assert make_event(status="completed").is_terminal
        assert make_event(status="error").is_terminal
        assert not make_event(status="transcribing").is_terminal


class TestStatusBroadcaster:

    @pytest.mark.asyncio
    async def test_publish_without_observers_is_dropped(self):
        broadcaster = StatusBroadcaster()
        assert broadcaster.publish("job-1", make_event()) == 0

    @pytest.mark.asyncio
    async def test_events_delivered_in_order(self):
        broadcaster = StatusBroadcaster()
        channel = broadcaster.subscribe("job-1")

        broadcaster.publish("job-1", make_event(revision=1))
        broadcaster.publish("job-1", make_event(status="extracting_audio", progress=25, revision=2))

        first = await channel.get(timeout=1)
        second = await channel.get(timeout=1)
        assert (first.revision, second.revision) == (1, 2)
        assert second.progress == 25

    @pytest.mark.asyncio
    async def test_multiple_observers_each_receive_events(self):
        broadcaster = StatusBroadcaster()
        a = broadcaster.subscribe("job-1")
        b = broadcaster.subscribe("job-1")
        other = broadcaster.subscribe("job-2")

        assert broadcaster.publish("job-1", make_event()) == 2
        assert (await a.get(timeout=1)).job_id == "job-1"
        assert (await b.get(timeout=1)).job_id == "job-1"
        assert await other.get(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_unsubscribe_single_channel(self):
        broadcaster = StatusBroadcaster()
        a = broadcaster.subscribe("job-1")
        b = broadcaster.subscribe("job-1")

        broadcaster.unsubscribe("job-1", a)
        assert broadcaster.observer_count("job-1") == 1
        assert a.closed

        assert broadcaster.publish("job-1", make_event()) == 1
        assert (await b.get(timeout=1)) is not None

        broadcaster.unsubscribe("job-1", b)
        assert broadcaster.observer_count("job-1") == 0
        assert broadcaster.publish("job-1", make_event()) == 0

    @pytest.mark.asyncio
    async def test_unsubscribe_all_and_unknown(self):
        broadcaster = StatusBroadcaster()
        broadcaster.subscribe("job-1")
        broadcaster.subscribe("job-1")
        broadcaster.unsubscribe("job-1")
        assert broadcaster.observer_count("job-1") == 0

        broadcaster.unsubscribe("never-subscribed")

    def test_injected_registry_is_isolated(self):
        registry = {}
        first = StatusBroadcaster(registry)
        second = StatusBroadcaster()

        first.subscribe("job-1")
        assert "job-1" in registry
        assert second.observer_count("job-1") == 0

    @pytest.mark.asyncio
    async def test_get_times_out_with_none(self):
        channel = StatusBroadcaster().subscribe("job-1")
        assert await channel.get(timeout=0.01) is None
