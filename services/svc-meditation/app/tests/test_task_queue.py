import pytest

from meditation.domain.enums import MeditationStatus, PipelineStage
from meditation.domain.models import VoicePayload
from meditation.services.task_queue import capped_linear, default_policies, fixed_schedule


def test_fixed_schedule_repeats_last_delay():
    backoff = fixed_schedule(10, 30, 60)
    assert [backoff(a) for a in (1, 2, 3, 4, 9)] == [10, 30, 60, 60, 60]


def test_poll_backoff_is_capped_linear():
    backoff = capped_linear(10, 10, 30)
    for attempt in range(1, 51):
        assert backoff(attempt) == min(10 + 10 * (attempt - 1), 30)
    assert [backoff(a) for a in (1, 2, 3, 4)] == [10, 20, 30, 30]


def test_default_policies():
    policies = default_policies(music_poll_max_attempts=50)
    assert set(policies) == set(PipelineStage)

    for stage in (PipelineStage.script, PipelineStage.voice, PipelineStage.music, PipelineStage.mix):
        p = policies[stage]
        assert p.max_attempts == 3
        assert p.timeout_seconds == 900
        assert p.backoff(1) == 10 and p.backoff(2) == 30 and p.backoff(3) == 60

    poll = policies[PipelineStage.music_poll]
    assert poll.max_attempts == 50
    assert poll.backoff(2) == 20


@pytest.mark.asyncio
async def test_enqueue_moves_request_into_pending_state(harness):
    med = await harness.seed(MeditationStatus.script_done)

    task = await harness.container.queue.enqueue(PipelineStage.voice, med.id, VoicePayload(script="hello"))

    assert task.attempt == 1
    assert task.payload == {"script": "hello"}
    assert harness.meditations.rows[med.id].status == MeditationStatus.voice_pending


@pytest.mark.asyncio
async def test_reschedule_is_a_new_message_and_keeps_state(harness):
    med = await harness.seed(MeditationStatus.music_done)
    first = await harness.tasks.insert(stage=PipelineStage.music_poll, meditation_id=med.id, payload={"suno_task_id": "s"})

    nxt = await harness.container.queue.reschedule(first, delay_seconds=20)

    assert nxt.id != first.id
    assert nxt.attempt == 2
    assert nxt.payload == first.payload
    assert harness.tasks.delays[nxt.id] == 20
    # a reschedule never drags the request back into a pending state
    assert harness.meditations.rows[med.id].status == MeditationStatus.music_done


@pytest.mark.asyncio
async def test_fail_request_records_and_cleans_temp_files(harness, tmp_path):
    med = await harness.seed(MeditationStatus.voice_pending)
    leftover = tmp_path / f"meditation_voice_{med.id}.wav"
    leftover.write_bytes(b"RIFF")
    other = tmp_path / "meditation_voice_999.wav"
    other.write_bytes(b"RIFF")

    await harness.container.journal.fail_request(PipelineStage.voice, med.id, "voice_http_400")

    row = harness.meditations.rows[med.id]
    assert row.status == MeditationStatus.failed
    assert row.error_message == "voice_http_400"
    assert await harness.logs.latest_error(med.id) == "voice_http_400"
    assert not leftover.exists()
    assert other.exists()


@pytest.mark.asyncio
async def test_failed_is_absorbing(harness):
    med = await harness.seed(MeditationStatus.failed, error_message="boom")

    await harness.container.queue.enqueue(PipelineStage.voice, med.id, VoicePayload(script="x"))

    assert harness.meditations.rows[med.id].status == MeditationStatus.failed
