import io
import os
import wave

import pytest

from meditation.domain.enums import MeditationStatus, PipelineStage
from meditation.domain.errors import EmptyAudioError
from meditation.domain.models import VoiceAudio
from meditation.services.wav_container import ensure_container, pcm_to_wav, sniff_container
from tests.conftest import MP3_BYTES, WAV_BYTES


def test_headerless_pcm_gets_a_wav_header():
    pcm = b"\x01\x00" * 480
    out = ensure_container(VoiceAudio(data=pcm, sample_rate=48000, channels=1, sample_width=2))

    assert out.ext == "wav"
    assert out.mime == "audio/wav"
    with wave.open(io.BytesIO(out.data), "rb") as wf:
        assert wf.getnchannels() == 1
        assert wf.getsampwidth() == 2
        assert wf.getframerate() == 48000
        assert wf.getnframes() == 480
        assert wf.readframes(480) == pcm


def test_trailing_partial_frame_is_dropped():
    wav = pcm_to_wav(b"\x01\x00\x02\x00\x03", sample_rate=48000, channels=1, sample_width=2)
    with wave.open(io.BytesIO(wav), "rb") as wf:
        assert wf.getnframes() == 2


def test_known_containers_pass_through():
    assert ensure_container(VoiceAudio(WAV_BYTES, 48000, 1, 2)).data == WAV_BYTES
    mp3 = ensure_container(VoiceAudio(MP3_BYTES, 48000, 1, 2))
    assert (mp3.ext, mp3.mime) == ("mp3", "audio/mpeg")
    assert sniff_container(b"fLaC\x00\x00\x00\x22").ext == "flac"
    assert sniff_container(b"OggS\x00\x02").ext == "ogg"
    assert sniff_container(b"\xff\xfb\x90\x64").ext == "mp3"
    assert sniff_container(b"\x00\x01\x02\x03") is None


def test_pcm_starting_below_zero_is_not_mistaken_for_mp3():
    pcm = b"\xff\xff\xfe\xff" * 240
    out = ensure_container(VoiceAudio(pcm, 48000, 1, 2))
    assert out.ext == "wav"
    assert out.data[:4] == b"RIFF"


def test_empty_voice_is_rejected():
    with pytest.raises(EmptyAudioError):
        ensure_container(VoiceAudio(b"", 48000, 1, 2))
    with pytest.raises(EmptyAudioError):
        ensure_container(VoiceAudio(b"\x01", 48000, 1, 2))


@pytest.mark.asyncio
async def test_voice_stage_writes_uploads_and_hands_off(harness, tmp_path):
    med = await harness.seed(MeditationStatus.script_done, script_text="Breathe.")
    await harness.container.queue.enqueue(PipelineStage.voice, med.id, {"script": "Breathe."})

    claimed = await harness.tasks.claim_due(limit=1, lease_seconds=960)
    await harness.worker().process(claimed[0])

    local = tmp_path / f"meditation_voice_{med.id}.wav"
    assert local.exists()
    assert local.read_bytes()[:4] == b"RIFF"

    upload = harness.storage.uploads[0]
    assert upload["name"] == f"meditation_voice_{med.id}_23082025.wav"
    assert upload["mime"] == "audio/wav"

    row = harness.meditations.rows[med.id]
    assert row.voice_url.startswith("https://storage.test/meditation_voice_")
    assert row.status == MeditationStatus.music_pending

    music = harness.tasks.of_stage(PipelineStage.music)
    assert len(music) == 1
    assert music[0].payload == {"voice_path": os.fspath(local)}
    assert harness.voice.texts == ["Breathe."]
