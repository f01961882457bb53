from __future__ import annotations

import io
import wave

from meditation.domain.errors import EmptyAudioError
from meditation.domain.models import EncodedAudio, VoiceAudio


def _is_mp3_frame(head: bytes) -> bool:
    # raw PCM starting with small negative samples (ff ff ...) must not pass as a frame sync
    if len(head) < 3 or head[0] != 0xFF or (head[1] & 0xE0) != 0xE0:
        return False
    version = (head[1] >> 3) & 0x03
    layer = (head[1] >> 1) & 0x03
    bitrate = head[2] >> 4
    rate = (head[2] >> 2) & 0x03
    return version != 0x01 and layer == 0x01 and bitrate not in (0x00, 0x0F) and rate != 0x03


def sniff_container(data: bytes) -> EncodedAudio | None:
    """Recognise payloads that already carry their own header."""
    head = data[:12]
    if head[:4] == b"RIFF" and head[8:12] == b"WAVE":
        return EncodedAudio(data=data, ext="wav", mime="audio/wav")
    if head[:3] == b"ID3" or _is_mp3_frame(head):
        return EncodedAudio(data=data, ext="mp3", mime="audio/mpeg")
    if head[:4] == b"fLaC":
        return EncodedAudio(data=data, ext="flac", mime="audio/flac")
    if head[:4] == b"OggS":
        return EncodedAudio(data=data, ext="ogg", mime="audio/ogg")
    return None


def pcm_to_wav(pcm: bytes, *, sample_rate: int, channels: int, sample_width: int) -> bytes:
    frame_size = channels * sample_width
    usable = len(pcm) - (len(pcm) % frame_size)
    if usable <= 0:
        raise EmptyAudioError("voice_payload_has_no_complete_frames")

    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm[:usable])
    return buf.getvalue()


def ensure_container(audio: VoiceAudio) -> EncodedAudio:
    """
    Voice synthesis may return headerless PCM. Wrap it in a WAV header built
    from the configured rate/channels/width; pass real containers through.
    """
    if not audio.data:
        raise EmptyAudioError("voice_payload_empty")

    known = sniff_container(audio.data)
    if known is not None:
        return known

    wav = pcm_to_wav(
        audio.data,
        sample_rate=audio.sample_rate,
        channels=audio.channels,
        sample_width=audio.sample_width,
    )
    return EncodedAudio(data=wav, ext="wav", mime="audio/wav")
