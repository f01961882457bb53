from __future__ import annotations

import logging
import os
import shlex
import subprocess
from typing import List, Optional, Protocol

from meditation.domain.errors import (
    DurationUndeterminableError,
    EmptyAudioError,
    MediaProcessingError,
)
from meditation.domain.models import MixParams, MixResult
from meditation.services import temp_files
from meditation.services.audio_probe_service import AudioProbeService
from meditation.services.wav_container import sniff_container

logger = logging.getLogger("audio_mix")


class DurationProbe(Protocol):
    def duration_seconds(self, local_path: str, *, timeout_s: int = 15) -> Optional[float]: ...

    def channels(self, local_path: str, *, timeout_s: int = 15) -> Optional[int]: ...


# mono -> both channels at full level; ffmpeg's implicit upmix would land 3 dB low
MONO_TO_STEREO = "pan=stereo|c0=c0|c1=c0"


def mime_for_format(out_format: str) -> str:
    return "audio/mpeg" if (out_format or "").lower() == "mp3" else "audio/wav"


def ext_for_format(out_format: str) -> str:
    return "mp3" if (out_format or "").lower() == "mp3" else "wav"


def target_seconds(params: MixParams, voice_seconds: float) -> float:
    return params.offset_ms / 1000.0 + voice_seconds + params.tail_ms / 1000.0


def build_filter_graph(
    params: MixParams,
    total_seconds: float,
    *,
    voice_channels: Optional[int] = None,
    music_channels: Optional[int] = None,
) -> str:
    """
    Input 0 is the (looped) music bed, input 1 the voice.

    Gains are applied once, as amix weights, with normalize=0 so the levels
    come out exactly as configured. Mono inputs are spread to stereo first.
    """
    delay = int(params.offset_ms)
    voice_pre = MONO_TO_STEREO + "," if voice_channels == 1 else ""
    parts = [f"[1:a]{voice_pre}adelay={delay}|{delay}[v]"]

    music_label = "[0:a]"
    if music_channels == 1:
        parts.append(f"[0:a]{MONO_TO_STEREO}[m]")
        music_label = "[m]"

    parts.append(
        f"{music_label}[v]amix=inputs=2:weights={params.music_volume:g} {params.voice_volume:g}"
        ":normalize=0:duration=longest:dropout_transition=3[mix]"
    )

    tail = f"[mix]atrim=0:{total_seconds:.6f},asetpts=PTS-STARTPTS"
    fade_s = params.fade_ms / 1000.0
    if params.fade_out and fade_s > 0:
        fade_start = max(0.0, total_seconds - fade_s)
        tail += f",afade=t=out:st={fade_start:.6f}:d={fade_s:.6f}"
    parts.append(tail + "[aout]")
    return ";".join(parts)


class AudioMixService:
    """
    Voice-over-music mixer on top of ffmpeg.

    Inputs are raw bytes; every temp file created for a call is removed before
    it returns, whatever the outcome.
    """

    def __init__(
        self,
        *,
        ffmpeg_bin: str = "ffmpeg",
        probe: Optional[DurationProbe] = None,
        tmp_dir: Optional[str] = None,
        timeout_s: int = 180,
        reencode_timeout_s: int = 60,
        duration_fallback: Optional[float] = None,
    ):
        self.ffmpeg = ffmpeg_bin
        self.probe = probe or AudioProbeService()
        self.tmp_dir = tmp_dir
        self.timeout_s = timeout_s
        self.reencode_timeout_s = reencode_timeout_s
        self.duration_fallback = duration_fallback if duration_fallback and duration_fallback > 0 else None

    def _run(self, cmd: List[str], *, timeout_s: int) -> None:
        try:
            p = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout_s)
        except subprocess.TimeoutExpired as e:
            raise MediaProcessingError(f"ffmpeg_timeout:{timeout_s}s", stderr=str(e.stderr or "")[-2500:]) from e
        except OSError as e:
            raise MediaProcessingError(f"ffmpeg_not_runnable:{e}") from e

        if p.returncode != 0:
            raise MediaProcessingError(
                "ffmpeg_failed:"
                + "\nCMD: " + " ".join(shlex.quote(c) for c in cmd)
                + "\nSTDERR:\n" + (p.stderr[-2500:] if p.stderr else ""),
                stderr=p.stderr or "",
            )

    def _reencode_to_wav(self, src: str, dst: str) -> bool:
        cmd = [
            self.ffmpeg, "-y",
            "-i", src,
            "-ac", "2",
            "-ar", "44100",
            "-c:a", "pcm_s16le",
            dst,
        ]
        try:
            self._run(cmd, timeout_s=self.reencode_timeout_s)
        except MediaProcessingError as e:
            logger.warning("voice_reencode_failed", extra={"error": str(e)[:500]})
            return False
        return os.path.exists(dst) and os.path.getsize(dst) > 0

    def _resolve_voice(self, voice_path: str, scratch: List[str]) -> tuple[str, float]:
        """Returns (path to mix from, voice seconds)."""
        seconds = self.probe.duration_seconds(voice_path)
        if seconds:
            return voice_path, seconds

        logger.info("voice_probe_failed_reencoding", extra={"path": voice_path})
        recovered = temp_files.scratch_file("voice_fixed_", ".wav", base=self.tmp_dir)
        scratch.append(recovered)
        if self._reencode_to_wav(voice_path, recovered):
            seconds = self.probe.duration_seconds(recovered)
            if seconds:
                return recovered, seconds

        if self.duration_fallback:
            logger.warning("voice_duration_fallback", extra={"seconds": self.duration_fallback})
            return voice_path, self.duration_fallback

        raise DurationUndeterminableError("Could not determine voice duration")

    def mix(self, voice: bytes, music: bytes, params: MixParams) -> MixResult:
        if not voice:
            raise EmptyAudioError("voice_audio_empty")
        if not music:
            raise EmptyAudioError("music_audio_empty")

        voice_kind = sniff_container(voice)
        music_kind = sniff_container(music)
        out_ext = ext_for_format(params.out_format)

        scratch: List[str] = []
        try:
            voice_path = temp_files.scratch_file(
                "voice_", "." + (voice_kind.ext if voice_kind else "bin"), voice, base=self.tmp_dir
            )
            scratch.append(voice_path)
            music_path = temp_files.scratch_file(
                "music_", "." + (music_kind.ext if music_kind else "bin"), music, base=self.tmp_dir
            )
            scratch.append(music_path)
            out_path = temp_files.scratch_file("mix_", "." + out_ext, base=self.tmp_dir)
            scratch.append(out_path)

            voice_src, voice_seconds = self._resolve_voice(voice_path, scratch)
            total = target_seconds(params, voice_seconds)

            cmd = [
                self.ffmpeg, "-y",
                "-stream_loop", "-1", "-i", music_path,
                "-i", voice_src,
                "-filter_complex", build_filter_graph(
                    params,
                    total,
                    voice_channels=self.probe.channels(voice_src),
                    music_channels=self.probe.channels(music_path),
                ),
                "-map", "[aout]",
                "-ac", "2",
                "-ar", "44100",
            ]
            if out_ext == "mp3":
                cmd += ["-c:a", "libmp3lame", "-b:a", "192k"]
            else:
                cmd += ["-c:a", "pcm_s16le"]
            cmd.append(out_path)

            self._run(cmd, timeout_s=self.timeout_s)

            if not os.path.exists(out_path) or os.path.getsize(out_path) <= 0:
                raise MediaProcessingError("ffmpeg_output_missing")

            with open(out_path, "rb") as f:
                data = f.read()

            logger.info(
                "mix_complete",
                extra={"voice_seconds": voice_seconds, "total_seconds": total, "bytes": len(data)},
            )
            return MixResult(data=data, mime=mime_for_format(params.out_format), seconds=total)
        finally:
            temp_files.remove_quietly(scratch)
