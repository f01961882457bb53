from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union
from uuid import UUID, uuid4

import pytest

from meditation.domain.enums import (
    LogLevel,
    MeditationStatus,
    MusicStatus,
    PipelineStage,
    TaskStatus,
)
from meditation.domain.models import (
    CreateMeditationIn,
    Meditation,
    MixParams,
    MixResult,
    MusicTaskDetails,
    StageTask,
    SunoTrack,
    VoiceAudio,
    WavTaskDetails,
)
from meditation.services.locks import InProcessLockProvider
from meditation.services.pipeline import PipelineContainer, assemble_pipeline
from meditation.services.task_queue import default_policies
from meditation.workers.pipeline_worker import PipelineWorker


# -----------------------------
# In-memory stores
# -----------------------------


class InMemoryMeditations:
    def __init__(self) -> None:
        self.rows: Dict[int, Meditation] = {}
        self._next_id = 1

    async def create(self, data: CreateMeditationIn) -> Meditation:
        now = datetime(2025, 8, 23, 21, 30, tzinfo=timezone.utc)
        med = Meditation(
            id=self._next_id,
            first_name=data.first_name,
            email=data.email,
            birth_date=data.birth_date,
            style=data.style,
            goals=data.goals,
            challenges=data.challenges,
            created_at=now,
            updated_at=now,
        )
        self.rows[med.id] = med
        self._next_id += 1
        return med

    def _update(self, meditation_id: int, **fields: Any) -> None:
        med = self.rows[meditation_id]
        self.rows[meditation_id] = med.model_copy(update=fields)

    async def get(self, meditation_id: int) -> Optional[Meditation]:
        return self.rows.get(meditation_id)

    async def get_by_music_task_id(self, music_task_id: str) -> Optional[Meditation]:
        for med in self.rows.values():
            if med.music_task_id == music_task_id:
                return med
        return None

    async def set_status(
        self, meditation_id: int, status: MeditationStatus, *, error_message: Optional[str] = None
    ) -> None:
        med = self.rows[meditation_id]
        if med.status == MeditationStatus.failed:
            return
        self._update(meditation_id, status=status, error_message=error_message or med.error_message)

    async def set_script(self, meditation_id: int, script_text: str) -> None:
        self._update(meditation_id, script_text=script_text)

    async def set_voice_url(self, meditation_id: int, voice_url: str) -> None:
        self._update(meditation_id, voice_url=voice_url)

    async def set_music_task_id(self, meditation_id: int, music_task_id: str) -> None:
        self._update(meditation_id, music_task_id=music_task_id, music_status=MusicStatus.pending)

    async def set_music_status(self, meditation_id: int, music_status: MusicStatus) -> None:
        self._update(meditation_id, music_status=music_status)

    async def mark_music_complete(self, meditation_id: int) -> bool:
        med = self.rows[meditation_id]
        if med.status != MeditationStatus.music_pending or med.music_status == MusicStatus.complete:
            return False
        self._update(meditation_id, music_status=MusicStatus.complete, status=MeditationStatus.music_done)
        return True

    async def mark_music_in_progress(self, meditation_id: int) -> bool:
        med = self.rows[meditation_id]
        if med.status != MeditationStatus.music_pending or med.music_status in (
            MusicStatus.in_progress,
            MusicStatus.complete,
            MusicStatus.failed,
        ):
            return False
        self._update(meditation_id, music_status=MusicStatus.in_progress)
        return True

    async def set_music_url(self, meditation_id: int, music_url: str) -> None:
        self._update(meditation_id, music_url=music_url)

    async def set_meditation_url(self, meditation_id: int, meditation_url: str) -> None:
        self._update(
            meditation_id, meditation_url=meditation_url, status=MeditationStatus.complete, error_message=None
        )


class InMemoryTasks:
    """Claims ignore run_at so tests run the chain without waiting; delays are kept for assertions."""

    def __init__(self) -> None:
        self.tasks: Dict[UUID, StageTask] = {}
        self.status: Dict[UUID, TaskStatus] = {}
        self.delays: Dict[UUID, float] = {}
        self.errors: Dict[UUID, str] = {}
        self.order: List[UUID] = []

    async def insert(
        self,
        *,
        stage: PipelineStage,
        meditation_id: int,
        payload: Dict[str, Any],
        attempt: int = 1,
        delay_seconds: float = 0,
    ) -> StageTask:
        task = StageTask(id=uuid4(), stage=stage, meditation_id=meditation_id, attempt=attempt, deliveries=0, payload=payload)
        self.tasks[task.id] = task
        self.status[task.id] = TaskStatus.queued
        self.delays[task.id] = delay_seconds
        self.order.append(task.id)
        return task

    async def claim_due(self, *, limit: int, lease_seconds: int) -> List[StageTask]:
        out: List[StageTask] = []
        for tid in self.order:
            if len(out) >= limit:
                break
            if self.status[tid] != TaskStatus.queued:
                continue
            task = self.tasks[tid].model_copy(update={"deliveries": self.tasks[tid].deliveries + 1})
            self.tasks[tid] = task
            self.status[tid] = TaskStatus.running
            out.append(task)
        return out

    async def mark_succeeded(self, task_id: UUID) -> None:
        self.status[task_id] = TaskStatus.succeeded

    async def mark_retried(self, task_id: UUID, *, error: str) -> None:
        self.status[task_id] = TaskStatus.retried
        self.errors[task_id] = error

    async def mark_failed(self, task_id: UUID, *, error: str) -> None:
        self.status[task_id] = TaskStatus.failed
        self.errors[task_id] = error

    def of_stage(self, stage: PipelineStage) -> List[StageTask]:
        return [self.tasks[tid] for tid in self.order if self.tasks[tid].stage == stage]


class InMemoryJobLogs:
    def __init__(self) -> None:
        self.entries: List[Dict[str, Any]] = []

    async def record(
        self,
        *,
        stage: str,
        level: LogLevel,
        message: str,
        meditation_id: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.entries.append(
            {"stage": stage, "level": level, "message": message, "meditation_id": meditation_id, "context": context or {}}
        )

    async def latest_error(self, meditation_id: int) -> Optional[str]:
        for e in reversed(self.entries):
            if e["meditation_id"] == meditation_id and e["level"] == LogLevel.error:
                return e["message"]
        return None

    def messages(self, level: Optional[LogLevel] = None) -> List[str]:
        return [e["message"] for e in self.entries if level is None or e["level"] == level]


# -----------------------------
# Fake collaborators
# -----------------------------

Step = Union[str, Exception]


class FakeText:
    def __init__(self, steps: Sequence[Step]):
        self.steps = list(steps)
        self.prompts: List[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, Exception):
            raise step
        return step


class FakeVoice:
    def __init__(self, data: bytes = b"\x10\x00" * 4800):
        self.data = data
        self.texts: List[str] = []

    async def synthesize(self, text: str) -> VoiceAudio:
        self.texts.append(text)
        return VoiceAudio(data=self.data, sample_rate=48000, channels=1, sample_width=2)


def tracks(*durations: Optional[float], with_urls: bool = True) -> List[SunoTrack]:
    return [
        SunoTrack(id=f"trk-{i}", audio_url=f"https://cdn.test/trk-{i}.mp3" if with_urls else None, duration=d)
        for i, d in enumerate(durations, start=1)
    ]


def music_details(raw_status: str, items: Optional[List[SunoTrack]] = None) -> MusicTaskDetails:
    from meditation.services.providers.suno_client import map_music_status

    return MusicTaskDetails(
        task_id="suno-1", raw_status=raw_status, state=map_music_status(raw_status), tracks=items or []
    )


class FakeMusic:
    def __init__(
        self,
        statuses: Optional[Sequence[MusicTaskDetails]] = None,
        wav_statuses: Sequence[str] = ("SUCCESS",),
        task_id: str = "suno-1",
    ):
        self.task_id = task_id
        self.statuses = list(statuses or [music_details("SUCCESS", tracks(120.5, 163.8))])
        self.wav_statuses = list(wav_statuses)
        self.started: List[Dict[str, Any]] = []
        self.conversions: List[tuple] = []
        self.wav_polls = 0

    async def start_job(self, *, meditation_id: int, style: str) -> str:
        self.started.append({"meditation_id": meditation_id, "style": style})
        return self.task_id

    async def poll_status(self, task_id: str) -> MusicTaskDetails:
        return self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]

    async def request_lossless_conversion(self, task_id: str, track_id: Optional[str]) -> str:
        self.conversions.append((task_id, track_id))
        return "wav-1"

    async def poll_conversion_status(self, conversion_task_id: str) -> WavTaskDetails:
        self.wav_polls += 1
        status = self.wav_statuses.pop(0) if len(self.wav_statuses) > 1 else self.wav_statuses[0]
        url = "https://cdn.test/converted.wav" if status == "SUCCESS" else None
        return WavTaskDetails(task_id=conversion_task_id, raw_status=status, wav_url=url)


class FakeStorage:
    def __init__(self) -> None:
        self.uploads: List[Dict[str, Any]] = []

    async def upload(self, local_path: str, name: str, mime_type: str) -> str:
        with open(local_path, "rb") as f:
            size = len(f.read())
        self.uploads.append({"path": local_path, "name": name, "mime": mime_type, "bytes": size})
        return f"https://storage.test/{name}?sig=x"


class FakeMixer:
    def __init__(self, seconds: float = 22.3):
        self.seconds = seconds
        self.calls: List[tuple] = []

    def mix(self, voice: bytes, music: bytes, params: MixParams) -> MixResult:
        self.calls.append((voice, music, params))
        return MixResult(data=b"ID3" + b"\x00" * 64, mime="audio/mpeg", seconds=self.seconds)


WAV_BYTES = b"RIFF\x24\x00\x00\x00WAVEfmt " + b"\x00" * 64
MP3_BYTES = b"ID3\x03\x00\x00\x00" + b"\x00" * 64


class FakeFetch:
    def __init__(self, default: bytes = WAV_BYTES):
        self.default = default
        self.urls: List[str] = []

    async def __call__(self, url: str) -> bytes:
        self.urls.append(url)
        return self.default


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# -----------------------------
# Fixtures
# -----------------------------


def intake(**over: Any) -> CreateMeditationIn:
    data = dict(
        first_name="Ada",
        email="ada@example.com",
        birth_date=date(1990, 4, 2),
        style="Ocean waves",
        goals="Sleep better",
        challenges="Racing thoughts",
        consent=True,
    )
    data.update(over)
    return CreateMeditationIn(**data)


class Harness:
    def __init__(self, tmp_dir: str, **collaborators: Any):
        self.tmp_dir = tmp_dir
        self.meditations = InMemoryMeditations()
        self.tasks = InMemoryTasks()
        self.logs = InMemoryJobLogs()
        self.text = collaborators.get("text") or FakeText(["Breathe in. Breathe out."])
        self.voice = collaborators.get("voice") or FakeVoice()
        self.music = collaborators.get("music") or FakeMusic()
        self.storage = collaborators.get("storage") or FakeStorage()
        self.mixer = collaborators.get("mixer") or FakeMixer()
        self.fetch = collaborators.get("fetch") or FakeFetch()
        self.sleep = RecordingSleep()
        self.locks = InProcessLockProvider()
        self.container: PipelineContainer = assemble_pipeline(
            meditations=self.meditations,
            tasks=self.tasks,
            logs=self.logs,
            text=self.text,
            voice=self.voice,
            music=self.music,
            storage=self.storage,
            mixer=self.mixer,
            locks=self.locks,
            policies=collaborators.get("policies") or default_policies(),
            tmp_dir=tmp_dir,
            lock_wait=collaborators.get("lock_wait", 5),
            sleep=self.sleep,
            fetch=self.fetch,
        )

    def worker(self) -> PipelineWorker:
        return PipelineWorker(self.container, batch_size=1, poll_secs=0)

    async def run_until_idle(self, max_ticks: int = 200) -> int:
        worker = self.worker()
        ticks = 0
        while ticks < max_ticks and await worker.tick_once():
            ticks += 1
        return ticks

    async def seed(self, status: MeditationStatus = MeditationStatus.created, **fields: Any) -> Meditation:
        med = await self.meditations.create(intake())
        self.meditations._update(med.id, status=status, **fields)
        return self.meditations.rows[med.id]


@pytest.fixture
def harness(tmp_path):
    return Harness(str(tmp_path))


@pytest.fixture
def make_harness(tmp_path):
    def _make(**collaborators: Any) -> Harness:
        return Harness(str(tmp_path), **collaborators)

    return _make
