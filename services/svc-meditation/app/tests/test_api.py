import pytest
from fastapi.testclient import TestClient

from meditation.config import settings
from meditation.domain.enums import MeditationStatus, MusicStatus, PipelineStage
from meditation.domain.errors import LockNotAcquiredError
from meditation.main import create_app
from meditation.security import WebhookAuthError, check_webhook_token

BODY = {
    "first_name": "Ada",
    "email": "ada@example.com",
    "birth_date": "1990-04-02",
    "style": "Ocean waves",
    "goals": "Sleep better",
    "challenges": "Racing thoughts",
    "consent": True,
}

CALLBACK = {
    "code": 200,
    "msg": "All generated successfully.",
    "data": {
        "callbackType": "complete",
        "task_id": "suno-1",
        "data": [{"id": "a", "audio_url": "https://cdn.test/a.mp3", "duration": 120.5}],
    },
}


@pytest.fixture
def client(harness, monkeypatch):
    monkeypatch.setattr(settings, "SUNO_WEBHOOK_TOKEN", "s3cret")
    with TestClient(create_app(harness.container)) as c:
        yield c


def create_music_pending(client, harness):
    r = client.post("/api/meditations", json=BODY)
    med_id = r.json()["meditation_id"]
    harness.meditations._update(
        med_id, status=MeditationStatus.music_pending, music_task_id="suno-1", music_status=MusicStatus.pending
    )
    return med_id


def test_health(client):
    assert client.get("/api/health").json() == {"ok": True}
    assert client.get("/api/health/ready").json() == {"ok": True}


def test_create_returns_accepted_and_queues_script(client, harness):
    r = client.post("/api/meditations", json=BODY)

    assert r.status_code == 202
    assert r.json() == {"meditation_id": 1, "status": "script_pending"}
    assert len(harness.tasks.of_stage(PipelineStage.script)) == 1


@pytest.mark.parametrize(
    "override",
    [{"consent": False}, {"email": "not-an-email"}, {"first_name": ""}, {"birth_date": "yesterday"}],
)
def test_create_rejects_invalid_intake(client, harness, override):
    r = client.post("/api/meditations", json={**BODY, **override})

    assert r.status_code == 422
    assert harness.meditations.rows == {}


def test_status_pending_then_ready(client, harness):
    med_id = client.post("/api/meditations", json=BODY).json()["meditation_id"]

    r = client.get(f"/api/meditations/{med_id}/status")
    assert r.status_code == 200
    assert r.json()["ready"] is False
    assert r.json()["status"] == "pending"

    harness.meditations._update(
        med_id, status=MeditationStatus.complete, meditation_url="https://storage.test/meditation_1_23082025.mp3"
    )
    body = client.get(f"/api/meditations/{med_id}/status").json()
    assert body["ready"] is True
    assert body["meditation_url"] == "https://storage.test/meditation_1_23082025.mp3"


def test_status_reports_failure_message(client, harness):
    med_id = client.post("/api/meditations", json=BODY).json()["meditation_id"]
    harness.meditations._update(med_id, status=MeditationStatus.failed, error_message="voice_http_400")

    body = client.get(f"/api/meditations/{med_id}/status").json()

    assert body == {"ready": False, "meditation_url": None, "status": "failed", "error": "voice_http_400"}


def test_status_unknown_request(client):
    assert client.get("/api/meditations/999/status").status_code == 404


def test_webhook_requires_token(client, harness):
    create_music_pending(client, harness)

    assert client.post("/api/webhooks/suno", json=CALLBACK).status_code == 401
    assert client.post("/api/webhooks/suno?token=wrong", json=CALLBACK).status_code == 401
    assert harness.tasks.of_stage(PipelineStage.music_response) == []


def test_webhook_accepts_final_callback(client, harness):
    med_id = create_music_pending(client, harness)

    r = client.post("/api/webhooks/suno?token=s3cret", json=CALLBACK)

    assert r.status_code == 200
    assert r.json() == {"ok": True, "outcome": "accepted"}
    assert harness.meditations.rows[med_id].status == MeditationStatus.music_done
    assert len(harness.tasks.of_stage(PipelineStage.music_response)) == 1

    again = client.post("/api/webhooks/suno?token=s3cret", json=CALLBACK)
    assert again.json() == {"ok": True, "outcome": "stale"}
    assert len(harness.tasks.of_stage(PipelineStage.music_response)) == 1


def test_webhook_busy_lock_asks_for_redelivery(client, harness):
    create_music_pending(client, harness)

    async def busy(_callback):
        raise LockNotAcquiredError("suno:cb:suno-1")

    harness.container.callbacks.handle = busy

    r = client.post("/api/webhooks/suno?token=s3cret", json=CALLBACK)
    assert r.status_code == 503


def test_webhook_token_check():
    check_webhook_token("abc", expected="abc")
    with pytest.raises(WebhookAuthError):
        check_webhook_token("abd", expected="abc")
    with pytest.raises(WebhookAuthError):
        check_webhook_token(None, expected="abc")
    with pytest.raises(WebhookAuthError, match="not_configured"):
        check_webhook_token("abc", expected="")


def test_ready_without_container():
    app = create_app()
    # lifespan not started: no container wired yet
    c = TestClient(app)
    assert c.get("/api/health/ready").status_code == 503
    assert c.get("/api/meditations/1/status").status_code == 503
