import json
import logging

from meditation.logging import configure_logging, json_formatter


def test_records_render_as_one_json_object_with_context():
    record = logging.LogRecord("music_reconciler", logging.INFO, __file__, 1, "music_poll_stale", None, None)
    record.meditation_id = 7

    out = json.loads(json_formatter("worker").format(record))

    assert out["level"] == "INFO"
    assert out["logger"] == "music_reconciler"
    assert out["message"] == "music_poll_stale"
    assert out["component"] == "worker"
    assert out["meditation_id"] == 7
    assert "ts" in out


def test_configure_logging_installs_a_single_json_handler(monkeypatch):
    root = logging.getLogger()
    monkeypatch.setattr(root, "handlers", list(root.handlers))
    monkeypatch.setattr(root, "level", root.level)

    configure_logging()
    configure_logging("worker")

    assert sum(1 for h in root.handlers if getattr(h, "_meditation_json", False)) == 1
