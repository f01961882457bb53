from __future__ import annotations

import logging
import os

from pythonjsonlogger import jsonlogger

from meditation.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def json_formatter(component: str) -> jsonlogger.JsonFormatter:
    """One JSON object per line: ts, level, logger, message, component, plus any extra= fields."""
    return jsonlogger.JsonFormatter(
        LOG_FORMAT,
        rename_fields={"asctime": "ts", "levelname": "level", "name": "logger"},
        static_fields={"component": component},
    )


def configure_logging(component: str = "api") -> None:
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    # api and worker share the process in tests; keep a single json handler
    if any(getattr(h, "_meditation_json", False) for h in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(json_formatter(component))
    handler._meditation_json = True
    root.addHandler(handler)

    logging.getLogger("httpx").setLevel(os.getenv("HTTPX_LOG_LEVEL", "WARNING"))
    logging.getLogger("uvicorn.access").setLevel(os.getenv("UVICORN_ACCESS_LOG_LEVEL", "WARNING"))
    # redis lock chatter is noise next to the pipeline events
    logging.getLogger("redis").setLevel(os.getenv("REDIS_LOG_LEVEL", "WARNING"))
