"""
Scoped temp files for the pipeline.

Per-request artifacts use deterministic names (meditation_<kind>_<id>.<ext>) so a
retried stage overwrites its own file and the final consumer (mix, or the
terminal-failure path) can remove everything for a request without knowing
which path produced it. Scratch files inside a single call use mkstemp.
"""

from __future__ import annotations

import glob
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, Optional

from meditation.config import settings

logger = logging.getLogger("temp_files")


def tmp_dir(base: Optional[str] = None) -> Path:
    p = Path(base or settings.PIPELINE_TMP_DIR)
    p.mkdir(parents=True, exist_ok=True)
    return p


def request_file_path(kind: str, meditation_id: int, ext: str, *, base: Optional[str] = None) -> str:
    ext = (ext or "bin").lstrip(".")
    return str(tmp_dir(base) / f"meditation_{kind}_{meditation_id}.{ext}")


def write_request_file(kind: str, meditation_id: int, data: bytes, ext: str, *, base: Optional[str] = None) -> str:
    path = request_file_path(kind, meditation_id, ext, base=base)
    with open(path, "wb") as f:
        f.write(data)
    if os.path.getsize(path) <= 0:
        remove_quietly([path])
        raise OSError(f"failed_to_write_temp_file:{path}")
    return path


def find_request_file(kind: str, meditation_id: int, *, base: Optional[str] = None) -> Optional[str]:
    matches = sorted(glob.glob(str(tmp_dir(base) / f"meditation_{kind}_{meditation_id}.*")))
    return matches[0] if matches else None


def promote_to_request_file(src: str, kind: str, meditation_id: int, ext: str, *, base: Optional[str] = None) -> str:
    """Atomically move a scratch file into the request's deterministic slot."""
    dst = request_file_path(kind, meditation_id, ext, base=base)
    os.replace(src, dst)
    return dst


def scratch_file(prefix: str, suffix: str, data: Optional[bytes] = None, *, base: Optional[str] = None) -> str:
    fd, path = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=str(tmp_dir(base)))
    with os.fdopen(fd, "wb") as f:
        if data:
            f.write(data)
    return path


def remove_quietly(paths: Iterable[Optional[str]]) -> None:
    for p in paths:
        if not p:
            continue
        try:
            os.remove(p)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("temp_file_remove_failed", extra={"path": p})


def cleanup_request_files(meditation_id: int, *, base: Optional[str] = None) -> None:
    pattern = str(tmp_dir(base) / f"meditation_*_{meditation_id}.*")
    remove_quietly(glob.glob(pattern))
