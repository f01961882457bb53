import logging
import subprocess
from typing import List, Optional

logger = logging.getLogger("audio_probe")


class AudioProbeService:
    def __init__(self, ffprobe_bin: str = "ffprobe"):
        self.ffprobe = ffprobe_bin

    def _first_value(self, args: List[str], local_path: str, timeout_s: int) -> Optional[str]:
        cmd = [self.ffprobe, "-v", "error", *args, "-of", "default=noprint_wrappers=1:nokey=1", local_path]
        try:
            p = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout_s)
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.warning("ffprobe_failed", extra={"path": local_path, "error": str(e)})
            return None

        out = (p.stdout or "").strip()
        if p.returncode != 0 or not out:
            return None
        return out.splitlines()[0].strip()

    def duration_seconds(self, local_path: str, *, timeout_s: int = 15) -> Optional[float]:
        """Container duration in seconds, or None when ffprobe can't tell (error, empty, zero)."""
        out = self._first_value(["-show_entries", "format=duration"], local_path, timeout_s)
        if out is None:
            return None
        try:
            dur_s = float(out)
        except ValueError:
            # "N/A" for streams without a container duration
            return None
        if dur_s <= 0:
            return None
        return dur_s

    def channels(self, local_path: str, *, timeout_s: int = 15) -> Optional[int]:
        """Channel count of the first audio stream."""
        out = self._first_value(
            ["-select_streams", "a:0", "-show_entries", "stream=channels"], local_path, timeout_s
        )
        if out is None:
            return None
        try:
            n = int(out)
        except ValueError:
            return None
        return n if n > 0 else None
