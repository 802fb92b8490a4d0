"""
Audio duration probing with layered fallbacks.

Streaming containers (webm, fragmented mp4) often carry no usable duration,
so ``probe`` tries structured media info first, then the ``ffprobe`` command
line, then a bitrate-based estimate from the file size. Only the estimate is
floored at MIN_DURATION_SECONDS; measured durations are returned as found.
It never raises.
"""
import logging
import math
import os
import subprocess
from typing import Optional

from pydub.utils import mediainfo

logger = logging.getLogger(__name__)

ASSUMED_BITRATE_KBPS = 128
MIN_DURATION_SECONDS = 600.0


def _valid(seconds: Optional[float]) -> bool:
    return seconds is not None and math.isfinite(seconds) and seconds > 0


def _parse_seconds(raw) -> Optional[float]:
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError):
        return None
    return value if _valid(value) else None


def estimate_from_size(path: str, bitrate_kbps: int = ASSUMED_BITRATE_KBPS) -> float:
    """Duration estimate from file size at a fixed average bitrate, floored at MIN_DURATION_SECONDS."""
    try:
        size = os.path.getsize(path)
    except OSError:
        size = 0
    seconds = size * 8 / (bitrate_kbps * 1000)
    return max(seconds, MIN_DURATION_SECONDS)


class DurationProber:
    """Resolves playback duration in seconds: media info -> ffprobe CLI -> size estimate."""

    def __init__(self, ffprobe_bin: str = "ffprobe", timeout_seconds: float = 30.0):
        self.ffprobe_bin = ffprobe_bin
        self.timeout_seconds = timeout_seconds

    def from_metadata(self, path: str) -> Optional[float]:
        try:
            info = mediainfo(path)
        except Exception:
            logger.debug("probe_mediainfo_failed", exc_info=True, extra={"path": path})
            return None
        return _parse_seconds(info.get("duration"))

    def from_cli(self, path: str) -> Optional[float]:
        cmd = [
            self.ffprobe_bin,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            path,
        ]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=self.timeout_seconds)
        except (OSError, subprocess.SubprocessError):
            logger.debug("probe_ffprobe_failed", exc_info=True, extra={"path": path})
            return None
        if proc.returncode != 0:
            return None
        lines = (proc.stdout or "").strip().splitlines()
        return _parse_seconds(lines[0]) if lines else None

    def probe(self, path: str) -> float:
        for strategy, fn in (("metadata", self.from_metadata), ("ffprobe", self.from_cli)):
            seconds = fn(path)
            if _valid(seconds):
                logger.info("probe_duration", extra={"path": path, "strategy": strategy, "seconds": seconds})
                return seconds

        seconds = estimate_from_size(path)
        logger.warning("probe_duration_estimated", extra={"path": path, "seconds": seconds})
        return seconds
