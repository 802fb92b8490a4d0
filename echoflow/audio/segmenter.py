"""
Audio segmentation into time-bounded chunks.

Two strategies share one ``split`` signature:

* :class:`FfmpegSegmenter` runs ``ffmpeg -f segment`` as a child process and
  registers it in the process registry so a cancel can kill it.
* :class:`PydubSegmenter` decodes and slices in-process with pydub. The
  decode cannot be interrupted, so it runs on a worker thread while the
  caller polls the cancellation token once per second.

:class:`FallbackSegmenter` tries the first and falls back to the second on
:class:`SegmentationError`, then drops degenerate tail chunks.
"""
import glob
import logging
import os
import shutil
import subprocess
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from pathlib import Path
from typing import List, Protocol

from pydub import AudioSegment

from echoflow.core.errors import JobCancelled, SegmentationError
from echoflow.jobs.cancellation import CancelToken
from echoflow.jobs.registry import SEGMENT, ProcessHandle, ProcessRegistry

logger = logging.getLogger(__name__)

POLL_SECONDS = 1.0

# pydub export format per source extension; anything else is exported as mp3.
EXPORT_FORMATS = {
    ".mp3": "mp3",
    ".wav": "wav",
    ".flac": "flac",
    ".ogg": "ogg",
    ".webm": "webm",
    ".m4a": "ipod",
    ".mp4": "ipod",
}


class Segmenter(Protocol):
    def split(self, path: str, segment_seconds: int, job_id: str, token: CancelToken) -> List[str]:
        ...


def chunk_dir(work_dir: str, job_id: str, strategy: str) -> str:
    return os.path.join(work_dir, job_id, "chunks", strategy)


def _fresh_dir(path: str) -> None:
    shutil.rmtree(path, ignore_errors=True)
    os.makedirs(path, exist_ok=True)


def discard_small_chunks(chunks: List[str], min_bytes: int = 1024) -> List[str]:
    """Delete chunks of min_bytes or less (empty tail segments) and return the rest, order preserved."""
    kept = []
    for chunk in chunks:
        try:
            size = os.path.getsize(chunk)
        except OSError:
            continue
        if size <= min_bytes:
            logger.info("chunk_discarded", extra={"chunk": chunk, "bytes": size})
            try:
                os.remove(chunk)
            except OSError:
                logger.warning("chunk_discard_failed", exc_info=True, extra={"chunk": chunk})
            continue
        kept.append(chunk)
    return kept


class FfmpegSegmenter:
    """Segments with the ffmpeg CLI (stream copy, no re-encode)."""

    name = "ffmpeg"

    def __init__(self, registry: ProcessRegistry, work_dir: str, ffmpeg_bin: str = "ffmpeg", poll_seconds: float = POLL_SECONDS):
        self.registry = registry
        self.work_dir = work_dir
        self.ffmpeg_bin = ffmpeg_bin
        self.poll_seconds = poll_seconds

    def build_command(self, path: str, segment_seconds: int, out_pattern: str) -> List[str]:
        return [
            self.ffmpeg_bin,
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-i",
            path,
            "-f",
            "segment",
            "-segment_time",
            str(int(segment_seconds)),
            "-c",
            "copy",
            out_pattern,
        ]

    def split(self, path: str, segment_seconds: int, job_id: str, token: CancelToken) -> List[str]:
        src = Path(path)
        out_dir = chunk_dir(self.work_dir, job_id, self.name)
        _fresh_dir(out_dir)
        pattern = os.path.join(out_dir, f"{src.stem}_%03d{src.suffix}")
        stderr_path = os.path.join(self.work_dir, job_id, "ffmpeg.log")

        token.raise_if_cancelled()
        with open(stderr_path, "wb") as stderr:
            try:
                proc = subprocess.Popen(
                    self.build_command(path, segment_seconds, pattern),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=stderr,
                )
            except OSError as e:
                shutil.rmtree(out_dir, ignore_errors=True)
                raise SegmentationError(f"ffmpeg unavailable: {e}") from e

            self.registry.register(job_id, ProcessHandle(kind=SEGMENT, process=proc))
            logger.info("split_started", extra={"job_id": job_id, "strategy": self.name, "pid": proc.pid, "segment_seconds": segment_seconds})
            try:
                while True:
                    try:
                        proc.wait(timeout=self.poll_seconds)
                        break
                    except subprocess.TimeoutExpired:
                        if token.cancelled:
                            self.registry.terminate(job_id)
                            break
            finally:
                self.registry.unregister(job_id)

        token.raise_if_cancelled()
        if proc.returncode != 0:
            detail = Path(stderr_path).read_text(errors="replace").strip()[-500:]
            shutil.rmtree(out_dir, ignore_errors=True)
            raise SegmentationError(f"ffmpeg exited with code {proc.returncode}: {detail}")

        chunks = sorted(glob.glob(os.path.join(glob.escape(out_dir), f"{glob.escape(src.stem)}_*{src.suffix}")))
        logger.info("split_done", extra={"job_id": job_id, "strategy": self.name, "chunks": len(chunks)})
        return chunks


class PydubSegmenter:
    """Segments in-process with pydub; cancellation is checked while decoding and between exported slices."""

    name = "pydub"

    def __init__(self, registry: ProcessRegistry, work_dir: str, poll_seconds: float = POLL_SECONDS):
        self.registry = registry
        self.work_dir = work_dir
        self.poll_seconds = poll_seconds

    def _decode(self, path: str, token: CancelToken) -> AudioSegment:
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pydub-decode")
        future = pool.submit(AudioSegment.from_file, path)
        try:
            while True:
                try:
                    return future.result(timeout=self.poll_seconds)
                except FuturesTimeout:
                    token.raise_if_cancelled()
        except JobCancelled:
            raise
        except Exception as e:
            raise SegmentationError(f"pydub could not decode {Path(path).name}: {e}") from e
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def split(self, path: str, segment_seconds: int, job_id: str, token: CancelToken) -> List[str]:
        src = Path(path)
        out_dir = chunk_dir(self.work_dir, job_id, self.name)
        _fresh_dir(out_dir)
        fmt = EXPORT_FORMATS.get(src.suffix.lower(), "mp3")
        suffix = src.suffix if src.suffix.lower() in EXPORT_FORMATS else ".mp3"

        token.raise_if_cancelled()
        self.registry.register(job_id, ProcessHandle(kind=SEGMENT))
        logger.info("split_started", extra={"job_id": job_id, "strategy": self.name, "segment_seconds": segment_seconds})
        try:
            audio = self._decode(path, token)
            step_ms = int(segment_seconds) * 1000
            chunks: List[str] = []
            for index, start in enumerate(range(0, len(audio), step_ms)):
                token.raise_if_cancelled()
                out_path = os.path.join(out_dir, f"{src.stem}_{index:03d}{suffix}")
                try:
                    audio[start : start + step_ms].export(out_path, format=fmt).close()
                except Exception as e:
                    raise SegmentationError(f"pydub could not export chunk {index}: {e}") from e
                chunks.append(out_path)
        except SegmentationError:
            shutil.rmtree(out_dir, ignore_errors=True)
            raise
        finally:
            self.registry.unregister(job_id)

        logger.info("split_done", extra={"job_id": job_id, "strategy": self.name, "chunks": len(chunks)})
        return chunks


class FallbackSegmenter:
    """Runs the primary strategy and, if it fails, the secondary. Cancellation propagates without fallback."""

    def __init__(self, primary: Segmenter, secondary: Segmenter, min_chunk_bytes: int = 1024):
        self.primary = primary
        self.secondary = secondary
        self.min_chunk_bytes = min_chunk_bytes

    def split(self, path: str, segment_seconds: int, job_id: str, token: CancelToken) -> List[str]:
        try:
            chunks = self.primary.split(path, segment_seconds, job_id, token)
        except SegmentationError as e:
            logger.warning("split_fallback", extra={"job_id": job_id, "reason": str(e)})
            chunks = self.secondary.split(path, segment_seconds, job_id, token)
        return discard_small_chunks(chunks, self.min_chunk_bytes)
