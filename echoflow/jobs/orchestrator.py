"""
Pipeline orchestrator: runs one uploaded recording through storage,
optional segmentation, sequential transcription and summarization.

Each submission gets a job id and a detached worker thread; the thread is
the only writer of that job's state. Callers observe it through
``get_status`` / ``get_result`` and can stop it with ``cancel``, which
sets the job's cancellation token and kills any registered child process.
"""
import logging
import math
import mimetypes
import os
import shutil
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from echoflow.audio.probe import DurationProber, estimate_from_size
from echoflow.audio.segmenter import Segmenter
from echoflow.core.errors import (
    InvalidUpload,
    JobCancelled,
    JobNotFound,
    JobNotReady,
    MaterializationError,
    SegmentationError,
)
from echoflow.extract.summarizer import Summarizer
from echoflow.jobs import store as states
from echoflow.jobs.cancellation import CancelToken
from echoflow.jobs.registry import SUMMARIZE, TRANSCRIBE, ProcessHandle, ProcessRegistry
from echoflow.jobs.store import JobResult, JobStore
from echoflow.storage.blob_store import BlobStore
from echoflow.transcribe.transcriber import Transcriber

logger = logging.getLogger(__name__)

MB = 1024 * 1024

CANCEL_OK = "ok"
CANCEL_NOT_FOUND = "not_found"
CANCEL_ALREADY_TERMINAL = "already_terminal"

# Progress milestones per stage; transcription spreads linearly over TRANSCRIBE_START..TRANSCRIBE_END.
PROGRESS_INGEST_START = 10
PROGRESS_INGEST_DONE = 30
PROGRESS_DOWNLOAD_START = 40
PROGRESS_DOWNLOAD_DONE = 50
PROGRESS_SPLIT_START = 55
PROGRESS_SPLIT_DONE = 65
PROGRESS_TRANSCRIBE_START = 70
PROGRESS_TRANSCRIBE_END = 90
PROGRESS_SUMMARY = 92
PROGRESS_DONE = 100


def _valid_seconds(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value) and value > 0


def plan_segments(
    size_bytes: int,
    duration_seconds: float,
    target_chunk_mb: float = 24,
    default_segment_seconds: int = 600,
) -> Tuple[int, int]:
    """Return (target chunk count, segment length in seconds) for a file.
    count = ceil(sizeMB / target_chunk_mb), segment = ceil(duration / count); an unusable segment length becomes default_segment_seconds."""
    size_mb = size_bytes / MB
    count = max(1, math.ceil(size_mb / target_chunk_mb))
    segment_seconds = math.ceil(duration_seconds / count) if _valid_seconds(duration_seconds) else 0
    if not _valid_seconds(segment_seconds):
        segment_seconds = default_segment_seconds
    return count, int(segment_seconds)


def _remove_file(path: Optional[str]) -> None:
    """Best-effort unlink; failures are logged."""
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError:
        logger.warning("cleanup_file_failed", exc_info=True, extra={"path": path})


@dataclass
class _JobRun:
    """Per-run working state owned by the job's thread."""

    job_id: str
    original_name: str
    token: CancelToken
    locator: Optional[str] = None
    local_path: Optional[str] = None
    transcript_locator: Optional[str] = None


class Orchestrator:
    """Owns the end-to-end job lifecycle. Stores and adapters are injected so tests can substitute fakes."""

    def __init__(
        self,
        store: JobStore,
        registry: ProcessRegistry,
        blob_store: BlobStore,
        prober: DurationProber,
        segmenter: Segmenter,
        transcriber: Transcriber,
        summarizer: Summarizer,
        settings,
    ):
        self.store = store
        self.registry = registry
        self.blob_store = blob_store
        self.prober = prober
        self.segmenter = segmenter
        self.transcriber = transcriber
        self.summarizer = summarizer
        self.settings = settings

        self._tokens: Dict[str, CancelToken] = {}
        self._threads: Dict[str, threading.Thread] = {}
        # Serializes cancel() against terminal transitions.
        self._lock = threading.Lock()

    # -------------------------
    # Public API
    # -------------------------

    def submit(self, raw_bytes: bytes, original_name: str) -> str:
        """Accept an upload and start processing it on a background thread. Returns the job id immediately."""
        if not raw_bytes:
            raise InvalidUpload("No file uploaded or file is empty")

        name = Path(original_name or "").name or "audio"
        job_id = str(uuid.uuid4())
        self.store.create(job_id, name)
        logger.info("upload_received", extra={"job_id": job_id, "file_name": name, "size_mb": round(len(raw_bytes) / MB, 2)})

        token = CancelToken()
        thread = threading.Thread(
            target=self._run,
            args=(_JobRun(job_id=job_id, original_name=name, token=token), raw_bytes),
            name=f"job-{job_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._tokens[job_id] = token
            self._threads[job_id] = thread
        thread.start()
        return job_id

    def get_status(self, job_id: str) -> Dict[str, Any]:
        snapshot = self.store.snapshot(job_id)
        if snapshot is None:
            raise JobNotFound(job_id)
        return snapshot

    def get_result(self, job_id: str) -> Dict[str, Any]:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.status != states.COMPLETED:
            raise JobNotReady(f"Job {job_id} is {job.status}, not completed")
        result = self.store.result(job_id)
        return {"transcript": result["transcript"], "minutes": result["minutes"]}

    def cancel(self, job_id: str) -> str:
        """Request cancellation. Returns ok, not_found or already_terminal; never raises for late requests."""
        with self._lock:
            job = self.store.get(job_id)
            if job is None:
                return CANCEL_NOT_FOUND
            if job.is_terminal:
                return CANCEL_ALREADY_TERMINAL
            token = self._tokens.get(job_id)
            if token is not None:
                token.cancel()

        logger.info("cancel_requested", extra={"job_id": job_id, "status": job.status})
        self.registry.terminate(job_id)
        return CANCEL_OK

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the job's thread exits (or timeout). Returns True if the job is terminal."""
        with self._lock:
            thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout)
        job = self.store.get(job_id)
        return job is not None and job.is_terminal

    # -------------------------
    # Job thread
    # -------------------------

    def _set(self, job_id: str, **fields: Any) -> None:
        job = self.store.update(job_id, **fields)
        if "status" in fields:
            logger.info("job_status", extra={"job_id": job_id, "status": job.status, "progress": job.progress})

    def _run(self, run: _JobRun, raw_bytes: bytes) -> None:
        job_id = run.job_id
        self._set(job_id, started_at=time.time())
        result: Optional[JobResult] = None
        error: Optional[str] = None
        cancelled = False

        try:
            result = self._execute(run, raw_bytes)
        except JobCancelled:
            cancelled = True
        except Exception as e:
            logger.exception("job_failed", extra={"job_id": job_id})
            error = str(e) or e.__class__.__name__
        finally:
            self.registry.unregister(job_id)
            self._cleanup(run)

        status = self._finalize(run, result=result, error=error, cancelled=cancelled)
        if status == states.CANCELLED and run.transcript_locator:
            self.blob_store.delete(run.transcript_locator)

        with self._lock:
            self._threads.pop(job_id, None)

    def _finalize(self, run: _JobRun, result: Optional[JobResult], error: Optional[str], cancelled: bool) -> str:
        now = time.time()
        with self._lock:
            self._tokens.pop(run.job_id, None)
            if cancelled or run.token.cancelled:
                self._set(run.job_id, status=states.CANCELLED, error="Job cancelled by user", finished_at=now)
                logger.info("job_cancelled", extra={"job_id": run.job_id})
                return states.CANCELLED
            if error is not None:
                self._set(run.job_id, status=states.ERROR, progress=0, error=error, finished_at=now)
                return states.ERROR
            self._set(run.job_id, status=states.COMPLETED, progress=PROGRESS_DONE, result=result, finished_at=now)
            logger.info("job_completed", extra={"job_id": run.job_id})
            return states.COMPLETED

    def _execute(self, run: _JobRun, raw_bytes: bytes) -> JobResult:
        job_id, token = run.job_id, run.token

        # 1. ingest
        self._set(job_id, status=states.UPLOADING_TO_COS, progress=PROGRESS_INGEST_START)
        run.locator = self.blob_store.put(
            raw_bytes,
            f"audio/{job_id}/{run.original_name}",
            content_type=mimetypes.guess_type(run.original_name)[0],
        )
        self._set(job_id, status=states.UPLOADED_TO_COS, progress=PROGRESS_INGEST_DONE)
        token.raise_if_cancelled()

        # 2. materialize locally
        self._set(job_id, status=states.DOWNLOADING_FROM_COS, progress=PROGRESS_DOWNLOAD_START)
        run.local_path = self._materialize(run)
        self._set(job_id, status=states.DOWNLOADED_FROM_COS, progress=PROGRESS_DOWNLOAD_DONE)
        token.raise_if_cancelled()

        # 3-4. size decision and segmentation
        size = os.path.getsize(run.local_path)
        chunked = size > self.settings.split_threshold_mb * MB
        if chunked:
            logger.info("split_required", extra={"job_id": job_id, "size_mb": round(size / MB, 2)})
            units = self._split(run, size)
        else:
            units = [run.local_path]

        # 5. transcription
        transcript = self._transcribe_all(run, units, chunked)

        # 6. summarization
        token.raise_if_cancelled()
        self._set(job_id, status=states.GENERATING_SUMMARY, progress=PROGRESS_SUMMARY)
        self.registry.register(job_id, ProcessHandle(kind=SUMMARIZE))
        try:
            minutes = self.summarizer.summarize(transcript)
        finally:
            self.registry.unregister(job_id)
        token.raise_if_cancelled()

        # 7. persist transcript
        run.transcript_locator = self.blob_store.put(
            transcript, f"transcripts/{job_id}.txt", content_type="text/plain; charset=utf-8"
        )
        return JobResult(transcript=transcript, transcript_locator=run.transcript_locator, minutes=minutes)

    def _job_dir(self, job_id: str) -> str:
        return os.path.join(self.settings.work_dir, job_id)

    def _materialize(self, run: _JobRun) -> str:
        """Fetch the stored audio into the job's work dir so later steps always see a local file."""
        job_dir = self._job_dir(run.job_id)
        os.makedirs(job_dir, exist_ok=True)
        path = os.path.join(job_dir, f"source{Path(run.original_name).suffix or '.audio'}")

        data = self.blob_store.get(run.locator)
        with open(path, "wb") as f:
            f.write(data)

        if not os.path.isfile(path) or os.path.getsize(path) == 0:
            raise MaterializationError(f"Local audio file missing after download: {path}")
        return path

    def _split(self, run: _JobRun, size: int) -> List[str]:
        job_id = run.job_id
        run.token.raise_if_cancelled()
        self._set(job_id, status=states.SPLITTING, progress=PROGRESS_SPLIT_START)

        duration = self.prober.probe(run.local_path)
        if not _valid_seconds(duration):
            duration = estimate_from_size(run.local_path)
            logger.warning("split_duration_estimated", extra={"job_id": job_id, "seconds": duration})

        count, segment_seconds = plan_segments(
            size,
            duration,
            target_chunk_mb=self.settings.target_chunk_mb,
            default_segment_seconds=self.settings.default_segment_seconds,
        )
        logger.info(
            "split_plan",
            extra={"job_id": job_id, "duration": duration, "target_chunks": count, "segment_seconds": segment_seconds},
        )

        chunks = self.segmenter.split(run.local_path, segment_seconds, job_id, run.token)
        if not chunks:
            raise SegmentationError("Segmentation produced no usable chunks")

        self._set(job_id, total_chunks=len(chunks), current_chunk=0, progress=PROGRESS_SPLIT_DONE)
        return chunks

    def _transcribe_all(self, run: _JobRun, units: List[str], chunked: bool) -> str:
        """Transcribe units one at a time, deleting each chunk right after use. Unsent chunks are deleted on exit, never drained."""
        job_id, token = run.job_id, run.token
        total = len(units)
        span = PROGRESS_TRANSCRIBE_END - PROGRESS_TRANSCRIBE_START
        texts: List[str] = []

        try:
            for index, unit in enumerate(units, start=1):
                token.raise_if_cancelled()
                fields: Dict[str, Any] = {
                    "status": states.TRANSCRIBING,
                    "progress": PROGRESS_TRANSCRIBE_START + span * (index - 1) // total,
                }
                if chunked:
                    fields["current_chunk"] = index
                self._set(job_id, **fields)
                logger.info("transcribe_progress", extra={"job_id": job_id, "chunk": index, "total": total})

                self.registry.register(job_id, ProcessHandle(kind=TRANSCRIBE))
                try:
                    text = self.transcriber.transcribe(unit)
                finally:
                    self.registry.unregister(job_id)
                    if chunked:
                        _remove_file(unit)

                if text:
                    texts.append(text.strip())
                self._set(job_id, progress=PROGRESS_TRANSCRIBE_START + span * index // total)
        finally:
            if chunked:
                for unit in units:
                    _remove_file(unit)

        return " ".join(texts)

    def _cleanup(self, run: _JobRun) -> None:
        """Delete the local copy, chunk files and the stored audio. Best effort: failures are logged only."""
        _remove_file(run.local_path)
        job_dir = self._job_dir(run.job_id)
        if os.path.isdir(job_dir):
            try:
                shutil.rmtree(job_dir)
            except OSError:
                logger.warning("cleanup_dir_failed", exc_info=True, extra={"job_id": run.job_id, "path": job_dir})
        if run.locator:
            self.blob_store.delete(run.locator)
        logger.info("cleanup_done", extra={"job_id": run.job_id})
