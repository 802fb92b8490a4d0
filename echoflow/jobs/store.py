"""In-memory job store for the audio pipeline: status, progress, chunk counters and terminal result/error per job."""
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

# Pipeline states, in order. error and cancelled are absorbing and reachable from any working state.
UPLOADING_TO_COS = "uploading_to_cos"
UPLOADED_TO_COS = "uploaded_to_cos"
DOWNLOADING_FROM_COS = "downloading_from_cos"
DOWNLOADED_FROM_COS = "downloaded_from_cos"
SPLITTING = "splitting"
TRANSCRIBING = "transcribing"
GENERATING_SUMMARY = "generating_summary"
COMPLETED = "completed"
ERROR = "error"
CANCELLED = "cancelled"

WORKING_STATES = (
    UPLOADING_TO_COS,
    UPLOADED_TO_COS,
    DOWNLOADING_FROM_COS,
    DOWNLOADED_FROM_COS,
    SPLITTING,
    TRANSCRIBING,
    GENERATING_SUMMARY,
)
TERMINAL_STATES = (COMPLETED, ERROR, CANCELLED)


@dataclass
class JobResult:
    """Terminal success payload: full transcript, where it was persisted, and the bilingual minutes."""

    transcript: str
    transcript_locator: str
    minutes: Dict[str, Any]


@dataclass
class Job:
    """A single pipeline run for one uploaded recording.
    Why available: Clients poll /api/progress until the job reaches completed, error or cancelled."""

    job_id: str
    original_name: str
    status: str
    created_at: float
    progress: int = 0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    current_chunk: Optional[int] = None
    total_chunks: Optional[int] = None
    error: Optional[str] = None
    result: Optional[JobResult] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


class JobStore:
    """Lock-protected job table keyed by job id. No eviction unless the caller invokes prune().
    Why available: Injected into the orchestrator so tests (and a future durable backend) can swap it."""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def create(self, job_id: str, original_name: str) -> Job:
        job = Job(
            job_id=job_id,
            original_name=original_name,
            status=UPLOADING_TO_COS,
            created_at=time.time(),
        )
        with self._lock:
            if job_id in self._jobs:
                raise KeyError(f"Job {job_id} already exists")
            self._jobs[job_id] = job
        return job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def update(self, job_id: str, **fields: Any) -> Job:
        """Apply field changes atomically. Progress never moves backwards, except the reset to 0 that comes with status=error."""
        with self._lock:
            job = self._jobs[job_id]
            if job.is_terminal:
                raise ValueError(f"Job {job_id} is already {job.status}")
            progress = fields.get("progress")
            if progress is not None:
                if fields.get("status") == ERROR:
                    fields["progress"] = max(0, min(100, progress))
                else:
                    fields["progress"] = max(job.progress, min(100, progress))
            for key, value in fields.items():
                if not hasattr(job, key):
                    raise AttributeError(f"Job has no field {key!r}")
                setattr(job, key, value)
            return job

    def snapshot(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the caller-visible status fields, or None for an unknown id. Optional fields are omitted until set."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            out: Dict[str, Any] = {
                "job_id": job.job_id,
                "status": job.status,
                "progress": job.progress,
            }
            if job.total_chunks is not None:
                out["current_chunk"] = job.current_chunk or 0
                out["total_chunks"] = job.total_chunks
            if job.error is not None:
                out["error"] = job.error
            return out

    def result(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.result is None:
                return None
            return asdict(job.result)

    def job_ids(self) -> List[str]:
        with self._lock:
            return list(self._jobs)

    def prune(self, max_age_seconds: float, now: Optional[float] = None) -> int:
        """Drop terminal jobs that finished more than max_age_seconds ago. Returns how many were removed.
        Never called automatically; the hosting application decides when to collect."""
        now = time.time() if now is None else now
        with self._lock:
            stale = [
                job_id
                for job_id, job in self._jobs.items()
                if job.is_terminal and job.finished_at is not None and now - job.finished_at > max_age_seconds
            ]
            for job_id in stale:
                del self._jobs[job_id]
        return len(stale)
