"""Process registry: job id -> handle of the external operation currently in flight, so cancel can kill it."""
import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

logger = logging.getLogger(__name__)

SEGMENT = "segment"
TRANSCRIBE = "transcribe"
SUMMARIZE = "summarize"


@dataclass
class ProcessHandle:
    """One external operation for a job. `process` is set only for spawned child processes; network calls carry none and cannot be interrupted."""

    kind: str  # segment | transcribe | summarize
    started_at: float = field(default_factory=time.time)
    process: Optional[subprocess.Popen] = None


class ProcessRegistry:
    """Lock-protected map of job id -> ProcessHandle. At most one handle per job; register replaces any previous one."""

    def __init__(self, kill_grace_seconds: float = 2.0):
        self.kill_grace_seconds = kill_grace_seconds
        self._handles: Dict[str, ProcessHandle] = {}
        self._lock = threading.Lock()

    def register(self, job_id: str, handle: ProcessHandle) -> ProcessHandle:
        with self._lock:
            self._handles[job_id] = handle
        return handle

    def lookup(self, job_id: str) -> Optional[ProcessHandle]:
        with self._lock:
            return self._handles.get(job_id)

    def unregister(self, job_id: str) -> Optional[ProcessHandle]:
        with self._lock:
            return self._handles.pop(job_id, None)

    def terminate(self, job_id: str) -> bool:
        """Stop whatever the job has in flight: SIGTERM, wait kill_grace_seconds, then SIGKILL. Unregisters the handle.
        Returns True if a live child process was signalled."""
        handle = self.unregister(job_id)
        if handle is None or handle.process is None:
            return False
        proc = handle.process
        if proc.poll() is not None:
            return False

        logger.info("process_terminate", extra={"job_id": job_id, "kind": handle.kind, "pid": proc.pid})
        try:
            proc.terminate()
            proc.wait(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("process_kill", extra={"job_id": job_id, "kind": handle.kind, "pid": proc.pid})
            proc.kill()
            proc.wait()
        except ProcessLookupError:
            # exited between poll() and terminate()
            pass
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
