import threading

from echoflow.core.errors import JobCancelled


class CancelToken:
    """Per-job cooperative cancellation flag, checked by the pipeline between units of work."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled("Job cancelled by user")

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds, waking early on cancel. Returns True if cancelled."""
        return self._event.wait(timeout)
