"""Speech-to-text for one audio file or chunk via the OpenAI audio transcription API. No retry: errors propagate to the job."""
import logging
import time
from pathlib import Path
from typing import Optional, Protocol

from echoflow.core.config import settings
from echoflow.core.openai_client import get_openai_client

logger = logging.getLogger(__name__)


class Transcriber(Protocol):
    def transcribe(self, path: str) -> str:
        ...


class OpenAITranscriber:
    def __init__(self, model: Optional[str] = None, client=None):
        self.model = model or settings.transcribe_model
        self._client = client

    def transcribe(self, path: str) -> str:
        """Send one audio file to the transcription model and return its text (stripped)."""
        client = self._client or get_openai_client()
        name = Path(path).name
        logger.info("transcribe_started", extra={"chunk": name, "model": self.model})
        start = time.perf_counter()

        with open(path, "rb") as f:
            resp = client.audio.transcriptions.create(model=self.model, file=f)

        text = (getattr(resp, "text", None) or "").strip()
        logger.info(
            "transcribe_done",
            extra={"chunk": name, "seconds": round(time.perf_counter() - start, 2), "chars": len(text)},
        )
        return text
