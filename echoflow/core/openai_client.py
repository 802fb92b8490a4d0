"""OpenAI client for audio transcription and chat completions (api_key and timeout from config)."""
from typing import Any

from echoflow.core.config import settings
from openai import OpenAI

_openai_client: Any = None


def get_openai_client() -> OpenAI:
    """Return a singleton OpenAI client configured with api_key and timeout from settings.
    Why available: Single place to get the client so the transcriber and the summarizer share config. No client-level retries: failures go straight to the job's error path."""
    global _openai_client
    if _openai_client is None:
        _openai_client = OpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.openai_timeout_seconds,
            max_retries=0,
        )
    return _openai_client
