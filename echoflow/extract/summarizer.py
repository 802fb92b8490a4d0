import json
import logging
from typing import Any, Dict, Optional, Protocol

from pydantic import ValidationError

from echoflow.core.config import settings
from echoflow.core.errors import PipelineError
from echoflow.core.openai_client import get_openai_client
from echoflow.models.schemas import MeetingMinutes
from echoflow.prompts.loader import get_system_prompt, get_user_prompt

logger = logging.getLogger(__name__)

SECTIONS = ("english", "chinese")


class SummaryFormatError(PipelineError):
    """The model output held no JSON object with minutes sections."""


class Summarizer(Protocol):
    def summarize(self, transcript: str) -> Dict[str, Any]:
        ...


def _safe_json_loads(raw: str) -> Optional[Dict[str, Any]]:
    """Parse the LLM output as JSON; if that fails, try the first {...} block. Returns None when nothing parses to an object.
    Why available: json_object mode is honoured almost always, but stray prose around the object should not fail a long job."""
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        start = raw.find("{")
        end = raw.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            data = json.loads(raw[start : end + 1])
        except json.JSONDecodeError:
            return None
    return data if isinstance(data, dict) else None


def parse_minutes(raw: str) -> MeetingMinutes:
    """Validate model output into MeetingMinutes. Missing fields (or one missing language) are tolerated; output with neither section is an error."""
    data = _safe_json_loads(raw)
    if data is None:
        raise SummaryFormatError("Summarizer returned no JSON object")
    if not any(isinstance(data.get(s), dict) for s in SECTIONS):
        raise SummaryFormatError("Summarizer output has no english/chinese minutes section")
    cleaned = {s: data[s] for s in SECTIONS if isinstance(data.get(s), dict)}
    try:
        return MeetingMinutes.model_validate(cleaned)
    except ValidationError as e:
        raise SummaryFormatError(f"Summarizer output did not match the minutes schema: {e}") from e


class OpenAISummarizer:
    """Turns a full transcript into bilingual meeting minutes with one chat completion (JSON object mode, no retry)."""

    def __init__(self, model: Optional[str] = None, client=None):
        self.model = model or settings.minutes_model
        self._client = client

    def summarize(self, transcript: str) -> Dict[str, Any]:
        oc = self._client or get_openai_client()

        system_prompt = get_system_prompt("meeting_minutes")
        user_msg = get_user_prompt("meeting_minutes", transcript=transcript)

        logger.info("summary_started", extra={"model": self.model, "transcript_chars": len(transcript)})
        resp = oc.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_msg},
            ],
            response_format={"type": "json_object"},
            temperature=0.2,
        )

        raw = resp.choices[0].message.content or ""
        minutes = parse_minutes(raw)

        logger.info("summary_preview_en: %s", (minutes.english.summary or "No summary")[:100])
        logger.info("summary_preview_zh: %s", (minutes.chinese.summary or "无摘要")[:100])
        return minutes.model_dump()
