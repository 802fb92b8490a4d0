from pydantic import AliasChoices, BaseModel, Field, field_validator
from typing import Any, List, Optional


def _as_str_list(v: Any) -> List[str]:
    """Coerce an LLM list field: None -> [], a bare string -> [string], drop empty entries."""
    if v is None:
        return []
    if isinstance(v, str):
        return [v.strip()] if v.strip() else []
    if isinstance(v, list):
        return [str(x).strip() for x in v if x is not None and str(x).strip()]
    return [str(v)]


class ActionItem(BaseModel):
    """One action item (task, assignee, deadline). Only the task is expected; the rest may be missing."""

    task: str = ""
    assignee: Optional[str] = Field(None, validation_alias=AliasChoices("assignee", "owner"))
    deadline: Optional[str] = Field(None, validation_alias=AliasChoices("deadline", "due_date"))

    @field_validator("task", mode="before")
    @classmethod
    def task_to_str(cls, v):
        return "" if v is None else str(v).strip()

    @field_validator("assignee", "deadline", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class MinutesSection(BaseModel):
    """Minutes in one language. Every field is optional so partial model output still validates; renderers print "Not provided" for gaps."""

    title: Optional[str] = None
    date: Optional[str] = None
    participants: List[str] = Field(default_factory=list, validation_alias=AliasChoices("participants", "attendees"))
    summary: Optional[str] = None
    key_discussion_points: List[str] = Field(default_factory=list)
    decisions: List[str] = Field(default_factory=list, validation_alias=AliasChoices("decisions", "decisions_made"))
    action_items: List[ActionItem] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list, validation_alias=AliasChoices("risks", "risks_issues"))
    next_steps: List[str] = Field(default_factory=list)

    @field_validator("participants", "key_discussion_points", "decisions", "risks", "next_steps", mode="before")
    @classmethod
    def coerce_str_list(cls, v):
        return _as_str_list(v)

    @field_validator("action_items", mode="before")
    @classmethod
    def coerce_action_items(cls, v):
        if v is None:
            return []
        if not isinstance(v, list):
            v = [v]
        out = []
        for it in v:
            if isinstance(it, dict):
                out.append(it)
            elif isinstance(it, str) and it.strip():
                out.append({"task": it.strip()})
        return out

    @field_validator("title", "date", "summary", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class MeetingMinutes(BaseModel):
    """Bilingual minutes: two mirrored sections."""

    english: MinutesSection = Field(default_factory=MinutesSection)
    chinese: MinutesSection = Field(default_factory=MinutesSection)


class UploadResponse(BaseModel):
    """Response for POST /api/upload. Why available: Clients poll /api/progress/{job_id} with this id."""

    job_id: str
    message: str = "File received, processing started"


class JobStatusResponse(BaseModel):
    """Response for GET /api/progress/{job_id}: current state, progress and chunk counters or error."""

    job_id: str
    status: str
    progress: int = Field(..., ge=0, le=100)
    current_chunk: Optional[int] = None
    total_chunks: Optional[int] = None
    error: Optional[str] = None


class MinutesResponse(BaseModel):
    """Response for GET /api/minutes/{job_id} once the job is completed."""

    job_id: str
    status: str
    transcript: str
    minutes: MeetingMinutes


class CancelResponse(BaseModel):
    """Response for POST /api/jobs/{job_id}/cancel: ok | already_terminal (unknown ids are a 404)."""

    job_id: str
    result: str
