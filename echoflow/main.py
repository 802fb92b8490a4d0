from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import PlainTextResponse

from echoflow.audio.probe import DurationProber
from echoflow.audio.segmenter import FallbackSegmenter, FfmpegSegmenter, PydubSegmenter
from echoflow.core.config import settings
from echoflow.core.errors import InvalidUpload, JobNotFound, JobNotReady
from echoflow.core.logging_setup import configure_logging
from echoflow.extract.minutes import render_minutes
from echoflow.extract.summarizer import OpenAISummarizer
from echoflow.guardrails.errors import as_http_500
from echoflow.jobs.orchestrator import CANCEL_NOT_FOUND, Orchestrator
from echoflow.jobs.registry import ProcessRegistry
from echoflow.jobs.store import JobStore
from echoflow.models.schemas import (
    CancelResponse,
    JobStatusResponse,
    MinutesResponse,
    UploadResponse,
)
from echoflow.observability.middleware import RequestTimingMiddleware, get_request_id
from echoflow.storage.blob_store import BlobStore
from echoflow.transcribe.transcriber import OpenAITranscriber


# -------------------------
# App setup
# -------------------------

configure_logging()

app = FastAPI(title="EchoFlow Meeting Minutes")
app.add_middleware(RequestTimingMiddleware)

SERVICE_NAME = "EchoFlow Backend"

_orchestrator: Optional[Orchestrator] = None


def build_orchestrator(cfg=settings) -> Orchestrator:
    """Wire the pipeline from config: GCS-or-local blob store, ffmpeg segmenter with pydub fallback, OpenAI transcriber/summarizer."""
    registry = ProcessRegistry(kill_grace_seconds=cfg.kill_grace_seconds)
    segmenter = FallbackSegmenter(
        FfmpegSegmenter(registry, cfg.work_dir, ffmpeg_bin=cfg.ffmpeg_bin),
        PydubSegmenter(registry, cfg.work_dir),
        min_chunk_bytes=cfg.min_chunk_bytes,
    )
    return Orchestrator(
        store=JobStore(),
        registry=registry,
        blob_store=BlobStore.from_settings(cfg),
        prober=DurationProber(ffprobe_bin=cfg.ffprobe_bin),
        segmenter=segmenter,
        transcriber=OpenAITranscriber(model=cfg.transcribe_model),
        summarizer=OpenAISummarizer(model=cfg.minutes_model),
        settings=cfg,
    )


def get_orchestrator() -> Orchestrator:
    """Return the process-wide orchestrator, built on first use. Tests override this dependency."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


# -------------------------
# Root / Health
# -------------------------

@app.get("/")
def root():
    """Returns a minimal welcome payload with app name and docs URL."""
    return {"app": "EchoFlow Meeting Minutes", "docs": "/docs"}


@app.get("/health")
def health():
    """Returns 200 with service name and timestamp. Used by load balancers and probes."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": SERVICE_NAME,
    }


# -------------------------
# Upload (starts a job)
# -------------------------

@app.post("/api/upload", response_model=UploadResponse)
async def upload(
    request: Request,
    file: Optional[UploadFile] = File(None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Accepts one audio file, starts the pipeline in the background and returns the job id right away.
    Clients poll GET /api/progress/{job_id} until completed / error / cancelled."""
    if file is None:
        raise HTTPException(status_code=400, detail="No file uploaded")

    content = await file.read()
    if len(content) > settings.max_upload_mb * 1024 * 1024:
        raise HTTPException(status_code=413, detail=f"{file.filename} exceeds {settings.max_upload_mb} MB limit")

    try:
        job_id = orchestrator.submit(content, file.filename or "audio")
    except InvalidUpload as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise as_http_500(e, get_request_id(request))

    return UploadResponse(job_id=job_id)


# -------------------------
# Progress / Result / Cancel
# -------------------------

@app.get("/api/progress/{job_id}", response_model=JobStatusResponse)
def progress(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Returns status and progress (0-100) of a job, plus chunk counters once the file was split, and the error message for error / cancelled jobs."""
    try:
        snapshot = orchestrator.get_status(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobStatusResponse(**snapshot)


def _completed_result(orchestrator: Orchestrator, job_id: str) -> dict:
    try:
        return orchestrator.get_result(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except JobNotReady:
        raise HTTPException(status_code=400, detail="Processing has not completed yet")


@app.get("/api/minutes/{job_id}", response_model=MinutesResponse)
def minutes(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Returns transcript and bilingual minutes for a completed job; 400 while still processing."""
    result = _completed_result(orchestrator, job_id)
    return MinutesResponse(job_id=job_id, status="completed", transcript=result["transcript"], minutes=result["minutes"])


@app.get("/api/minutes/{job_id}/text", response_class=PlainTextResponse)
def minutes_text(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Returns the minutes as plain text, with "Not provided" for fields the model left out."""
    result = _completed_result(orchestrator, job_id)
    return render_minutes(result["minutes"])


@app.post("/api/jobs/{job_id}/cancel", response_model=CancelResponse)
def cancel(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Cancels a running job (kills any segmentation process). Cancelling a finished job is acknowledged as already_terminal."""
    outcome = orchestrator.cancel(job_id)
    if outcome == CANCEL_NOT_FOUND:
        raise HTTPException(status_code=404, detail="Job not found")
    return CancelResponse(job_id=job_id, result=outcome)
