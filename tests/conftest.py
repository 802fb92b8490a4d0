import os
import sys
import threading
import time
from pathlib import Path
import json
import pytest

# Ensure repo root is on sys.path so `import echoflow...` works in tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from echoflow.core.config import Settings
from echoflow.core.errors import JobCancelled
from echoflow.jobs.orchestrator import Orchestrator
from echoflow.jobs.registry import ProcessRegistry
from echoflow.jobs.store import JobStore
from echoflow.storage.blob_store import BlobStore


MINUTES = {
    "english": {
        "title": "Sprint review",
        "date": "2024-05-01",
        "participants": ["Alex", "Sam"],
        "summary": "The team reviewed the sprint.",
        "key_discussion_points": ["Release scope"],
        "decisions": ["Ship on Friday"],
        "action_items": [{"task": "Write release notes", "assignee": "Sam", "deadline": "2024-05-03"}],
        "risks": ["QA capacity"],
        "next_steps": ["Tag the release"],
    },
    "chinese": {
        "title": "冲刺评审",
        "summary": "团队回顾了本次冲刺。",
    },
}


def pretty_json(obj) -> str:
    return json.dumps(obj, indent=2, ensure_ascii=False, sort_keys=True)


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll predicate until it is truthy or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


# -------------------------
# Fakes for external services
# -------------------------

class FakeTranscriber:
    """Returns "text-<file name>" per call. on_call(index, path) runs before returning; fail_on raises on that 1-based call."""

    def __init__(self, fail_on=None, on_call=None):
        self.calls = []
        self.fail_on = fail_on
        self.on_call = on_call

    def transcribe(self, path: str) -> str:
        self.calls.append(path)
        index = len(self.calls)
        assert os.path.exists(path), f"transcriber got missing file {path}"
        if self.on_call is not None:
            self.on_call(index, path)
        if self.fail_on == index:
            raise RuntimeError(f"speech service failed on call {index}")
        return f"text-{Path(path).name}"


class FakeSummarizer:
    def __init__(self, minutes=None, error=None, on_call=None):
        self.minutes = minutes if minutes is not None else MINUTES
        self.error = error
        self.on_call = on_call
        self.transcripts = []

    def summarize(self, transcript: str):
        self.transcripts.append(transcript)
        if self.on_call is not None:
            self.on_call(transcript)
        if self.error is not None:
            raise self.error
        return self.minutes


class FakeSegmenter:
    """Writes chunk files into the job's work dir instead of running ffmpeg. sizes gives one byte size per chunk."""

    def __init__(self, work_dir: str, sizes=(4096, 4096, 4096)):
        self.work_dir = work_dir
        self.sizes = list(sizes)
        self.calls = []
        self.produced = []

    def split(self, path, segment_seconds, job_id, token):
        self.calls.append({"path": path, "segment_seconds": segment_seconds, "job_id": job_id})
        token.raise_if_cancelled()
        out_dir = Path(self.work_dir) / job_id / "chunks" / "fake"
        out_dir.mkdir(parents=True, exist_ok=True)
        chunks = []
        for i, size in enumerate(self.sizes):
            p = out_dir / f"source_{i:03d}.mp3"
            p.write_bytes(b"\x00" * size)
            chunks.append(str(p))
        self.produced.extend(chunks)
        return chunks


class BlockingSegmenter:
    """Blocks inside split until the job is cancelled, like a long ffmpeg run."""

    def __init__(self):
        self.started = threading.Event()

    def split(self, path, segment_seconds, job_id, token):
        self.started.set()
        while not token.wait(0.01):
            pass
        raise JobCancelled("Job cancelled by user")


class StaticProber:
    def __init__(self, seconds):
        self.seconds = seconds
        self.calls = []

    def probe(self, path):
        self.calls.append(path)
        return self.seconds


class FakeBlob:
    def __init__(self, bucket, key):
        self.bucket = bucket
        self.key = key

    def upload_from_string(self, data, content_type=None):
        if self.bucket.fail:
            raise ConnectionError("object store unreachable")
        self.bucket.objects[self.key] = data

    def download_as_bytes(self):
        if self.bucket.fail:
            raise ConnectionError("object store unreachable")
        return self.bucket.objects[self.key]

    def delete(self):
        if self.bucket.fail:
            raise ConnectionError("object store unreachable")
        del self.bucket.objects[self.key]


class FakeBucket:
    """Stands in for google.cloud.storage.Bucket. fail=True makes every call raise."""

    def __init__(self, name="meetings", fail=False):
        self.name = name
        self.fail = fail
        self.objects = {}

    def blob(self, key):
        return FakeBlob(self, key)


# -------------------------
# Fixtures
# -------------------------

@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        storage_dir=str(tmp_path / "storage"),
        work_dir=str(tmp_path / "work"),
        split_threshold_mb=0.005,  # ~5 KB: anything larger gets split
        target_chunk_mb=0.004,
        kill_grace_seconds=0.5,
    )


@pytest.fixture
def make_orchestrator(test_settings):
    """Factory building an Orchestrator from fakes; any component can be overridden by keyword."""
    built = []

    def _make(**overrides):
        registry = overrides.pop("registry", None) or ProcessRegistry(kill_grace_seconds=test_settings.kill_grace_seconds)
        parts = {
            "store": JobStore(),
            "registry": registry,
            "blob_store": BlobStore(test_settings.storage_dir),
            "prober": StaticProber(1800.0),
            "segmenter": FakeSegmenter(test_settings.work_dir),
            "transcriber": FakeTranscriber(),
            "summarizer": FakeSummarizer(),
            "settings": test_settings,
        }
        parts.update(overrides)
        orch = Orchestrator(**parts)
        built.append(orch)
        return orch

    yield _make

    for orch in built:
        for job_id in orch.store.job_ids():
            orch.cancel(job_id)
            orch.wait(job_id, timeout=5)


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """
    Attach request/response payloads into pytest-html report.

    In tests, store payloads like:
      item._api_logs = [{"title": "...", "request": ..., "response": ...}, ...]
    """
    outcome = yield
    rep = outcome.get_result()

    if rep.when != "call":
        return

    api_logs = getattr(item, "_api_logs", None)
    if not api_logs:
        return

    extras = getattr(rep, "extras", [])

    try:
        from pytest_html import extras as html_extras
    except ImportError:
        return

    for entry in api_logs:
        title = entry.get("title", "API Call")
        html = f"""
        <div style="font-family: ui-monospace, SFMono-Regular, Menlo, Monaco, Consolas, monospace;">
          <h4 style="margin:8px 0;">{title}</h4>
          <details style="margin:6px 0;">
            <summary><b>Request</b></summary>
            <pre>{pretty_json(entry.get("request", {}))}</pre>
          </details>
          <details style="margin:6px 0;">
            <summary><b>Response</b></summary>
            <pre>{pretty_json(entry.get("response", {}))}</pre>
          </details>
        </div>
        """
        extras.append(html_extras.html(html))

    rep.extras = extras
