"""Pipeline orchestrator tests: lifecycle, progress, segmentation planning, cancellation and cleanup."""
import math
import os
import threading
from pathlib import Path

import pytest

from echoflow.core.errors import InvalidUpload, JobNotFound, JobNotReady
from echoflow.jobs import store as states
from echoflow.jobs.orchestrator import (
    CANCEL_ALREADY_TERMINAL,
    CANCEL_NOT_FOUND,
    CANCEL_OK,
    MB,
    plan_segments,
)
from echoflow.jobs.store import JobStore
from echoflow.storage.blob_store import BlobStore, is_remote
from conftest import (
    MINUTES,
    BlockingSegmenter,
    FakeBucket,
    FakeSegmenter,
    FakeSummarizer,
    FakeTranscriber,
    StaticProber,
    wait_for,
)

SMALL = b"\x01" * 1000    # below the 5 KB test threshold: transcribed whole
LARGE = b"\x01" * 10_000  # above it: segmented


class RecordingJobStore(JobStore):
    """JobStore that keeps every (status, progress) pair it ever held."""

    def __init__(self):
        super().__init__()
        self.history = []

    def update(self, job_id, **fields):
        job = super().update(job_id, **fields)
        self.history.append((job.status, job.progress))
        return job


def _run(orch, data=SMALL, name="meeting.mp3"):
    job_id = orch.submit(data, name)
    assert orch.wait(job_id, timeout=10)
    return job_id


# -------------------------
# Segment planning
# -------------------------

def test_plan_segments_thirty_mb_half_hour():
    assert plan_segments(30 * MB, 1800.0) == (2, 900)


def test_plan_segments_rounds_up():
    assert plan_segments(49 * MB, 1801.0) == (3, 601)


@pytest.mark.parametrize("duration", [0, -5, float("nan"), float("inf")])
def test_plan_segments_invalid_duration_uses_default(duration):
    assert plan_segments(30 * MB, duration, default_segment_seconds=600) == (2, 600)


def test_plan_segments_tiny_file_is_one_chunk():
    assert plan_segments(10, 700.0) == (1, 700)


# -------------------------
# Happy paths
# -------------------------

def test_small_file_transcribed_whole(make_orchestrator, test_settings):
    segmenter = FakeSegmenter(test_settings.work_dir)
    transcriber = FakeTranscriber()
    orch = make_orchestrator(segmenter=segmenter, transcriber=transcriber)

    job_id = _run(orch)

    status = orch.get_status(job_id)
    assert status == {"job_id": job_id, "status": states.COMPLETED, "progress": 100}
    assert segmenter.calls == []
    assert len(transcriber.calls) == 1

    result = orch.get_result(job_id)
    assert result["transcript"] == "text-source.mp3"
    assert result["minutes"] == MINUTES


def test_completed_job_keeps_only_transcript(make_orchestrator, test_settings):
    orch = make_orchestrator()
    job_id = _run(orch)

    job = orch.store.get(job_id)
    locator = job.result.transcript_locator
    assert Path(locator).read_text(encoding="utf-8") == "text-source.mp3"
    assert Path(locator).name == f"{job_id}.txt"

    assert not (Path(test_settings.storage_dir) / "audio" / job_id).exists()
    assert not (Path(test_settings.work_dir) / job_id).exists()
    assert len(orch.registry) == 0


def test_large_file_split_and_transcribed_in_order(make_orchestrator, test_settings):
    store = RecordingJobStore()
    segmenter = FakeSegmenter(test_settings.work_dir, sizes=(4096, 4096, 4096, 4096))
    transcriber = FakeTranscriber()
    orch = make_orchestrator(store=store, segmenter=segmenter, transcriber=transcriber)

    job_id = _run(orch, LARGE)

    status = orch.get_status(job_id)
    assert status["status"] == states.COMPLETED
    assert status["total_chunks"] == status["current_chunk"] == 4
    assert orch.get_result(job_id)["transcript"] == " ".join(f"text-source_{i:03d}.mp3" for i in range(4))
    assert [Path(p).name for p in transcriber.calls] == [f"source_{i:03d}.mp3" for i in range(4)]
    assert all(not os.path.exists(p) for p in segmenter.produced)

    # 10 KB / 0.004 MB target -> 3 chunks, 1800 s probed -> 600 s each
    assert segmenter.calls[0]["segment_seconds"] == 600

    statuses = [s for s, _ in store.history]
    for expected in (
        states.UPLOADING_TO_COS,
        states.UPLOADED_TO_COS,
        states.DOWNLOADING_FROM_COS,
        states.DOWNLOADED_FROM_COS,
        states.SPLITTING,
        states.TRANSCRIBING,
        states.GENERATING_SUMMARY,
        states.COMPLETED,
    ):
        assert expected in statuses
    order = [statuses.index(s) for s in (states.SPLITTING, states.TRANSCRIBING, states.GENERATING_SUMMARY)]
    assert order == sorted(order)


def test_progress_non_decreasing_and_100_only_when_completed(make_orchestrator, test_settings):
    store = RecordingJobStore()
    orch = make_orchestrator(store=store, segmenter=FakeSegmenter(test_settings.work_dir, sizes=(2048,) * 5))
    _run(orch, LARGE)

    progresses = [p for _, p in store.history]
    assert progresses == sorted(progresses)
    assert [s for s, p in store.history if p == 100] == [states.COMPLETED]
    transcribing = [p for s, p in store.history if s == states.TRANSCRIBING]
    assert min(transcribing) >= 70 and max(transcribing) <= 90


def test_invalid_probe_result_uses_size_estimate(make_orchestrator, test_settings):
    for bad in (0.0, float("nan")):
        segmenter = FakeSegmenter(test_settings.work_dir)
        orch = make_orchestrator(prober=StaticProber(bad), segmenter=segmenter)
        job_id = _run(orch, LARGE)
        assert orch.get_status(job_id)["status"] == states.COMPLETED
        # size estimate floors at 600 s; 3 target chunks -> 200 s
        assert segmenter.calls[0]["segment_seconds"] == math.ceil(600 / 3)


def test_unreachable_object_store_falls_back_to_local(make_orchestrator, test_settings):
    bucket = FakeBucket(fail=True)
    orch = make_orchestrator(blob_store=BlobStore(test_settings.storage_dir, bucket=bucket))

    job_id = _run(orch, LARGE)

    assert orch.get_status(job_id)["status"] == states.COMPLETED
    locator = orch.store.get(job_id).result.transcript_locator
    assert not is_remote(locator)
    assert Path(locator).is_file()
    assert bucket.objects == {}


def test_remote_audio_deleted_after_completion(make_orchestrator, test_settings):
    bucket = FakeBucket()
    orch = make_orchestrator(blob_store=BlobStore(test_settings.storage_dir, bucket=bucket))

    job_id = _run(orch)

    assert list(bucket.objects) == [f"transcripts/{job_id}.txt"]
    assert orch.store.get(job_id).result.transcript_locator == f"gs://meetings/transcripts/{job_id}.txt"


def test_status_after_completion_is_idempotent(make_orchestrator):
    orch = make_orchestrator()
    job_id = _run(orch)
    first = orch.get_status(job_id)
    assert all(orch.get_status(job_id) == first for _ in range(5))


def test_concurrent_jobs_are_independent(make_orchestrator):
    orch = make_orchestrator()
    job_ids = [orch.submit(LARGE if i % 2 else SMALL, f"m{i}.mp3") for i in range(6)]
    for job_id in job_ids:
        assert orch.wait(job_id, timeout=10)
    assert {orch.get_status(j)["status"] for j in job_ids} == {states.COMPLETED}


# -------------------------
# Input and fatal errors
# -------------------------

def test_empty_upload_rejected_before_job_exists(make_orchestrator):
    orch = make_orchestrator()
    with pytest.raises(InvalidUpload):
        orch.submit(b"", "empty.mp3")
    assert orch.store.job_ids() == []


def test_transcriber_failure_sets_error_and_cleans_up(make_orchestrator, test_settings):
    segmenter = FakeSegmenter(test_settings.work_dir)
    orch = make_orchestrator(segmenter=segmenter, transcriber=FakeTranscriber(fail_on=2))

    job_id = _run(orch, LARGE)

    status = orch.get_status(job_id)
    assert status["status"] == states.ERROR
    assert status["progress"] == 0
    assert "speech service failed" in status["error"]
    assert orch.store.get(job_id).result is None
    assert all(not os.path.exists(p) for p in segmenter.produced)
    assert not (Path(test_settings.work_dir) / job_id).exists()
    assert len(orch.registry) == 0
    with pytest.raises(JobNotReady):
        orch.get_result(job_id)


def test_summarizer_failure_sets_error(make_orchestrator):
    orch = make_orchestrator(summarizer=FakeSummarizer(error=ValueError("bad model output")))
    job_id = _run(orch)
    assert orch.get_status(job_id)["error"] == "bad model output"


def test_zero_usable_chunks_is_fatal(make_orchestrator, test_settings):
    orch = make_orchestrator(segmenter=FakeSegmenter(test_settings.work_dir, sizes=()))
    job_id = _run(orch, LARGE)
    status = orch.get_status(job_id)
    assert status["status"] == states.ERROR
    assert "no usable chunks" in status["error"]


def test_materialize_failure_is_fatal(make_orchestrator, test_settings):
    class LosingStore(BlobStore):
        def get(self, locator):
            raise FileNotFoundError(f"{locator} vanished")

    orch = make_orchestrator(blob_store=LosingStore(test_settings.storage_dir))
    job_id = _run(orch)
    status = orch.get_status(job_id)
    assert status["status"] == states.ERROR
    assert "vanished" in status["error"]


def test_unknown_job_lookups(make_orchestrator):
    orch = make_orchestrator()
    with pytest.raises(JobNotFound):
        orch.get_status("nope")
    with pytest.raises(JobNotFound):
        orch.get_result("nope")
    assert orch.cancel("nope") == CANCEL_NOT_FOUND


# -------------------------
# Cancellation
# -------------------------

def test_cancel_during_splitting(make_orchestrator, test_settings):
    segmenter = BlockingSegmenter()
    transcriber = FakeTranscriber()
    orch = make_orchestrator(segmenter=segmenter, transcriber=transcriber)

    job_id = orch.submit(LARGE, "long.mp3")
    assert segmenter.started.wait(5)
    assert orch.get_status(job_id)["status"] == states.SPLITTING

    assert orch.cancel(job_id) == CANCEL_OK
    assert orch.wait(job_id, timeout=10)

    status = orch.get_status(job_id)
    assert status["status"] == states.CANCELLED
    assert status["error"]
    assert orch.store.get(job_id).result is None
    assert transcriber.calls == []
    assert not (Path(test_settings.work_dir) / job_id).exists()
    with pytest.raises(JobNotReady):
        orch.get_result(job_id)


def test_cancel_mid_transcription_stops_dispatch(make_orchestrator, test_settings):
    segmenter = FakeSegmenter(test_settings.work_dir, sizes=(4096,) * 5)
    holder = {}

    def cancel_on_second(index, path):
        if index == 2:
            assert orch.cancel(holder["job_id"]) == CANCEL_OK

    transcriber = FakeTranscriber(on_call=cancel_on_second)
    summarizer = FakeSummarizer()
    orch = make_orchestrator(segmenter=segmenter, transcriber=transcriber, summarizer=summarizer)

    holder["job_id"] = job_id = orch.submit(LARGE, "long.mp3")
    assert orch.wait(job_id, timeout=10)

    assert orch.get_status(job_id)["status"] == states.CANCELLED
    assert len(transcriber.calls) == 2
    assert summarizer.transcripts == []
    assert all(not os.path.exists(p) for p in segmenter.produced)
    assert len(orch.registry) == 0


def test_acknowledged_cancel_wins_over_step_failure(make_orchestrator):
    holder = {}

    def cancel_then_fail(index, path):
        assert orch.cancel(holder["job_id"]) == CANCEL_OK

    orch = make_orchestrator(transcriber=FakeTranscriber(fail_on=1, on_call=cancel_then_fail))

    holder["job_id"] = job_id = orch.submit(SMALL, "meeting.mp3")
    assert orch.wait(job_id, timeout=10)

    status = orch.get_status(job_id)
    assert status["status"] == states.CANCELLED
    assert "speech service failed" not in status["error"]
    assert orch.store.get(job_id).result is None

def test_cancel_during_summary_discards_transcript(make_orchestrator, test_settings):
    holder = {}
    summarizer = FakeSummarizer(on_call=lambda transcript: orch.cancel(holder["job_id"]))
    orch = make_orchestrator(summarizer=summarizer)

    holder["job_id"] = job_id = orch.submit(SMALL, "meeting.mp3")
    assert orch.wait(job_id, timeout=10)

    assert orch.get_status(job_id)["status"] == states.CANCELLED
    assert orch.store.get(job_id).result is None
    assert not (Path(test_settings.storage_dir) / "transcripts" / f"{job_id}.txt").exists()


def test_cancel_after_completion_is_acknowledged(make_orchestrator):
    orch = make_orchestrator()
    job_id = _run(orch)
    before = orch.get_status(job_id)
    assert orch.cancel(job_id) == CANCEL_ALREADY_TERMINAL
    assert orch.get_status(job_id) == before


def test_cancel_while_waiting_on_transcriber(make_orchestrator):
    release = threading.Event()
    entered = threading.Event()

    def block(index, path):
        entered.set()
        release.wait(5)

    orch = make_orchestrator(transcriber=FakeTranscriber(on_call=block))
    job_id = orch.submit(SMALL, "meeting.mp3")
    assert entered.wait(5)
    assert orch.registry.lookup(job_id).kind == "transcribe"

    assert orch.cancel(job_id) == CANCEL_OK
    assert orch.cancel(job_id) == CANCEL_OK  # still running: repeated requests are fine
    release.set()
    assert orch.wait(job_id, timeout=10)
    assert orch.get_status(job_id)["status"] == states.CANCELLED
    assert wait_for(lambda: len(orch.registry) == 0)
