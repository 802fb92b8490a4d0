#!/usr/bin/env python3
"""Print pipeline limits and storage mode (from config). Run from repo root: python scripts/print_limits.py"""
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from echoflow.core.config import settings
from echoflow.audio.probe import ASSUMED_BITRATE_KBPS, MIN_DURATION_SECONDS


def main():
    """Print upload, segmentation and cancellation limits plus where blobs are stored."""
    print("Pipeline limits")
    print("---------------")
    print(f"  MAX_UPLOAD_MB           = {settings.max_upload_mb} MB (max size per uploaded recording)")
    print(f"  SPLIT_THRESHOLD_MB      = {settings.split_threshold_mb} MB (larger files are segmented)")
    print(f"  TARGET_CHUNK_MB         = {settings.target_chunk_mb} MB (chunk count = ceil(size / target))")
    print(f"  DEFAULT_SEGMENT_SECONDS = {settings.default_segment_seconds} s (used when duration is unusable)")
    print(f"  MIN_CHUNK_BYTES         = {settings.min_chunk_bytes} B (smaller tail chunks are dropped)")
    print(f"  KILL_GRACE_SECONDS      = {settings.kill_grace_seconds} s (SIGTERM -> SIGKILL on cancel)")
    print(f"  Duration estimate       = {ASSUMED_BITRATE_KBPS} kbps, floor {MIN_DURATION_SECONDS:.0f} s")
    print("")
    print(f"  Storage                 = {'gs://' + settings.gcs_bucket if settings.gcs_bucket else settings.storage_dir + ' (local)'}")
    print(f"  Work dir                = {settings.work_dir}")
    print(f"  Models                  = {settings.transcribe_model} / {settings.minutes_model}")


if __name__ == "__main__":
    main()
