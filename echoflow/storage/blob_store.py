"""
Blob store adapter: put/get/delete for uploaded audio and transcripts.

Remote storage is a Google Cloud Storage bucket. When no bucket is
configured, or a remote put fails, data is written under a local storage
root instead and the absolute file path is returned as the locator. A
locator is therefore either ``gs://<bucket>/<key>`` or a local path, and
``get``/``delete`` dispatch on that form.
"""
import logging
import os
from pathlib import Path
from typing import Any, Optional, Union

from google.cloud import storage

logger = logging.getLogger(__name__)

GCS_SCHEME = "gs://"


def is_remote(locator: str) -> bool:
    return locator.startswith(GCS_SCHEME)


def _split_remote(locator: str) -> tuple[str, str]:
    bucket_name, _, key = locator[len(GCS_SCHEME):].partition("/")
    return bucket_name, key


class BlobStore:
    """Uniform put/get/delete over bytes, with transparent local fallback.
    `bucket` is a google.cloud.storage Bucket (or anything exposing .name and .blob(key)); None means local-only."""

    def __init__(self, local_root: str, bucket: Optional[Any] = None):
        self.local_root = Path(local_root)
        self.bucket = bucket

    @classmethod
    def from_settings(cls, settings) -> "BlobStore":
        """Build the store from config. A bucket that cannot be reached at construction time means local mode."""
        bucket = None
        if settings.gcs_bucket:
            try:
                bucket = storage.Client().bucket(settings.gcs_bucket)
            except Exception:
                logger.warning("gcs_unavailable_using_local", exc_info=True, extra={"bucket": settings.gcs_bucket})
        else:
            logger.info("gcs_not_configured_using_local")
        return cls(settings.storage_dir, bucket=bucket)

    @property
    def remote_enabled(self) -> bool:
        return self.bucket is not None

    def _local_path(self, key: str) -> Path:
        # Keys are built by the pipeline; keep them inside local_root regardless.
        parts = [p for p in Path(key).parts if p not in ("", ".", "..", "/")]
        return self.local_root.joinpath(*parts)

    def _put_local(self, data: bytes, key: str) -> str:
        path = self._local_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return str(path.resolve())

    def _prune_empty_dirs(self, directory: Path) -> None:
        """Remove now-empty per-key directories, innermost first. Top-level prefixes such as audio/ are kept."""
        root = self.local_root.resolve()
        current = directory.resolve()
        while current.parent != root and current.is_relative_to(root):
            try:
                current.rmdir()
            except OSError:
                break
            current = current.parent

    def put(self, data: Union[bytes, str], key: str, content_type: Optional[str] = None) -> str:
        """Store data under key and return its locator. Never raises for remote problems; falls back to local disk."""
        if isinstance(data, str):
            data = data.encode("utf-8")

        if self.bucket is not None:
            try:
                blob = self.bucket.blob(key)
                blob.upload_from_string(data, content_type=content_type)
                locator = f"{GCS_SCHEME}{self.bucket.name}/{key}"
                logger.info("blob_put_remote", extra={"locator": locator, "bytes": len(data)})
                return locator
            except Exception:
                logger.warning("blob_put_remote_failed_using_local", exc_info=True, extra={"key": key})

        locator = self._put_local(data, key)
        logger.info("blob_put_local", extra={"locator": locator, "bytes": len(data)})
        return locator

    def get(self, locator: str) -> bytes:
        """Read bytes back. Local paths are read directly; remote failures propagate to the caller."""
        if not is_remote(locator):
            return Path(locator).read_bytes()

        bucket_name, key = _split_remote(locator)
        if self.bucket is None or bucket_name != self.bucket.name:
            raise FileNotFoundError(f"No configured bucket for {locator}")
        return self.bucket.blob(key).download_as_bytes()

    def delete(self, locator: Optional[str]) -> bool:
        """Best-effort delete. Failures are logged and reported as False, never raised."""
        if not locator:
            return False
        try:
            if is_remote(locator):
                bucket_name, key = _split_remote(locator)
                if self.bucket is None or bucket_name != self.bucket.name:
                    raise FileNotFoundError(f"No configured bucket for {locator}")
                self.bucket.blob(key).delete()
            else:
                os.remove(locator)
                self._prune_empty_dirs(Path(locator).parent)
            logger.info("blob_deleted", extra={"locator": locator})
            return True
        except Exception:
            logger.warning("blob_delete_failed", exc_info=True, extra={"locator": locator})
            return False
