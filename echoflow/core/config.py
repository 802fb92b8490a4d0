import os
from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

load_dotenv()


class Settings(BaseModel):
    """Application settings loaded from environment: OpenAI key and models, object storage bucket, local storage/work dirs, segmentation thresholds and external tool paths.
    Why available: Single source of configuration so the pipeline, adapters and HTTP layer agree on limits and locations."""
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_timeout_seconds: float = float(os.getenv("OPENAI_TIMEOUT_SECONDS", "600"))
    transcribe_model: str = os.getenv("TRANSCRIBE_MODEL", "whisper-1")
    minutes_model: str = os.getenv("MINUTES_MODEL", "gpt-4-turbo")
    prompt_version: str = os.getenv("PROMPT_VERSION", "v1")

    gcs_bucket: str = os.getenv("GCS_BUCKET", "")  # empty -> local storage only
    storage_dir: str = os.getenv("STORAGE_DIR", os.path.join(os.getcwd(), "data", "storage"))
    work_dir: str = os.getenv("WORK_DIR", os.path.join(os.getcwd(), "data", "work"))

    split_threshold_mb: float = float(os.getenv("SPLIT_THRESHOLD_MB", "25"))
    target_chunk_mb: float = float(os.getenv("TARGET_CHUNK_MB", "24"))
    default_segment_seconds: int = int(os.getenv("DEFAULT_SEGMENT_SECONDS", "600"))
    min_chunk_bytes: int = int(os.getenv("MIN_CHUNK_BYTES", "1024"))
    kill_grace_seconds: float = float(os.getenv("KILL_GRACE_SECONDS", "2"))
    max_upload_mb: int = int(os.getenv("MAX_UPLOAD_MB", "500"))

    ffmpeg_bin: str = os.getenv("FFMPEG_BIN", "ffmpeg")
    ffprobe_bin: str = os.getenv("FFPROBE_BIN", "ffprobe")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @field_validator(
        "openai_timeout_seconds",
        "split_threshold_mb",
        "target_chunk_mb",
        "default_segment_seconds",
        "kill_grace_seconds",
        "max_upload_mb",
    )
    @classmethod
    def must_be_positive(cls, v):
        """Ensure size, time and limit settings are positive. Prevents invalid config from env."""
        if v <= 0:
            raise ValueError("must be > 0")
        return v


settings = Settings()
