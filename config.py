from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = Path(os.getenv("IMPRESSION_DATA_DIR", str(BASE_DIR / "data")))
UPLOADS_DIR = DATA_DIR / "uploads"
RESULTS_DIR = DATA_DIR / "results"
JOBS_DIR = DATA_DIR / "jobs"

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

MAX_UPLOAD_BYTES = int(float(os.getenv("MAX_UPLOAD_MB", "12")) * 1024 * 1024)

REPLICATE_API_TOKEN = os.getenv("REPLICATE_API_TOKEN") or None
REPLICATE_API_BASE = os.getenv("REPLICATE_API_BASE", "https://api.replicate.com/v1").rstrip("/")
REPLICATE_MODEL_VERSION = os.getenv("REPLICATE_MODEL_VERSION", "black-forest-labs/flux-dev-lora")

POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "1.5"))
POLL_TIMEOUT = float(os.getenv("POLL_TIMEOUT", "180"))
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "60"))
CANCEL_ON_TIMEOUT = _env_flag("CANCEL_ON_TIMEOUT", True)
SHUTDOWN_GRACE = float(os.getenv("SHUTDOWN_GRACE", "5"))

# "request": missing token fails the upload with 500; "job": the job ends in error.
TOKEN_CHECK = os.getenv("TOKEN_CHECK", "request").strip().lower()
# "memory" or "file" (one JSON per job under JOBS_DIR)
JOB_STORE = os.getenv("JOB_STORE", "memory").strip().lower()

CORS_ORIGINS = tuple(o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip())


@dataclass(frozen=True)
class Settings:
    uploads_dir: Path = UPLOADS_DIR
    results_dir: Path = RESULTS_DIR
    jobs_dir: Path = JOBS_DIR
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    api_token: Optional[str] = REPLICATE_API_TOKEN
    api_base: str = REPLICATE_API_BASE
    model_version: str = REPLICATE_MODEL_VERSION
    poll_interval: float = POLL_INTERVAL
    poll_timeout: float = POLL_TIMEOUT
    http_timeout: float = HTTP_TIMEOUT
    cancel_on_timeout: bool = CANCEL_ON_TIMEOUT
    shutdown_grace: float = SHUTDOWN_GRACE
    token_check: str = TOKEN_CHECK
    job_store: str = JOB_STORE
    cors_origins: Tuple[str, ...] = field(default=CORS_ORIGINS)

    def __post_init__(self) -> None:
        if self.token_check not in ("request", "job"):
            raise ValueError(f"TOKEN_CHECK must be 'request' or 'job', got {self.token_check!r}")
        if self.job_store not in ("memory", "file"):
            raise ValueError(f"JOB_STORE must be 'memory' or 'file', got {self.job_store!r}")
        if self.poll_interval <= 0 or self.poll_timeout <= 0:
            raise ValueError("POLL_INTERVAL and POLL_TIMEOUT must be positive")

    def ensure_dirs(self) -> None:
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        self.results_dir.mkdir(parents=True, exist_ok=True)
        if self.job_store == "file":
            self.jobs_dir.mkdir(parents=True, exist_ok=True)
