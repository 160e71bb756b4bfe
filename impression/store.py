from __future__ import annotations

import json
import os
import uuid
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

QUEUED = "queued"
PROCESSING = "processing"
DONE = "done"
ERROR = "error"
TERMINAL = (DONE, ERROR)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_job_id() -> str:
    return str(uuid.uuid4())


@dataclass
class JobState:
    job_id: str
    preset: str
    status: str = QUEUED
    created_at: str = ""
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    filename: Optional[str] = None
    error: Optional[str] = None
    prediction_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobState":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class JobStore(Protocol):
    def create(self, job: JobState) -> JobState: ...

    def get(self, job_id: str) -> Optional[JobState]: ...

    def update(self, job_id: str, **changes: Any) -> JobState: ...


class MemoryJobStore:
    """Process-local job records. Everything is lost on restart."""

    def __init__(self) -> None:
        self._jobs: Dict[str, JobState] = {}

    def create(self, job: JobState) -> JobState:
        self._jobs[job.job_id] = job
        return replace(job)

    def get(self, job_id: str) -> Optional[JobState]:
        job = self._jobs.get(job_id)
        return replace(job) if job is not None else None

    def update(self, job_id: str, **changes: Any) -> JobState:
        job = self._jobs[job_id]
        for key, value in changes.items():
            setattr(job, key, value)
        return replace(job)

    def __len__(self) -> int:
        return len(self._jobs)


class FileJobStore:
    """One ``<job_id>.json`` file per job. Whole-file rewrites, no locking."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, job_id: str) -> Optional[Path]:
        try:
            uuid.UUID(job_id)
        except ValueError:
            return None
        return self.directory / f"{job_id}.json"

    def _write(self, job: JobState) -> None:
        path = self._path(job.job_id)
        if path is None:
            raise ValueError(f"invalid job id {job.job_id!r}")
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(job.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, path)

    def create(self, job: JobState) -> JobState:
        self._write(job)
        return job

    def get(self, job_id: str) -> Optional[JobState]:
        path = self._path(job_id)
        if path is None or not path.exists():
            return None
        return JobState.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def update(self, job_id: str, **changes: Any) -> JobState:
        job = self.get(job_id)
        if job is None:
            raise KeyError(job_id)
        for key, value in changes.items():
            setattr(job, key, value)
        self._write(job)
        return job


def build_store(kind: str, jobs_dir: Path) -> JobStore:
    if kind == "file":
        return FileJobStore(jobs_dir)
    return MemoryJobStore()
