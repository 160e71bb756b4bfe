from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .store import JobState

JobStatusName = Literal["queued", "processing", "done", "error"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ImpressionAccepted(CamelModel):
    ok: bool = True
    job_id: str
    status: JobStatusName = "queued"
    preset: str


class JobStatus(CamelModel):
    ok: bool = True
    job_id: str
    status: JobStatusName
    preset: str
    created_at: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    filename: Optional[str] = None
    error: Optional[str] = None
    prediction_id: Optional[str] = None

    @classmethod
    def from_job(cls, job: JobState) -> "JobStatus":
        return cls(**job.to_dict())


class ErrorBody(BaseModel):
    ok: bool = False
    error: str
    allowed: Optional[List[str]] = None
