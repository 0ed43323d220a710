from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: str
    priority: int = 1
    error: str | None = None
    result: dict[str, Any] | None = None
    processed_at: datetime | None = None
    next_attempt_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class JobAccepted(BaseModel):
    jobId: str


class ProcessResult(BaseModel):
    success: bool
    jobId: str | None = None
    jobType: str | None = None
    result: dict[str, Any] | None = None
    message: str | None = None
    error: str | None = None


class ProcessBatchResult(BaseModel):
    success: bool
    count: int
    processed: list[ProcessResult]


class SweepResult(BaseModel):
    requeued: int
