"""Async job status payloads."""

from datetime import datetime
from pydantic import BaseModel, Field


class JobStatus(BaseModel):
    id: str
    type: str = Field("import_materials", description="Job kind")
    status: str = Field(..., description="pending|active|completed|cancelled|failed")
    source_label: str
    total: int
    processed: int
    imported: int
    updated: int
    skipped: int
    error: int = Field(..., description="Records that failed normalization or catalog writes")
    progress: float = Field(..., description="0-1 range for UI progress bars")
    percent_complete: int
    current_chunk: int
    total_chunks: int
    message: str | None = None
    cancel_requested: bool = False
    stalled: bool = Field(False, description="Active but without progress for too long")
    estimated_seconds_remaining: int | None = Field(
        None, description="Throughput-based ETA while the job is active"
    )
    error_message: str | None = None
    error_details: list[dict] = Field(default_factory=list)
    created_at: datetime | None = None
    started_at: datetime | None = None
    last_activity_at: datetime | None = None
    finished_at: datetime | None = None


class CancelResponse(BaseModel):
    job_id: str
    cancelled: bool
    message: str
