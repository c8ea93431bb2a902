"""Shared helpers for shaping job responses."""
from __future__ import annotations

from app.api.schemas.job import JobStatus
from app.services.job_store import ImportJobSnapshot


def serialize_job(job: ImportJobSnapshot, stalled: bool = False) -> JobStatus:
    """Turn a store snapshot into the polling response schema."""
    progress = job.processed / job.total if job.total else (1.0 if job.is_terminal else 0.0)

    message = f"Processed {job.processed}/{job.total} records"
    if stalled:
        message = f"{message}; no progress recently, resubmit to resume"
    elif job.cancel_requested and not job.is_terminal:
        message = f"{message}; cancelling after current chunk"

    return JobStatus(
        id=job.id,
        status=job.status.value,
        source_label=job.source_label,
        total=job.total,
        processed=job.processed,
        imported=job.imported,
        updated=job.updated,
        skipped=job.skipped,
        error=job.errors,
        progress=progress,
        percent_complete=job.percent_complete,
        current_chunk=job.chunks_completed,
        total_chunks=job.total_chunks,
        message=message,
        cancel_requested=job.cancel_requested,
        stalled=stalled,
        estimated_seconds_remaining=job.estimated_seconds_remaining(),
        error_message=job.error_message,
        error_details=list(job.error_details),
        created_at=job.created_at,
        started_at=job.started_at or job.created_at,
        last_activity_at=job.last_activity_at,
        finished_at=job.finished_at,
    )
