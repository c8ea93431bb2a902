"""Polling endpoints for import jobs: list, status and cancellation."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.dependencies.auth import get_owner_id
from app.api.dependencies.imports import get_job_query_service
from app.api.routers.job_helpers import serialize_job
from app.api.schemas.job import CancelResponse, JobStatus
from app.services.job_query import DEFAULT_LIST_LIMIT, JobQueryService

logger = logging.getLogger(__name__)

router = APIRouter()

NOT_FOUND_DETAIL = "Import job not found"
CANCEL_REFUSED_DETAIL = "Cannot cancel this job. It may be completed or not found."


@router.get(
    "/",
    summary="List recent import jobs",
    response_model=list[JobStatus],
)
def list_jobs(
    limit: int = Query(
        DEFAULT_LIST_LIMIT, ge=1, le=100, description="Maximum number of jobs to return"
    ),
    owner_id: str = Depends(get_owner_id),
    service: JobQueryService = Depends(get_job_query_service),
) -> list[JobStatus]:
    """Return the caller's jobs, most recently active first."""
    jobs = service.list_recent(owner_id, limit)
    return [serialize_job(job, stalled=service.is_stalled(job)) for job in jobs]


@router.get(
    "/{job_id}",
    summary="Fetch import job progress",
    response_model=JobStatus,
)
def get_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    service: JobQueryService = Depends(get_job_query_service),
) -> JobStatus:
    """Expose job state for polling dashboards."""
    job = service.get_status(job_id, owner_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND_DETAIL)
    return serialize_job(job, stalled=service.is_stalled(job))


def _cancel(job_id: str, owner_id: str, service: JobQueryService) -> CancelResponse:
    if not service.cancel(job_id, owner_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=CANCEL_REFUSED_DETAIL
        )
    return CancelResponse(
        job_id=job_id,
        cancelled=True,
        message="Import job cancellation requested; it stops after the current chunk",
    )


@router.post(
    "/{job_id}/cancel",
    summary="Request cancellation of an import job",
    response_model=CancelResponse,
)
def cancel_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    service: JobQueryService = Depends(get_job_query_service),
) -> CancelResponse:
    return _cancel(job_id, owner_id, service)


@router.delete(
    "/{job_id}",
    summary="Request cancellation of an import job",
    response_model=CancelResponse,
)
def delete_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    service: JobQueryService = Depends(get_job_query_service),
) -> CancelResponse:
    return _cancel(job_id, owner_id, service)
