"""Endpoint for submitting material price imports."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from app.api.dependencies.auth import get_owner_id
from app.api.dependencies.imports import get_app_settings, get_job_store
from app.api.schemas.imports import ImportAccepted, ImportSubmission
from app.core.config import Settings
from app.services.chunk_processor import InvalidSubmissionError, submit_import
from app.services.job_store import ImportJobStatus, JobStore
from app.workers.tasks.import_materials import enqueue_import

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/",
    summary="Start a material import job",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ImportAccepted,
)
def create_import(
    payload: ImportSubmission,
    owner_id: str = Depends(get_owner_id),
    job_store: JobStore = Depends(get_job_store),
    settings: Settings = Depends(get_app_settings),
) -> ImportAccepted:
    """Accept a batch of raw supplier records and return the job id to poll."""
    try:
        job_id = submit_import(
            owner_id,
            payload.source_label.strip(),
            payload.records,
            payload.mode,
            job_store=job_store,
            dispatch=enqueue_import,
            chunk_size=settings.import_chunk_size,
            max_records=settings.import_max_records,
        )
    except InvalidSubmissionError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except SQLAlchemyError as exc:
        logger.error(f"Database error creating import job: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create import job",
        ) from exc
    except Exception as exc:
        logger.error(f"Unexpected error starting import: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start import process",
        ) from exc

    job = job_store.get(job_id, owner_id)
    current_status = job.status if job else ImportJobStatus.PENDING
    return ImportAccepted(job_id=job_id, status=current_status.value)
