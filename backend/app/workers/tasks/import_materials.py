"""Celery task for long-running material imports."""

from __future__ import annotations

import logging
from typing import Any

from app.core.config import get_settings
from app.db.session import get_fresh_session
from app.services.catalog_matcher import ImportMode
from app.services.catalog_store import SqlCatalogStore
from app.services.chunk_processor import ChunkProcessor
from app.services.job_store import build_job_store
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="app.workers.tasks.import_materials")
def import_materials_task(
    self,
    job_id: str,
    owner_id: str,
    source_label: str,
    records: list[dict[str, Any]],
    mode: dict[str, bool],
) -> str:
    """Run one import job chunk by chunk and return its final status."""
    settings = get_settings()
    session = get_fresh_session()
    try:
        processor = ChunkProcessor(
            job_store=build_job_store(settings),
            catalog=SqlCatalogStore(session),
            chunk_size=settings.import_chunk_size,
        )
        status = processor.run(
            job_id,
            owner_id,
            records,
            ImportMode.model_validate(mode),
            source_label=source_label,
        )
        return status.value
    finally:
        session.close()


def enqueue_import(
    job_id: str,
    owner_id: str,
    source_label: str,
    records: list[dict[str, Any]],
    mode: ImportMode,
) -> None:
    """Send a created job to the imports queue, or run it inline when eager."""
    args = (job_id, owner_id, source_label, records, mode.model_dump())
    if get_settings().celery_task_always_eager:
        # Failures are recorded on the job; the submitting request still succeeds.
        import_materials_task.apply(args=args)
        return
    import_materials_task.apply_async(args=args, queue="imports")
    logger.info(f"Enqueued import job {job_id} ({len(records)} records)")
