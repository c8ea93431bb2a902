"""Owner-scoped read and cancel operations for polling clients."""

from __future__ import annotations

import logging
from datetime import timedelta

from app.services.job_store import ImportJobSnapshot, JobStore

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 10


class JobQueryService:
    """Read/command facade over a :class:`JobStore`.

    A job owned by someone else is reported exactly like a missing job so
    that ids cannot be probed across owners.
    """

    def __init__(self, job_store: JobStore, stall_after: timedelta = timedelta(minutes=5)):
        self._job_store = job_store
        self.stall_after = stall_after

    def get_status(self, job_id: str, owner_id: str) -> ImportJobSnapshot | None:
        return self._job_store.get(job_id, owner_id)

    def list_recent(self, owner_id: str, limit: int = DEFAULT_LIST_LIMIT) -> list[ImportJobSnapshot]:
        return self._job_store.list_recent(owner_id, limit)

    def cancel(self, job_id: str, owner_id: str) -> bool:
        cancelled = self._job_store.request_cancellation(job_id, owner_id)
        if cancelled:
            logger.info(f"Cancellation requested for import job {job_id}")
        else:
            logger.info(f"Cancellation refused for import job {job_id} (terminal or not found)")
        return cancelled

    def is_stalled(self, job: ImportJobSnapshot) -> bool:
        return job.is_stalled(self.stall_after)
