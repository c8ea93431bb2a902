"""Job store backed by the ``import_jobs`` table."""

from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from app.db.models.import_job import ImportJob
from app.services.job_store import (
    CANCELLABLE_STATUSES,
    TERMINAL_STATUSES,
    ChunkDelta,
    ImportJobSnapshot,
    ImportJobStatus,
    JobStore,
    utcnow,
)

_TERMINAL_VALUES = [status.value for status in TERMINAL_STATUSES]
_CANCELLABLE_VALUES = [status.value for status in CANCELLABLE_STATUSES]


def to_snapshot(job: ImportJob) -> ImportJobSnapshot:
    return ImportJobSnapshot(
        id=job.id,
        owner_id=job.owner_id,
        source_label=job.source_label or "",
        status=ImportJobStatus(job.status),
        total=job.total or 0,
        processed=job.processed or 0,
        imported=job.imported or 0,
        updated=job.updated or 0,
        skipped=job.skipped or 0,
        errors=job.errors or 0,
        chunk_size=job.chunk_size,
        chunks_completed=job.chunks_completed or 0,
        cancel_requested=bool(job.cancel_requested),
        created_at=job.created_at,
        started_at=job.started_at,
        last_activity_at=job.last_activity_at,
        finished_at=job.finished_at,
        error_message=job.error_message,
        error_details=tuple(job.error_details or ()),
    )


class SqlJobStore(JobStore):
    """Each operation runs in its own short transaction.

    No session outlives a call, so a long import never holds a row lock that
    would block status reads or a cancellation request.
    """

    def __init__(self, session_factory: sessionmaker[Session], error_detail_limit: int = 50):
        super().__init__(error_detail_limit)
        self._session_factory = session_factory

    def create(self, owner_id: str, total: int, source_label: str, chunk_size: int) -> str:
        self._validate_create(total, chunk_size)
        now = utcnow()
        with self._session_factory() as session, session.begin():
            job = ImportJob(
                owner_id=owner_id,
                source_label=source_label,
                status=ImportJobStatus.PENDING.value,
                total=total,
                processed=0,
                imported=0,
                updated=0,
                skipped=0,
                errors=0,
                chunk_size=chunk_size,
                chunks_completed=0,
                cancel_requested=False,
                created_at=now,
                last_activity_at=now,
            )
            session.add(job)
            session.flush()
            return job.id

    def start(self, job_id: str) -> bool:
        now = utcnow()
        with self._session_factory() as session, session.begin():
            result = session.execute(
                update(ImportJob)
                .where(
                    ImportJob.id == job_id,
                    ImportJob.status == ImportJobStatus.PENDING.value,
                )
                .values(
                    status=ImportJobStatus.ACTIVE.value,
                    started_at=now,
                    last_activity_at=now,
                )
            )
            return result.rowcount == 1

    def apply_chunk_result(
        self,
        job_id: str,
        delta: ChunkDelta,
        error_details: Iterable[dict[str, Any]] = (),
    ) -> bool:
        with self._session_factory() as session, session.begin():
            # Counter columns only: the cancel flag may be written concurrently.
            result = session.execute(
                update(ImportJob)
                .where(
                    ImportJob.id == job_id,
                    ImportJob.status.notin_(_TERMINAL_VALUES),
                    ImportJob.processed + delta.processed <= ImportJob.total,
                )
                .values(
                    processed=ImportJob.processed + delta.processed,
                    imported=ImportJob.imported + delta.imported,
                    updated=ImportJob.updated + delta.updated,
                    skipped=ImportJob.skipped + delta.skipped,
                    errors=ImportJob.errors + delta.errors,
                    chunks_completed=ImportJob.chunks_completed + 1,
                    last_activity_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                job = session.get(ImportJob, job_id)
                if job is None or job.status in _TERMINAL_VALUES:
                    return False
                raise ValueError(f"Chunk would push processed past total for job {job_id}")

            new_details = list(error_details)
            if new_details:
                existing = list(
                    session.scalar(
                        select(ImportJob.error_details).where(ImportJob.id == job_id)
                    )
                    or []
                )
                room = self.error_detail_limit - len(existing)
                if room > 0:
                    session.execute(
                        update(ImportJob)
                        .where(ImportJob.id == job_id)
                        .values(error_details=existing + new_details[:room])
                        .execution_options(synchronize_session=False)
                    )
            return True

    def mark_status(
        self,
        job_id: str,
        status: ImportJobStatus,
        error_message: str | None = None,
    ) -> bool:
        self._check_terminal_status(status)
        now = utcnow()
        with self._session_factory() as session, session.begin():
            result = session.execute(
                update(ImportJob)
                .where(
                    ImportJob.id == job_id,
                    ImportJob.status.notin_(_TERMINAL_VALUES),
                )
                .values(
                    status=status.value,
                    error_message=error_message,
                    finished_at=now,
                    last_activity_at=now,
                )
            )
            return result.rowcount == 1

    def get(self, job_id: str, owner_id: str) -> ImportJobSnapshot | None:
        with self._session_factory() as session:
            job = session.scalar(
                select(ImportJob).where(
                    ImportJob.id == job_id, ImportJob.owner_id == owner_id
                )
            )
            return to_snapshot(job) if job else None

    def list_recent(self, owner_id: str, limit: int = 10) -> list[ImportJobSnapshot]:
        with self._session_factory() as session:
            jobs = session.scalars(
                select(ImportJob)
                .where(ImportJob.owner_id == owner_id)
                .order_by(
                    func.coalesce(ImportJob.last_activity_at, ImportJob.created_at).desc()
                )
                .limit(limit)
            ).all()
            return [to_snapshot(job) for job in jobs]

    def request_cancellation(self, job_id: str, owner_id: str) -> bool:
        with self._session_factory() as session, session.begin():
            result = session.execute(
                update(ImportJob)
                .where(
                    ImportJob.id == job_id,
                    ImportJob.owner_id == owner_id,
                    ImportJob.status.in_(_CANCELLABLE_VALUES),
                    ImportJob.cancel_requested.is_(False),
                )
                .values(cancel_requested=True)
            )
            return result.rowcount == 1

    def is_cancellation_requested(self, job_id: str) -> bool:
        with self._session_factory() as session:
            flag = session.scalar(
                select(ImportJob.cancel_requested).where(ImportJob.id == job_id)
            )
            return bool(flag)
