"""Chunked material import: submission and the per-job processing loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Sequence

from app.services.catalog_matcher import (
    CreateDecision,
    ImportMode,
    MatchAction,
    SkipDecision,
    UpdateDecision,
    match_record,
)
from app.services.catalog_store import CatalogStore, CatalogUnavailableError
from app.services.job_store import ChunkDelta, ImportJobStatus, JobStore, utcnow
from app.services.record_normalizer import (
    MaterialRecord,
    NormalizationFailure,
    normalize_record,
)

logger = logging.getLogger(__name__)

Dispatcher = Callable[[str, str, str, list[dict[str, Any]], ImportMode], Any]


class InvalidSubmissionError(ValueError):
    """The submitted batch cannot start an import; no job is created."""


@dataclass
class ChunkTally:
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    error_details: list[dict[str, Any]] = field(default_factory=list)

    def record_error(self, index: int, name: str | None, reason: str) -> None:
        self.errors += 1
        self.error_details.append({"index": index, "name": name, "reason": reason})

    def as_delta(self) -> ChunkDelta:
        return ChunkDelta(
            imported=self.imported,
            updated=self.updated,
            skipped=self.skipped,
            errors=self.errors,
        )


def _raw_name(raw: Any) -> str | None:
    if isinstance(raw, dict):
        for key in ("name", "title", "material"):
            if isinstance(raw.get(key), str):
                return raw[key][:255]
    return None


class ChunkProcessor:
    """Drive one import job through PENDING -> ACTIVE -> terminal.

    Records are handled in fixed-size chunks. After each chunk the catalog
    writes are committed and the counters persisted, so a killed worker leaves
    a job that is ACTIVE with ``processed < total`` and can be resumed. The
    cancellation flag is read between chunks only; a chunk in flight always
    finishes.
    """

    def __init__(
        self,
        job_store: JobStore,
        catalog: CatalogStore,
        chunk_size: int,
        clock: Callable[[], datetime] = utcnow,
    ):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
        self._job_store = job_store
        self._catalog = catalog
        self._chunk_size = chunk_size
        self._clock = clock

    def run(
        self,
        job_id: str,
        owner_id: str,
        records: Sequence[Any],
        mode: ImportMode,
        source_label: str = "",
    ) -> ImportJobStatus:
        """Process every record of ``job_id`` and return the final status.

        Failures outside a single record mark the job FAILED and are re-raised.
        """
        try:
            return self._run(job_id, owner_id, records, mode, source_label)
        except Exception as exc:
            logger.error(f"Import job {job_id} failed: {exc}", exc_info=True)
            self._job_store.mark_status(job_id, ImportJobStatus.FAILED, error_message=str(exc))
            raise

    def _run(
        self,
        job_id: str,
        owner_id: str,
        records: Sequence[Any],
        mode: ImportMode,
        source_label: str,
    ) -> ImportJobStatus:
        job = self._job_store.get(job_id, owner_id)
        if job is None:
            raise LookupError(f"Import job {job_id} not found for owner {owner_id}")
        if job.is_terminal:
            logger.warning(f"Import job {job_id} already {job.status.value}, skipping run")
            return job.status
        if len(records) != job.total:
            raise ValueError(
                f"Import job {job_id} expects {job.total} records, got {len(records)}"
            )

        if job.status == ImportJobStatus.PENDING:
            self._job_store.start(job_id)
            offset = 0
        else:
            # Redelivered after a worker died: earlier chunks are already durable.
            offset = job.processed
            logger.info(f"Resuming import job {job_id} at record {offset}/{job.total}")

        chunk_number = job.chunks_completed
        for start in range(offset, len(records), self._chunk_size):
            if self._job_store.is_cancellation_requested(job_id):
                self._job_store.mark_status(job_id, ImportJobStatus.CANCELLED)
                logger.info(
                    f"Import job {job_id} cancelled after {start}/{len(records)} records"
                )
                return ImportJobStatus.CANCELLED

            chunk = records[start : start + self._chunk_size]
            tally = self._process_chunk(job_id, chunk, start, owner_id, mode, source_label)
            self._catalog.commit()
            self._job_store.apply_chunk_result(job_id, tally.as_delta(), tally.error_details)

            chunk_number += 1
            logger.info(
                f"Import job {job_id} chunk {chunk_number}: "
                f"{start + len(chunk)}/{len(records)} records "
                f"(imported={tally.imported}, updated={tally.updated}, "
                f"skipped={tally.skipped}, errors={tally.errors})"
            )

        self._job_store.mark_status(job_id, ImportJobStatus.COMPLETED)
        logger.info(f"Import job {job_id} completed ({len(records)} records)")
        return ImportJobStatus.COMPLETED

    def _process_chunk(
        self,
        job_id: str,
        chunk: Sequence[Any],
        first_index: int,
        owner_id: str,
        mode: ImportMode,
        source_label: str,
    ) -> ChunkTally:
        tally = ChunkTally()
        scraped_at = self._clock()

        for index, raw in enumerate(chunk, start=first_index):
            normalized = normalize_record(raw, default_supplier=source_label)
            if isinstance(normalized, NormalizationFailure):
                logger.warning(f"Import job {job_id} record {index} rejected: {normalized.message}")
                tally.record_error(index, _raw_name(raw), normalized.code.value)
                continue

            try:
                action = self._apply(normalized, owner_id, mode, scraped_at)
            except CatalogUnavailableError:
                raise
            except Exception as e:
                logger.warning(
                    f"Import job {job_id} error importing record {index} ({normalized.name}): {e}"
                )
                tally.record_error(index, normalized.name, str(e))
                continue

            if action == MatchAction.CREATE:
                tally.imported += 1
            elif action == MatchAction.UPDATE:
                tally.updated += 1
            else:
                tally.skipped += 1

        return tally

    def _apply(
        self,
        record: MaterialRecord,
        owner_id: str,
        mode: ImportMode,
        scraped_at: datetime,
    ) -> MatchAction:
        decision = match_record(record, owner_id, mode, self._catalog)
        if isinstance(decision, CreateDecision):
            self._catalog.insert(owner_id, decision.record, scraped_at)
        elif isinstance(decision, UpdateDecision):
            self._catalog.update_fields(
                decision.material_id, {**decision.changes, "last_scraped_at": scraped_at}
            )
        elif isinstance(decision, SkipDecision):
            logger.debug(f"Skipping {record.name}: {decision.reason.value}")
        return decision.action


def validate_submission(
    records: Sequence[Any], max_records: int, source_label: str = ""
) -> None:
    """Reject batches that could never import anything."""
    if not records:
        raise InvalidSubmissionError("No records submitted")
    if len(records) > max_records:
        raise InvalidSubmissionError(
            f"Too many records: {len(records)} (maximum {max_records})"
        )
    if not any(
        isinstance(normalize_record(raw, source_label), MaterialRecord) for raw in records
    ):
        raise InvalidSubmissionError(
            f"No valid records to import: all {len(records)} records lack a name"
        )


def submit_import(
    owner_id: str,
    source_label: str,
    records: list[dict[str, Any]],
    mode: ImportMode,
    *,
    job_store: JobStore,
    dispatch: Dispatcher,
    chunk_size: int,
    max_records: int,
) -> str:
    """Validate a batch, create its job and hand it to ``dispatch``.

    Returns the job id. Raises :class:`InvalidSubmissionError` before any job
    exists when the batch is unusable.
    """
    validate_submission(records, max_records, source_label)

    job_id = job_store.create(owner_id, len(records), source_label, chunk_size)
    logger.info(
        f"Created import job {job_id} for owner {owner_id}: "
        f"{len(records)} records from '{source_label}'"
    )

    try:
        dispatch(job_id, owner_id, source_label, records, mode)
    except Exception as exc:
        logger.error(f"Error dispatching import job {job_id}: {exc}", exc_info=True)
        job_store.mark_status(
            job_id, ImportJobStatus.FAILED, error_message=f"Failed to start import: {exc}"
        )
        raise

    return job_id
