"""Tests for the chunked import loop and its state machine."""

from __future__ import annotations

import threading
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.db.models.material import Material
from app.db.session import SessionLocal
from app.services.catalog_matcher import ImportMode
from app.services.catalog_store import (
    CatalogUnavailableError,
    CatalogWriteError,
    SqlCatalogStore,
)
from app.services.chunk_processor import (
    ChunkProcessor,
    InvalidSubmissionError,
    submit_import,
    validate_submission,
)
from app.services.job_store import ChunkDelta, ImportJobStatus, InMemoryJobStore
from conftest import OWNER, InMemoryCatalog, make_records

NEW_ONLY = ImportMode(import_new=True, update_existing=False)
UPDATE_ONLY = ImportMode(import_new=False, update_existing=True)


def _run(store, catalog, records, mode=NEW_ONLY, chunk_size=100):
    job_id = store.create(OWNER, len(records), "Bunnings", chunk_size=chunk_size)
    status = ChunkProcessor(store, catalog, chunk_size).run(
        job_id, OWNER, records, mode, source_label="Bunnings"
    )
    return status, store.get(job_id, OWNER)


def _assert_counters_consistent(job) -> None:
    assert job.processed == job.imported + job.updated + job.skipped + job.errors
    assert job.processed <= job.total


class RecordingJobStore(InMemoryJobStore):
    """Captures every snapshot observable right after a chunk lands."""

    def __init__(self, cancel_after_chunk: int | None = None):
        super().__init__()
        self.cancel_after_chunk = cancel_after_chunk
        self.observed = []

    def apply_chunk_result(self, job_id, delta, error_details=()):
        applied = super().apply_chunk_result(job_id, delta, error_details)
        job = self.get(job_id, OWNER)
        self.observed.append(job)
        if self.cancel_after_chunk == job.chunks_completed:
            self.request_cancellation(job_id, OWNER)
        return applied


class FlakyCatalog(InMemoryCatalog):
    def __init__(self, broken_names=(), unavailable_after_inserts=None):
        super().__init__()
        self.broken_names = set(broken_names)
        self.unavailable_after_inserts = unavailable_after_inserts
        self.inserts = 0

    def insert(self, owner_id, record, scraped_at):
        if record.name in self.broken_names:
            raise CatalogWriteError(f"constraint violated for {record.name}")
        if self.unavailable_after_inserts is not None and self.inserts >= self.unavailable_after_inserts:
            raise CatalogUnavailableError("connection refused")
        self.inserts += 1
        return super().insert(owner_id, record, scraped_at)


def test_250_records_in_chunks_of_100_into_empty_catalog(catalog) -> None:
    store = RecordingJobStore()

    status, job = _run(store, catalog, make_records(250), chunk_size=100)

    assert status is ImportJobStatus.COMPLETED
    assert job.status is ImportJobStatus.COMPLETED
    assert job.chunks_completed == 3
    assert catalog.commits == 3
    assert (job.imported, job.updated, job.skipped, job.errors) == (250, 0, 0, 0)
    assert job.processed == job.total == 250
    assert [snapshot.processed for snapshot in store.observed] == [100, 200, 250]
    for snapshot in store.observed:
        _assert_counters_consistent(snapshot)


def test_existing_materials_skipped_when_updates_disallowed(catalog, memory_job_store) -> None:
    records = make_records(10)
    for raw in records[:4]:
        catalog.seed(OWNER, raw["name"].upper())

    status, job = _run(memory_job_store, catalog, records, mode=NEW_ONLY)

    assert status is ImportJobStatus.COMPLETED
    assert (job.imported, job.updated, job.skipped, job.errors) == (6, 0, 4, 0)
    assert len(catalog.names()) == 10


def test_cancellation_after_chunk_stops_before_next_chunk(catalog) -> None:
    store = RecordingJobStore(cancel_after_chunk=1)

    status, job = _run(store, catalog, make_records(250), chunk_size=100)

    assert status is ImportJobStatus.CANCELLED
    assert job.status is ImportJobStatus.CANCELLED
    assert job.processed == 100
    assert job.imported == 100
    # Already-applied work is kept, not rolled back.
    assert len(catalog.names()) == 100


def test_cancellation_before_first_chunk(catalog, memory_job_store) -> None:
    records = make_records(5)
    job_id = memory_job_store.create(OWNER, len(records), "Bunnings", chunk_size=2)
    assert memory_job_store.request_cancellation(job_id, OWNER) is True

    status = ChunkProcessor(memory_job_store, catalog, 2).run(job_id, OWNER, records, NEW_ONLY)

    job = memory_job_store.get(job_id, OWNER)
    assert status is ImportJobStatus.CANCELLED
    assert job.processed == 0
    assert catalog.names() == []


def test_missing_price_imported_and_empty_name_counted_as_error(catalog, memory_job_store) -> None:
    records = [
        {"name": "Galvanised joist hanger"},
        {"name": "   ", "price": "4.00"},
        {"name": "Bugle screw 8g", "price": "$12.00"},
    ]

    status, job = _run(memory_job_store, catalog, records)

    assert status is ImportJobStatus.COMPLETED
    assert (job.imported, job.skipped, job.errors) == (2, 0, 1)
    assert job.error_details == ({"index": 1, "name": "   ", "reason": "EMPTY_NAME"},)
    hanger = catalog.find_by_owner_and_name(OWNER, "Galvanised joist hanger")
    assert hanger.price_per_unit == Decimal("0.00")


def test_per_record_catalog_failure_does_not_abort_import(memory_job_store) -> None:
    catalog = FlakyCatalog(broken_names={"Treated pine stud 3"})

    status, job = _run(memory_job_store, catalog, make_records(6), chunk_size=4)

    assert status is ImportJobStatus.COMPLETED
    assert (job.imported, job.errors) == (5, 1)
    assert job.error_details[0]["index"] == 3
    assert "constraint violated" in job.error_details[0]["reason"]
    _assert_counters_consistent(job)


def test_catalog_unavailable_fails_job_and_propagates(memory_job_store) -> None:
    catalog = FlakyCatalog(unavailable_after_inserts=4)
    records = make_records(10)
    job_id = memory_job_store.create(OWNER, len(records), "Bunnings", chunk_size=4)

    with pytest.raises(CatalogUnavailableError):
        ChunkProcessor(memory_job_store, catalog, 4).run(job_id, OWNER, records, NEW_ONLY)

    job = memory_job_store.get(job_id, OWNER)
    assert job.status is ImportJobStatus.FAILED
    assert job.processed == 4
    assert "connection refused" in job.error_message
    _assert_counters_consistent(job)


def test_rerun_of_terminal_job_is_a_no_op(catalog, memory_job_store) -> None:
    records = make_records(3)
    job_id = memory_job_store.create(OWNER, len(records), "Bunnings", chunk_size=2)
    processor = ChunkProcessor(memory_job_store, catalog, 2)
    processor.run(job_id, OWNER, records, NEW_ONLY)

    status = processor.run(job_id, OWNER, records, NEW_ONLY)

    assert status is ImportJobStatus.COMPLETED
    assert memory_job_store.get(job_id, OWNER).processed == 3


def test_redelivered_active_job_resumes_after_last_durable_chunk(catalog, memory_job_store) -> None:
    records = make_records(5)
    job_id = memory_job_store.create(OWNER, len(records), "Bunnings", chunk_size=2)
    memory_job_store.start(job_id)
    memory_job_store.apply_chunk_result(job_id, ChunkDelta(imported=2))

    status = ChunkProcessor(memory_job_store, catalog, 2).run(job_id, OWNER, records, NEW_ONLY)

    job = memory_job_store.get(job_id, OWNER)
    assert status is ImportJobStatus.COMPLETED
    assert (job.processed, job.imported, job.chunks_completed) == (5, 5, 3)
    assert catalog.names() == sorted(raw["name"] for raw in records[2:])


def test_record_count_mismatch_fails_job(catalog, memory_job_store) -> None:
    job_id = memory_job_store.create(OWNER, 4, "Bunnings", chunk_size=2)

    with pytest.raises(ValueError):
        ChunkProcessor(memory_job_store, catalog, 2).run(job_id, OWNER, make_records(3), NEW_ONLY)

    assert memory_job_store.get(job_id, OWNER).status is ImportJobStatus.FAILED


def test_resubmission_in_update_mode_is_idempotent(sql_job_store) -> None:
    records = make_records(12)
    session = SessionLocal()
    try:
        catalog = SqlCatalogStore(session)
        _run(sql_job_store, catalog, records, mode=ImportMode(), chunk_size=5)

        records[0]["price"] = "13.75"
        first_status, first = _run(sql_job_store, catalog, records, mode=UPDATE_ONLY, chunk_size=5)
        second_status, second = _run(sql_job_store, catalog, records, mode=UPDATE_ONLY, chunk_size=5)

        assert first_status is second_status is ImportJobStatus.COMPLETED
        assert (first.imported, first.updated) == (0, 12)
        assert (second.imported, second.updated) == (0, 12)
        assert session.scalar(select(func.count(Material.id))) == 12

        changed = catalog.find_by_owner_and_name(OWNER, records[0]["name"])
        untouched = catalog.find_by_owner_and_name(OWNER, records[1]["name"])
        assert changed.price_per_unit == Decimal("13.75")
        assert untouched.price_per_unit == Decimal("12.50")
        stored = session.get(Material, changed.id)
        assert stored.last_scraped_at is not None
    finally:
        session.close()


def test_duplicate_names_within_one_batch_collapse_to_one_material(memory_job_store, catalog) -> None:
    records = [
        {"name": "Pine batten 42x19", "price": "3.10"},
        {"name": "pine  BATTEN 42x19", "price": "3.40"},
    ]

    _, job = _run(memory_job_store, catalog, records, mode=ImportMode())

    assert (job.imported, job.updated) == (1, 1)
    assert catalog.find_by_owner_and_name(OWNER, "Pine batten 42x19").price_per_unit == Decimal("3.40")


def test_validate_submission_rejections() -> None:
    with pytest.raises(InvalidSubmissionError):
        validate_submission([], max_records=10)
    with pytest.raises(InvalidSubmissionError):
        validate_submission(make_records(11), max_records=10)
    with pytest.raises(InvalidSubmissionError):
        validate_submission([{"name": " "}, {"price": 3}], max_records=10)

    validate_submission([{"name": " "}, {"name": "Fence paling"}], max_records=10)


def test_submit_import_creates_job_and_dispatches(memory_job_store) -> None:
    dispatched = []

    job_id = submit_import(
        OWNER,
        "Bunnings",
        make_records(3),
        NEW_ONLY,
        job_store=memory_job_store,
        dispatch=lambda *args: dispatched.append(args),
        chunk_size=100,
        max_records=10,
    )

    job = memory_job_store.get(job_id, OWNER)
    assert job.status is ImportJobStatus.PENDING
    assert job.total == 3
    assert dispatched[0][:3] == (job_id, OWNER, "Bunnings")


def test_submit_import_marks_job_failed_when_dispatch_fails(memory_job_store) -> None:
    def broken_dispatch(*args):
        raise ConnectionError("broker down")

    with pytest.raises(ConnectionError):
        submit_import(
            OWNER,
            "Bunnings",
            make_records(2),
            NEW_ONLY,
            job_store=memory_job_store,
            dispatch=broken_dispatch,
            chunk_size=100,
            max_records=10,
        )

    [job] = memory_job_store.list_recent(OWNER)
    assert job.status is ImportJobStatus.FAILED
    assert "broker down" in job.error_message


class CancellingCatalog(InMemoryCatalog):
    """Requests cancellation from a second thread once a chunk is committed."""

    def __init__(self, job_store, after_commits: int):
        super().__init__()
        self.job_store = job_store
        self.after_commits = after_commits
        self.job_id = None
        self.cancel_results = []

    def commit(self) -> None:
        super().commit()
        if self.commits == self.after_commits:
            worker = threading.Thread(
                target=lambda: self.cancel_results.append(
                    self.job_store.request_cancellation(self.job_id, OWNER)
                )
            )
            worker.start()
            worker.join(timeout=10)


def test_cancellation_from_another_thread_with_sql_store(sql_job_store) -> None:
    records = make_records(250)
    catalog = CancellingCatalog(sql_job_store, after_commits=2)
    job_id = sql_job_store.create(OWNER, len(records), "Bunnings", chunk_size=100)
    catalog.job_id = job_id

    status = ChunkProcessor(sql_job_store, catalog, 100).run(job_id, OWNER, records, NEW_ONLY)

    job = sql_job_store.get(job_id, OWNER)
    assert catalog.cancel_results == [True]
    assert status is ImportJobStatus.CANCELLED
    assert job.cancel_requested is True
    # The second chunk was already in flight; its counters land and stay.
    assert (job.processed, job.imported, job.chunks_completed) == (200, 200, 2)
    assert len(catalog.names()) == 200
