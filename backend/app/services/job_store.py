"""Import job state: shared types, the store contract and the in-memory backend."""

from __future__ import annotations

import enum
import logging
import math
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class ImportJobStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {ImportJobStatus.COMPLETED, ImportJobStatus.CANCELLED, ImportJobStatus.FAILED}
)
CANCELLABLE_STATUSES = frozenset({ImportJobStatus.PENDING, ImportJobStatus.ACTIVE})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class ChunkDelta:
    """Counter increments produced by one processed chunk."""

    imported: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def processed(self) -> int:
        return self.imported + self.updated + self.skipped + self.errors

    def __add__(self, other: ChunkDelta) -> ChunkDelta:
        return ChunkDelta(
            imported=self.imported + other.imported,
            updated=self.updated + other.updated,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
        )


@dataclass(frozen=True)
class ImportJobSnapshot:
    """Point-in-time view of an import job, independent of the backend."""

    id: str
    owner_id: str
    source_label: str
    status: ImportJobStatus
    total: int
    processed: int = 0
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    chunk_size: int = 100
    chunks_completed: int = 0
    cancel_requested: bool = False
    created_at: datetime | None = None
    started_at: datetime | None = None
    last_activity_at: datetime | None = None
    finished_at: datetime | None = None
    error_message: str | None = None
    error_details: tuple[dict[str, Any], ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total_chunks(self) -> int:
        return math.ceil(self.total / self.chunk_size) if self.chunk_size else 0

    @property
    def percent_complete(self) -> int:
        if not self.total:
            return 100 if self.is_terminal else 0
        return round(self.processed / self.total * 100)

    def estimated_seconds_remaining(self, now: datetime | None = None) -> int | None:
        """Throughput-based ETA since the job started; None until work is measurable."""
        started = as_utc(self.started_at)
        if self.status != ImportJobStatus.ACTIVE or started is None or self.processed <= 0:
            return None
        elapsed = ((now or utcnow()) - started).total_seconds()
        per_record = max(elapsed, 0.0) / self.processed
        return round(per_record * (self.total - self.processed))

    def is_stalled(self, stall_after: timedelta, now: datetime | None = None) -> bool:
        """Active work that has stopped reporting progress, e.g. a killed worker."""
        if self.is_terminal:
            return False
        last_seen = as_utc(self.last_activity_at or self.created_at)
        if last_seen is None:
            return False
        return (now or utcnow()) - last_seen > stall_after


class JobStore(ABC):
    """Durable, owner-scoped storage for import jobs.

    Counters are only written by the job's own processor. The cancellation flag
    is the one field another request may write concurrently, so every backend
    sets it with a compare-and-set.
    """

    def __init__(self, error_detail_limit: int = 50):
        self.error_detail_limit = error_detail_limit

    @abstractmethod
    def create(
        self, owner_id: str, total: int, source_label: str, chunk_size: int
    ) -> str:
        """Allocate a PENDING job and return its id."""

    @abstractmethod
    def start(self, job_id: str) -> bool:
        """Move a PENDING job to ACTIVE; returns whether the transition happened."""

    @abstractmethod
    def apply_chunk_result(
        self,
        job_id: str,
        delta: ChunkDelta,
        error_details: Iterable[dict[str, Any]] = (),
    ) -> bool:
        """Add a chunk's tally to the counters; ignored once the job is terminal."""

    @abstractmethod
    def mark_status(
        self,
        job_id: str,
        status: ImportJobStatus,
        error_message: str | None = None,
    ) -> bool:
        """Record a terminal status; no-op if the job already finished."""

    @abstractmethod
    def get(self, job_id: str, owner_id: str) -> ImportJobSnapshot | None:
        """Return the job only if ``owner_id`` owns it."""

    @abstractmethod
    def list_recent(self, owner_id: str, limit: int = 10) -> list[ImportJobSnapshot]:
        """Owner's jobs, most recently active first."""

    @abstractmethod
    def request_cancellation(self, job_id: str, owner_id: str) -> bool:
        """Set the cancellation flag; True only when it was newly set."""

    @abstractmethod
    def is_cancellation_requested(self, job_id: str) -> bool: ...

    @staticmethod
    def _validate_create(total: int, chunk_size: int) -> None:
        if total < 0:
            raise ValueError(f"total must be >= 0, got {total}")
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")

    @staticmethod
    def _check_terminal_status(status: ImportJobStatus) -> None:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status.value} is not a terminal status")


@dataclass
class _MemoryEntry:
    snapshot: ImportJobSnapshot
    details: list[dict[str, Any]] = field(default_factory=list)


class InMemoryJobStore(JobStore):
    """Process-local store whose entries expire after a period of inactivity.

    Only suitable when the API and the import task share a process (eager
    Celery); nothing survives a restart.
    """

    def __init__(
        self,
        ttl: timedelta = timedelta(minutes=30),
        error_detail_limit: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(error_detail_limit)
        self._ttl = ttl
        self._clock = clock
        self._jobs: dict[str, _MemoryEntry] = {}
        self._lock = threading.Lock()

    def _purge_expired(self, now: datetime) -> None:
        expired = [
            job_id
            for job_id, entry in self._jobs.items()
            if now - entry.snapshot.last_activity_at > self._ttl
        ]
        for job_id in expired:
            logger.info(f"Expiring inactive import job {job_id}")
            del self._jobs[job_id]

    def _entry(self, job_id: str) -> _MemoryEntry | None:
        now = self._clock()
        self._purge_expired(now)
        return self._jobs.get(job_id)

    def _view(self, entry: _MemoryEntry) -> ImportJobSnapshot:
        return replace(entry.snapshot, error_details=tuple(entry.details))

    def create(self, owner_id: str, total: int, source_label: str, chunk_size: int) -> str:
        self._validate_create(total, chunk_size)
        now = self._clock()
        job_id = str(uuid.uuid4())
        snapshot = ImportJobSnapshot(
            id=job_id,
            owner_id=owner_id,
            source_label=source_label,
            status=ImportJobStatus.PENDING,
            total=total,
            chunk_size=chunk_size,
            created_at=now,
            last_activity_at=now,
        )
        with self._lock:
            self._purge_expired(now)
            self._jobs[job_id] = _MemoryEntry(snapshot)
        return job_id

    def start(self, job_id: str) -> bool:
        with self._lock:
            entry = self._entry(job_id)
            if entry is None or entry.snapshot.status != ImportJobStatus.PENDING:
                return False
            now = self._clock()
            entry.snapshot = replace(
                entry.snapshot,
                status=ImportJobStatus.ACTIVE,
                started_at=now,
                last_activity_at=now,
            )
            return True

    def apply_chunk_result(
        self,
        job_id: str,
        delta: ChunkDelta,
        error_details: Iterable[dict[str, Any]] = (),
    ) -> bool:
        with self._lock:
            entry = self._entry(job_id)
            if entry is None or entry.snapshot.is_terminal:
                return False
            current = entry.snapshot
            if current.processed + delta.processed > current.total:
                raise ValueError(
                    f"Chunk would push processed past total for job {job_id}"
                )
            entry.snapshot = replace(
                current,
                processed=current.processed + delta.processed,
                imported=current.imported + delta.imported,
                updated=current.updated + delta.updated,
                skipped=current.skipped + delta.skipped,
                errors=current.errors + delta.errors,
                chunks_completed=current.chunks_completed + 1,
                last_activity_at=self._clock(),
            )
            room = self.error_detail_limit - len(entry.details)
            if room > 0:
                entry.details.extend(list(error_details)[:room])
            return True

    def mark_status(
        self,
        job_id: str,
        status: ImportJobStatus,
        error_message: str | None = None,
    ) -> bool:
        self._check_terminal_status(status)
        with self._lock:
            entry = self._entry(job_id)
            if entry is None or entry.snapshot.is_terminal:
                return False
            now = self._clock()
            entry.snapshot = replace(
                entry.snapshot,
                status=status,
                error_message=error_message,
                finished_at=now,
                last_activity_at=now,
            )
            return True

    def get(self, job_id: str, owner_id: str) -> ImportJobSnapshot | None:
        with self._lock:
            entry = self._entry(job_id)
            if entry is None or entry.snapshot.owner_id != owner_id:
                return None
            return self._view(entry)

    def list_recent(self, owner_id: str, limit: int = 10) -> list[ImportJobSnapshot]:
        with self._lock:
            self._purge_expired(self._clock())
            owned = [
                entry for entry in self._jobs.values() if entry.snapshot.owner_id == owner_id
            ]
            owned.sort(key=lambda entry: entry.snapshot.last_activity_at, reverse=True)
            return [self._view(entry) for entry in owned[:limit]]

    def request_cancellation(self, job_id: str, owner_id: str) -> bool:
        with self._lock:
            entry = self._entry(job_id)
            if entry is None:
                return False
            current = entry.snapshot
            if (
                current.owner_id != owner_id
                or current.status not in CANCELLABLE_STATUSES
                or current.cancel_requested
            ):
                return False
            entry.snapshot = replace(current, cancel_requested=True)
            return True

    def is_cancellation_requested(self, job_id: str) -> bool:
        with self._lock:
            entry = self._entry(job_id)
            return bool(entry and entry.snapshot.cancel_requested)


_memory_store: InMemoryJobStore | None = None


def build_job_store(settings: Settings | None = None) -> JobStore:
    """Return the job store selected by ``JOB_STORE_BACKEND``."""
    global _memory_store
    settings = settings or get_settings()
    backend = settings.job_store_backend

    if backend == "memory":
        if not settings.celery_task_always_eager:
            logger.warning(
                "In-memory job store without eager Celery: workers will not see API jobs"
            )
        if _memory_store is None:
            _memory_store = InMemoryJobStore(
                ttl=timedelta(minutes=settings.import_job_ttl_minutes),
                error_detail_limit=settings.import_error_detail_limit,
            )
        return _memory_store

    if backend == "redis":
        from app.services.redis_job_store import RedisJobStore
        from app.utils.redis_client import create_redis_client

        return RedisJobStore(
            create_redis_client(settings.redis_url, decode_responses=True),
            ttl=timedelta(minutes=settings.import_job_ttl_minutes),
            error_detail_limit=settings.import_error_detail_limit,
        )

    from app.db.session import get_session_factory
    from app.services.sql_job_store import SqlJobStore

    return SqlJobStore(
        get_session_factory(), error_detail_limit=settings.import_error_detail_limit
    )


def reset_memory_store() -> None:
    global _memory_store
    _memory_store = None
