"""Job store kept in Redis hashes that expire after a period of inactivity."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Iterable

from redis import Redis

from app.services.job_store import (
    ChunkDelta,
    ImportJobSnapshot,
    ImportJobStatus,
    JobStore,
    utcnow,
)

JOB_PREFIX = "imports:job:"
OWNER_PREFIX = "imports:owner:"

# Terminal check + increment in one script so a status flip cannot interleave.
_APPLY_CHUNK = """
if redis.call('EXISTS', KEYS[1]) == 0 then return -1 end
local status = redis.call('HGET', KEYS[1], 'status')
if status == 'completed' or status == 'cancelled' or status == 'failed' then return 0 end
local processed = tonumber(redis.call('HGET', KEYS[1], 'processed'))
local total = tonumber(redis.call('HGET', KEYS[1], 'total'))
local increment = tonumber(ARGV[1]) + tonumber(ARGV[2]) + tonumber(ARGV[3]) + tonumber(ARGV[4])
if processed + increment > total then return -2 end
redis.call('HINCRBY', KEYS[1], 'imported', ARGV[1])
redis.call('HINCRBY', KEYS[1], 'updated', ARGV[2])
redis.call('HINCRBY', KEYS[1], 'skipped', ARGV[3])
redis.call('HINCRBY', KEYS[1], 'errors', ARGV[4])
redis.call('HINCRBY', KEYS[1], 'processed', increment)
redis.call('HINCRBY', KEYS[1], 'chunks_completed', 1)
redis.call('HSET', KEYS[1], 'last_activity_at', ARGV[5])
redis.call('EXPIRE', KEYS[1], ARGV[6])
return 1
"""

_START = """
if redis.call('HGET', KEYS[1], 'status') ~= 'pending' then return 0 end
redis.call('HSET', KEYS[1], 'status', 'active', 'started_at', ARGV[1], 'last_activity_at', ARGV[1])
redis.call('EXPIRE', KEYS[1], ARGV[2])
return 1
"""

_MARK_STATUS = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status or status == 'completed' or status == 'cancelled' or status == 'failed' then
  return 0
end
redis.call('HSET', KEYS[1], 'status', ARGV[1], 'finished_at', ARGV[2],
  'last_activity_at', ARGV[2], 'error_message', ARGV[3])
redis.call('EXPIRE', KEYS[1], ARGV[4])
return 1
"""

_REQUEST_CANCELLATION = """
if redis.call('HGET', KEYS[1], 'owner_id') ~= ARGV[1] then return 0 end
local status = redis.call('HGET', KEYS[1], 'status')
if status ~= 'pending' and status ~= 'active' then return 0 end
if redis.call('HGET', KEYS[1], 'cancel_requested') == '1' then return 0 end
redis.call('HSET', KEYS[1], 'cancel_requested', '1')
return 1
"""


def _job_key(job_id: str) -> str:
    return f"{JOB_PREFIX}{job_id}"


def _errors_key(job_id: str) -> str:
    return f"{JOB_PREFIX}{job_id}:errors"


def _owner_key(owner_id: str) -> str:
    return f"{OWNER_PREFIX}{owner_id}:jobs"


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class RedisJobStore(JobStore):
    """Redis-backed store for deployments that treat job state as ephemeral.

    Every mutation refreshes the key TTL, so a job disappears once it has been
    idle for longer than ``ttl``. A per-owner sorted set scored by last
    activity drives :meth:`list_recent`.
    """

    def __init__(
        self,
        client: Redis,
        ttl: timedelta = timedelta(minutes=30),
        error_detail_limit: int = 50,
    ):
        super().__init__(error_detail_limit)
        self._client = client
        self._ttl_seconds = int(ttl.total_seconds())
        self._apply_chunk = client.register_script(_APPLY_CHUNK)
        self._start = client.register_script(_START)
        self._mark_status = client.register_script(_MARK_STATUS)
        self._request_cancellation = client.register_script(_REQUEST_CANCELLATION)

    def _touch_owner_index(self, owner_id: str, job_id: str, when: datetime) -> None:
        key = _owner_key(owner_id)
        self._client.zadd(key, {job_id: when.timestamp()})
        self._client.expire(key, self._ttl_seconds)

    def _owner_of(self, job_id: str) -> str | None:
        return self._client.hget(_job_key(job_id), "owner_id")

    def _load(self, job_id: str) -> ImportJobSnapshot | None:
        data = self._client.hgetall(_job_key(job_id))
        if not data:
            return None
        details = [json.loads(item) for item in self._client.lrange(_errors_key(job_id), 0, -1)]
        return ImportJobSnapshot(
            id=job_id,
            owner_id=data["owner_id"],
            source_label=data.get("source_label", ""),
            status=ImportJobStatus(data["status"]),
            total=int(data["total"]),
            processed=int(data.get("processed", 0)),
            imported=int(data.get("imported", 0)),
            updated=int(data.get("updated", 0)),
            skipped=int(data.get("skipped", 0)),
            errors=int(data.get("errors", 0)),
            chunk_size=int(data["chunk_size"]),
            chunks_completed=int(data.get("chunks_completed", 0)),
            cancel_requested=data.get("cancel_requested") == "1",
            created_at=_parse_dt(data.get("created_at")),
            started_at=_parse_dt(data.get("started_at")),
            last_activity_at=_parse_dt(data.get("last_activity_at")),
            finished_at=_parse_dt(data.get("finished_at")),
            error_message=data.get("error_message") or None,
            error_details=tuple(details),
        )

    def create(self, owner_id: str, total: int, source_label: str, chunk_size: int) -> str:
        self._validate_create(total, chunk_size)
        job_id = str(uuid.uuid4())
        now = utcnow()
        mapping = {
            "owner_id": owner_id,
            "source_label": source_label,
            "status": ImportJobStatus.PENDING.value,
            "total": total,
            "processed": 0,
            "imported": 0,
            "updated": 0,
            "skipped": 0,
            "errors": 0,
            "chunk_size": chunk_size,
            "chunks_completed": 0,
            "cancel_requested": "0",
            "created_at": now.isoformat(),
            "last_activity_at": now.isoformat(),
        }
        pipe = self._client.pipeline()
        pipe.hset(_job_key(job_id), mapping=mapping)
        pipe.expire(_job_key(job_id), self._ttl_seconds)
        pipe.execute()
        self._touch_owner_index(owner_id, job_id, now)
        return job_id

    def start(self, job_id: str) -> bool:
        now = utcnow()
        started = self._start(keys=[_job_key(job_id)], args=[now.isoformat(), self._ttl_seconds])
        if started == 1:
            owner_id = self._owner_of(job_id)
            if owner_id:
                self._touch_owner_index(owner_id, job_id, now)
        return started == 1

    def apply_chunk_result(
        self,
        job_id: str,
        delta: ChunkDelta,
        error_details: Iterable[dict[str, Any]] = (),
    ) -> bool:
        now = utcnow()
        result = self._apply_chunk(
            keys=[_job_key(job_id)],
            args=[
                delta.imported,
                delta.updated,
                delta.skipped,
                delta.errors,
                now.isoformat(),
                self._ttl_seconds,
            ],
        )
        if result == -2:
            raise ValueError(f"Chunk would push processed past total for job {job_id}")
        if result != 1:
            return False

        errors_key = _errors_key(job_id)
        details = list(error_details)
        if details:
            room = self.error_detail_limit - self._client.llen(errors_key)
            if room > 0:
                self._client.rpush(errors_key, *[json.dumps(item) for item in details[:room]])
        if self._client.exists(errors_key):
            self._client.expire(errors_key, self._ttl_seconds)

        owner_id = self._owner_of(job_id)
        if owner_id:
            self._touch_owner_index(owner_id, job_id, now)
        return True

    def mark_status(
        self,
        job_id: str,
        status: ImportJobStatus,
        error_message: str | None = None,
    ) -> bool:
        self._check_terminal_status(status)
        now = utcnow()
        marked = self._mark_status(
            keys=[_job_key(job_id)],
            args=[status.value, now.isoformat(), error_message or "", self._ttl_seconds],
        )
        if marked == 1:
            owner_id = self._owner_of(job_id)
            if owner_id:
                self._touch_owner_index(owner_id, job_id, now)
        return marked == 1

    def get(self, job_id: str, owner_id: str) -> ImportJobSnapshot | None:
        snapshot = self._load(job_id)
        if snapshot is None or snapshot.owner_id != owner_id:
            return None
        return snapshot

    def list_recent(self, owner_id: str, limit: int = 10) -> list[ImportJobSnapshot]:
        key = _owner_key(owner_id)
        jobs: list[ImportJobSnapshot] = []
        expired: list[str] = []
        for job_id in self._client.zrevrange(key, 0, -1):
            snapshot = self._load(job_id)
            if snapshot is None:
                expired.append(job_id)
                continue
            jobs.append(snapshot)
            if len(jobs) >= limit:
                break
        if expired:
            self._client.zrem(key, *expired)
        return jobs

    def request_cancellation(self, job_id: str, owner_id: str) -> bool:
        return self._request_cancellation(keys=[_job_key(job_id)], args=[owner_id]) == 1

    def is_cancellation_requested(self, job_id: str) -> bool:
        return self._client.hget(_job_key(job_id), "cancel_requested") == "1"
