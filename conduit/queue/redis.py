"""Redis job queue for cross-process workers."""

from __future__ import annotations

import logging
import time
from typing import Any, List, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..contracts import QueueJob, QueueStats
from ..errors import TransientInfraError
from .base import BaseJobQueue, error_to_dict, from_timestamp, to_timestamp

logger = logging.getLogger(__name__)

PRIORITY_OFFSET = 1_000_000_000
# "%010d:%020d:" prefix of a ready member
_MEMBER_PREFIX_LEN = 32

# Ready members share score 0 and sort lexicographically on
# (offset - priority, sequence), i.e. highest priority first, then FIFO.
_ENQUEUE_READY = """
local seq = redis.call('INCR', KEYS[3])
local member = string.format('%010d:%020d:%s', tonumber(ARGV[2]), seq, ARGV[1])
redis.call('HSET', KEYS[1], ARGV[1], ARGV[3])
redis.call('ZADD', KEYS[2], 0, member)
return seq
"""

_DEQUEUE = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, id in ipairs(due) do
  redis.call('ZREM', KEYS[1], id)
  local raw = redis.call('HGET', KEYS[3], id)
  if raw then
    local priority = tonumber(cjson.decode(raw)['priority']) or 0
    local seq = redis.call('INCR', KEYS[6])
    local member = string.format('%010d:%020d:%s', tonumber(ARGV[3]) - priority, seq, id)
    redis.call('ZADD', KEYS[2], 0, member)
  end
end
while true do
  local head = redis.call('ZRANGE', KEYS[2], 0, 0)
  if #head == 0 then
    return false
  end
  local member = head[1]
  redis.call('ZREM', KEYS[2], member)
  local id = string.sub(member, tonumber(ARGV[4]) + 1)
  local raw = redis.call('HGET', KEYS[3], id)
  if raw then
    redis.call('HDEL', KEYS[3], id)
    redis.call('HSET', KEYS[4], id, raw)
    redis.call('ZADD', KEYS[5], ARGV[2], id)
    return {member, raw}
  end
end
"""

_FAIL = """
if redis.call('HDEL', KEYS[1], ARGV[1]) == 0 then
  return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
if ARGV[3] == 'retry' then
  redis.call('HSET', KEYS[3], ARGV[1], ARGV[2])
  redis.call('ZADD', KEYS[4], ARGV[4], ARGV[1])
else
  redis.call('HSET', KEYS[5], ARGV[1], ARGV[2])
end
return 1
"""

_EXTEND = """
if redis.call('HEXISTS', KEYS[1], ARGV[1]) == 0 then
  return 0
end
redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
return 1
"""


class RedisJobQueue(BaseJobQueue):
    """Redis-based priority queue built on sorted sets and Lua scripts."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "conduit",
        max_retries: int = 3,
        max_backoff_seconds: float = 300.0,
        lease_seconds: float = 300.0,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisJobQueue")
        super().__init__(max_retries, max_backoff_seconds, lease_seconds)

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.key_prefix = key_prefix
        self._redis: Optional[Any] = None
        self._scripts: dict[str, Any] = {}

    def _key(self, name: str) -> str:
        return f"{self.key_prefix}:{name}"

    @property
    def _keys(self) -> List[str]:
        return [
            self._key(name)
            for name in ("jobs", "ready", "delayed", "inflight", "leases", "dead", "seq")
        ]

    async def connect(self) -> None:
        """Connect to Redis and register the Lua scripts."""
        client = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        try:
            await client.ping()
        except (redis.ConnectionError, OSError) as exc:
            await client.aclose()
            raise TransientInfraError(f"Redis unavailable: {exc}") from exc
        self._redis = client
        self._scripts = {
            "enqueue_ready": client.register_script(_ENQUEUE_READY),
            "dequeue": client.register_script(_DEQUEUE),
            "fail": client.register_script(_FAIL),
            "extend": client.register_script(_EXTEND),
        }

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    # ------------------------------------------------------------------
    async def enqueue(
        self,
        workflow_id: str,
        organization_id: str,
        trigger_payload: Any = None,
        trigger_source: str = "manual",
        *,
        priority: int = 0,
        scheduled_for=None,
    ) -> str:
        client = await self._client()
        job = self._new_job(
            workflow_id,
            organization_id,
            trigger_payload,
            trigger_source,
            priority,
            scheduled_for,
        )
        run_at = to_timestamp(scheduled_for)
        if run_at is not None and run_at > time.time():
            async with client.pipeline(transaction=True) as pipe:
                pipe.hset(self._key("jobs"), job.id, job.to_json())
                pipe.zadd(self._key("delayed"), {job.id: run_at})
                await pipe.execute()
        else:
            await self._scripts["enqueue_ready"](
                keys=[self._key("jobs"), self._key("ready"), self._key("seq")],
                args=[job.id, PRIORITY_OFFSET - job.priority, job.to_json()],
            )
        logger.debug("Enqueued job %s for workflow %s", job.id, workflow_id)
        return job.id

    async def dequeue(self, lease_seconds: Optional[float] = None) -> Optional[QueueJob]:
        client = await self._client()
        lease = self.lease_seconds if lease_seconds is None else lease_seconds
        now = time.time()
        result = await self._scripts["dequeue"](
            keys=[
                self._key("delayed"),
                self._key("ready"),
                self._key("jobs"),
                self._key("inflight"),
                self._key("leases"),
                self._key("seq"),
            ],
            args=[now, now + lease, PRIORITY_OFFSET, _MEMBER_PREFIX_LEN],
        )
        if not result:
            return None
        member, raw = result
        job = QueueJob.from_json(raw)
        job.sequence = int(member.split(":", 2)[1])
        job.lease_expires_at = from_timestamp(now + lease)
        return job

    async def complete(self, job_id: str) -> None:
        client = await self._client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.hdel(self._key("inflight"), job_id)
            pipe.zrem(self._key("leases"), job_id)
            await pipe.execute()

    async def fail(
        self, job_id: str, error: Any, *, retryable: bool = True
    ) -> Optional[QueueJob]:
        client = await self._client()
        raw = await client.hget(self._key("inflight"), job_id)
        if raw is None:
            logger.warning("Ignoring failure for unknown job %s", job_id)
            return None

        job = QueueJob.from_json(raw)
        job.retry_count += 1
        job.error = error_to_dict(error)
        job.lease_expires_at = None
        retry = retryable and job.retry_count < job.max_retries
        run_at = 0.0
        if retry:
            delay = self.retry_delay(job.retry_count)
            run_at = time.time() + delay
            job.scheduled_for = from_timestamp(run_at)

        moved = await self._scripts["fail"](
            keys=[
                self._key("inflight"),
                self._key("leases"),
                self._key("jobs"),
                self._key("delayed"),
                self._key("dead"),
            ],
            args=[job_id, job.to_json(), "retry" if retry else "dead", run_at],
        )
        if not moved:
            logger.warning("Job %s left the in-flight registry before failing", job_id)
            return None

        if retry:
            logger.info(
                "Job %s failed (attempt %d/%d), retrying at %s",
                job_id,
                job.retry_count,
                job.max_retries,
                job.scheduled_for.isoformat(),
            )
        else:
            logger.error(
                "Job %s moved to dead letters after %d attempt(s): %s",
                job_id,
                job.retry_count,
                job.error.get("message"),
            )
        return job

    async def extend_lease(self, job_id: str, lease_seconds: Optional[float] = None) -> bool:
        await self._client()
        lease = self.lease_seconds if lease_seconds is None else lease_seconds
        extended = await self._scripts["extend"](
            keys=[self._key("inflight"), self._key("leases")],
            args=[job_id, time.time() + lease],
        )
        return bool(extended)

    async def reclaim_expired(self) -> List[str]:
        client = await self._client()
        expired = await client.zrangebyscore(self._key("leases"), "-inf", time.time())
        reclaimed: List[str] = []
        for job_id in expired:
            logger.warning("Lease expired for job %s", job_id)
            job = await self.fail(
                job_id, {"code": "LEASE_EXPIRED", "message": "Job lease expired"}
            )
            if job is not None:
                reclaimed.append(job_id)
        return reclaimed

    async def stats(self) -> QueueStats:
        client = await self._client()
        async with client.pipeline(transaction=False) as pipe:
            pipe.zcard(self._key("ready"))
            pipe.zcard(self._key("delayed"))
            pipe.hlen(self._key("inflight"))
            pipe.hlen(self._key("dead"))
            ready, delayed, in_flight, dead = await pipe.execute()
        return QueueStats(
            ready=ready, delayed=delayed, in_flight=in_flight, dead_letter=dead
        )

    async def dead_letters(self, limit: int = 100) -> List[QueueJob]:
        client = await self._client()
        raws = await client.hvals(self._key("dead"))
        jobs = [QueueJob.from_json(raw) for raw in raws]
        jobs.sort(key=lambda job: job.created_at)
        return jobs[:limit]

    async def clear(self) -> None:
        client = await self._client()
        await client.delete(*self._keys)
