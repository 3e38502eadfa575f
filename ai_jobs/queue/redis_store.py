"""
Redis-backed Queue Store.

Layout under the configured key prefix:
- ``job:{id}`` hash: kind, payload (JSON), priority, enqueued_at and, while
  claimed, token / worker / expires
- ``ready:{priority}`` lists: eligible ids, LPUSH on enqueue, RPOP on claim
- ``delayed`` sorted set: released ids scored by eligibility time (ms)
- ``leases`` sorted set: claimed ids scored by lease expiry (ms)
- ``dead`` sorted set: dead-lettered ids scored by the time they were moved

Every state change runs as a single Lua script so concurrent workers never
observe a half-applied transition. All timestamps are computed by the client
and passed as strings; scripts only compare them.
"""

import json
import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from uuid import UUID, uuid4

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ai_jobs.config import get_settings
from ai_jobs.constants import CLAIM_ORDER, JobPriority
from ai_jobs.errors import DuplicateJobId, InvalidLock, StoreUnavailable
from ai_jobs.types.job import ClaimedJob, JobRecord, QueueStats

logger = logging.getLogger(__name__)


# ARGV: prefix, id, kind, payload, priority, enqueued_at
_ENQUEUE = """
local job_key = ARGV[1] .. ':job:' .. ARGV[2]
if redis.call('EXISTS', job_key) == 1 then
  return 0
end
redis.call('HSET', job_key, 'kind', ARGV[3], 'payload', ARGV[4], 'priority', ARGV[5], 'enqueued_at', ARGV[6])
redis.call('LPUSH', ARGV[1] .. ':ready:' .. ARGV[5], ARGV[2])
return 1
"""

# ARGV: prefix, now, ...
_RECLAIM_EXPIRED = """
local prefix = ARGV[1]
local leases = prefix .. ':leases'
local expired = redis.call('ZRANGEBYSCORE', leases, '-inf', '(' .. ARGV[2])
local reclaimed = {}
for _, id in ipairs(expired) do
  redis.call('ZREM', leases, id)
  local job_key = prefix .. ':job:' .. id
  local priority = redis.call('HGET', job_key, 'priority')
  if priority then
    redis.call('HDEL', job_key, 'token', 'worker', 'expires')
    redis.call('RPUSH', prefix .. ':ready:' .. priority, id)
    table.insert(reclaimed, id)
  end
end
"""

_REAP = _RECLAIM_EXPIRED + "return reclaimed\n"

# ARGV: prefix, now, worker, token, expires, priority tiers in claim order...
_CLAIM = _RECLAIM_EXPIRED + """
local delayed = prefix .. ':delayed'
local due = redis.call('ZRANGEBYSCORE', delayed, '-inf', ARGV[2])
for _, id in ipairs(due) do
  redis.call('ZREM', delayed, id)
  local priority = redis.call('HGET', prefix .. ':job:' .. id, 'priority')
  if priority then
    redis.call('LPUSH', prefix .. ':ready:' .. priority, id)
  end
end
for i = 6, #ARGV do
  local ready = prefix .. ':ready:' .. ARGV[i]
  local id = redis.call('RPOP', ready)
  while id do
    local job_key = prefix .. ':job:' .. id
    if redis.call('EXISTS', job_key) == 1 then
      redis.call('ZADD', leases, ARGV[5], id)
      redis.call('HSET', job_key, 'token', ARGV[4], 'worker', ARGV[3], 'expires', ARGV[5])
      local fields = redis.call('HMGET', job_key, 'kind', 'payload', 'priority', 'enqueued_at')
      return {id, fields[1], fields[2], fields[3], fields[4]}
    end
    id = redis.call('RPOP', ready)
  end
end
return false
"""

# ARGV: prefix, id, token, now, ...
_CHECK_LOCK = """
local job_key = ARGV[1] .. ':job:' .. ARGV[2]
local leases = ARGV[1] .. ':leases'
local held = redis.call('HMGET', job_key, 'token', 'expires')
if (not held[1]) or held[1] ~= ARGV[3] or (not held[2]) or tonumber(held[2]) < tonumber(ARGV[4]) then
  return 0
end
"""

_ACKNOWLEDGE = _CHECK_LOCK + """
redis.call('ZREM', leases, ARGV[2])
redis.call('DEL', job_key)
return 1
"""

# ARGV: prefix, id, token, now, eligible_at
_RELEASE = _CHECK_LOCK + """
redis.call('ZREM', leases, ARGV[2])
redis.call('HDEL', job_key, 'token', 'worker', 'expires')
redis.call('ZADD', ARGV[1] .. ':delayed', ARGV[5], ARGV[2])
return 1
"""

# ARGV: prefix, id, token, now, reason
_DEAD_LETTER = _CHECK_LOCK + """
redis.call('ZREM', leases, ARGV[2])
redis.call('HDEL', job_key, 'token', 'worker', 'expires')
redis.call('HSET', job_key, 'dead_reason', ARGV[5], 'dead_at', ARGV[4])
redis.call('ZADD', ARGV[1] .. ':dead', ARGV[4], ARGV[2])
return 1
"""

# ARGV: prefix, id, token, now, expires
_EXTEND = _CHECK_LOCK + """
redis.call('ZADD', leases, ARGV[5], ARGV[2])
redis.call('HSET', job_key, 'expires', ARGV[5])
return 1
"""


def _from_ms(value: str | int) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class RedisQueueStore:
    """QueueStore implementation on Redis lists and sorted sets."""

    def __init__(
        self,
        redis_url: str | None = None,
        key_prefix: str | None = None,
        clock: Callable[[], float] = time.time,
        client: redis.Redis | None = None,
    ):
        """
        Initialize the store.

        Args:
            redis_url: Redis connection URL. Defaults to settings.
            key_prefix: Namespace for all keys. Defaults to settings.
            clock: Returns the current time in epoch seconds.
            client: Pre-built client (tests pass a fake one).
        """
        settings = get_settings()
        self.redis_url = redis_url or settings.redis_url
        self._prefix = key_prefix or settings.queue_key_prefix
        self._clock = clock
        self._redis: redis.Redis | None = None
        if client is not None:
            self._bind(client)

    def _bind(self, client: redis.Redis) -> None:
        self._redis = client
        self._scripts = {
            "enqueue": client.register_script(_ENQUEUE),
            "claim": client.register_script(_CLAIM),
            "reap_expired": client.register_script(_REAP),
            "acknowledge": client.register_script(_ACKNOWLEDGE),
            "release": client.register_script(_RELEASE),
            "move_to_dead_letter": client.register_script(_DEAD_LETTER),
            "extend_lease": client.register_script(_EXTEND),
        }

    def _client(self) -> redis.Redis:
        if self._redis is None:
            self._bind(
                redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
            )
        return self._redis

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix, *parts))

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            logger.warning(
                "Redis operation failed",
                extra={"operation": operation, "error": str(e)},
            )
            raise StoreUnavailable("queue", str(e)) from e

    async def connect(self) -> None:
        """Connect to Redis and verify the connection."""
        client = self._client()
        with self._translate_errors("connect"):
            await client.ping()
        logger.info("Connected to Redis queue store", extra={"key_prefix": self._prefix})

    async def ping(self) -> bool:
        try:
            with self._translate_errors("ping"):
                return bool(await self._client().ping())
        except StoreUnavailable:
            return False

    async def close(self) -> None:
        """Disconnect from Redis."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Disconnected from Redis queue store")

    async def enqueue(self, job: JobRecord) -> None:
        self._client()
        with self._translate_errors("enqueue"):
            created = await self._scripts["enqueue"](
                args=[
                    self._prefix,
                    str(job.id),
                    job.kind,
                    json.dumps(job.payload),
                    job.priority.value,
                    str(self._now_ms()),
                ]
            )
        if not created:
            raise DuplicateJobId(job.id)
        logger.debug(
            "Enqueued job",
            extra={"job_id": str(job.id), "kind": job.kind, "priority": job.priority.value},
        )

    async def claim(self, worker_id: str, lease_duration: float) -> ClaimedJob | None:
        self._client()
        now = self._now_ms()
        expires = now + int(lease_duration * 1000)
        token = uuid4().hex
        with self._translate_errors("claim"):
            row = await self._scripts["claim"](
                args=[
                    self._prefix,
                    str(now),
                    worker_id,
                    token,
                    str(expires),
                    *(priority.value for priority in CLAIM_ORDER),
                ]
            )
        if not row:
            return None

        job_id, kind, payload, priority, enqueued_at = row
        return ClaimedJob(
            job_id=UUID(job_id),
            kind=kind,
            payload=json.loads(payload),
            priority=JobPriority(priority),
            worker_id=worker_id,
            lock_token=token,
            lock_expires_at=_from_ms(expires),
            enqueued_at=_from_ms(enqueued_at),
        )

    async def _locked_call(self, operation: str, job_id: UUID, lock_token: str, extra: str) -> None:
        self._client()
        with self._translate_errors(operation):
            held = await self._scripts[operation](
                args=[self._prefix, str(job_id), lock_token, str(self._now_ms()), extra]
            )
        if not held:
            raise InvalidLock(job_id)

    async def acknowledge(self, job_id: UUID, lock_token: str) -> None:
        await self._locked_call("acknowledge", job_id, lock_token, "")

    async def release(self, job_id: UUID, lock_token: str, backoff_delay: float) -> None:
        eligible_at = self._now_ms() + int(max(0.0, backoff_delay) * 1000)
        await self._locked_call("release", job_id, lock_token, str(eligible_at))

    async def move_to_dead_letter(self, job_id: UUID, lock_token: str, reason: str = "") -> None:
        await self._locked_call("move_to_dead_letter", job_id, lock_token, reason)

    async def extend_lease(self, job_id: UUID, lock_token: str, lease_duration: float) -> None:
        expires = self._now_ms() + int(lease_duration * 1000)
        await self._locked_call("extend_lease", job_id, lock_token, str(expires))

    async def expired_leases(self) -> list[UUID]:
        client = self._client()
        with self._translate_errors("expired_leases"):
            ids = await client.zrangebyscore(
                self._key("leases"), "-inf", f"({self._now_ms()}"
            )
        return [UUID(job_id) for job_id in ids]

    async def reap_expired(self) -> list[UUID]:
        self._client()
        with self._translate_errors("reap_expired"):
            ids = await self._scripts["reap_expired"](args=[self._prefix, str(self._now_ms())])
        return [UUID(job_id) for job_id in ids or []]

    async def stats(self) -> QueueStats:
        client = self._client()
        with self._translate_errors("stats"):
            async with client.pipeline(transaction=False) as pipe:
                for priority in JobPriority:
                    pipe.llen(self._key("ready", priority.value))
                pipe.zcard(self._key("delayed"))
                pipe.zcard(self._key("leases"))
                pipe.zcard(self._key("dead"))
                counts = await pipe.execute()

        ready = dict(zip(JobPriority, counts[: len(JobPriority)]))
        delayed, leased, dead = counts[len(JobPriority):]
        return QueueStats(ready=ready, delayed=delayed, leased=leased, dead=dead)

    async def dead_letter_reason(self, job_id: UUID) -> str | None:
        """Reason recorded when the job was dead-lettered, if it was."""
        client = self._client()
        with self._translate_errors("dead_letter_reason"):
            if await client.zscore(self._key("dead"), str(job_id)) is None:
                return None
            return await client.hget(self._key("job", str(job_id)), "dead_reason")
