"""Redis work queue for multi-process schedulers."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..constants import QUEUE_HISTORY_LIMIT, REDIS_KEY_PREFIX
from ..contracts import FinishedItem, QueueStats, WorkItem
from .base import BaseWorkQueue

# KEYS: due zset, lease zset, items hash
# ARGV: now score, limit, lease-until score, lease-until iso
_CLAIM_SCRIPT = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, eid in ipairs(expired) do
    redis.call('ZREM', KEYS[2], eid)
    if redis.call('HEXISTS', KEYS[3], eid) == 1 then
        redis.call('ZADD', KEYS[1], ARGV[1], eid)
    end
end
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
local claimed = {}
for _, eid in ipairs(due) do
    redis.call('ZREM', KEYS[1], eid)
    local raw = redis.call('HGET', KEYS[3], eid)
    if raw then
        local item = cjson.decode(raw)
        item['attempts'] = (tonumber(item['attempts']) or 0) + 1
        item['leased_until'] = ARGV[4]
        local encoded = cjson.encode(item)
        redis.call('HSET', KEYS[3], eid, encoded)
        redis.call('ZADD', KEYS[2], ARGV[3], eid)
        table.insert(claimed, encoded)
    end
end
return claimed
"""

# KEYS: due zset, lease zset, items hash, counters hash, history zset
# ARGV: enrollment id, item id, counter field, finished score, record json, history limit
_COMPLETE_SCRIPT = """
local raw = redis.call('HGET', KEYS[3], ARGV[1])
if not raw or cjson.decode(raw)['id'] ~= ARGV[2] then
    return 0
end
redis.call('HDEL', KEYS[3], ARGV[1])
redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HINCRBY', KEYS[4], ARGV[3], 1)
redis.call('ZADD', KEYS[5], ARGV[4], ARGV[5])
redis.call('ZREMRANGEBYRANK', KEYS[5], 0, -(tonumber(ARGV[6]) + 1))
return 1
"""

# KEYS: due zset, lease zset, items hash, counters hash, completed history zset
# ARGV: enrollment id, item id, successor json, successor due score,
#       finished score, record json, history limit
_ADVANCE_SCRIPT = """
local raw = redis.call('HGET', KEYS[3], ARGV[1])
if not raw or cjson.decode(raw)['id'] ~= ARGV[2] then
    return 0
end
redis.call('HSET', KEYS[3], ARGV[1], ARGV[3])
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('ZADD', KEYS[1], ARGV[4], ARGV[1])
redis.call('HINCRBY', KEYS[4], 'completed', 1)
redis.call('ZADD', KEYS[5], ARGV[5], ARGV[6])
redis.call('ZREMRANGEBYRANK', KEYS[5], 0, -(tonumber(ARGV[7]) + 1))
return 1
"""

# KEYS: due zset, lease zset, items hash, counters hash
# ARGV: enrollment id, item id, due score, due iso, attempts ('' keeps current)
_RELEASE_SCRIPT = """
local raw = redis.call('HGET', KEYS[3], ARGV[1])
if not raw then
    return 0
end
local item = cjson.decode(raw)
if item['id'] ~= ARGV[2] then
    return 0
end
item['due_at'] = ARGV[4]
item['leased_until'] = nil
if ARGV[5] == '' then
    redis.call('HINCRBY', KEYS[4], 'retried', 1)
else
    item['attempts'] = tonumber(ARGV[5])
end
redis.call('HSET', KEYS[3], ARGV[1], cjson.encode(item))
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('ZADD', KEYS[1], ARGV[3], ARGV[1])
return 1
"""


class RedisWorkQueue(BaseWorkQueue):
    """Redis-backed queue: due-time and lease sorted sets over an item hash.

    Claims run as a Lua script so concurrent schedulers never lease the same
    item twice.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = REDIS_KEY_PREFIX,
        history_limit: int = QUEUE_HISTORY_LIMIT,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisWorkQueue")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self.history_limit = history_limit
        self._redis: Optional[Any] = None
        self._claim: Optional[Any] = None
        self._complete: Optional[Any] = None
        self._release: Optional[Any] = None
        self._advance: Optional[Any] = None

    @property
    def _due_key(self) -> str:
        return f"{self.prefix}:due"

    @property
    def _lease_key(self) -> str:
        return f"{self.prefix}:leases"

    @property
    def _items_key(self) -> str:
        return f"{self.prefix}:items"

    @property
    def _counters_key(self) -> str:
        return f"{self.prefix}:counters"

    def _history_key(self, failed: bool) -> str:
        return f"{self.prefix}:history:{'failed' if failed else 'completed'}"

    @property
    def _paused_key(self) -> str:
        return f"{self.prefix}:paused"

    async def connect(self) -> None:
        """Connect to Redis and register the queue scripts."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()
        self._claim = self._redis.register_script(_CLAIM_SCRIPT)
        self._complete = self._redis.register_script(_COMPLETE_SCRIPT)
        self._release = self._redis.register_script(_RELEASE_SCRIPT)
        self._advance = self._redis.register_script(_ADVANCE_SCRIPT)

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def schedule(
        self, enrollment_id: str, step_id: str, due_at: datetime, attempts: int = 0
    ) -> WorkItem:
        client = await self._client()
        item = WorkItem(enrollment_id=enrollment_id, step_id=step_id, due_at=due_at, attempts=attempts)
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(self._items_key, enrollment_id, item.model_dump_json())
            pipe.zrem(self._lease_key, enrollment_id)
            pipe.zadd(self._due_key, {enrollment_id: due_at.timestamp()})
            await pipe.execute()
        return item

    async def claim_due(self, now: datetime, limit: int, lease_seconds: float) -> list[WorkItem]:
        await self._client()
        leased_until = now + timedelta(seconds=lease_seconds)
        raw_items = await self._claim(
            keys=[self._due_key, self._lease_key, self._items_key],
            args=[now.timestamp(), limit, leased_until.timestamp(), leased_until.isoformat()],
        )
        return [WorkItem.model_validate_json(raw) for raw in raw_items]

    async def release(
        self, item: WorkItem, due_at: datetime, *, attempts: Optional[int] = None
    ) -> bool:
        await self._client()
        released = await self._release(
            keys=[self._due_key, self._lease_key, self._items_key, self._counters_key],
            args=[
                item.enrollment_id,
                item.id,
                due_at.timestamp(),
                due_at.isoformat(),
                "" if attempts is None else attempts,
            ],
        )
        return bool(released)

    async def complete(self, item: WorkItem, failed: bool = False) -> bool:
        await self._client()
        record = FinishedItem.from_item(item, failed=failed)
        removed = await self._complete(
            keys=[
                self._due_key,
                self._lease_key,
                self._items_key,
                self._counters_key,
                self._history_key(failed),
            ],
            args=[
                item.enrollment_id,
                item.id,
                "failed" if failed else "completed",
                record.finished_at.timestamp(),
                record.model_dump_json(),
                self.history_limit,
            ],
        )
        return bool(removed)

    async def complete_and_schedule(
        self, item: WorkItem, step_id: str, due_at: datetime
    ) -> Optional[WorkItem]:
        await self._client()
        successor = WorkItem(enrollment_id=item.enrollment_id, step_id=step_id, due_at=due_at)
        record = FinishedItem.from_item(item)
        moved = await self._advance(
            keys=[
                self._due_key,
                self._lease_key,
                self._items_key,
                self._counters_key,
                self._history_key(False),
            ],
            args=[
                item.enrollment_id,
                item.id,
                successor.model_dump_json(),
                due_at.timestamp(),
                record.finished_at.timestamp(),
                record.model_dump_json(),
                self.history_limit,
            ],
        )
        return successor if moved else None

    async def cancel(self, enrollment_id: str) -> bool:
        client = await self._client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.hdel(self._items_key, enrollment_id)
            pipe.zrem(self._due_key, enrollment_id)
            pipe.zrem(self._lease_key, enrollment_id)
            removed, _, _ = await pipe.execute()
        return bool(removed)

    async def get(self, enrollment_id: str) -> Optional[WorkItem]:
        client = await self._client()
        raw = await client.hget(self._items_key, enrollment_id)
        return WorkItem.model_validate_json(raw) if raw else None

    async def recent(self, limit: int = 20) -> list[FinishedItem]:
        client = await self._client()
        async with client.pipeline(transaction=False) as pipe:
            pipe.zrevrange(self._history_key(False), 0, limit - 1)
            pipe.zrevrange(self._history_key(True), 0, limit - 1)
            completed, failed = await pipe.execute()
        records = [FinishedItem.model_validate_json(raw) for raw in completed + failed]
        records.sort(key=lambda record: record.finished_at, reverse=True)
        return records[:limit]

    async def clean(self, completed_before: datetime, failed_before: datetime) -> int:
        client = await self._client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(self._history_key(False), "-inf", f"({completed_before.timestamp()}")
            pipe.zremrangebyscore(self._history_key(True), "-inf", f"({failed_before.timestamp()}")
            completed, failed = await pipe.execute()
        return completed + failed

    async def pause(self) -> None:
        client = await self._client()
        await client.set(self._paused_key, "1")

    async def resume(self) -> None:
        client = await self._client()
        await client.delete(self._paused_key)

    async def is_paused(self) -> bool:
        client = await self._client()
        return bool(await client.exists(self._paused_key))

    async def stats(self, now: datetime) -> QueueStats:
        client = await self._client()
        score = now.timestamp()
        async with client.pipeline(transaction=False) as pipe:
            pipe.zcount(self._due_key, "-inf", score)
            pipe.zcount(self._due_key, f"({score}", "+inf")
            pipe.zcount(self._lease_key, f"({score}", "+inf")
            pipe.zcount(self._lease_key, "-inf", score)
            pipe.hgetall(self._counters_key)
            waiting, delayed, active, expired, counters = await pipe.execute()
        return QueueStats(
            waiting=waiting + expired,
            delayed=delayed,
            active=active,
            completed=int(counters.get("completed", 0)),
            failed=int(counters.get("failed", 0)),
            retried=int(counters.get("retried", 0)),
        )
