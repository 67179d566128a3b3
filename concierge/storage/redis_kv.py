from __future__ import annotations

from typing import Any

from redis.asyncio.client import Pipeline, Redis
from redis.exceptions import RedisError

from concierge.common import StoreUnavailableError

DELETE_IF_EQUALS_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
end
return 0
"""

EXPIRE_IF_EQUALS_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('expire', KEYS[1], ARGV[2])
end
return 0
"""

# prune, count and conditional add happen in one server-side step
SLIDING_WINDOW_ADD_SCRIPT = """
redis.call('zremrangebyscore', KEYS[1], 0, ARGV[1])
local count = redis.call('zcard', KEYS[1])
if count >= tonumber(ARGV[2]) then
  return {0, count}
end
redis.call('zadd', KEYS[1], ARGV[3], ARGV[4])
redis.call('expire', KEYS[1], ARGV[5])
return {1, count}
"""


class RedisPipeline:
    def __init__(self, pipeline: Pipeline) -> None:
        self._pipeline = pipeline

    def set(self, key: str, value: str, *, ex: int | None = None, nx: bool = False) -> None:
        self._pipeline.set(key, value, ex=ex, nx=nx)

    def delete(self, *keys: str) -> None:
        self._pipeline.delete(*keys)

    def expire(self, key: str, seconds: int) -> None:
        self._pipeline.expire(key, max(1, seconds))

    def hset(self, key: str, mapping: dict[str, str]) -> None:
        self._pipeline.hset(key, mapping=mapping)

    def sadd(self, key: str, *members: str) -> None:
        self._pipeline.sadd(key, *members)

    def zadd(self, key: str, mapping: dict[str, float]) -> None:
        self._pipeline.zadd(key, mapping)

    def zrem(self, key: str, *members: str) -> None:
        self._pipeline.zrem(key, *members)

    def lpush(self, key: str, *values: str) -> None:
        self._pipeline.lpush(key, *values)

    def ltrim(self, key: str, start: int, end: int) -> None:
        self._pipeline.ltrim(key, start, end)

    def lrem(self, key: str, count: int, value: str) -> None:
        self._pipeline.lrem(key, count, value)

    async def execute(self) -> list[Any]:
        try:
            return await self._pipeline.execute()
        except RedisError as error:
            raise StoreUnavailableError(f"Redis pipeline failed: {error}") from error


class RedisKeyValueStore:
    def __init__(self, client: Redis) -> None:
        self._client = client

    @property
    def client(self) -> Redis:
        return self._client

    async def _call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        try:
            return await getattr(self._client, method)(*args, **kwargs)
        except RedisError as error:
            raise StoreUnavailableError(f"Redis {method} failed: {error}") from error

    async def ping(self) -> bool:
        return bool(await self._call("ping"))

    async def get(self, key: str) -> str | None:
        return await self._call("get", key)

    async def set(self, key: str, value: str, *, ex: int | None = None, nx: bool = False) -> bool:
        result = await self._call("set", key, value, ex=max(1, ex) if ex is not None else None, nx=nx)
        return bool(result)

    async def mget(self, keys: list[str]) -> list[str | None]:
        if not keys:
            return []
        return list(await self._call("mget", keys))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", *keys))

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", key))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._call("expire", key, max(1, seconds)))

    async def ttl(self, key: str) -> int:
        return int(await self._call("ttl", key))

    async def incr(self, key: str, amount: int = 1) -> int:
        return int(await self._call("incrby", key, amount))

    async def delete_if_equals(self, key: str, value: str) -> bool:
        return bool(await self._call("eval", DELETE_IF_EQUALS_SCRIPT, 1, key, value))

    async def expire_if_equals(self, key: str, value: str, seconds: int) -> bool:
        refreshed = await self._call("eval", EXPIRE_IF_EQUALS_SCRIPT, 1, key, value, str(max(1, seconds)))
        return bool(refreshed)

    async def sliding_window_add(
        self,
        key: str,
        *,
        member: str,
        score: float,
        window_start: float,
        limit: int,
        ttl_seconds: int,
    ) -> tuple[bool, int]:
        added, count = await self._call(
            "eval",
            SLIDING_WINDOW_ADD_SCRIPT,
            1,
            key,
            f"{window_start:.6f}",
            str(max(1, limit)),
            f"{score:.6f}",
            member,
            str(max(1, ttl_seconds)),
        )
        return bool(int(added)), int(count)

    async def hset(self, key: str, mapping: dict[str, str]) -> int:
        return int(await self._call("hset", key, mapping=mapping))

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(await self._call("hgetall", key) or {})

    async def sadd(self, key: str, *members: str) -> int:
        return int(await self._call("sadd", key, *members))

    async def smembers(self, key: str) -> set[str]:
        return set(await self._call("smembers", key) or set())

    async def srem(self, key: str, *members: str) -> int:
        return int(await self._call("srem", key, *members))

    async def zadd(self, key: str, mapping: dict[str, float], *, nx: bool = False) -> int:
        return int(await self._call("zadd", key, mapping, nx=nx))

    async def zrem(self, key: str, *members: str) -> int:
        return int(await self._call("zrem", key, *members))

    async def zcard(self, key: str) -> int:
        return int(await self._call("zcard", key))

    async def zremrangebyscore(self, key: str, minimum: float, maximum: float) -> int:
        return int(await self._call("zremrangebyscore", key, minimum, maximum))

    async def zrangebyscore(
        self,
        key: str,
        minimum: float,
        maximum: float,
        *,
        limit: int | None = None,
    ) -> list[tuple[str, float]]:
        if limit is not None:
            rows = await self._call(
                "zrangebyscore",
                key,
                minimum,
                maximum,
                start=0,
                num=max(1, limit),
                withscores=True,
            )
        else:
            rows = await self._call("zrangebyscore", key, minimum, maximum, withscores=True)
        return [(str(member), float(score)) for member, score in rows]

    async def zrange(self, key: str, start: int, end: int, *, desc: bool = False) -> list[tuple[str, float]]:
        rows = await self._call("zrange", key, start, end, desc=desc, withscores=True)
        return [(str(member), float(score)) for member, score in rows]

    async def lpush(self, key: str, *values: str) -> int:
        return int(await self._call("lpush", key, *values))

    async def rpush(self, key: str, *values: str) -> int:
        return int(await self._call("rpush", key, *values))

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        return list(await self._call("lrange", key, start, end))

    async def lindex(self, key: str, index: int) -> str | None:
        return await self._call("lindex", key, index)

    async def lrem(self, key: str, count: int, value: str) -> int:
        return int(await self._call("lrem", key, count, value))

    async def llen(self, key: str) -> int:
        return int(await self._call("llen", key))

    async def lmove(self, source: str, destination: str) -> str | None:
        return await self._call("lmove", source, destination, "RIGHT", "LEFT")

    def pipeline(self) -> RedisPipeline:
        return RedisPipeline(self._client.pipeline(transaction=True))
