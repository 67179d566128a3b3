from __future__ import annotations

from typing import Any, Protocol


class KeyValuePipeline(Protocol):
    def set(self, key: str, value: str, *, ex: int | None = None, nx: bool = False) -> None:
        ...

    def delete(self, *keys: str) -> None:
        ...

    def expire(self, key: str, seconds: int) -> None:
        ...

    def hset(self, key: str, mapping: dict[str, str]) -> None:
        ...

    def sadd(self, key: str, *members: str) -> None:
        ...

    def zadd(self, key: str, mapping: dict[str, float]) -> None:
        ...

    def zrem(self, key: str, *members: str) -> None:
        ...

    def lpush(self, key: str, *values: str) -> None:
        ...

    def ltrim(self, key: str, start: int, end: int) -> None:
        ...

    def lrem(self, key: str, count: int, value: str) -> None:
        ...

    async def execute(self) -> list[Any]:
        ...


class KeyValueStore(Protocol):
    async def ping(self) -> bool:
        ...

    async def get(self, key: str) -> str | None:
        ...

    async def set(self, key: str, value: str, *, ex: int | None = None, nx: bool = False) -> bool:
        ...

    async def mget(self, keys: list[str]) -> list[str | None]:
        ...

    async def delete(self, *keys: str) -> int:
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def expire(self, key: str, seconds: int) -> bool:
        ...

    async def ttl(self, key: str) -> int:
        ...

    async def incr(self, key: str, amount: int = 1) -> int:
        ...

    async def delete_if_equals(self, key: str, value: str) -> bool:
        ...

    async def expire_if_equals(self, key: str, value: str, seconds: int) -> bool:
        ...

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
        ...

    async def hset(self, key: str, mapping: dict[str, str]) -> int:
        ...

    async def hgetall(self, key: str) -> dict[str, str]:
        ...

    async def sadd(self, key: str, *members: str) -> int:
        ...

    async def smembers(self, key: str) -> set[str]:
        ...

    async def srem(self, key: str, *members: str) -> int:
        ...

    async def zadd(self, key: str, mapping: dict[str, float], *, nx: bool = False) -> int:
        ...

    async def zrem(self, key: str, *members: str) -> int:
        ...

    async def zcard(self, key: str) -> int:
        ...

    async def zremrangebyscore(self, key: str, minimum: float, maximum: float) -> int:
        ...

    async def zrangebyscore(
        self,
        key: str,
        minimum: float,
        maximum: float,
        *,
        limit: int | None = None,
    ) -> list[tuple[str, float]]:
        ...

    async def zrange(self, key: str, start: int, end: int, *, desc: bool = False) -> list[tuple[str, float]]:
        ...

    async def lpush(self, key: str, *values: str) -> int:
        ...

    async def rpush(self, key: str, *values: str) -> int:
        ...

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        ...

    async def lindex(self, key: str, index: int) -> str | None:
        ...

    async def lrem(self, key: str, count: int, value: str) -> int:
        ...

    async def llen(self, key: str) -> int:
        ...

    async def lmove(self, source: str, destination: str) -> str | None:
        ...

    def pipeline(self) -> KeyValuePipeline:
        ...
