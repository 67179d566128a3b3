from __future__ import annotations

from typing import Any

from concierge.storage import KeyValueStore, StorageSettings, now_iso, now_ts
from concierge.storage.helpers import dump_json, load_json_object


class UnresolvedPaymentBuffer:
    def __init__(self, kv: KeyValueStore, settings: StorageSettings) -> None:
        self._kv = kv
        self._settings = settings

    def _entry_key(self, order_id: str) -> str:
        return self._settings.key("unresolved", order_id)

    @property
    def _index_key(self) -> str:
        return self._settings.key("unresolved", "index")

    async def park(self, order_id: str, *, event_id: str, reason: str, details: dict[str, Any] | None = None) -> None:
        now = now_ts()
        ttl = self._settings.unresolved_ttl_seconds
        existing = load_json_object(await self._kv.get(self._entry_key(order_id))) or {}
        record = {
            "order_id": order_id,
            "event_id": event_id,
            "reason": reason,
            "details": details or {},
            "first_seen_at": existing.get("first_seen_at") or now_iso(),
            "last_seen_at": now_iso(),
            "deliveries": int(existing.get("deliveries") or 0) + 1,
        }
        pipeline = self._kv.pipeline()
        pipeline.set(self._entry_key(order_id), dump_json(record), ex=ttl)
        pipeline.zadd(self._index_key, {order_id: now})
        pipeline.expire(self._index_key, ttl)
        await pipeline.execute()

    async def resolve(self, order_id: str | None) -> bool:
        if not order_id:
            return False
        removed = await self._kv.delete(self._entry_key(order_id))
        await self._kv.zrem(self._index_key, order_id)
        return removed > 0

    async def list_entries(self, *, limit: int = 50) -> list[dict[str, Any]]:
        cutoff = now_ts() - self._settings.unresolved_ttl_seconds
        await self._kv.zremrangebyscore(self._index_key, 0, cutoff)
        entries = await self._kv.zrange(self._index_key, 0, max(0, limit - 1), desc=True)
        if not entries:
            return []
        raw_records = await self._kv.mget([self._entry_key(order_id) for order_id, _ in entries])
        records = [load_json_object(raw) for raw in raw_records]
        return [record for record in records if record is not None]

    async def count(self) -> int:
        cutoff = now_ts() - self._settings.unresolved_ttl_seconds
        await self._kv.zremrangebyscore(self._index_key, 0, cutoff)
        return await self._kv.zcard(self._index_key)
