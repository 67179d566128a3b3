from __future__ import annotations

from typing import Any

from concierge.common import log_event
from concierge.runtime.settings import RUNTIME_CONFIG_KEYS

from .helpers import now_iso, serialize_for_redis
from .kv import KeyValueStore

HEARTBEAT_TTL_SECONDS = 300


class RedisStorageOps:
    def _require_kv(self) -> KeyValueStore:
        if self._kv is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._kv

    async def sync_config_to_redis(self, config: dict[str, Any], *, source: str) -> None:
        """Replace the runtime config hash with the operator document.

        Keys the runtime config does not know are dropped so a typo in the
        document never reaches the executor.
        """
        kv = self._require_kv()

        mapping = {
            str(key): serialize_for_redis(value)
            for key, value in config.items()
            if str(key) in RUNTIME_CONFIG_KEYS and value is not None
        }
        ignored = sorted(str(key) for key in config if str(key) not in RUNTIME_CONFIG_KEYS)
        if ignored:
            log_event(
                self._logger,
                level="warning",
                event="config_keys_ignored",
                message="Runtime config document has unknown keys",
                keys=ignored,
                source=source,
            )

        pipeline = kv.pipeline()
        pipeline.delete(self.settings.redis_config_key)
        if mapping:
            pipeline.hset(self.settings.redis_config_key, mapping)
        await pipeline.execute()
        log_event(
            self._logger,
            level="info",
            event="config_synced",
            message="Runtime config synced to Redis",
            keys=sorted(mapping),
            source=source,
        )

    async def get_runtime_config(self) -> dict[str, str]:
        return await self._require_kv().hgetall(self.settings.redis_config_key)

    def heartbeat_key(self, worker_id: str) -> str:
        return self.settings.key(self.settings.heartbeat_key, worker_id)

    async def update_heartbeat(self, *, worker_id: str, payload: dict[str, Any] | None = None) -> None:
        kv = self._require_kv()
        mapping = {
            "worker_id": worker_id,
            "run_id": self.settings.run_id,
            "updated_at": now_iso(),
        }
        for key, value in (payload or {}).items():
            mapping[str(key)] = serialize_for_redis(value)
        key = self.heartbeat_key(worker_id)
        pipeline = kv.pipeline()
        pipeline.hset(key, mapping)
        pipeline.expire(key, HEARTBEAT_TTL_SECONDS)
        pipeline.sadd(self.settings.key(self.settings.heartbeat_key, "index"), worker_id)
        await pipeline.execute()

    async def live_workers(self) -> list[dict[str, str]]:
        """Heartbeats still inside their TTL; expired workers are pruned from the index."""
        kv = self._require_kv()
        index_key = self.settings.key(self.settings.heartbeat_key, "index")
        workers: list[dict[str, str]] = []
        for worker_id in sorted(await kv.smembers(index_key)):
            record = await kv.hgetall(self.heartbeat_key(worker_id))
            if not record:
                await kv.srem(index_key, worker_id)
                continue
            workers.append(record)
        return workers
