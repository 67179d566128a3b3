from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass

from concierge.storage import KeyValueStore, StorageSettings, now_iso


@dataclass(slots=True, frozen=True)
class IdempotencyRecord:
    key: str
    owner_token: str
    acquired_at: str
    ttl: int


def new_owner_token(prefix: str = "owner") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


def signature_digest(signature: str) -> str:
    return hashlib.sha256(signature.encode("utf-8")).hexdigest()


class IdempotencyStore:
    """Shared at-most-once guard over the key-value store.

    Lock values are ``owner_token@acquired_at`` so release and refresh can
    compare-and-act on the exact value written by the holder. Store errors
    propagate to the caller: admission is fail-closed.
    """

    def __init__(self, kv: KeyValueStore, settings: StorageSettings) -> None:
        self._kv = kv
        self._settings = settings

    def lock_key(self, key: str) -> str:
        return self._settings.key("lock", key)

    def processed_key(self, key: str) -> str:
        return self._settings.key("processed", key)

    def signature_key(self, signature: str) -> str:
        return self._settings.key("sig", signature_digest(signature))

    async def try_acquire(self, key: str, *, ttl_seconds: int, owner_token: str) -> bool:
        value = f"{owner_token}@{now_iso()}"
        return bool(await self._kv.set(self.lock_key(key), value, ex=max(1, int(ttl_seconds)), nx=True))

    async def _owned_value(self, key: str, owner_token: str) -> str | None:
        value = await self._kv.get(self.lock_key(key))
        if value is None or value.partition("@")[0] != owner_token:
            return None
        return value

    async def release(self, key: str, owner_token: str) -> bool:
        value = await self._owned_value(key, owner_token)
        if value is None:
            return False
        return await self._kv.delete_if_equals(self.lock_key(key), value)

    async def refresh(self, key: str, *, owner_token: str, ttl_seconds: int) -> bool:
        value = await self._owned_value(key, owner_token)
        if value is None:
            return False
        return await self._kv.expire_if_equals(self.lock_key(key), value, max(1, int(ttl_seconds)))

    async def get_record(self, key: str) -> IdempotencyRecord | None:
        raw = await self._kv.get(self.lock_key(key))
        if raw is None:
            return None
        owner_token, _, acquired_at = raw.partition("@")
        ttl = await self._kv.ttl(self.lock_key(key))
        return IdempotencyRecord(key=key, owner_token=owner_token, acquired_at=acquired_at, ttl=ttl)

    async def is_processed(self, key: str) -> bool:
        return await self._kv.exists(self.processed_key(key))

    async def mark_processed(self, key: str, *, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds or self._settings.processed_marker_ttl_seconds
        await self._kv.set(self.processed_key(key), now_iso(), ex=ttl)

    async def is_signature_seen(self, signature: str) -> bool:
        return await self._kv.exists(self.signature_key(signature))

    async def remember_signature(self, signature: str, *, ttl_seconds: int) -> bool:
        return await self._kv.set(self.signature_key(signature), now_iso(), ex=max(1, int(ttl_seconds)), nx=True)
