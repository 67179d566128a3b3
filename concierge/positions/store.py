from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import Any, Iterable

from concierge.common import log_event
from concierge.storage import KeyValueStore, StorageSettings, hash_payload, now_iso, now_ts
from concierge.storage.helpers import dump_json, load_json_object, parse_iso_timestamp

from .types import InvalidTransitionError, UserPosition, can_transition

ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")


def normalize_address(address: str) -> str:
    normalized = (address or "").strip().lower()
    if not ADDRESS_RE.match(normalized):
        raise ValueError(f"Invalid wallet address: {address!r}")
    return normalized


def normalize_email(email: str | None) -> str | None:
    normalized = (email or "").strip().lower()
    return normalized or None


def compute_integrity_hash(position: UserPosition) -> str:
    return hash_payload(position.immutable_fields(), length=16)


class PositionStore:
    def __init__(self, kv: KeyValueStore, settings: StorageSettings, *, logger: logging.Logger) -> None:
        self._kv = kv
        self._settings = settings
        self._logger = logger

    def position_key(self, position_id: str) -> str:
        return self._settings.key("position", position_id)

    def payment_key(self, payment_id: str) -> str:
        return self._settings.key("position", "by_payment", payment_id)

    def user_key(self, email: str) -> str:
        return self._settings.key("user", email, "positions")

    def wallet_key(self, address: str) -> str:
        return self._settings.key("wallet", address, "positions")

    def status_key(self, status: str) -> str:
        return self._settings.key("positions", "status", status)

    @property
    def global_key(self) -> str:
        return self._settings.key("global", "positions")

    def verify_integrity(self, position: UserPosition) -> bool:
        return bool(position.integrity_hash) and position.integrity_hash == compute_integrity_hash(position)

    async def create(self, position: UserPosition) -> tuple[UserPosition, bool]:
        wallet = normalize_address(position.wallet_address)
        email = normalize_email(position.user_email)
        created_at = position.created_at or now_iso()
        staged = replace(position, created_at=created_at, updated_at=created_at)
        staged = replace(staged, integrity_hash=compute_integrity_hash(staged))

        claimed = await self._kv.set(
            self.payment_key(staged.payment_id),
            staged.id,
            ex=self._settings.position_ttl_seconds,
            nx=True,
        )
        if not claimed:
            existing = await self.get_by_payment(staged.payment_id)
            if existing is not None:
                return existing, False
            # stale mapping without a record; take it over
            await self._kv.set(self.payment_key(staged.payment_id), staged.id, ex=self._settings.position_ttl_seconds)

        ttl = self._settings.position_ttl_seconds
        created_ts = parse_iso_timestamp(created_at) or now_ts()
        member = f"{staged.id}:{staged.integrity_hash}"

        pipeline = self._kv.pipeline()
        pipeline.set(self.position_key(staged.id), dump_json(staged.to_dict()), ex=ttl)
        pipeline.sadd(self.wallet_key(wallet), staged.id)
        pipeline.zadd(f"{self.wallet_key(wallet)}:by_time", {member: created_ts})
        pipeline.expire(self.wallet_key(wallet), ttl)
        pipeline.expire(f"{self.wallet_key(wallet)}:by_time", ttl)
        if email:
            pipeline.sadd(self.user_key(email), staged.id)
            pipeline.zadd(f"{self.user_key(email)}:by_time", {member: created_ts})
            pipeline.expire(self.user_key(email), ttl)
            pipeline.expire(f"{self.user_key(email)}:by_time", ttl)
        pipeline.lpush(self.global_key, staged.id)
        pipeline.ltrim(self.global_key, 0, self._settings.global_positions_limit - 1)
        pipeline.zadd(self.status_key(staged.status), {staged.id: created_ts})
        await pipeline.execute()

        log_event(
            self._logger,
            level="info",
            event="position_created",
            message="Position created",
            position_id=staged.id,
            payment_id=staged.payment_id,
            strategy_type=staged.strategy_type,
            usdc_amount=staged.usdc_amount,
        )
        return staged, True

    async def get(self, position_id: str) -> UserPosition | None:
        record = load_json_object(await self._kv.get(self.position_key(position_id)))
        if record is None:
            return None
        try:
            return UserPosition.from_dict(record)
        except (TypeError, ValueError):
            log_event(
                self._logger,
                level="error",
                event="position_record_invalid",
                message="Stored position could not be decoded",
                position_id=position_id,
            )
            return None

    async def get_by_payment(self, payment_id: str) -> UserPosition | None:
        position_id = await self._kv.get(self.payment_key(payment_id))
        return await self.get(position_id) if position_id else None

    async def _save(self, previous: UserPosition, updated: UserPosition) -> UserPosition:
        updated = replace(updated, updated_at=now_iso())
        pipeline = self._kv.pipeline()
        pipeline.set(
            self.position_key(updated.id),
            dump_json(updated.to_dict()),
            ex=self._settings.position_ttl_seconds,
        )
        if previous.status != updated.status:
            pipeline.zrem(self.status_key(previous.status), updated.id)
        pipeline.zadd(self.status_key(updated.status), {updated.id: now_ts()})
        await pipeline.execute()
        return updated

    async def update(self, position: UserPosition, **changes: Any) -> UserPosition:
        if "status" in changes:
            raise ValueError("Use transition() to change position status.")
        return await self._save(position, replace(position, **changes))

    async def transition(self, position: UserPosition, target: str, **changes: Any) -> UserPosition:
        if not can_transition(position.status, target):
            raise InvalidTransitionError(position.id, position.status, target)
        updated = await self._save(position, replace(position, status=target, **changes))
        if position.status != target:
            log_event(
                self._logger,
                level="info",
                event="position_status_changed",
                message="Position status changed",
                position_id=position.id,
                payment_id=position.payment_id,
                previous_status=position.status,
                status=target,
                error_type=updated.error_type,
            )
        return updated

    async def _load_members(self, members: Iterable[str]) -> list[UserPosition]:
        positions: list[UserPosition] = []
        for member in members:
            position_id, _, expected_hash = member.rpartition(":")
            if not position_id:
                position_id, expected_hash = expected_hash, ""
            position = await self.get(position_id)
            if position is None:
                continue
            if expected_hash and (position.integrity_hash != expected_hash or not self.verify_integrity(position)):
                log_event(
                    self._logger,
                    level="error",
                    event="position_integrity_mismatch",
                    message="Position record does not match its index integrity hash",
                    position_id=position_id,
                )
                continue
            positions.append(position)
        return positions

    async def list_by_wallet(self, address: str, *, limit: int = 50) -> list[UserPosition]:
        entries = await self._kv.zrange(f"{self.wallet_key(normalize_address(address))}:by_time", 0, limit - 1, desc=True)
        return await self._load_members(member for member, _ in entries)

    async def list_by_user(self, email: str, *, limit: int = 50) -> list[UserPosition]:
        normalized = normalize_email(email)
        if normalized is None:
            return []
        entries = await self._kv.zrange(f"{self.user_key(normalized)}:by_time", 0, limit - 1, desc=True)
        return await self._load_members(member for member, _ in entries)

    async def list_recent(self, *, limit: int = 50) -> list[UserPosition]:
        position_ids = await self._kv.lrange(self.global_key, 0, limit - 1)
        positions = [await self.get(position_id) for position_id in position_ids]
        return [position for position in positions if position is not None]

    async def list_by_status(
        self,
        statuses: Iterable[str],
        *,
        updated_before: float | None = None,
        limit: int = 100,
    ) -> list[UserPosition]:
        cutoff = updated_before if updated_before is not None else now_ts()
        positions: list[UserPosition] = []
        for status in statuses:
            remaining = limit - len(positions)
            if remaining <= 0:
                break
            entries = await self._kv.zrangebyscore(self.status_key(status), 0, cutoff, limit=remaining)
            for position_id, _ in entries:
                position = await self.get(position_id)
                if position is None:
                    await self._kv.zrem(self.status_key(status), position_id)
                    continue
                if position.status == status:
                    positions.append(position)
        return positions
