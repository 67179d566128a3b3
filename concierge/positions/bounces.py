from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from concierge.common import log_event
from concierge.storage import KeyValueStore, StorageSettings, now_iso, now_ts
from concierge.storage.helpers import dump_json, load_json_object

from .store import PositionStore, normalize_email

BASE_RETRY_SECONDS = 3600
MAX_RETRY_SECONDS = 24 * 3600
MAX_EMAIL_RETRIES = 3


def bounce_retry_delay_seconds(bounce_count: int) -> int:
    if bounce_count <= 0:
        return 0
    return min(MAX_RETRY_SECONDS, BASE_RETRY_SECONDS * 2 ** (bounce_count - 1))


@dataclass(slots=True, frozen=True)
class BounceRecord:
    email: str
    bounce_count: int
    last_reason: str
    first_bounce_at: str
    last_bounce_at: str
    next_retry_at: float

    @property
    def retries_exhausted(self) -> bool:
        return self.bounce_count > MAX_EMAIL_RETRIES


class EmailBounceTracker:
    def __init__(
        self,
        kv: KeyValueStore,
        settings: StorageSettings,
        positions: PositionStore,
        *,
        logger: logging.Logger,
    ) -> None:
        self._kv = kv
        self._settings = settings
        self._positions = positions
        self._logger = logger

    def bounce_key(self, email: str) -> str:
        return self._settings.key("bounce", email)

    async def get(self, email: str) -> BounceRecord | None:
        normalized = normalize_email(email)
        if normalized is None:
            return None
        record = load_json_object(await self._kv.get(self.bounce_key(normalized)))
        if record is None:
            return None
        return BounceRecord(
            email=normalized,
            bounce_count=int(record.get("bounce_count") or 0),
            last_reason=str(record.get("last_reason") or ""),
            first_bounce_at=str(record.get("first_bounce_at") or ""),
            last_bounce_at=str(record.get("last_bounce_at") or ""),
            next_retry_at=float(record.get("next_retry_at") or 0.0),
        )

    async def handle_bounce(self, email: str, *, reason: str, position_id: str | None = None) -> BounceRecord:
        normalized = normalize_email(email)
        if normalized is None:
            raise ValueError("Bounce requires an email address.")
        previous = await self.get(normalized)
        count = (previous.bounce_count if previous else 0) + 1
        record = BounceRecord(
            email=normalized,
            bounce_count=count,
            last_reason=reason,
            first_bounce_at=previous.first_bounce_at if previous else now_iso(),
            last_bounce_at=now_iso(),
            next_retry_at=now_ts() + bounce_retry_delay_seconds(count),
        )
        await self._kv.set(
            self.bounce_key(normalized),
            dump_json(asdict(record)),
            ex=self._settings.bounce_ttl_seconds,
        )

        if position_id:
            position = await self._positions.get(position_id)
            if position is not None and position.status == "pending":
                await self._positions.transition(position, "pending_email", error=f"email bounce: {reason}")

        log_event(
            self._logger,
            level="warning",
            event="email_bounce_recorded",
            message="Email bounce recorded",
            bounce_count=count,
            retries_exhausted=record.retries_exhausted,
            position_id=position_id,
        )
        return record

    async def can_retry(self, email: str, *, now: float | None = None) -> bool:
        record = await self.get(email)
        if record is None:
            return True
        if record.retries_exhausted:
            return False
        current = now if now is not None else now_ts()
        return current >= record.next_retry_at

    async def resolve_bounce(self, email: str, *, position_id: str | None = None) -> None:
        normalized = normalize_email(email)
        if normalized is not None:
            await self._kv.delete(self.bounce_key(normalized))
        if position_id:
            position = await self._positions.get(position_id)
            if position is not None and position.status == "pending_email":
                await self._positions.transition(position, "pending", error=None)
