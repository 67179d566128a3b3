from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass

from concierge.common import StoreUnavailableError, log_event
from concierge.storage import KeyValueStore, StorageSettings, now_ts
from concierge.storage.helpers import dump_json, load_json_object


@dataclass(slots=True, frozen=True)
class LimitRule:
    name: str
    limit: int
    window_seconds: int


API_LIMIT = LimitRule(name="api", limit=100, window_seconds=60)


def webhook_limit(per_minute: int) -> LimitRule:
    return LimitRule(name="webhook_ip", limit=max(1, per_minute), window_seconds=60)


@dataclass(slots=True, frozen=True)
class RateLimitWindow:
    factor_key: str
    window_start: float
    count: int
    limit: int


@dataclass(slots=True, frozen=True)
class AdaptiveTighteningRecord:
    factor_key: str
    tightened_until: float
    multiplier: float


@dataclass(slots=True, frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: float
    window: RateLimitWindow
    multiplier: float = 1.0
    degraded: bool = False


@dataclass(slots=True, frozen=True)
class TighteningPolicy:
    violation_threshold: int = 50
    global_multiplier: float = 0.7
    factor_multiplier: float = 0.8
    duration_seconds: int = 300


GLOBAL_FACTOR = "global"


class RateLimiter:
    def __init__(
        self,
        kv: KeyValueStore,
        settings: StorageSettings,
        *,
        logger: logging.Logger,
        policy: TighteningPolicy | None = None,
    ) -> None:
        self._kv = kv
        self._settings = settings
        self._logger = logger
        self._policy = policy or TighteningPolicy()

    def _window_key(self, factor_key: str, rule: LimitRule) -> str:
        return self._settings.key("ratelimit", rule.name, factor_key)

    def _tightening_key(self, factor_key: str, rule: LimitRule | None = None) -> str:
        if rule is None:
            return self._settings.key("ratelimit", "tighten", factor_key)
        return self._settings.key("ratelimit", "tighten", rule.name, factor_key)

    def _violations_key(self, now: float) -> str:
        return self._settings.key("ratelimit", "violations", str(int(now // 60)))

    @staticmethod
    def _parse_tightening(factor_key: str, raw: str | None, now: float) -> AdaptiveTighteningRecord | None:
        payload = load_json_object(raw)
        if payload is None:
            return None
        try:
            record = AdaptiveTighteningRecord(
                factor_key=factor_key,
                tightened_until=float(payload["tightened_until"]),
                multiplier=float(payload["multiplier"]),
            )
        except (KeyError, TypeError, ValueError):
            return None
        return record if record.tightened_until > now else None

    async def active_tightening(
        self,
        factor_key: str,
        rule: LimitRule,
        *,
        now: float | None = None,
    ) -> list[AdaptiveTighteningRecord]:
        current = now if now is not None else now_ts()
        global_raw, factor_raw = await self._kv.mget(
            [self._tightening_key(GLOBAL_FACTOR), self._tightening_key(factor_key, rule)]
        )
        records = [
            self._parse_tightening(GLOBAL_FACTOR, global_raw, current),
            self._parse_tightening(factor_key, factor_raw, current),
        ]
        return [record for record in records if record is not None]

    async def check(self, factor_key: str, rule: LimitRule, *, now: float | None = None) -> RateLimitDecision:
        current = now if now is not None else now_ts()
        window_start = current - rule.window_seconds
        try:
            multiplier = 1.0
            for record in await self.active_tightening(factor_key, rule, now=current):
                multiplier *= record.multiplier
            limit = max(1, math.floor(rule.limit * multiplier))

            key = self._window_key(factor_key, rule)
            added, count = await self._kv.sliding_window_add(
                key,
                member=f"{current:.6f}:{uuid.uuid4().hex[:8]}",
                score=current,
                window_start=window_start,
                limit=limit,
                ttl_seconds=rule.window_seconds,
            )
            if not added:
                oldest = await self._kv.zrange(key, 0, 0)
                retry_after = rule.window_seconds
                if oldest:
                    retry_after = max(1.0, oldest[0][1] + rule.window_seconds - current)
                await self._record_violation(factor_key, rule, now=current)
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    retry_after_seconds=float(math.ceil(retry_after)),
                    window=RateLimitWindow(factor_key, window_start, count, limit),
                    multiplier=multiplier,
                )

            return RateLimitDecision(
                allowed=True,
                remaining=max(0, limit - count - 1),
                retry_after_seconds=0.0,
                window=RateLimitWindow(factor_key, window_start, count + 1, limit),
                multiplier=multiplier,
            )
        except StoreUnavailableError as error:
            log_event(
                self._logger,
                level="warning",
                event="rate_limit_degraded",
                message="Rate limit store unavailable; allowing request",
                factor_key=factor_key,
                limit_name=rule.name,
                error=str(error),
            )
            return RateLimitDecision(
                allowed=True,
                remaining=rule.limit,
                retry_after_seconds=0.0,
                window=RateLimitWindow(factor_key, window_start, 0, rule.limit),
                degraded=True,
            )

    async def _record_violation(self, factor_key: str, rule: LimitRule, *, now: float) -> None:
        policy = self._policy
        until = now + policy.duration_seconds
        await self._kv.set(
            self._tightening_key(factor_key, rule),
            dump_json({"tightened_until": until, "multiplier": policy.factor_multiplier}),
            ex=policy.duration_seconds,
        )

        violations_key = self._violations_key(now)
        violations = await self._kv.incr(violations_key)
        if violations == 1:
            await self._kv.expire(violations_key, 120)
        if violations < policy.violation_threshold:
            return

        started = await self._kv.set(
            self._tightening_key(GLOBAL_FACTOR),
            dump_json({"tightened_until": until, "multiplier": policy.global_multiplier}),
            ex=policy.duration_seconds,
            nx=True,
        )
        if started:
            log_event(
                self._logger,
                level="warning",
                event="rate_limit_tightened",
                message="Global rate limit tightening activated",
                violations=violations,
                multiplier=policy.global_multiplier,
                duration_seconds=policy.duration_seconds,
            )
