"""
Shared fixtures: an in-memory key-value store with Redis semantics and a
scriptable chain client.
"""
from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any

import pytest

from concierge.admission import IdempotencyStore
from concierge.common import ChainRpcError, StoreUnavailableError
from concierge.execution import (
    ChainConfig,
    ConfirmationResult,
    HubWalletLock,
    ProtocolAction,
    ReserveState,
    StrategyExecutor,
)
from concierge.positions import PositionStore
from concierge.runtime import RuntimeConfig
from concierge.storage import StorageSettings

HUB_ADDRESS = "0x" + "ab" * 20
WALLET = "0x" + "12" * 20
OTHER_WALLET = "0x" + "34" * 20


def _redis_slice(items: list[Any], start: int, end: int) -> list[Any]:
    size = len(items)
    if start < 0:
        start = max(0, size + start)
    if end < 0:
        end = size + end
    if start > end or start >= size:
        return []
    return items[start : end + 1]


class InMemoryPipeline:
    def __init__(self, store: "InMemoryKeyValueStore") -> None:
        self._store = store
        self._ops: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    def _queue(self, name: str, *args: Any, **kwargs: Any) -> None:
        self._ops.append((name, args, kwargs))

    def set(self, key: str, value: str, *, ex: int | None = None, nx: bool = False) -> None:
        self._queue("set", key, value, ex=ex, nx=nx)

    def delete(self, *keys: str) -> None:
        self._queue("delete", *keys)

    def expire(self, key: str, seconds: int) -> None:
        self._queue("expire", key, seconds)

    def hset(self, key: str, mapping: dict[str, str]) -> None:
        self._queue("hset", key, mapping)

    def sadd(self, key: str, *members: str) -> None:
        self._queue("sadd", key, *members)

    def zadd(self, key: str, mapping: dict[str, float]) -> None:
        self._queue("zadd", key, mapping)

    def zrem(self, key: str, *members: str) -> None:
        self._queue("zrem", key, *members)

    def lpush(self, key: str, *values: str) -> None:
        self._queue("lpush", key, *values)

    def ltrim(self, key: str, start: int, end: int) -> None:
        self._queue("ltrim", key, start, end)

    def lrem(self, key: str, count: int, value: str) -> None:
        self._queue("lrem", key, count, value)

    async def execute(self) -> list[Any]:
        self._store.check_available()
        results = []
        for name, args, kwargs in self._ops:
            results.append(await getattr(self._store, name)(*args, **kwargs))
        self._ops.clear()
        return results


class InMemoryKeyValueStore:
    """Single-process stand-in for Redis. Expiry is recorded, not enforced."""

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.lists: dict[str, list[str]] = {}
        self.expiries: dict[str, float] = {}
        self.unavailable = False
        self.sliding_window_calls = 0

    def check_available(self) -> None:
        if self.unavailable:
            raise StoreUnavailableError("Redis is down")

    def _exists(self, key: str) -> bool:
        return any(key in container for container in (self.strings, self.hashes, self.sets, self.zsets, self.lists))

    async def ping(self) -> bool:
        self.check_available()
        return True

    async def get(self, key: str) -> str | None:
        self.check_available()
        return self.strings.get(key)

    async def set(self, key: str, value: str, *, ex: int | None = None, nx: bool = False) -> bool:
        self.check_available()
        if nx and key in self.strings:
            return False
        self.strings[key] = value
        if ex is not None:
            self.expiries[key] = time.time() + max(1, ex)
        else:
            self.expiries.pop(key, None)
        return True

    async def mget(self, keys: list[str]) -> list[str | None]:
        self.check_available()
        return [self.strings.get(key) for key in keys]

    async def delete(self, *keys: str) -> int:
        self.check_available()
        removed = 0
        for key in keys:
            found = False
            for container in (self.strings, self.hashes, self.sets, self.zsets, self.lists):
                if key in container:
                    del container[key]
                    found = True
            self.expiries.pop(key, None)
            removed += int(found)
        return removed

    async def exists(self, key: str) -> bool:
        self.check_available()
        return self._exists(key)

    async def expire(self, key: str, seconds: int) -> bool:
        self.check_available()
        if not self._exists(key):
            return False
        self.expiries[key] = time.time() + max(1, seconds)
        return True

    async def ttl(self, key: str) -> int:
        self.check_available()
        if not self._exists(key):
            return -2
        if key not in self.expiries:
            return -1
        return max(0, int(self.expiries[key] - time.time()))

    async def incr(self, key: str, amount: int = 1) -> int:
        self.check_available()
        value = int(self.strings.get(key) or 0) + amount
        self.strings[key] = str(value)
        return value

    async def delete_if_equals(self, key: str, value: str) -> bool:
        self.check_available()
        if self.strings.get(key) != value:
            return False
        return bool(await self.delete(key))

    async def expire_if_equals(self, key: str, value: str, seconds: int) -> bool:
        self.check_available()
        if self.strings.get(key) != value:
            return False
        return await self.expire(key, seconds)

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
        self.check_available()
        self.sliding_window_calls += 1
        await self.zremrangebyscore(key, 0, window_start)
        count = await self.zcard(key)
        if count >= limit:
            return False, count
        await self.zadd(key, {member: score})
        await self.expire(key, ttl_seconds)
        return True, count

    async def hset(self, key: str, mapping: dict[str, str]) -> int:
        self.check_available()
        bucket = self.hashes.setdefault(key, {})
        added = len(set(mapping) - set(bucket))
        bucket.update(mapping)
        return added

    async def hgetall(self, key: str) -> dict[str, str]:
        self.check_available()
        return dict(self.hashes.get(key, {}))

    async def sadd(self, key: str, *members: str) -> int:
        self.check_available()
        bucket = self.sets.setdefault(key, set())
        added = len(set(members) - bucket)
        bucket.update(members)
        return added

    async def smembers(self, key: str) -> set[str]:
        self.check_available()
        return set(self.sets.get(key, set()))

    async def srem(self, key: str, *members: str) -> int:
        self.check_available()
        bucket = self.sets.get(key, set())
        removed = len(bucket & set(members))
        bucket.difference_update(members)
        return removed

    async def zadd(self, key: str, mapping: dict[str, float], *, nx: bool = False) -> int:
        self.check_available()
        bucket = self.zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            if member in bucket and nx:
                continue
            added += int(member not in bucket)
            bucket[member] = float(score)
        return added

    async def zrem(self, key: str, *members: str) -> int:
        self.check_available()
        bucket = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if member in bucket:
                del bucket[member]
                removed += 1
        if key in self.zsets and not bucket:
            del self.zsets[key]
        return removed

    async def zcard(self, key: str) -> int:
        self.check_available()
        return len(self.zsets.get(key, {}))

    def _sorted(self, key: str) -> list[tuple[str, float]]:
        return sorted(self.zsets.get(key, {}).items(), key=lambda item: (item[1], item[0]))

    async def zremrangebyscore(self, key: str, minimum: float, maximum: float) -> int:
        self.check_available()
        doomed = [member for member, score in self._sorted(key) if minimum <= score <= maximum]
        return await self.zrem(key, *doomed) if doomed else 0

    async def zrangebyscore(
        self,
        key: str,
        minimum: float,
        maximum: float,
        *,
        limit: int | None = None,
    ) -> list[tuple[str, float]]:
        self.check_available()
        rows = [(member, score) for member, score in self._sorted(key) if minimum <= score <= maximum]
        return rows[: max(1, limit)] if limit is not None else rows

    async def zrange(self, key: str, start: int, end: int, *, desc: bool = False) -> list[tuple[str, float]]:
        self.check_available()
        rows = self._sorted(key)
        if desc:
            rows.reverse()
        return _redis_slice(rows, start, end)

    async def lpush(self, key: str, *values: str) -> int:
        self.check_available()
        bucket = self.lists.setdefault(key, [])
        for value in values:
            bucket.insert(0, value)
        return len(bucket)

    async def rpush(self, key: str, *values: str) -> int:
        self.check_available()
        bucket = self.lists.setdefault(key, [])
        bucket.extend(values)
        return len(bucket)

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        self.check_available()
        return _redis_slice(list(self.lists.get(key, [])), start, end)

    async def lindex(self, key: str, index: int) -> str | None:
        self.check_available()
        bucket = self.lists.get(key, [])
        try:
            return bucket[index]
        except IndexError:
            return None

    async def lrem(self, key: str, count: int, value: str) -> int:
        self.check_available()
        bucket = self.lists.get(key, [])
        positions = [index for index, item in enumerate(bucket) if item == value]
        if count < 0:
            positions = list(reversed(positions))[: abs(count)]
        elif count > 0:
            positions = positions[:count]
        for index in sorted(positions, reverse=True):
            del bucket[index]
        return len(positions)

    async def ltrim(self, key: str, start: int, end: int) -> None:
        self.check_available()
        if key in self.lists:
            self.lists[key] = _redis_slice(self.lists[key], start, end)

    async def llen(self, key: str) -> int:
        self.check_available()
        return len(self.lists.get(key, []))

    async def lmove(self, source: str, destination: str) -> str | None:
        self.check_available()
        bucket = self.lists.get(source)
        if not bucket:
            return None
        value = bucket.pop()
        self.lists.setdefault(destination, []).insert(0, value)
        return value

    def pipeline(self) -> InMemoryPipeline:
        return InMemoryPipeline(self)


class FakeChainClient:
    """Chain client whose balances, reserve state and receipts are set per test."""

    def __init__(self) -> None:
        self.balances: dict[tuple[str, str], float] = {}
        self.default_hub_balance = 1_000_000.0
        self.reserve = ReserveState(is_active=True, is_frozen=False, is_paused=False, supply_cap=0, total_supplied=0.0)
        self.submitted: list[ProtocolAction] = []
        self.kinds_by_hash: dict[str, str] = {}
        self.confirmation_by_kind: dict[str, str] = {}
        self.confirmation_by_hash: dict[str, str] = {}
        self.submit_errors: dict[str, Exception] = {}
        self.allowance_error: Exception | None = None
        self.position_amounts: dict[str, float] = {}
        self.confirmation_calls: list[str] = []

    @property
    def hub_address(self) -> str:
        return HUB_ADDRESS

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def healthcheck(self) -> None:
        return None

    async def get_balance(self, address: str, token: str) -> float:
        if (address.lower(), token) in self.balances:
            return self.balances[(address.lower(), token)]
        return self.default_hub_balance if address.lower() == HUB_ADDRESS else 0.0

    async def ensure_allowance(
        self,
        token: str,
        spender: str,
        amount: float,
        *,
        gas_price_ceiling_wei: int,
    ) -> str | None:
        if self.allowance_error is not None:
            raise self.allowance_error
        return None

    async def submit_protocol_action(self, action: ProtocolAction, *, gas_price_ceiling_wei: int) -> str:
        error = self.submit_errors.get(action.kind)
        if error is not None:
            raise error
        self.submitted.append(action)
        tx_hash = f"0x{len(self.submitted):064x}"
        self.kinds_by_hash[tx_hash] = action.kind
        return tx_hash

    async def await_confirmation(
        self,
        tx_hash: str,
        *,
        timeout_seconds: float,
        confirmations: int = 1,
    ) -> ConfirmationResult:
        self.confirmation_calls.append(tx_hash)
        status = self.confirmation_by_hash.get(tx_hash)
        if status is None:
            status = self.confirmation_by_kind.get(self.kinds_by_hash.get(tx_hash, ""), "success")
        error = "execution reverted" if status == "failed" else None
        return ConfirmationResult(status=status, tx_hash=tx_hash, block_number=1, error=error)  # type: ignore[arg-type]

    async def get_reserve_state(self, asset: str) -> ReserveState:
        return self.reserve

    async def read_position_amount(self, position: dict[str, Any]) -> float | None:
        return self.position_amounts.get(str(position.get("wallet_address")))

    def kinds(self) -> list[str]:
        return [action.kind for action in self.submitted]


class RecordingEvents:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        self.events.append({"level": level, "event": event, "details": details or {}, "event_id": event_id})

    def names(self) -> list[str]:
        return [item["event"] for item in self.events]


class MutableConfig:
    def __init__(self, config: RuntimeConfig) -> None:
        self.config = config

    async def __call__(self) -> RuntimeConfig:
        return self.config

    def set(self, **changes: Any) -> None:
        self.config = replace(self.config, **changes)


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("concierge.tests")


@pytest.fixture
def kv() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def settings() -> StorageSettings:
    return StorageSettings(
        redis_url="redis://localhost:6379/0",
        redis_config_key="config:runtime",
        heartbeat_key="workers:heartbeat",
        key_namespace="test",
        position_ttl_seconds=90 * 24 * 3600,
        global_positions_limit=1000,
        job_record_ttl_seconds=7 * 24 * 3600,
        processed_marker_ttl_seconds=30 * 24 * 3600,
        unresolved_ttl_seconds=3600,
        bounce_ttl_seconds=7 * 24 * 3600,
        firestore_enabled=False,
        firestore_project_id=None,
        service_collection="services",
        service_id="concierge",
        service_env="test",
        run_id="run-test",
        events_collection="events",
        firestore_config_doc="services/concierge/config/runtime",
        firestore_config_leaf_doc_id="runtime",
        config_schema_version=1,
    )


@pytest.fixture
def chain() -> ChainConfig:
    return ChainConfig(
        chain_id=43114,
        usdc_address="0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E",
        aave_pool_address="0x794a61358D6845594F94dc1DB02A252b5b4814aD",
        gmx_router_address="0x820F5FfC5b525cD4d88Cd91aCf2c28F16530Cc68",
        gmx_exchange_router_address="0x8f550E53DFe96C055D5Bdb267c21F268fCAF63B2",
        gmx_order_vault_address="0xD3D60D22d415aD43b7e64b510D86A30f19B1B12C",
        gmx_btc_market_address="0xFb02132333A79C8B5Bd0b64E3AbccA5f7fAf2937",
        wavax_address="0xB31f66AA3C1e785363F0875A1B74E27b85FD66c7",
        ergc_address="0xDC353b94284E7d3aEAB2588CEA3082b9b87C184B",
        ergc_treasury_address="",
        vault_a_address="0x" + "a1" * 20,
        vault_b_address="0x" + "b2" * 20,
        usdc_decimals=6,
        ergc_decimals=18,
        gas_topup_avax_conservative=0.005,
        gas_topup_avax_aggressive=0.06,
        gas_topup_avax_split=0.005,
        gmx_execution_fee_avax=0.02,
        gmx_leverage=2.5,
        aave_min_supply_usd=0.5,
        gmx_min_collateral_usd=5.0,
        gmx_min_position_usd=10.0,
        ergc_qualifying_balance=100.0,
        ergc_debit_amount=1.0,
        ergc_delivery_amount=99.0,
        split_vault_a_pct=50.0,
        split_vault_b_pct=50.0,
        default_gas_price_gwei=30.0,
        confirmation_blocks=1,
        large_amount_confirmation_blocks=6,
        large_amount_threshold_usd=100.0,
        supply_cap_buffer_pct=1.0,
    )


@pytest.fixture
def runtime_config() -> MutableConfig:
    return MutableConfig(
        RuntimeConfig(
            config_schema_version=1,
            execution_enabled=True,
            emergency_signature_bypass=False,
            max_gas_price_gwei=0.0,
            gas_topup_policy="best_effort",
            refund_cooldown_hours=0.0,
        )
    )


@pytest.fixture
def chain_client() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def events() -> RecordingEvents:
    return RecordingEvents()


@pytest.fixture
def idempotency(kv: InMemoryKeyValueStore, settings: StorageSettings) -> IdempotencyStore:
    return IdempotencyStore(kv, settings)


@pytest.fixture
def hub_lock(idempotency: IdempotencyStore, logger: logging.Logger) -> HubWalletLock:
    return HubWalletLock(idempotency, logger=logger, ttl_seconds=60, wait_seconds=0.05, poll_seconds=0.01)


def rpc_error(message: str) -> ChainRpcError:
    return ChainRpcError(message, method="test")


@pytest.fixture
def positions(kv: InMemoryKeyValueStore, settings: StorageSettings, logger: logging.Logger) -> PositionStore:
    return PositionStore(kv, settings, logger=logger)


@pytest.fixture
def executor(
    positions: PositionStore,
    chain_client: FakeChainClient,
    chain: ChainConfig,
    hub_lock: HubWalletLock,
    runtime_config: MutableConfig,
    logger: logging.Logger,
    events: RecordingEvents,
) -> StrategyExecutor:
    return StrategyExecutor(
        positions=positions,
        chain_client=chain_client,
        chain=chain,
        hub_lock=hub_lock,
        config_provider=runtime_config,
        logger=logger,
        confirmation_timeout_seconds=1.0,
        events=events,
    )
