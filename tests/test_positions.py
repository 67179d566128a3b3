"""
Tests for position persistence, indexes, status transitions and integrity.
"""
import json

import pytest

from concierge.positions import (
    EmailBounceTracker,
    InvalidTransitionError,
    PositionStore,
    UserPosition,
    bounce_retry_delay_seconds,
    can_transition,
    generate_position_id,
)
from concierge.storage import now_ts

from conftest import OTHER_WALLET, WALLET


def make_position(payment_id="pay-1", wallet=WALLET, email="User@Example.com", amount=25.0, **extra):
    return UserPosition(
        id=generate_position_id(),
        payment_id=payment_id,
        user_email=email,
        wallet_address=wallet,
        strategy_type="conservative",
        usdc_amount=amount,
        **extra,
    )


@pytest.fixture
def store(kv, settings, logger):
    return PositionStore(kv, settings, logger=logger)


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_indexes_and_hashes(self, store):
        position, created = await store.create(make_position())

        assert created is True
        assert position.created_at == position.updated_at
        assert store.verify_integrity(position)
        assert (await store.get(position.id)) == position
        assert (await store.get_by_payment("pay-1")).id == position.id
        assert [item.id for item in await store.list_by_wallet(WALLET.upper().replace("0X", "0x"))] == [position.id]
        assert [item.id for item in await store.list_by_user("user@example.com")] == [position.id]
        assert [item.id for item in await store.list_recent()] == [position.id]

    @pytest.mark.asyncio
    async def test_one_position_per_payment(self, store):
        first, _ = await store.create(make_position())

        second, created = await store.create(make_position())

        assert created is False
        assert second.id == first.id

    @pytest.mark.asyncio
    async def test_invalid_wallet_is_rejected(self, store):
        with pytest.raises(ValueError):
            await store.create(make_position(wallet="0x1234"))

    @pytest.mark.asyncio
    async def test_wallet_index_is_per_wallet(self, store):
        await store.create(make_position())
        await store.create(make_position(payment_id="pay-2", wallet=OTHER_WALLET, email=None))

        assert len(await store.list_by_wallet(WALLET)) == 1
        assert len(await store.list_by_wallet(OTHER_WALLET)) == 1

    @pytest.mark.asyncio
    async def test_tampered_record_is_excluded_from_indexes(self, store, kv):
        position, _ = await store.create(make_position())
        key = store.position_key(position.id)
        record = json.loads(kv.strings[key])
        record["usdc_amount"] = 2500.0
        kv.strings[key] = json.dumps(record)

        tampered = await store.get(position.id)

        assert not store.verify_integrity(tampered)
        assert await store.list_by_wallet(WALLET) == []


class TestTransitions:
    @pytest.mark.asyncio
    async def test_valid_transition_updates_status_index(self, store):
        position, _ = await store.create(make_position())

        executing = await store.transition(position, "executing")

        assert executing.status == "executing"
        assert [item.id for item in await store.list_by_status(["executing"])] == [position.id]
        assert await store.list_by_status(["pending"]) == []

    @pytest.mark.asyncio
    async def test_invalid_transition_raises(self, store):
        position, _ = await store.create(make_position())

        with pytest.raises(InvalidTransitionError):
            await store.transition(position, "closed")

    @pytest.mark.asyncio
    async def test_update_cannot_change_status(self, store):
        position, _ = await store.create(make_position())

        with pytest.raises(ValueError):
            await store.update(position, status="active")

    @pytest.mark.asyncio
    async def test_list_by_status_honours_updated_before(self, store):
        position, _ = await store.create(make_position())
        await store.transition(position, "executing")

        assert await store.list_by_status(["executing"], updated_before=now_ts() - 60) == []
        assert len(await store.list_by_status(["executing"], updated_before=now_ts() + 1)) == 1

    @pytest.mark.asyncio
    async def test_immutable_fields_survive_updates(self, store):
        position, _ = await store.create(make_position())

        updated = await store.update(position, error="note")

        assert store.verify_integrity(updated)

    @pytest.mark.parametrize(
        "current,target,allowed",
        [
            ("pending", "executing", True),
            ("executing", "avax_sent", True),
            ("avax_sent", "gas_sent_cap_failed", True),
            ("supply_failed", "executing", True),
            ("supply_failed", "failed_refund_pending", True),
            ("failed_refund_pending", "closed", True),
            ("active", "active", True),
            ("active", "failed", False),
            ("closed", "pending", False),
            ("pending", "active", False),
        ],
    )
    def test_transition_table(self, current, target, allowed):
        assert can_transition(current, target) is allowed


class TestDerivedFields:
    def test_deployed_amount_is_capped_by_principal(self):
        position = make_position(aave_supply_amount=20.0, morpho_amount=10.0)

        assert position.deployed_amount == 25.0

    def test_refund_pending_with_hash_is_terminal(self):
        assert make_position(status="failed_refund_pending", refund_tx_hash="0xabc").is_terminal
        assert not make_position(status="failed_refund_pending").is_terminal
        assert make_position(status="closed").is_terminal


class TestBounces:
    @pytest.fixture
    def tracker(self, kv, settings, store, logger):
        return EmailBounceTracker(kv, settings, store, logger=logger)

    @pytest.mark.asyncio
    async def test_bounce_parks_pending_position_and_backs_off(self, tracker, store):
        position, _ = await store.create(make_position())

        record = await tracker.handle_bounce("User@Example.com", reason="mailbox full", position_id=position.id)

        assert record.email == "user@example.com"
        assert record.bounce_count == 1
        assert (await store.get(position.id)).status == "pending_email"
        assert not await tracker.can_retry("user@example.com")
        assert await tracker.can_retry("user@example.com", now=record.next_retry_at)

    @pytest.mark.asyncio
    async def test_resolve_restores_pending(self, tracker, store):
        position, _ = await store.create(make_position())
        await tracker.handle_bounce("user@example.com", reason="bounce", position_id=position.id)

        await tracker.resolve_bounce("user@example.com", position_id=position.id)

        assert (await store.get(position.id)).status == "pending"
        assert await tracker.get("user@example.com") is None

    @pytest.mark.asyncio
    async def test_retries_exhaust(self, tracker):
        for _ in range(4):
            record = await tracker.handle_bounce("user@example.com", reason="bounce")

        assert record.retries_exhausted
        assert not await tracker.can_retry("user@example.com", now=record.next_retry_at + 1)

    @pytest.mark.parametrize("count,delay", [(0, 0), (1, 3600), (2, 7200), (10, 86400)])
    def test_retry_delay(self, count, delay):
        assert bounce_retry_delay_seconds(count) == delay
