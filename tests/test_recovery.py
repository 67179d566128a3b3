"""
Tests for the recovery planner, refunds and periodic recovery scans.
"""
from datetime import datetime, timezone
from unittest.mock import ANY, AsyncMock, MagicMock

import pytest

from concierge.execution import ReserveState
from concierge.jobs import payment_lock_key
from concierge.jobs.types import ExecutionJob, new_job_id
from concierge.positions import UserPosition, generate_position_id
from concierge.recovery import ProviderRefund, RecoveryService, RefundProviderError, plan_recovery_action
from concierge.storage import now_ts

from conftest import WALLET, rpc_error

NOW = 1_700_000_000.0


def stamped(status, *, age=0.0, **extra):
    stamp = datetime.fromtimestamp(NOW - age, tz=timezone.utc).isoformat()
    return UserPosition(
        id=generate_position_id(),
        payment_id="pay-1",
        user_email=None,
        wallet_address=WALLET,
        strategy_type="conservative",
        usdc_amount=25.0,
        status=status,
        created_at=stamp,
        updated_at=stamp,
        **extra,
    )


def plan(position, **overrides):
    options = {
        "now": NOW,
        "stale_seconds": 600.0,
        "refund_cooldown_seconds": 0.0,
        "pending_expiry_seconds": 86400.0,
        "max_retries": 3,
        **overrides,
    }
    return plan_recovery_action(position, **options).action


def make_job(payment_id="pay-1", risk="conservative", amount_cents=2500):
    return ExecutionJob(
        job_id=new_job_id(),
        payment_id=payment_id,
        payload={
            "wallet_address": WALLET,
            "risk_profile": risk,
            "amount_cents": amount_cents,
            "purchase_type": "deposit",
        },
    )


PAUSED = ReserveState(is_active=True, is_frozen=False, is_paused=True, supply_cap=0, total_supplied=0.0)
OPEN = ReserveState(is_active=True, is_frozen=False, is_paused=False, supply_cap=0, total_supplied=0.0)


@pytest.fixture
def refund_client():
    client = MagicMock()
    client.refund_payment = AsyncMock(return_value=ProviderRefund("rf-1", "PENDING"))
    client.get_refund = AsyncMock(return_value=ProviderRefund("rf-1", "PENDING"))
    return client


def build_service(positions, executor, chain_client, chain, idempotency, hub_lock, runtime_config, logger, events, **options):
    return RecoveryService(
        positions=positions,
        executor=executor,
        chain_client=chain_client,
        chain=chain,
        idempotency=idempotency,
        hub_lock=hub_lock,
        config_provider=runtime_config,
        logger=logger,
        events=events,
        confirmation_timeout_seconds=1.0,
        reconcile_timeout_seconds=1.0,
        **options,
    )


@pytest.fixture
def service(positions, executor, chain_client, chain, idempotency, hub_lock, runtime_config, logger, events):
    return build_service(
        positions,
        executor,
        chain_client,
        chain,
        idempotency,
        hub_lock,
        runtime_config,
        logger,
        events,
        discrepancy_sample_size=0,
    )


async def failed_position(executor, chain_client, payment_id="pay-1"):
    chain_client.reserve = PAUSED
    outcome = await executor.execute(make_job(payment_id=payment_id))
    chain_client.reserve = OPEN
    return outcome.position_id


class TestPlanner:
    @pytest.mark.parametrize(
        "position,expected",
        [
            (stamped("failed_refund_pending", refund_tx_hash="0xabc"), "confirm_refund"),
            (stamped("failed_refund_pending", pending_step="refund"), "escalate"),
            (stamped("failed_refund_pending"), "refund"),
            (stamped("closed"), "skip"),
            (stamped("gas_sent_cap_failed", pending_tx_hash="0xabc", pending_step="aave_supply"), "reconcile"),
            (stamped("pending", age=60), "skip"),
            (stamped("pending", age=90000), "expire"),
            (stamped("executing", age=60), "skip"),
            (stamped("executing", age=3600), "mark_failed"),
            (stamped("avax_sent", age=3600, pending_step="aave_supply"), "escalate"),
            (stamped("supply_failed", error_type="network_error"), "retry"),
            (stamped("supply_failed", error_type="network_error", retry_count=3), "refund"),
            (stamped("gas_sent_cap_failed", error_type="supply_cap"), "refund"),
            (stamped("supply_failed", error_type="insufficient_balance"), "refund"),
            (stamped("failed"), "refund"),
            (stamped("active"), "skip"),
        ],
    )
    def test_actions(self, position, expected):
        assert plan(position) == expected

    def test_cooldown_delays_refund(self):
        position = stamped("gas_sent_cap_failed", age=600, error_type="reserve_paused")

        assert plan(position, refund_cooldown_seconds=3600.0) == "skip"
        assert plan(position, refund_cooldown_seconds=300.0) == "refund"

    def test_retryable_error_retries_before_cooldown(self):
        position = stamped("supply_failed", error_type="transaction_failed")

        assert plan(position, refund_cooldown_seconds=3600.0) == "retry"


class TestWalletRefund:
    @pytest.mark.asyncio
    async def test_refund_is_sent_and_confirmed(self, service, executor, positions, chain_client, events):
        position_id = await failed_position(executor, chain_client)

        outcome = await service.refund(position_id)

        position = await positions.get(position_id)
        assert outcome.status == "confirmed"
        assert outcome.refund_amount == 25.0
        assert position.status == "closed"
        assert position.refund_tx_hash == outcome.refund_tx_hash
        assert position.pending_step is None
        transfer = chain_client.submitted[-1]
        assert transfer.kind == "erc20_transfer"
        assert transfer.params["to"] == WALLET
        assert transfer.params["amount"] == 25.0
        assert events.names()[-2:] == ["refund_sent", "refund_confirmed"]

    @pytest.mark.asyncio
    async def test_second_refund_is_idempotent(self, service, executor, chain_client):
        position_id = await failed_position(executor, chain_client)
        await service.refund(position_id)

        outcome = await service.refund(position_id)

        assert outcome.status == "already_refunded"
        assert chain_client.kinds().count("erc20_transfer") == 1

    @pytest.mark.asyncio
    async def test_unconfirmed_refund_is_confirmed_later(self, service, executor, positions, chain_client):
        position_id = await failed_position(executor, chain_client)
        chain_client.confirmation_by_kind["erc20_transfer"] = "timeout"

        sent = await service.refund(position_id)

        assert sent.status == "sent"
        assert (await positions.get(position_id)).is_terminal

        chain_client.confirmation_by_kind["erc20_transfer"] = "success"
        confirmed = await service.confirm_refund(position_id)

        assert confirmed.status == "confirmed"
        assert (await positions.get(position_id)).status == "closed"

    @pytest.mark.asyncio
    async def test_rejected_refund_is_sent_again(self, service, executor, positions, chain_client):
        position_id = await failed_position(executor, chain_client)
        chain_client.confirmation_by_kind["erc20_transfer"] = "failed"

        rejected = await service.refund(position_id)

        position = await positions.get(position_id)
        assert rejected.status == "failed"
        assert position.status == "failed_refund_pending"
        assert position.refund_tx_hash is None

        chain_client.confirmation_by_kind["erc20_transfer"] = "success"
        again = await service.refund(position_id)

        assert again.status == "confirmed"
        assert chain_client.kinds().count("erc20_transfer") == 2

    @pytest.mark.asyncio
    async def test_refund_covers_only_undeployed_principal(self, service, executor, positions, chain_client):
        chain_client.confirmation_by_hash[f"0x{3:064x}"] = "failed"
        outcome = await executor.execute(make_job(risk="split", amount_cents=5000))

        refund = await service.refund(outcome.position_id)

        assert refund.status == "confirmed"
        assert refund.refund_amount == 25.0
        assert (await positions.get(outcome.position_id)).refund_amount == 25.0

    @pytest.mark.asyncio
    async def test_submit_failure_leaves_refund_retryable(self, service, executor, positions, chain_client):
        position_id = await failed_position(executor, chain_client)
        chain_client.submit_errors["erc20_transfer"] = rpc_error("insufficient funds for transfer")

        outcome = await service.refund(position_id)

        position = await positions.get(position_id)
        assert outcome.status == "failed"
        assert position.status == "failed_refund_pending"
        assert position.pending_step is None
        assert position.error.startswith("refund not sent")
        assert plan_recovery_action(
            position,
            now=now_ts(),
            stale_seconds=0.0,
            refund_cooldown_seconds=0.0,
            pending_expiry_seconds=86400.0,
            max_retries=3,
        ).action == "refund"

    @pytest.mark.asyncio
    async def test_active_position_is_not_eligible(self, service, executor, chain_client):
        outcome = await executor.execute(make_job())

        refund = await service.refund(outcome.position_id)

        assert refund.status == "not_eligible"
        assert "erc20_transfer" not in chain_client.kinds()

    @pytest.mark.asyncio
    async def test_fully_deployed_position_has_nothing_to_refund(self, service, positions):
        position, _ = await positions.create(
            UserPosition(
                id=generate_position_id(),
                payment_id="pay-1",
                user_email=None,
                wallet_address=WALLET,
                strategy_type="conservative",
                usdc_amount=25.0,
                aave_supply_amount=25.0,
            )
        )
        await positions.transition(position, "failed", error_type="unknown")

        assert (await service.refund(position.id)).status == "nothing_to_refund"

    @pytest.mark.asyncio
    async def test_held_payment_lock_reports_busy(self, service, executor, positions, chain_client, idempotency):
        position_id = await failed_position(executor, chain_client)
        await idempotency.try_acquire(payment_lock_key("pay-1"), ttl_seconds=60, owner_token="worker")

        outcome = await service.refund(position_id)

        assert outcome.status == "busy"
        assert (await positions.get(position_id)).status == "gas_sent_cap_failed"

    @pytest.mark.asyncio
    async def test_unknown_position(self, service):
        assert (await service.refund("pos_missing")).status == "not_found"


class TestProviderRefund:
    @pytest.fixture
    def provider_service(
        self,
        positions,
        executor,
        chain_client,
        chain,
        idempotency,
        hub_lock,
        runtime_config,
        logger,
        events,
        refund_client,
    ):
        return build_service(
            positions,
            executor,
            chain_client,
            chain,
            idempotency,
            hub_lock,
            runtime_config,
            logger,
            events,
            refund_destination="payment_method",
            refund_client=refund_client,
            discrepancy_sample_size=0,
        )

    @pytest.mark.asyncio
    async def test_refund_goes_back_to_payment_method(
        self,
        provider_service,
        executor,
        positions,
        chain_client,
        refund_client,
    ):
        position_id = await failed_position(executor, chain_client)

        sent = await provider_service.refund(position_id)

        assert sent.status == "sent"
        assert sent.refund_tx_hash == "rf-1"
        refund_client.refund_payment.assert_awaited_once_with(
            payment_id="pay-1",
            amount_cents=2500,
            idempotency_key=position_id,
            reason=ANY,
        )
        assert "erc20_transfer" not in chain_client.kinds()

        refund_client.get_refund.return_value = ProviderRefund("rf-1", "COMPLETED")
        confirmed = await provider_service.confirm_refund(position_id)

        assert confirmed.status == "confirmed"
        assert (await positions.get(position_id)).status == "closed"

    @pytest.mark.asyncio
    async def test_provider_error_is_reported(self, provider_service, executor, positions, chain_client, refund_client):
        position_id = await failed_position(executor, chain_client)
        refund_client.refund_payment.side_effect = RefundProviderError("card expired", status=400)

        outcome = await provider_service.refund(position_id)

        assert outcome.status == "failed"
        assert (await positions.get(position_id)).refund_tx_hash is None

    def test_refund_status_flags(self):
        assert ProviderRefund("rf-1", "COMPLETED").is_completed
        assert ProviderRefund("rf-1", "FAILED").is_rejected
        assert ProviderRefund("rf-1", "REJECTED").is_rejected
        assert not ProviderRefund("rf-1", "PENDING").is_rejected


class TestScan:
    @pytest.mark.asyncio
    async def test_scan_applies_one_action_per_position(
        self,
        positions,
        executor,
        chain_client,
        chain,
        idempotency,
        hub_lock,
        runtime_config,
        logger,
        events,
    ):
        service = build_service(
            positions,
            executor,
            chain_client,
            chain,
            idempotency,
            hub_lock,
            runtime_config,
            logger,
            events,
            pending_expiry_days=0,
            discrepancy_sample_size=0,
        )
        refundable = await failed_position(executor, chain_client, payment_id="pay-1")
        chain_client.confirmation_by_kind["aave_supply"] = "timeout"
        unconfirmed = (await executor.execute(make_job(payment_id="pay-2"))).position_id
        chain_client.confirmation_by_kind.clear()
        waiting, _ = await positions.create(
            UserPosition(
                id=generate_position_id(),
                payment_id="pay-3",
                user_email=None,
                wallet_address=WALLET,
                strategy_type="conservative",
                usdc_amount=10.0,
            )
        )

        report = await service.scan(stale_since_seconds=0, now=now_ts() + 1)

        assert report.scanned == 3
        assert report.actions == {"expire": [waiting.id], "reconcile": [unconfirmed], "refund": [refundable]}
        assert report.errors == []
        assert [outcome.status for outcome in report.refunds] == ["confirmed"]
        assert (await positions.get(refundable)).status == "closed"
        assert (await positions.get(unconfirmed)).status == "active"
        assert (await positions.get(waiting.id)).status == "failed"

    @pytest.mark.asyncio
    async def test_scan_retries_partial_split(self, service, executor, positions, chain_client):
        chain_client.confirmation_by_hash[f"0x{3:064x}"] = "failed"
        outcome = await executor.execute(make_job(risk="split", amount_cents=5000))

        report = await service.scan(stale_since_seconds=0, now=now_ts() + 1)

        position = await positions.get(outcome.position_id)
        assert report.actions == {"retry": [position.id]}
        assert position.status == "active"
        assert position.retry_count == 1

    @pytest.mark.asyncio
    async def test_stalled_execution_is_marked_failed(self, service, positions):
        position, _ = await positions.create(
            UserPosition(
                id=generate_position_id(),
                payment_id="pay-1",
                user_email=None,
                wallet_address=WALLET,
                strategy_type="conservative",
                usdc_amount=25.0,
            )
        )
        await positions.transition(position, "executing")

        await service.scan(stale_since_seconds=0, now=now_ts() + 1)

        stalled = await positions.get(position.id)
        assert stalled.status == "supply_failed"
        assert stalled.error_type == "network_error"

    @pytest.mark.asyncio
    async def test_unknown_submission_is_escalated(self, service, positions, events):
        position, _ = await positions.create(
            UserPosition(
                id=generate_position_id(),
                payment_id="pay-1",
                user_email=None,
                wallet_address=WALLET,
                strategy_type="conservative",
                usdc_amount=25.0,
            )
        )
        await positions.transition(position, "executing", pending_step="aave_supply")

        report = await service.scan(stale_since_seconds=0, now=now_ts() + 1)

        assert report.actions == {"escalate": [position.id]}
        assert events.names() == ["recovery_escalation"]
        assert (await positions.get(position.id)).status == "executing"

    @pytest.mark.asyncio
    async def test_recent_positions_are_not_scanned(self, service, executor, chain_client):
        await failed_position(executor, chain_client)

        report = await service.scan(stale_since_seconds=3600)

        assert report.scanned == 0


class TestDiscrepancies:
    @pytest.fixture
    def checker(self, positions, executor, chain_client, chain, idempotency, hub_lock, runtime_config, logger, events):
        return build_service(positions, executor, chain_client, chain, idempotency, hub_lock, runtime_config, logger, events)

    @pytest.mark.asyncio
    async def test_shortfall_is_reported_per_wallet(self, checker, executor, chain_client, events):
        await executor.execute(make_job(payment_id="pay-1"))
        await executor.execute(make_job(payment_id="pay-2"))
        chain_client.position_amounts[WALLET] = 40.0

        found = await checker.check_discrepancies()

        assert len(found) == 1
        assert found[0]["recorded_amount"] == 50.0
        assert found[0]["on_chain_amount"] == 40.0
        assert "discrepancy_detected" in events.names()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("on_chain", [49.8, 60.0, None])
    async def test_within_tolerance_or_unreadable(self, checker, executor, chain_client, on_chain):
        await executor.execute(make_job(payment_id="pay-1"))
        await executor.execute(make_job(payment_id="pay-2"))
        if on_chain is not None:
            chain_client.position_amounts[WALLET] = on_chain

        assert await checker.check_discrepancies() == []
