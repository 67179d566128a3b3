from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

from concierge.admission.idempotency import IdempotencyStore, new_owner_token
from concierge.common import ChainRpcError, EventPublisher, guarded_call, log_event
from concierge.execution.chain import ChainClient, ProtocolAction
from concierge.execution.config import ChainConfig
from concierge.execution.executor import StrategyExecutor
from concierge.execution.hub_lock import HubWalletBusyError, HubWalletLock
from concierge.execution.types import ExecutionOutcome
from concierge.jobs.worker import payment_lock_key
from concierge.positions import InvalidTransitionError, PositionStore, UserPosition
from concierge.positions.types import PARTIAL_FAILURE_STATUSES, SCANNABLE_STATUSES
from concierge.runtime.settings import RuntimeConfig
from concierge.storage import now_iso, now_ts

from .planner import plan_recovery_action
from .refunds import ProviderRefundClient, RefundProviderError
from .types import RecoveryReport, RefundOutcome

RuntimeConfigProvider = Callable[[], Awaitable[RuntimeConfig]]

REFUNDABLE_STATUSES = PARTIAL_FAILURE_STATUSES | {"failed", "failed_refund_pending"}


class RecoveryService:
    """Drives stuck positions forward: reconcile, retry, expire, refund."""

    def __init__(
        self,
        *,
        positions: PositionStore,
        executor: StrategyExecutor,
        chain_client: ChainClient,
        chain: ChainConfig,
        idempotency: IdempotencyStore,
        hub_lock: HubWalletLock,
        config_provider: RuntimeConfigProvider,
        logger: logging.Logger,
        refund_destination: str = "wallet",
        refund_client: ProviderRefundClient | None = None,
        events: EventPublisher | None = None,
        stale_seconds: float = 3600.0,
        pending_expiry_days: float = 30.0,
        max_position_retries: int = 3,
        discrepancy_sample_size: int = 10,
        discrepancy_tolerance_pct: float = 1.0,
        confirmation_timeout_seconds: float = 90.0,
        reconcile_timeout_seconds: float = 10.0,
        lock_ttl_seconds: int = 600,
    ) -> None:
        self._positions = positions
        self._executor = executor
        self._chain_client = chain_client
        self._chain = chain
        self._idempotency = idempotency
        self._hub_lock = hub_lock
        self._config_provider = config_provider
        self._logger = logger
        self._refund_destination = refund_destination
        self._refund_client = refund_client
        self._events = events
        self._stale_seconds = stale_seconds
        self._pending_expiry_seconds = pending_expiry_days * 86400.0
        self._max_position_retries = max_position_retries
        self._discrepancy_sample_size = discrepancy_sample_size
        self._discrepancy_tolerance_pct = discrepancy_tolerance_pct
        self._confirmation_timeout_seconds = confirmation_timeout_seconds
        self._reconcile_timeout_seconds = reconcile_timeout_seconds
        self._lock_ttl_seconds = lock_ttl_seconds

    async def _publish(self, *, level: str, event: str, message: str, details: dict[str, Any], event_id: str) -> None:
        if self._events is None:
            return
        await guarded_call(
            lambda: self._events.publish_event(
                level=level,
                event=event,
                message=message,
                details=details,
                event_id=event_id,
            ),
            logger=self._logger,
            event=f"{event}_publish_failed",
            message=f"Failed to publish {event} event",
        )

    async def _with_payment_lock(
        self,
        position: UserPosition,
        action: Callable[[], Awaitable[Any]],
    ) -> tuple[bool, Any]:
        key = payment_lock_key(position.payment_id)
        owner_token = new_owner_token("recovery")
        if not await self._idempotency.try_acquire(key, ttl_seconds=self._lock_ttl_seconds, owner_token=owner_token):
            return False, None
        try:
            return True, await action()
        finally:
            await guarded_call(
                lambda: self._idempotency.release(key, owner_token),
                logger=self._logger,
                event="recovery_lock_release_failed",
                message="Failed to release payment lock after recovery action",
                position_id=position.id,
            )

    async def scan(
        self,
        stale_since_seconds: float | None = None,
        *,
        limit: int = 100,
        now: float | None = None,
    ) -> RecoveryReport:
        current = now if now is not None else now_ts()
        stale_seconds = self._stale_seconds if stale_since_seconds is None else max(0.0, stale_since_seconds)
        config = await self._config_provider()
        refund_cooldown_seconds = config.refund_cooldown_hours * 3600.0

        report = RecoveryReport()
        candidates = await self._positions.list_by_status(
            SCANNABLE_STATUSES,
            updated_before=current - stale_seconds,
            limit=limit,
        )
        for position in candidates:
            report.scanned += 1
            plan = plan_recovery_action(
                position,
                now=current,
                stale_seconds=stale_seconds,
                refund_cooldown_seconds=refund_cooldown_seconds,
                pending_expiry_seconds=self._pending_expiry_seconds,
                max_retries=self._max_position_retries,
            )
            report.record(plan.action, position.id)
            try:
                await self._apply(plan.action, plan.reason, position, report)
            except (ChainRpcError, RefundProviderError, InvalidTransitionError) as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="recovery_action_failed",
                    message="Recovery action failed; will retry on next scan",
                    position_id=position.id,
                    action=plan.action,
                    error=str(error),
                )
                report.errors.append({"position_id": position.id, "action": plan.action, "error": str(error)})

        if self._discrepancy_sample_size > 0:
            report.discrepancies = await self.check_discrepancies(limit=self._discrepancy_sample_size)

        log_event(
            self._logger,
            level="info",
            event="recovery_scan_completed",
            message="Recovery scan completed",
            scanned=report.scanned,
            actions={action: len(ids) for action, ids in report.actions.items()},
            errors=len(report.errors),
            discrepancies=len(report.discrepancies),
        )
        return report

    async def _apply(self, action: str, reason: str, position: UserPosition, report: RecoveryReport) -> None:
        if action == "skip":
            return
        if action == "confirm_refund":
            report.refunds.append(await self.confirm_refund(position.id))
        elif action == "refund":
            report.refunds.append(await self.refund(position.id))
        elif action == "reconcile":
            await self.reconcile(position.id)
        elif action == "retry":
            await self.retry(position.id)
        elif action == "expire":
            await self.expire(position)
        elif action == "mark_failed":
            await self.mark_stalled(position)
        elif action == "escalate":
            await self.escalate(position, reason=reason)

    async def reconcile(self, position_id: str) -> ExecutionOutcome:
        position = await self._positions.get(position_id)
        if position is None:
            return ExecutionOutcome(kind="invalid", position_id=position_id, message="position not found")
        acquired, outcome = await self._with_payment_lock(
            position,
            lambda: self._executor.reconcile_pending(position_id, timeout_seconds=self._reconcile_timeout_seconds),
        )
        if not acquired:
            return ExecutionOutcome(kind="deferred", position_id=position_id, message="payment lock held")
        return outcome

    async def retry(self, position_id: str) -> ExecutionOutcome:
        position = await self._positions.get(position_id)
        if position is None:
            return ExecutionOutcome(kind="invalid", position_id=position_id, message="position not found")
        acquired, outcome = await self._with_payment_lock(
            position,
            lambda: self._executor.retry_position(position_id),
        )
        if not acquired:
            return ExecutionOutcome(kind="deferred", position_id=position_id, message="payment lock held")
        log_event(
            self._logger,
            level="info",
            event="position_retry_finished",
            message="Recovery retry finished",
            position_id=position_id,
            outcome=outcome.kind,
            status=outcome.status,
        )
        return outcome

    async def expire(self, position: UserPosition) -> UserPosition:
        return await self._positions.transition(
            position,
            "failed",
            error_type="unknown",
            error="pending position expired before execution",
        )

    async def mark_stalled(self, position: UserPosition) -> UserPosition:
        target = "gas_sent_cap_failed" if position.avax_tx_hash else "supply_failed"
        return await self._positions.transition(
            position,
            target,
            error_type="network_error",
            error="execution stalled without a recorded submission",
        )

    async def escalate(self, position: UserPosition, *, reason: str) -> None:
        details = {
            "position_id": position.id,
            "payment_id": position.payment_id,
            "status": position.status,
            "pending_step": position.pending_step,
            "pending_tx_hash": position.pending_tx_hash,
            "reason": reason,
        }
        log_event(
            self._logger,
            level="error",
            event="recovery_escalation",
            message="Position needs manual review",
            **details,
        )
        await self._publish(
            level="ERROR",
            event="recovery_escalation",
            message="Position needs manual review",
            details=details,
            event_id=f"escalation-{position.id}-{position.updated_at}",
        )

    async def refund(self, position_id: str) -> RefundOutcome:
        position = await self._positions.get(position_id)
        if position is None:
            return RefundOutcome(position_id=position_id, status="not_found")
        if position.refund_tx_hash:
            return self._recorded(position)

        acquired, outcome = await self._with_payment_lock(position, lambda: self._refund_locked(position_id))
        if not acquired:
            return RefundOutcome(
                position_id=position_id,
                status="busy",
                position_status=position.status,
                message="payment lock held",
            )
        return outcome

    @staticmethod
    def _recorded(position: UserPosition) -> RefundOutcome:
        return RefundOutcome(
            position_id=position.id,
            status="already_refunded",
            refund_tx_hash=position.refund_tx_hash,
            refund_amount=position.refund_amount,
            position_status=position.status,
        )

    async def _refund_locked(self, position_id: str) -> RefundOutcome:
        position = await self._positions.get(position_id)
        if position is None:
            return RefundOutcome(position_id=position_id, status="not_found")
        if position.refund_tx_hash:
            return self._recorded(position)
        if position.status not in REFUNDABLE_STATUSES or position.pending_tx_hash or position.pending_step:
            return RefundOutcome(
                position_id=position.id,
                status="not_eligible",
                position_status=position.status,
                message="position is not in a refundable state",
            )

        amount = round(position.usdc_amount - position.deployed_amount, 6)
        if amount <= 0:
            return RefundOutcome(
                position_id=position.id,
                status="nothing_to_refund",
                position_status=position.status,
                message="principal fully deployed",
            )

        if position.status != "failed_refund_pending":
            position = await self._positions.transition(position, "failed_refund_pending", refund_amount=amount)
        elif position.refund_amount != amount:
            position = await self._positions.update(position, refund_amount=amount)

        if self._refund_destination == "payment_method":
            reference = await self._send_provider_refund(position, amount)
        else:
            reference = await self._send_wallet_refund(position, amount)
        if isinstance(reference, RefundOutcome):
            return reference

        position = await self._positions.update(
            position,
            refund_tx_hash=reference,
            refunded_at=now_iso(),
            pending_step=None,
        )
        details = {
            "position_id": position.id,
            "payment_id": position.payment_id,
            "refund_amount": amount,
            "refund_tx_hash": reference,
            "destination": self._refund_destination,
        }
        log_event(self._logger, level="info", event="refund_sent", message="Refund sent", **details)
        await self._publish(
            level="INFO",
            event="refund_sent",
            message="Refund sent",
            details=details,
            event_id=f"refund-sent-{position.id}",
        )
        return await self._confirm(position)

    async def _send_wallet_refund(self, position: UserPosition, amount: float) -> str | RefundOutcome:
        config = await self._config_provider()
        ceiling = self._chain.gas_price_ceiling_wei(config.max_gas_price_gwei)
        action = ProtocolAction(
            kind="erc20_transfer",
            params={"token": self._chain.usdc_address, "to": position.wallet_address, "amount": amount},
        )
        position = await self._positions.update(position, pending_step="refund")
        try:
            return await self._hub_lock.run(
                self._chain_client.hub_address,
                lambda: self._chain_client.submit_protocol_action(action, gas_price_ceiling_wei=ceiling),
                step="refund",
            )
        except ChainRpcError as error:
            # nothing was broadcast, so the refund may be attempted again
            await self._positions.update(position, pending_step=None, error=f"refund not sent: {error}")
            status = "busy" if isinstance(error, HubWalletBusyError) else "failed"
            return RefundOutcome(
                position_id=position.id,
                status=status,
                refund_amount=amount,
                position_status=position.status,
                message=str(error),
            )

    async def _send_provider_refund(self, position: UserPosition, amount: float) -> str | RefundOutcome:
        if self._refund_client is None:
            raise RefundProviderError("No refund provider client is configured.")
        try:
            refund = await self._refund_client.refund_payment(
                payment_id=position.payment_id,
                amount_cents=int(round(amount * 100)),
                idempotency_key=position.id,
                reason=f"Deposit could not be completed ({position.error_type or 'unknown'})",
            )
        except RefundProviderError as error:
            await self._positions.update(position, error=f"refund not sent: {error}")
            return RefundOutcome(
                position_id=position.id,
                status="failed",
                refund_amount=amount,
                position_status=position.status,
                message=str(error),
            )
        return refund.refund_id

    async def confirm_refund(self, position_id: str) -> RefundOutcome:
        position = await self._positions.get(position_id)
        if position is None:
            return RefundOutcome(position_id=position_id, status="not_found")
        if position.status != "failed_refund_pending" or not position.refund_tx_hash:
            return RefundOutcome(
                position_id=position.id,
                status="not_eligible",
                refund_tx_hash=position.refund_tx_hash,
                position_status=position.status,
                message="no refund awaiting confirmation",
            )
        return await self._confirm(position)

    async def _confirm(self, position: UserPosition) -> RefundOutcome:
        reference = position.refund_tx_hash or ""
        if reference.startswith("0x"):
            confirmation = await self._chain_client.await_confirmation(
                reference,
                timeout_seconds=self._confirmation_timeout_seconds,
                confirmations=self._chain.confirmations_for(position.refund_amount or 0.0),
            )
            confirmed = confirmation.status == "success"
            rejected = confirmation.status == "failed"
        else:
            if self._refund_client is None:
                raise RefundProviderError("No refund provider client is configured.")
            refund = await self._refund_client.get_refund(reference)
            confirmed = refund.is_completed
            rejected = refund.is_rejected

        if rejected:
            position = await self._positions.update(
                position,
                refund_tx_hash=None,
                refunded_at=None,
                error=f"refund {reference} was rejected",
            )
            log_event(
                self._logger,
                level="error",
                event="refund_rejected",
                message="Refund did not complete; it will be sent again",
                position_id=position.id,
                refund_tx_hash=reference,
            )
            return RefundOutcome(
                position_id=position.id,
                status="failed",
                refund_amount=position.refund_amount,
                position_status=position.status,
                message="refund rejected",
            )
        if not confirmed:
            return RefundOutcome(
                position_id=position.id,
                status="sent",
                refund_tx_hash=reference,
                refund_amount=position.refund_amount,
                position_status=position.status,
            )

        position = await self._positions.transition(position, "closed", closed_at=now_iso())
        details = {
            "position_id": position.id,
            "payment_id": position.payment_id,
            "refund_amount": position.refund_amount,
            "refund_tx_hash": reference,
        }
        log_event(self._logger, level="info", event="refund_confirmed", message="Refund confirmed", **details)
        await self._publish(
            level="INFO",
            event="refund_confirmed",
            message="Refund confirmed",
            details=details,
            event_id=f"refund-confirmed-{position.id}",
        )
        return RefundOutcome(
            position_id=position.id,
            status="confirmed",
            refund_tx_hash=reference,
            refund_amount=position.refund_amount,
            position_status=position.status,
        )

    async def check_discrepancies(self, *, limit: int = 10) -> list[dict[str, Any]]:
        """Compare recorded protocol amounts with on-chain balances; report only."""
        discrepancies: list[dict[str, Any]] = []
        checked: set[tuple[str, str]] = set()
        for position in await self._positions.list_by_status(["active"], limit=limit):
            wallet_key = (position.wallet_address, position.strategy_type)
            if wallet_key in checked:
                continue
            checked.add(wallet_key)

            try:
                on_chain = await self._chain_client.read_position_amount(position.to_dict())
            except ChainRpcError as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="discrepancy_read_failed",
                    message="Could not read on-chain position amount",
                    position_id=position.id,
                    error=str(error),
                )
                continue
            if on_chain is None:
                continue

            siblings = await self._positions.list_by_wallet(position.wallet_address, limit=200)
            recorded = round(
                sum(
                    item.deployed_amount
                    for item in siblings
                    if item.status == "active" and item.strategy_type == position.strategy_type
                ),
                6,
            )
            floor = recorded * (1.0 - self._discrepancy_tolerance_pct / 100.0)
            if on_chain >= floor:
                continue

            details = {
                "wallet_address": position.wallet_address,
                "strategy_type": position.strategy_type,
                "recorded_amount": recorded,
                "on_chain_amount": round(on_chain, 6),
                "position_id": position.id,
            }
            discrepancies.append(details)
            log_event(
                self._logger,
                level="warning",
                event="discrepancy_detected",
                message="On-chain position amount is below recorded amount",
                **details,
            )
            await self._publish(
                level="WARNING",
                event="discrepancy_detected",
                message="On-chain position amount is below recorded amount",
                details=details,
                event_id=f"discrepancy-{position.wallet_address}-{position.strategy_type}-{int(time.time() // 3600)}",
            )
        return discrepancies
