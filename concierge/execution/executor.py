from __future__ import annotations

import logging
import re
from typing import Any, Awaitable, Callable

from concierge.common import (
    ChainRpcError,
    Err,
    EventPublisher,
    ExecutionError,
    IndeterminateError,
    Ok,
    Result,
    guarded_call,
    log_event,
)
from concierge.common.errors import classify_chain_error
from concierge.jobs.types import ExecutionJob
from concierge.positions import PositionStore, UserPosition, generate_position_id, normalize_address
from concierge.positions.types import IN_FLIGHT_STATUSES, PARTIAL_FAILURE_STATUSES
from concierge.runtime.settings import RuntimeConfig
from concierge.storage import now_iso

from .chain import NATIVE_TOKEN, ChainClient, ProtocolAction
from .config import ChainConfig
from .hub_lock import HubWalletBusyError, HubWalletLock
from .types import ExecutionOutcome

StepResult = Result[UserPosition, "ExecutionError | IndeterminateError"]
RuntimeConfigProvider = Callable[[], Awaitable[RuntimeConfig]]

WALLET_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
STRATEGIES = frozenset({"conservative", "aggressive", "split"})
SETTLED_STATUSES = frozenset({"active", "withdrawn", "closed", "failed", "failed_refund_pending"})


class StrategyExecutor:
    def __init__(
        self,
        *,
        positions: PositionStore,
        chain_client: ChainClient,
        chain: ChainConfig,
        hub_lock: HubWalletLock,
        config_provider: RuntimeConfigProvider,
        logger: logging.Logger,
        confirmation_timeout_seconds: float = 90.0,
        events: EventPublisher | None = None,
    ) -> None:
        self._positions = positions
        self._chain_client = chain_client
        self._chain = chain
        self._hub_lock = hub_lock
        self._config_provider = config_provider
        self._logger = logger
        self._confirmation_timeout_seconds = confirmation_timeout_seconds
        self._events = events

    async def execute(self, job: ExecutionJob) -> ExecutionOutcome:
        payload = job.payload
        invalid = self._validate_payload(payload)
        if invalid is not None:
            return ExecutionOutcome(kind="invalid", message=invalid)

        config = await self._config_provider()
        if not config.execution_enabled:
            return ExecutionOutcome(kind="deferred", message="execution disabled by runtime config")

        position = await self._positions.get_by_payment(job.payment_id)
        if position is None:
            position, _ = await self._positions.create(
                UserPosition(
                    id=generate_position_id(),
                    payment_id=job.payment_id,
                    user_email=payload.get("user_email") or None,
                    wallet_address=normalize_address(payload["wallet_address"]),
                    strategy_type=payload["risk_profile"],
                    usdc_amount=round(int(payload["amount_cents"]) / 100.0, 2),
                    client_reference=payload.get("client_reference") or None,
                    debit_ergc=payload.get("debit_ergc"),
                    ergc_purchase=payload.get("ergc_purchase"),
                )
            )

        if position.is_terminal or position.status in SETTLED_STATUSES:
            return ExecutionOutcome(
                kind="already_complete",
                position_id=position.id,
                status=position.status,
                message="position already settled",
            )
        if position.status in PARTIAL_FAILURE_STATUSES:
            return ExecutionOutcome(
                kind="requires_recovery",
                position_id=position.id,
                status=position.status,
                message="position awaits recovery",
            )
        if position.pending_tx_hash or position.pending_step:
            return ExecutionOutcome(
                kind="requires_recovery",
                position_id=position.id,
                status=position.status,
                message="unreconciled submission on record",
            )

        return await self._run(position, config)

    async def retry_position(self, position_id: str) -> ExecutionOutcome:
        position = await self._positions.get(position_id)
        if position is None:
            return ExecutionOutcome(kind="invalid", position_id=position_id, message="position not found")
        if position.status not in PARTIAL_FAILURE_STATUSES or position.pending_tx_hash:
            return ExecutionOutcome(
                kind="requires_recovery",
                position_id=position.id,
                status=position.status,
                message="position is not retryable",
            )

        config = await self._config_provider()
        if not config.execution_enabled:
            return ExecutionOutcome(kind="deferred", position_id=position.id, message="execution disabled")

        position = await self._positions.update(position, retry_count=position.retry_count + 1)
        return await self._run(position, config)

    def _validate_payload(self, payload: dict[str, Any]) -> str | None:
        if (payload.get("purchase_type") or "deposit") != "deposit":
            return f"unsupported purchase type: {payload.get('purchase_type')}"
        if not WALLET_RE.match(str(payload.get("wallet_address") or "")):
            return "payload has no valid wallet address"
        if payload.get("risk_profile") not in STRATEGIES:
            return "payload has no valid risk profile"
        try:
            amount_cents = int(payload.get("amount_cents") or 0)
        except (TypeError, ValueError):
            return "payload amount is not an integer"
        if amount_cents <= 0:
            return "payload amount must be positive"
        return None

    async def _run(self, position: UserPosition, config: RuntimeConfig) -> ExecutionOutcome:
        if position.status not in IN_FLIGHT_STATUSES:
            position = await self._positions.transition(position, "executing", error=None, error_type=None)

        ceiling = self._chain.gas_price_ceiling_wei(config.max_gas_price_gwei)
        try:
            if position.avax_tx_hash is None and position.status == "executing":
                gas = await self._gas_topup(position, config.gas_topup_policy, ceiling)
                if isinstance(gas, Err):
                    return await self._fail(position, gas.error)
                if gas.value is not None:
                    position = await self._positions.transition(position, "avax_sent", avax_tx_hash=gas.value)

            if position.strategy_type == "conservative":
                result = await self._supply_aave(position, ceiling)
            elif position.strategy_type == "aggressive":
                result = await self._open_gmx_long(position, ceiling)
            else:
                result = await self._deposit_split(position, ceiling)
            if isinstance(result, Ok):
                result = Ok(await self._deliver_ergc(result.value, ceiling))
        except HubWalletBusyError as error:
            return ExecutionOutcome(
                kind="deferred",
                position_id=position.id,
                status=position.status,
                message=str(error),
            )

        if isinstance(result, Err):
            latest = await self._positions.get(position.id) or position
            return await self._fail(latest, result.error)

        position = await self._positions.transition(
            result.value,
            "active",
            executed_at=now_iso(),
            pending_tx_hash=None,
            pending_step=None,
            error=None,
            error_type=None,
        )
        log_event(
            self._logger,
            level="info",
            event="position_executed",
            message="Strategy executed",
            position_id=position.id,
            payment_id=position.payment_id,
            strategy_type=position.strategy_type,
            usdc_amount=position.usdc_amount,
        )
        return ExecutionOutcome(kind="success", position_id=position.id, status=position.status)

    async def _gas_topup(self, position: UserPosition, policy: str, ceiling: int) -> Result[str | None, ExecutionError]:
        amount = self._chain.gas_topup_avax(position.strategy_type)
        if policy == "skip" or amount <= 0:
            return Ok(None)

        action = ProtocolAction(kind="native_transfer", params={"to": position.wallet_address, "amount": amount})
        error: ExecutionError | None = None
        try:
            tx_hash = await self._hub_lock.run(
                self._chain_client.hub_address,
                lambda: self._chain_client.submit_protocol_action(action, gas_price_ceiling_wei=ceiling),
                step="gas_topup",
            )
            confirmation = await self._chain_client.await_confirmation(
                tx_hash,
                timeout_seconds=self._confirmation_timeout_seconds,
            )
            # a timed-out top-up was still broadcast, so it is recorded
            if confirmation.status != "failed":
                return Ok(tx_hash)
            error = ExecutionError("transaction_failed", "gas top-up reverted", step="gas_topup", tx_hash=tx_hash)
        except HubWalletBusyError:
            raise
        except ChainRpcError as rpc_error:
            error = ExecutionError(classify_chain_error(str(rpc_error)), str(rpc_error), step="gas_topup")

        if policy == "required":
            return Err(error)
        log_event(
            self._logger,
            level="warning",
            event="gas_topup_skipped",
            message="Gas top-up failed; continuing with protocol step",
            position_id=position.id,
            error_type=error.error_type,
            error=error.message,
        )
        return Ok(None)

    async def _check_hub_balance(self, amount: float, *, step: str, native_needed: float = 0.0) -> ExecutionError | None:
        hub = self._chain_client.hub_address
        usdc_balance = await self._chain_client.get_balance(hub, self._chain.usdc_address)
        if usdc_balance < amount:
            return ExecutionError(
                "insufficient_balance",
                f"hub USDC balance {usdc_balance:.6f} below required {amount:.6f}",
                step=step,
            )
        if native_needed > 0:
            native_balance = await self._chain_client.get_balance(hub, NATIVE_TOKEN)
            if native_balance < native_needed:
                return ExecutionError(
                    "insufficient_balance",
                    f"hub AVAX balance {native_balance:.6f} below required {native_needed:.6f}",
                    step=step,
                )
        return None

    async def _ensure_allowance(self, spender: str, amount: float, ceiling: int, *, step: str) -> ExecutionError | None:
        try:
            await self._hub_lock.run(
                self._chain_client.hub_address,
                lambda: self._chain_client.ensure_allowance(
                    self._chain.usdc_address,
                    spender,
                    amount,
                    gas_price_ceiling_wei=ceiling,
                ),
                step=f"{step}_approve",
            )
        except HubWalletBusyError:
            raise
        except ChainRpcError as error:
            error_type = classify_chain_error(str(error))
            if error_type in {"unknown", "transaction_failed"}:
                error_type = "approval_failed"
            return ExecutionError(error_type, str(error), step=f"{step}_approve")
        return None

    async def _submit_and_confirm(
        self,
        position: UserPosition,
        action: ProtocolAction,
        ceiling: int,
        *,
        step: str,
    ) -> Result[tuple[UserPosition, str], "ExecutionError | IndeterminateError"]:
        position = await self._positions.update(position, pending_step=step, pending_tx_hash=None)
        try:
            tx_hash = await self._hub_lock.run(
                self._chain_client.hub_address,
                lambda: self._chain_client.submit_protocol_action(action, gas_price_ceiling_wei=ceiling),
                step=step,
            )
        except ChainRpcError as error:
            await self._positions.update(position, pending_step=None)
            if isinstance(error, HubWalletBusyError):
                raise
            return Err(ExecutionError(classify_chain_error(str(error)), str(error), step=step))

        position = await self._positions.update(position, pending_tx_hash=tx_hash)
        confirmation = await self._chain_client.await_confirmation(
            tx_hash,
            timeout_seconds=self._confirmation_timeout_seconds,
            confirmations=self._chain.confirmations_for(position.usdc_amount),
        )
        if confirmation.status == "timeout":
            return Err(IndeterminateError(tx_hash, "confirmation timed out; chain state unknown", step=step))

        position = await self._positions.update(position, pending_step=None, pending_tx_hash=None)
        if confirmation.status == "failed":
            message = confirmation.error or "transaction reverted"
            error_type = classify_chain_error(message)
            if error_type in {"unknown", "network_error"}:
                error_type = "transaction_failed"
            return Err(ExecutionError(error_type, message, step=step, tx_hash=tx_hash))
        return Ok((position, tx_hash))

    async def _supply_aave(self, position: UserPosition, ceiling: int) -> StepResult:
        amount = position.usdc_amount
        step = "aave_supply"
        if position.aave_supply_tx_hash:
            return Ok(position)
        if amount <self._chain.aave_min_supply_usd:
            return Err(ExecutionError("unknown", f"amount {amount} below Aave minimum", step=step))

        try:
            error = await self._check_hub_balance(amount, step=step)
            if error is not None:
                return Err(error)
            reserve = await self._chain_client.get_reserve_state(self._chain.usdc_address)
        except ChainRpcError as rpc_error:
            return Err(ExecutionError(classify_chain_error(str(rpc_error)), str(rpc_error), step=step))

        if not reserve.is_active or reserve.is_frozen or reserve.is_paused:
            return Err(
                ExecutionError(
                    "reserve_paused",
                    f"USDC reserve not accepting supply (active={reserve.is_active}, "
                    f"frozen={reserve.is_frozen}, paused={reserve.is_paused})",
                    step=step,
                )
            )
        remaining = reserve.remaining_capacity(self._chain.supply_cap_buffer_pct)
        if remaining is not None and remaining < amount:
            return Err(
                ExecutionError(
                    "supply_cap",
                    f"supply cap leaves {remaining:.2f} USDC, {amount:.2f} requested",
                    step=step,
                )
            )

        error = await self._ensure_allowance(self._chain.aave_pool_address, amount, ceiling, step=step)
        if error is not None:
            return Err(error)

        action = ProtocolAction(
            kind="aave_supply",
            params={"asset": self._chain.usdc_address, "amount": amount, "on_behalf_of": position.wallet_address},
        )
        submitted = await self._submit_and_confirm(position, action, ceiling, step=step)
        if isinstance(submitted, Err):
            return submitted
        position, tx_hash = submitted.value
        position = await self._positions.update(position, **self._confirmed_step_changes(position, step, tx_hash))
        return Ok(position)

    async def _open_gmx_long(self, position: UserPosition, ceiling: int) -> StepResult:
        collateral = position.usdc_amount
        size_usd = round(collateral * self._chain.gmx_leverage, 2)
        step = "gmx_order"
        if position.gmx_order_tx_hash:
            return Ok(await self._debit_ergc(position, ceiling))
        if collateral <self._chain.gmx_min_collateral_usd or size_usd < self._chain.gmx_min_position_usd:
            return Err(
                ExecutionError(
                    "unknown",
                    f"collateral {collateral} or size {size_usd} below GMX minimum",
                    step=step,
                )
            )

        try:
            error = await self._check_hub_balance(
                collateral,
                step=step,
                native_needed=self._chain.gmx_execution_fee_avax,
            )
        except ChainRpcError as rpc_error:
            return Err(ExecutionError(classify_chain_error(str(rpc_error)), str(rpc_error), step=step))
        if error is not None:
            return Err(error)

        error = await self._ensure_allowance(self._chain.gmx_router_address, collateral, ceiling, step=step)
        if error is not None:
            return Err(error)

        action = ProtocolAction(
            kind="gmx_open_long",
            params={
                "receiver": position.wallet_address,
                "market": self._chain.gmx_btc_market_address,
                "collateral_amount": collateral,
                "size_usd": size_usd,
                "execution_fee": self._chain.gmx_execution_fee_avax,
            },
        )
        submitted = await self._submit_and_confirm(position, action, ceiling, step=step)
        if isinstance(submitted, Err):
            return submitted
        position, tx_hash = submitted.value
        position = await self._positions.update(position, **self._confirmed_step_changes(position, step, tx_hash))
        return Ok(await self._debit_ergc(position, ceiling))

    async def _debit_ergc(self, position: UserPosition, ceiling: int) -> UserPosition:
        if position.ergc_debit_tx_hash:
            return position
        debit_amount = float(position.debit_ergc or self._chain.ergc_debit_amount)
        try:
            balance = await self._chain_client.get_balance(position.wallet_address, self._chain.ergc_address)
            if balance < self._chain.ergc_qualifying_balance or debit_amount <= 0:
                return position
            action = ProtocolAction(
                kind="erc20_transfer_from",
                params={
                    "token": self._chain.ergc_address,
                    "from": position.wallet_address,
                    "to": self._chain.ergc_treasury_address or self._chain_client.hub_address,
                    "amount": debit_amount,
                },
            )
            tx_hash = await self._hub_lock.run(
                self._chain_client.hub_address,
                lambda: self._chain_client.submit_protocol_action(action, gas_price_ceiling_wei=ceiling),
                step="ergc_debit",
            )
        except HubWalletBusyError:
            raise
        except ChainRpcError as error:
            log_event(
                self._logger,
                level="warning",
                event="ergc_debit_failed",
                message="ERGC fee debit failed; position unaffected",
                position_id=position.id,
                error=str(error),
            )
            return position
        return await self._positions.update(position, ergc_debit_tx_hash=tx_hash)

    async def _deliver_ergc(self, position: UserPosition, ceiling: int) -> UserPosition:
        """Send purchased ERGC from the hub. One token of each purchase stays in the treasury."""
        amount = self._chain.ergc_delivery_amount
        if not position.ergc_purchase or position.ergc_delivery_tx_hash or amount <= 0:
            return position
        hub = self._chain_client.hub_address
        try:
            balance = await self._chain_client.get_balance(hub, self._chain.ergc_address)
            if balance < amount:
                log_event(
                    self._logger,
                    level="error",
                    event="ergc_delivery_skipped",
                    message="Hub ERGC balance too low to deliver purchased tokens",
                    position_id=position.id,
                    hub_balance=balance,
                    amount=amount,
                )
                return position
            action = ProtocolAction(
                kind="erc20_transfer",
                params={"token": self._chain.ergc_address, "to": position.wallet_address, "amount": amount},
            )
            tx_hash = await self._hub_lock.run(
                hub,
                lambda: self._chain_client.submit_protocol_action(action, gas_price_ceiling_wei=ceiling),
                step="ergc_delivery",
            )
            confirmation = await self._chain_client.await_confirmation(
                tx_hash,
                timeout_seconds=self._confirmation_timeout_seconds,
            )
        except HubWalletBusyError:
            raise
        except ChainRpcError as error:
            log_event(
                self._logger,
                level="error",
                event="ergc_delivery_failed",
                message="ERGC delivery failed; position unaffected",
                position_id=position.id,
                error=str(error),
            )
            return position
        if confirmation.status == "failed":
            log_event(
                self._logger,
                level="error",
                event="ergc_delivery_failed",
                message="ERGC delivery reverted; position unaffected",
                position_id=position.id,
                tx_hash=tx_hash,
                error=confirmation.error,
            )
            return position
        log_event(
            self._logger,
            level="info",
            event="ergc_delivered",
            message="Purchased ERGC sent to user wallet",
            position_id=position.id,
            tx_hash=tx_hash,
            amount=amount,
        )
        return await self._positions.update(position, ergc_delivery_tx_hash=tx_hash)

    def _split_allocation(self, total: float) -> dict[str, tuple[str, float]]:
        return {
            "vault_a": (self._chain.vault_a_address, round(total * self._chain.split_vault_a_pct / 100.0, 6)),
            "vault_b": (self._chain.vault_b_address, round(total * self._chain.split_vault_b_pct / 100.0, 6)),
        }

    def _confirmed_step_changes(self, position: UserPosition, step: str, tx_hash: str) -> dict[str, Any]:
        if step == "aave_supply":
            return {"aave_supply_amount": position.usdc_amount, "aave_supply_tx_hash": tx_hash}
        if step == "gmx_order":
            return {
                "gmx_collateral_amount": position.usdc_amount,
                "gmx_position_size": round(position.usdc_amount * self._chain.gmx_leverage, 2),
                "gmx_leverage": self._chain.gmx_leverage,
                "gmx_order_tx_hash": tx_hash,
            }
        if step.startswith("vault_deposit_"):
            label = step[len("vault_deposit_"):]
            vault_address, amount = self._split_allocation(position.usdc_amount)[label]
            deposits = dict(position.morpho_deposits or {})
            deposits[label] = {"vault": vault_address, "amount": amount, "tx_hash": tx_hash}
            return {
                "morpho_deposits": deposits,
                "morpho_amount": round(sum(float(item["amount"]) for item in deposits.values()), 6),
                "morpho_tx_hash": tx_hash,
            }
        return {}

    def _is_fully_deployed(self, position: UserPosition) -> bool:
        if position.strategy_type == "conservative":
            return bool(position.aave_supply_tx_hash)
        if position.strategy_type == "aggressive":
            return bool(position.gmx_order_tx_hash)
        deposits = position.morpho_deposits or {}
        allocation = self._split_allocation(position.usdc_amount)
        return all(label in deposits for label, (_, amount) in allocation.items() if amount > 0)

    async def _deposit_split(self, position: UserPosition, ceiling: int) -> StepResult:
        for label, (vault_address, amount) in self._split_allocation(position.usdc_amount).items():
            step = f"vault_deposit_{label}"
            if amount <= 0 or label in (position.morpho_deposits or {}):
                continue
            if not vault_address:
                return Err(ExecutionError("unknown", f"{label} address is not configured", step=step))

            try:
                error = await self._check_hub_balance(amount, step=step)
            except ChainRpcError as rpc_error:
                return Err(ExecutionError(classify_chain_error(str(rpc_error)), str(rpc_error), step=step))
            if error is not None:
                return Err(error)

            error = await self._ensure_allowance(vault_address, amount, ceiling, step=step)
            if error is not None:
                return Err(error)

            action = ProtocolAction(
                kind="vault_deposit",
                params={"vault": vault_address, "amount": amount, "receiver": position.wallet_address},
            )
            submitted = await self._submit_and_confirm(position, action, ceiling, step=step)
            if isinstance(submitted, Err):
                return submitted
            position, tx_hash = submitted.value
            position = await self._positions.update(position, **self._confirmed_step_changes(position, step, tx_hash))
        return Ok(position)

    async def reconcile_pending(self, position_id: str, *, timeout_seconds: float) -> ExecutionOutcome:
        """Re-check a submission whose confirmation timed out.

        A confirmed step is recorded and the position goes active once every
        strategy leg is on chain. A revert clears the pending hash and leaves a
        retryable failure. An unknown result changes nothing.
        """
        position = await self._positions.get(position_id)
        if position is None:
            return ExecutionOutcome(kind="invalid", position_id=position_id, message="position not found")
        if not position.pending_tx_hash:
            return ExecutionOutcome(
                kind="requires_recovery",
                position_id=position.id,
                status=position.status,
                message="no pending transaction to reconcile",
            )

        tx_hash = position.pending_tx_hash
        step = position.pending_step or ""
        try:
            confirmation = await self._chain_client.await_confirmation(
                tx_hash,
                timeout_seconds=timeout_seconds,
                confirmations=self._chain.confirmations_for(position.usdc_amount),
            )
        except ChainRpcError as error:
            return ExecutionOutcome(
                kind="indeterminate",
                position_id=position.id,
                status=position.status,
                message=str(error),
            )
        if confirmation.status == "timeout":
            return ExecutionOutcome(
                kind="indeterminate",
                position_id=position.id,
                status=position.status,
                message="transaction still unconfirmed",
            )

        failure_target = "gas_sent_cap_failed" if position.avax_tx_hash else "supply_failed"
        if position.status in PARTIAL_FAILURE_STATUSES:
            failure_target = position.status

        if confirmation.status == "failed":
            message = confirmation.error or "transaction reverted"
            position = await self._positions.transition(
                position,
                failure_target,
                pending_tx_hash=None,
                pending_step=None,
                error_type="transaction_failed",
                error=message,
            )
            return ExecutionOutcome(
                kind="failed",
                position_id=position.id,
                status=position.status,
                error=ExecutionError("transaction_failed", message, step=step, tx_hash=tx_hash),
            )

        position = await self._positions.update(
            position,
            pending_tx_hash=None,
            pending_step=None,
            **self._confirmed_step_changes(position, step, tx_hash),
        )
        log_event(
            self._logger,
            level="info",
            event="pending_transaction_reconciled",
            message="Pending transaction confirmed on chain",
            position_id=position.id,
            tx_hash=tx_hash,
            step=step,
        )
        if not self._is_fully_deployed(position):
            position = await self._positions.transition(
                position,
                failure_target,
                error_type="network_error",
                error=f"{step} confirmed; remaining strategy steps not submitted",
            )
            return ExecutionOutcome(kind="failed", position_id=position.id, status=position.status)

        position = await self._positions.transition(
            position,
            "active",
            executed_at=position.executed_at or now_iso(),
            error=None,
            error_type=None,
        )
        return ExecutionOutcome(kind="success", position_id=position.id, status=position.status)

    async def _fail(self, position: UserPosition, error: ExecutionError | IndeterminateError) -> ExecutionOutcome:
        target = "gas_sent_cap_failed" if position.avax_tx_hash else "supply_failed"
        if isinstance(error, IndeterminateError):
            position = await self._positions.transition(
                position,
                target,
                error_type="network_error",
                error=error.message,
                pending_tx_hash=error.tx_hash,
                pending_step=error.step,
            )
            kind = "indeterminate"
        else:
            position = await self._positions.transition(
                position,
                target,
                error_type=error.error_type,
                error=error.message,
                pending_tx_hash=None,
                pending_step=None,
            )
            kind = "failed"

        details = {
            "position_id": position.id,
            "payment_id": position.payment_id,
            "status": position.status,
            "error_type": position.error_type,
            "step": error.step,
            "avax_tx_hash": position.avax_tx_hash,
        }
        log_event(
            self._logger,
            level="error",
            event="position_partial_failure",
            message="Strategy execution failed",
            **details,
            error=error.message,
        )
        if self._events is not None:
            await guarded_call(
                lambda: self._events.publish_event(
                    level="ERROR",
                    event="position_partial_failure",
                    message="Strategy execution failed",
                    details=details,
                    event_id=f"partial-failure-{position.id}-{position.retry_count}",
                ),
                logger=self._logger,
                event="partial_failure_publish_failed",
                message="Failed to publish partial failure event",
            )
        return ExecutionOutcome(kind=kind, position_id=position.id, status=position.status, error=error)
