from __future__ import annotations

import hashlib
import logging
from typing import Any

from concierge.common import log_event

from .chain import ConfirmationResult, ProtocolAction, ReserveState

DRY_RUN_HUB_ADDRESS = "0x000000000000000000000000000000000000d2a1"


class DryRunChainClient:
    def __init__(self, logger: logging.Logger, *, hub_balance: float = 1_000_000.0) -> None:
        self._logger = logger
        self._hub_balance = hub_balance
        self._submitted = 0

    @property
    def hub_address(self) -> str:
        return DRY_RUN_HUB_ADDRESS

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def healthcheck(self) -> None:
        return None

    async def get_balance(self, address: str, token: str) -> float:
        if address.lower() == DRY_RUN_HUB_ADDRESS:
            return self._hub_balance
        return 0.0

    async def ensure_allowance(
        self,
        token: str,
        spender: str,
        amount: float,
        *,
        gas_price_ceiling_wei: int,
    ) -> str | None:
        return None

    async def submit_protocol_action(self, action: ProtocolAction, *, gas_price_ceiling_wei: int) -> str:
        self._submitted += 1
        seed = f"{action.kind}:{sorted(action.params.items())}:{self._submitted}"
        tx_hash = "0x" + hashlib.sha256(seed.encode("utf-8")).hexdigest()
        log_event(
            self._logger,
            level="info",
            event="dry_run_tx",
            message="Dry-run transaction recorded",
            kind=action.kind,
            tx_hash=tx_hash,
            params=action.params,
        )
        return tx_hash

    async def await_confirmation(
        self,
        tx_hash: str,
        *,
        timeout_seconds: float,
        confirmations: int = 1,
    ) -> ConfirmationResult:
        return ConfirmationResult(status="success", tx_hash=tx_hash, block_number=0)

    async def get_reserve_state(self, asset: str) -> ReserveState:
        return ReserveState(is_active=True, is_frozen=False, is_paused=False, supply_cap=0, total_supplied=0.0)

    async def read_position_amount(self, position: dict[str, Any]) -> float | None:
        return None
