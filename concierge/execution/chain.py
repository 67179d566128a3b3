from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

ActionKind = Literal[
    "native_transfer",
    "erc20_transfer",
    "erc20_transfer_from",
    "aave_supply",
    "gmx_open_long",
    "vault_deposit",
]
ConfirmationStatus = Literal["success", "failed", "timeout"]

NATIVE_TOKEN = "native"


@dataclass(slots=True, frozen=True)
class ConfirmationResult:
    status: ConfirmationStatus
    tx_hash: str
    block_number: int | None = None
    error: str | None = None


@dataclass(slots=True, frozen=True)
class ReserveState:
    is_active: bool
    is_frozen: bool
    is_paused: bool
    supply_cap: int
    total_supplied: float

    def remaining_capacity(self, buffer_pct: float) -> float | None:
        if self.supply_cap <= 0:
            return None
        usable_cap = self.supply_cap * (1.0 - buffer_pct / 100.0)
        return max(0.0, usable_cap - self.total_supplied)


@dataclass(slots=True, frozen=True)
class ProtocolAction:
    kind: ActionKind
    params: dict[str, Any] = field(default_factory=dict)


class ChainClient(Protocol):
    @property
    def hub_address(self) -> str:
        ...

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def healthcheck(self) -> None:
        ...

    async def get_balance(self, address: str, token: str) -> float:
        ...

    async def ensure_allowance(self, token: str, spender: str, amount: float, *, gas_price_ceiling_wei: int) -> str | None:
        ...

    async def submit_protocol_action(self, action: ProtocolAction, *, gas_price_ceiling_wei: int) -> str:
        ...

    async def await_confirmation(self, tx_hash: str, *, timeout_seconds: float, confirmations: int = 1) -> ConfirmationResult:
        ...

    async def get_reserve_state(self, asset: str) -> ReserveState:
        ...

    async def read_position_amount(self, position: dict[str, Any]) -> float | None:
        ...
