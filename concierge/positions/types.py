from __future__ import annotations

import secrets
import time
from dataclasses import asdict, dataclass, fields
from typing import Any, Literal

PositionStatus = Literal[
    "pending",
    "pending_email",
    "executing",
    "avax_sent",
    "active",
    "supply_failed",
    "gas_sent_cap_failed",
    "failed_refund_pending",
    "failed",
    "withdrawn",
    "closed",
]
StrategyType = Literal["conservative", "aggressive", "split"]

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"pending_email", "executing", "failed"}),
    "pending_email": frozenset({"pending", "executing", "failed"}),
    "executing": frozenset({"avax_sent", "active", "supply_failed", "gas_sent_cap_failed", "failed"}),
    "avax_sent": frozenset({"active", "supply_failed", "gas_sent_cap_failed", "failed"}),
    "active": frozenset({"withdrawn", "closed"}),
    "supply_failed": frozenset({"executing", "active", "failed_refund_pending", "failed"}),
    "gas_sent_cap_failed": frozenset({"executing", "active", "failed_refund_pending", "failed"}),
    "failed": frozenset({"failed_refund_pending"}),
    "failed_refund_pending": frozenset({"closed"}),
    "withdrawn": frozenset(),
    "closed": frozenset(),
}

PARTIAL_FAILURE_STATUSES = frozenset({"supply_failed", "gas_sent_cap_failed"})
IN_FLIGHT_STATUSES = frozenset({"executing", "avax_sent"})
WAITING_STATUSES = frozenset({"pending", "pending_email"})
SCANNABLE_STATUSES: tuple[str, ...] = (
    "pending",
    "pending_email",
    "executing",
    "avax_sent",
    "supply_failed",
    "gas_sent_cap_failed",
    "failed",
    "failed_refund_pending",
)

# fields that identify a position for its whole life
IMMUTABLE_FIELDS = ("id", "payment_id", "user_email", "wallet_address", "strategy_type", "usdc_amount", "created_at")


class InvalidTransitionError(ValueError):
    def __init__(self, position_id: str, current: str, target: str) -> None:
        super().__init__(f"Position {position_id} cannot move from {current} to {target}.")
        self.position_id = position_id
        self.current = current
        self.target = target


def generate_position_id() -> str:
    return f"pos_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass(slots=True, frozen=True)
class UserPosition:
    id: str
    payment_id: str
    user_email: str | None
    wallet_address: str
    strategy_type: StrategyType
    usdc_amount: float
    status: PositionStatus = "pending"
    aave_supply_amount: float | None = None
    aave_supply_tx_hash: str | None = None
    gmx_collateral_amount: float | None = None
    gmx_position_size: float | None = None
    gmx_leverage: float | None = None
    gmx_order_tx_hash: str | None = None
    morpho_amount: float | None = None
    morpho_tx_hash: str | None = None
    morpho_deposits: dict[str, Any] | None = None
    avax_tx_hash: str | None = None
    ergc_debit_tx_hash: str | None = None
    ergc_delivery_tx_hash: str | None = None
    pending_tx_hash: str | None = None
    pending_step: str | None = None
    refund_tx_hash: str | None = None
    refund_amount: float | None = None
    refunded_at: str | None = None
    retry_count: int = 0
    error_type: str | None = None
    error: str | None = None
    created_at: str = ""
    updated_at: str = ""
    executed_at: str | None = None
    closed_at: str | None = None
    integrity_hash: str = ""
    client_reference: str | None = None
    debit_ergc: int | None = None
    ergc_purchase: int | None = None

    @property
    def is_terminal(self) -> bool:
        if self.status in {"closed", "withdrawn"}:
            return True
        return self.status == "failed_refund_pending" and bool(self.refund_tx_hash)

    @property
    def deployed_amount(self) -> float:
        deployed = (self.aave_supply_amount or 0.0) + (self.gmx_collateral_amount or 0.0) + (self.morpho_amount or 0.0)
        return round(min(self.usdc_amount, deployed), 6)

    def immutable_fields(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in IMMUTABLE_FIELDS}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "UserPosition":
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in payload.items() if key in known}
        values["usdc_amount"] = float(values.get("usdc_amount") or 0.0)
        values["retry_count"] = int(values.get("retry_count") or 0)
        return cls(**values)
