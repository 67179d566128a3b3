from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

RecoveryAction = Literal[
    "confirm_refund",
    "reconcile",
    "expire",
    "mark_failed",
    "escalate",
    "refund",
    "retry",
    "skip",
]
RefundStatus = Literal[
    "sent",
    "confirmed",
    "already_refunded",
    "not_found",
    "not_eligible",
    "nothing_to_refund",
    "busy",
    "failed",
]


@dataclass(slots=True, frozen=True)
class RecoveryPlan:
    action: RecoveryAction
    reason: str


@dataclass(slots=True, frozen=True)
class RefundOutcome:
    position_id: str
    status: RefundStatus
    refund_tx_hash: str | None = None
    refund_amount: float | None = None
    position_status: str | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class RecoveryReport:
    scanned: int = 0
    actions: dict[str, list[str]] = field(default_factory=dict)
    refunds: list[RefundOutcome] = field(default_factory=list)
    discrepancies: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def record(self, action: str, position_id: str) -> None:
        self.actions.setdefault(action, []).append(position_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "actions": {action: list(ids) for action, ids in self.actions.items()},
            "refunds": [outcome.to_dict() for outcome in self.refunds],
            "discrepancies": list(self.discrepancies),
            "errors": list(self.errors),
        }
