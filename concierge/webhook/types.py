from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

EventType = Literal["payment.created", "payment.updated", "order.updated"]
PaymentStatus = Literal["pending", "completed", "failed", "canceled"]
RiskProfile = Literal["conservative", "aggressive", "split"]

SUPPORTED_EVENT_TYPES = frozenset({"payment.created", "payment.updated", "order.updated"})

PROVIDER_STATUS_MAP: dict[str, str] = {
    "APPROVED": "pending",
    "PENDING": "pending",
    "OPEN": "pending",
    "COMPLETED": "completed",
    "FAILED": "failed",
    "CANCELED": "canceled",
    "CANCELLED": "canceled",
}


def normalize_payment_status(value: Any) -> str:
    return PROVIDER_STATUS_MAP.get(str(value or "").strip().upper(), "pending")


@dataclass(slots=True, frozen=True)
class ParsedNote:
    wallet_address: str | None = None
    risk_profile: str | None = None
    user_email: str | None = None
    purchase_type: str | None = None
    client_reference: str | None = None
    ergc_purchase: int | None = None
    debit_ergc: int | None = None

    def present_fields(self) -> set[str]:
        return {name for name, value in asdict(self).items() if value is not None}


@dataclass(slots=True, frozen=True)
class PaymentEvent:
    event_id: str
    event_type: str
    payment_id: str | None
    order_id: str | None
    amount_cents: int
    currency: str
    status: str
    note: str
    wallet_address: str | None
    risk_profile: str | None
    user_email: str | None
    purchase_type: str
    received_at: str
    client_reference: str | None = None
    ergc_purchase: int | None = None
    debit_ergc: int | None = None
    resolved_via: str = "payment"
    signature_bypassed: bool = False
    raw_summary: dict[str, Any] = field(default_factory=dict)

    @property
    def amount_usd(self) -> float:
        return self.amount_cents / 100.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PaymentEvent":
        return cls(
            event_id=str(payload.get("event_id") or ""),
            event_type=str(payload.get("event_type") or ""),
            payment_id=payload.get("payment_id") or None,
            order_id=payload.get("order_id") or None,
            amount_cents=int(payload.get("amount_cents") or 0),
            currency=str(payload.get("currency") or "USD"),
            status=str(payload.get("status") or "pending"),
            note=str(payload.get("note") or ""),
            wallet_address=payload.get("wallet_address") or None,
            risk_profile=payload.get("risk_profile") or None,
            user_email=payload.get("user_email") or None,
            purchase_type=str(payload.get("purchase_type") or "deposit"),
            received_at=str(payload.get("received_at") or ""),
            client_reference=payload.get("client_reference") or None,
            ergc_purchase=payload.get("ergc_purchase"),
            debit_ergc=payload.get("debit_ergc"),
            resolved_via=str(payload.get("resolved_via") or "payment"),
            signature_bypassed=bool(payload.get("signature_bypassed", False)),
            raw_summary=dict(payload.get("raw_summary") or {}),
        )
