from __future__ import annotations

import json
from typing import Any, Mapping

from concierge.common import Err, Ok, Result, ValidationError
from concierge.storage.helpers import now_iso

from .notes import DEFAULT_PURCHASE_TYPE, parse_payment_note, parse_required_note
from .signature import extract_signature, verify_signature
from .types import SUPPORTED_EVENT_TYPES, ParsedNote, PaymentEvent, normalize_payment_status


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _amount_cents(payment: dict[str, Any]) -> tuple[int, str]:
    money = _as_dict(payment.get("amount_money")) or _as_dict(payment.get("total_money"))
    try:
        amount = int(money.get("amount") or 0)
    except (TypeError, ValueError):
        amount = 0
    return max(0, amount), str(money.get("currency") or "USD").upper()


class WebhookValidator:
    def __init__(self, *, signature_key: str, notification_url: str) -> None:
        self._signature_key = signature_key
        self._notification_url = notification_url

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        return verify_signature(
            signature_key=self._signature_key,
            notification_url=self._notification_url,
            raw_body=raw_body,
            provided_signature=extract_signature(headers),
        )

    def validate(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        *,
        allow_signature_bypass: bool = False,
    ) -> Result[PaymentEvent, ValidationError]:
        signature_ok = self.verify(raw_body, headers)
        if not signature_ok and not allow_signature_bypass:
            return Err(
                ValidationError(
                    kind="bad_signature",
                    message="Webhook signature does not match the configured notification URL.",
                    details={"has_signature": extract_signature(headers) is not None},
                )
            )

        try:
            body = json.loads(raw_body)
        except (TypeError, ValueError, UnicodeDecodeError):
            return Err(ValidationError(kind="malformed_body", message="Webhook body is not valid JSON."))
        if not isinstance(body, dict):
            return Err(ValidationError(kind="malformed_body", message="Webhook body must be a JSON object."))

        event_type = str(body.get("type") or "")
        if event_type not in SUPPORTED_EVENT_TYPES:
            return Err(
                ValidationError(
                    kind="unsupported_event",
                    message="Webhook event type is not handled.",
                    details={"event_type": event_type},
                )
            )

        data_object = _as_dict(_as_dict(body.get("data")).get("object"))
        if event_type == "order.updated":
            extracted = self._extract_from_order(data_object)
        else:
            extracted = self._extract_from_payment(data_object)
        if isinstance(extracted, Err):
            error = extracted.error
            details = {**error.details, "event_id": str(body.get("event_id") or ""), "event_type": event_type}
            return Err(ValidationError(kind=error.kind, message=error.message, details=details))

        payment, note, resolved_via, order_id = extracted.value
        status = normalize_payment_status(payment.get("status") or data_object.get("state"))
        parsed = parse_required_note(note) if status == "completed" else parse_payment_note(note)
        if isinstance(parsed, Err):
            details = dict(parsed.error.details)
            details["payment_id"] = payment.get("id")
            return Err(ValidationError(kind=parsed.error.kind, message=parsed.error.message, details=details))

        fields: ParsedNote = parsed.value
        amount_cents, currency = _amount_cents(payment)
        return Ok(
            PaymentEvent(
                event_id=str(body.get("event_id") or ""),
                event_type=event_type,
                payment_id=str(payment.get("id")),
                order_id=order_id,
                amount_cents=amount_cents,
                currency=currency,
                status=status,
                note=note,
                wallet_address=fields.wallet_address,
                risk_profile=fields.risk_profile,
                user_email=fields.user_email,
                purchase_type=fields.purchase_type or DEFAULT_PURCHASE_TYPE,
                received_at=now_iso(),
                client_reference=fields.client_reference,
                ergc_purchase=fields.ergc_purchase,
                debit_ergc=fields.debit_ergc,
                resolved_via=resolved_via,
                signature_bypassed=not signature_ok,
                raw_summary={
                    "merchant_id": body.get("merchant_id"),
                    "created_at": body.get("created_at"),
                    "provider_status": payment.get("status"),
                },
            )
        )

    def _extract_from_payment(
        self,
        data_object: dict[str, Any],
    ) -> Result[tuple[dict[str, Any], str, str, str | None], ValidationError]:
        payment = _as_dict(data_object.get("payment"))
        if not payment.get("id"):
            return Err(ValidationError(kind="malformed_body", message="Payment event carries no payment id."))
        order_id = payment.get("order_id") or None
        note = str(payment.get("note") or "")
        if note.strip():
            return Ok((payment, note, "payment", order_id))

        # payment.* without a note may still carry the order, check its tenders
        order = _as_dict(data_object.get("order"))
        for tender in order.get("tenders") or []:
            tender = _as_dict(tender)
            if tender.get("payment_id") != payment.get("id"):
                continue
            tender_note = self._tender_note(tender)
            if tender_note:
                return Ok((payment, tender_note, "tender", order_id))
        return Ok((payment, note, "payment", order_id))

    def _extract_from_order(
        self,
        data_object: dict[str, Any],
    ) -> Result[tuple[dict[str, Any], str, str, str | None], ValidationError]:
        order = _as_dict(data_object.get("order")) or _as_dict(data_object.get("order_updated"))
        order_id = order.get("id") or order.get("order_id") or None
        fallback: tuple[dict[str, Any], str] | None = None

        for tender in order.get("tenders") or []:
            tender = _as_dict(tender)
            payment_id = tender.get("payment_id")
            if not payment_id:
                continue
            payment = dict(_as_dict(tender.get("payment")))
            payment["id"] = payment_id
            payment.setdefault("status", order.get("state"))
            payment.setdefault("amount_money", tender.get("amount_money"))
            note = self._tender_note(tender)
            if not note:
                fallback = fallback or (payment, "")
                continue
            parsed = parse_payment_note(note)
            if isinstance(parsed, Ok) and not parsed.value.present_fields() - {"purchase_type"}:
                fallback = fallback or (payment, note)
                continue
            return Ok((payment, note, "tender", order_id))

        if fallback is not None and normalize_payment_status(fallback[0].get("status")) != "completed":
            return Ok((fallback[0], fallback[1], "tender", order_id))
        return Err(
            ValidationError(
                kind="unresolved_payment",
                message="Order event has no tender carrying a payment id and structured note.",
                details={"order_id": order_id},
            )
        )

    @staticmethod
    def _tender_note(tender: dict[str, Any]) -> str:
        payment = _as_dict(tender.get("payment"))
        return str(payment.get("note") or tender.get("note") or "").strip()
