"""
Tests for webhook validation: signature gate, body shape, note extraction and
the order/tender cross-reference.
"""
import json

import pytest

from concierge.common import Err, Ok
from concierge.webhook import WebhookValidator, compute_signature

KEY = "whk-secret"
URL = "https://hooks.example.com/webhooks/square"
WALLET = "0x" + "12" * 20
NOTE = f"wallet:{WALLET} risk:conservative email:user@example.com"


def _payment_body(note=NOTE, status="COMPLETED", **payment_extra):
    payment = {
        "id": "pay-1",
        "status": status,
        "note": note,
        "order_id": "ord-1",
        "amount_money": {"amount": 2500, "currency": "usd"},
        **payment_extra,
    }
    return {"type": "payment.updated", "event_id": "evt-1", "data": {"object": {"payment": payment}}}


def _order_body(tenders, state="COMPLETED"):
    return {
        "type": "order.updated",
        "event_id": "evt-2",
        "data": {"object": {"order": {"id": "ord-9", "state": state, "tenders": tenders}}},
    }


def _signed(body):
    raw = json.dumps(body).encode("utf-8") if not isinstance(body, bytes) else body
    return raw, {"x-square-hmacsha256-signature": compute_signature(KEY, URL, raw)}


@pytest.fixture
def validator():
    return WebhookValidator(signature_key=KEY, notification_url=URL)


class TestSignatureGate:
    def test_valid_payment_event(self, validator):
        raw, headers = _signed(_payment_body())

        result = validator.validate(raw, headers)

        assert isinstance(result, Ok)
        event = result.value
        assert event.payment_id == "pay-1"
        assert event.order_id == "ord-1"
        assert event.amount_cents == 2500
        assert event.currency == "USD"
        assert event.status == "completed"
        assert event.wallet_address == WALLET
        assert event.risk_profile == "conservative"
        assert event.purchase_type == "deposit"
        assert event.resolved_via == "payment"
        assert event.signature_bypassed is False

    def test_bad_signature_rejected(self, validator):
        raw = json.dumps(_payment_body()).encode("utf-8")

        result = validator.validate(raw, {"x-square-hmacsha256-signature": "bogus"})

        assert isinstance(result, Err)
        assert result.error.kind == "bad_signature"
        assert result.error.details == {"has_signature": True}

    def test_emergency_bypass_accepts_and_flags(self, validator):
        raw = json.dumps(_payment_body()).encode("utf-8")

        result = validator.validate(raw, {}, allow_signature_bypass=True)

        assert isinstance(result, Ok)
        assert result.value.signature_bypassed is True


class TestBodyShape:
    def test_invalid_json(self, validator):
        raw, headers = _signed(b"{not json")

        result = validator.validate(raw, headers)

        assert result.error.kind == "malformed_body"

    def test_non_object_json(self, validator):
        raw, headers = _signed(b"[1, 2]")

        assert validator.validate(raw, headers).error.kind == "malformed_body"

    def test_unsupported_event_type(self, validator):
        raw, headers = _signed({"type": "refund.created", "data": {}})

        result = validator.validate(raw, headers)

        assert result.error.kind == "unsupported_event"
        assert result.error.details["event_type"] == "refund.created"

    def test_payment_without_id(self, validator):
        body = _payment_body()
        del body["data"]["object"]["payment"]["id"]
        raw, headers = _signed(body)

        assert validator.validate(raw, headers).error.kind == "malformed_body"


class TestNoteRequirements:
    def test_completed_payment_missing_risk_is_malformed(self, validator):
        raw, headers = _signed(_payment_body(note=f"wallet:{WALLET}"))

        result = validator.validate(raw, headers)

        assert result.error.kind == "malformed_note"
        assert result.error.details["payment_id"] == "pay-1"
        assert result.error.details["missing"] == ["risk"]

    def test_pending_payment_without_note_is_accepted(self, validator):
        raw, headers = _signed(_payment_body(note="", status="APPROVED"))

        result = validator.validate(raw, headers)

        assert isinstance(result, Ok)
        assert result.value.status == "pending"
        assert result.value.wallet_address is None


class TestTenderCrossReference:
    def test_payment_event_falls_back_to_matching_tender_note(self, validator):
        body = _payment_body(note="")
        body["data"]["object"]["order"] = {
            "tenders": [
                {"payment_id": "pay-other", "note": "wallet:0x" + "99" * 20 + " risk:aggressive"},
                {"payment_id": "pay-1", "note": NOTE},
            ]
        }
        raw, headers = _signed(body)

        result = validator.validate(raw, headers)

        assert isinstance(result, Ok)
        assert result.value.resolved_via == "tender"
        assert result.value.risk_profile == "conservative"

    def test_order_event_uses_tender_with_structured_note(self, validator):
        body = _order_body(
            [
                {"payment_id": "pay-a", "note": "thank you", "amount_money": {"amount": 100, "currency": "USD"}},
                {"payment_id": "pay-b", "note": NOTE, "amount_money": {"amount": 5000, "currency": "USD"}},
            ]
        )
        raw, headers = _signed(body)

        result = validator.validate(raw, headers)

        assert isinstance(result, Ok)
        event = result.value
        assert event.payment_id == "pay-b"
        assert event.order_id == "ord-9"
        assert event.amount_cents == 5000
        assert event.status == "completed"
        assert event.resolved_via == "tender"

    def test_completed_order_without_structured_tender_is_unresolved(self, validator):
        raw, headers = _signed(_order_body([{"payment_id": "pay-a"}, {"note": NOTE}]))

        result = validator.validate(raw, headers)

        assert isinstance(result, Err)
        assert result.error.kind == "unresolved_payment"
        assert result.error.details["order_id"] == "ord-9"
        assert result.error.details["event_id"] == "evt-2"
        assert result.error.details["event_type"] == "order.updated"

    def test_open_order_without_note_is_acknowledged_as_pending(self, validator):
        raw, headers = _signed(_order_body([{"payment_id": "pay-a"}], state="OPEN"))

        result = validator.validate(raw, headers)

        assert isinstance(result, Ok)
        assert result.value.payment_id == "pay-a"
        assert result.value.status == "pending"
