from __future__ import annotations

import re
from typing import Any

from concierge.common import Err, Ok, Result, ValidationError

from .types import ParsedNote

TOKEN_RE = re.compile(r"^(?P<key>[A-Za-z][A-Za-z_]*):(?P<value>\S+)$")
WALLET_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
EMAIL_RE = re.compile(r"^[^@\s:]+@[^@\s:]+\.[^@\s:]+$")
PURCHASE_TYPE_RE = re.compile(r"^[a-z][a-z_]*$")

KEY_ALIASES = {
    "wallet": "wallet_address",
    "risk": "risk_profile",
    "email": "user_email",
    "purchase_type": "purchase_type",
    "payment_id": "client_reference",
    "paymentid": "client_reference",
    "ergc": "ergc_purchase",
    "debit_ergc": "debit_ergc",
}

FIELD_TOKENS = {
    "wallet_address": "wallet",
    "risk_profile": "risk",
    "user_email": "email",
    "purchase_type": "purchase_type",
    "client_reference": "payment_id",
    "ergc_purchase": "ergc",
    "debit_ergc": "debit_ergc",
}

RISK_ALIASES = {
    "conservative": "conservative",
    "aggressive": "aggressive",
    "split": "split",
    "balanced": "split",
}

DEFAULT_PURCHASE_TYPE = "deposit"

REQUIRED_FIELDS: dict[str, frozenset[str]] = {
    "deposit": frozenset({"wallet_address", "risk_profile"}),
    "ergc": frozenset({"wallet_address"}),
}


def _malformed(message: str, **details: Any) -> Err[ValidationError]:
    return Err(ValidationError(kind="malformed_note", message=message, details=details))


def _coerce_value(field: str, raw: str) -> Result[Any, ValidationError]:
    if field == "wallet_address":
        if not WALLET_RE.match(raw):
            return _malformed("wallet token is not a 20-byte hex address", token="wallet")
        return Ok(raw)
    if field == "risk_profile":
        risk = RISK_ALIASES.get(raw.lower())
        if risk is None:
            return _malformed("risk token is not a known profile", token="risk", value=raw)
        return Ok(risk)
    if field == "user_email":
        if not EMAIL_RE.match(raw):
            return _malformed("email token is not an email address", token="email")
        return Ok(raw)
    if field == "purchase_type":
        purchase_type = raw.lower()
        if not PURCHASE_TYPE_RE.match(purchase_type):
            return _malformed("purchase_type token is invalid", token="purchase_type", value=raw)
        return Ok(purchase_type)
    if field in {"ergc_purchase", "debit_ergc"}:
        if not raw.isdigit():
            return _malformed("token must be a non-negative integer", token=FIELD_TOKENS[field], value=raw)
        return Ok(int(raw))
    return Ok(raw)


def parse_payment_note(note: str | None) -> Result[ParsedNote, ValidationError]:
    values: dict[str, Any] = {}
    for token in (note or "").split():
        match = TOKEN_RE.match(token)
        if match is None:
            continue
        field = KEY_ALIASES.get(match.group("key").lower())
        if field is None:
            continue

        coerced = _coerce_value(field, match.group("value"))
        if isinstance(coerced, Err):
            return coerced
        if field in values and values[field] != coerced.value:
            return _malformed("token appears twice with different values", token=FIELD_TOKENS[field])
        values[field] = coerced.value

    return Ok(ParsedNote(**values))


def required_fields_for(purchase_type: str | None) -> frozenset[str]:
    return REQUIRED_FIELDS.get(purchase_type or DEFAULT_PURCHASE_TYPE, REQUIRED_FIELDS[DEFAULT_PURCHASE_TYPE])


def missing_required_fields(parsed: ParsedNote) -> list[str]:
    required = required_fields_for(parsed.purchase_type)
    return sorted(FIELD_TOKENS[field] for field in required - parsed.present_fields())


def parse_required_note(note: str | None) -> Result[ParsedNote, ValidationError]:
    parsed = parse_payment_note(note)
    if isinstance(parsed, Err):
        return parsed
    missing = missing_required_fields(parsed.value)
    if missing:
        return _malformed("note is missing required tokens", missing=missing)
    return parsed


def format_payment_note(parsed: ParsedNote) -> str:
    tokens: list[str] = []
    for field, token in FIELD_TOKENS.items():
        value = getattr(parsed, field)
        if value is None:
            continue
        tokens.append(f"{token}:{value}")
    return " ".join(tokens)
