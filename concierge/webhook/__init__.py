from .notes import format_payment_note, missing_required_fields, parse_payment_note, parse_required_note
from .signature import canonicalize_notification_url, compute_signature, extract_signature, verify_signature
from .types import ParsedNote, PaymentEvent, normalize_payment_status
from .validator import WebhookValidator

__all__ = [
    "ParsedNote",
    "PaymentEvent",
    "WebhookValidator",
    "canonicalize_notification_url",
    "compute_signature",
    "extract_signature",
    "format_payment_note",
    "missing_required_fields",
    "normalize_payment_status",
    "parse_payment_note",
    "parse_required_note",
    "verify_signature",
]
