from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

ValidationErrorKind = Literal[
    "bad_signature",
    "unresolved_payment",
    "malformed_note",
    "malformed_body",
    "unsupported_event",
]
AdmissionErrorKind = Literal["rate_limited", "duplicate", "replayed_signature", "not_completed"]
ErrorType = Literal[
    "insufficient_balance",
    "supply_cap",
    "reserve_paused",
    "network_error",
    "approval_failed",
    "transaction_failed",
    "unknown",
]

ERROR_TYPES: tuple[str, ...] = (
    "insufficient_balance",
    "supply_cap",
    "reserve_paused",
    "network_error",
    "approval_failed",
    "transaction_failed",
    "unknown",
)
CAPACITY_ERROR_TYPES = frozenset({"supply_cap", "reserve_paused"})
RETRYABLE_ERROR_TYPES = frozenset({"network_error", "transaction_failed", "approval_failed"})


@dataclass(slots=True, frozen=True)
class ValidationError:
    kind: ValidationErrorKind
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class AdmissionError:
    kind: AdmissionErrorKind
    message: str
    retry_after_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class ExecutionError:
    error_type: ErrorType
    message: str
    step: str = ""
    tx_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class IndeterminateError:
    tx_hash: str
    message: str
    step: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class StoreUnavailableError(RuntimeError):
    pass


class ChainRpcError(RuntimeError):
    def __init__(self, message: str, *, method: str = "") -> None:
        super().__init__(message)
        self.method = method


def normalize_error_type(value: Any) -> ErrorType:
    candidate = str(value or "").strip().lower()
    if candidate in ERROR_TYPES:
        return candidate  # type: ignore[return-value]
    return "unknown"


_SUPPLY_CAP_MARKERS = ("supply cap", "supply_cap", "cap exceeded", "supply_cap_exceeded")
_RESERVE_PAUSED_MARKERS = ("reserve paused", "reserve_paused", "paused", "reserve frozen", "frozen", "reserve inactive")
_BALANCE_MARKERS = ("insufficient funds", "insufficient balance", "exceeds balance", "balance too low")
_APPROVAL_MARKERS = ("approval", "allowance", "approve")
_NETWORK_MARKERS = (
    "network",
    "timeout",
    "timed out",
    "econnrefused",
    "econnreset",
    "connection refused",
    "connection reset",
    "too many requests",
)
# HTTP status codes count only as standalone tokens, never inside hashes or amounts
_HTTP_STATUS_RE = re.compile(r"(?<![\w.])(?:429|502|503)(?!\w|\.\d)")
_HEX_RE = re.compile(r"0x[0-9a-f]+")
_REVERT_MARKERS = ("revert", "failed", "execution reverted")

# Aave v3 pool error codes surfaced as bare revert reasons
_AAVE_SUPPLY_CAP_CODES = {"51"}
_AAVE_RESERVE_STATE_CODES = {"27", "28", "91"}


def classify_chain_error(message: str) -> ErrorType:
    lowered = (message or "").strip().lower()
    if not lowered:
        return "unknown"

    reason = lowered.rsplit(":", 1)[-1].strip().strip("'\"")
    if reason in _AAVE_SUPPLY_CAP_CODES or any(marker in lowered for marker in _SUPPLY_CAP_MARKERS):
        return "supply_cap"
    if reason in _AAVE_RESERVE_STATE_CODES or any(marker in lowered for marker in _RESERVE_PAUSED_MARKERS):
        return "reserve_paused"
    if any(marker in lowered for marker in _BALANCE_MARKERS):
        return "insufficient_balance"
    if any(marker in lowered for marker in _APPROVAL_MARKERS):
        return "approval_failed"
    if any(marker in lowered for marker in _NETWORK_MARKERS) or _HTTP_STATUS_RE.search(_HEX_RE.sub(" ", lowered)):
        return "network_error"
    if any(marker in lowered for marker in _REVERT_MARKERS):
        return "transaction_failed"
    return "unknown"
