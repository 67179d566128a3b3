from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from concierge.common import ExecutionError, IndeterminateError

OutcomeKind = Literal[
    "success",
    "already_complete",
    "requires_recovery",
    "failed",
    "indeterminate",
    "deferred",
    "invalid",
]
GasTopUpPolicy = Literal["best_effort", "required", "skip"]


@dataclass(slots=True, frozen=True)
class ExecutionOutcome:
    kind: OutcomeKind
    position_id: str | None = None
    status: str | None = None
    error: ExecutionError | IndeterminateError | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "position_id": self.position_id,
            "status": self.status,
            "error": self.error.to_dict() if self.error is not None else None,
            "message": self.message,
        }
