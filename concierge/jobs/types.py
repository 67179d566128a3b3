from __future__ import annotations

import secrets
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

JobState = Literal["queued", "processing", "succeeded", "dead-lettered"]
NackResult = Literal["discarded", "retry_scheduled", "dead_lettered", "deferred"]

JOB_STATES: tuple[str, ...] = ("queued", "processing", "succeeded", "dead-lettered")


def new_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass(slots=True, frozen=True)
class ExecutionJob:
    job_id: str
    payment_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 5
    enqueued_at: str = ""
    last_attempt_at: str | None = None
    state: JobState = "queued"
    last_error: str | None = None
    available_at: float = 0.0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def to_record(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "ExecutionJob":
        state = str(record.get("state") or "queued")
        return cls(
            job_id=str(record["job_id"]),
            payment_id=str(record["payment_id"]),
            payload=dict(record.get("payload") or {}),
            attempts=int(record.get("attempts") or 0),
            max_attempts=int(record.get("max_attempts") or 5),
            enqueued_at=str(record.get("enqueued_at") or ""),
            last_attempt_at=record.get("last_attempt_at") or None,
            state=state if state in JOB_STATES else "queued",  # type: ignore[arg-type]
            last_error=record.get("last_error") or None,
            available_at=float(record.get("available_at") or 0.0),
        )


@dataclass(slots=True, frozen=True)
class QueueMetrics:
    depth: int
    ready: int
    delayed: int
    processing: int
    dead_letter: int
    oldest_job_age_seconds: float
    by_state: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class ReprocessResult:
    job_id: str
    status: Literal["requeued", "not_found", "not_dead_lettered"]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
