from __future__ import annotations

from concierge.common.errors import CAPACITY_ERROR_TYPES, RETRYABLE_ERROR_TYPES
from concierge.positions import UserPosition
from concierge.positions.types import IN_FLIGHT_STATUSES, PARTIAL_FAILURE_STATUSES, WAITING_STATUSES
from concierge.storage.helpers import parse_iso_timestamp

from .types import RecoveryPlan


def _age_seconds(value: str | None, now: float) -> float:
    timestamp = parse_iso_timestamp(value)
    if timestamp is None:
        return 0.0
    return max(0.0, now - timestamp)


def plan_recovery_action(
    position: UserPosition,
    *,
    now: float,
    stale_seconds: float,
    refund_cooldown_seconds: float,
    pending_expiry_seconds: float,
    max_retries: int,
) -> RecoveryPlan:
    """Choose the single next recovery step for a position.

    Unconfirmed submissions are always reconciled before anything that could
    move funds again.
    """
    idle_seconds = _age_seconds(position.updated_at, now)

    if position.status == "failed_refund_pending":
        if position.refund_tx_hash:
            return RecoveryPlan("confirm_refund", "refund sent, awaiting confirmation")
        if position.pending_step:
            return RecoveryPlan("escalate", "refund transfer state unknown")
        return RecoveryPlan("refund", "refund requested but not sent")
    if position.is_terminal:
        return RecoveryPlan("skip", "terminal")
    if position.pending_tx_hash:
        return RecoveryPlan("reconcile", f"unconfirmed {position.pending_step or 'transaction'}")

    if position.status in WAITING_STATUSES:
        if _age_seconds(position.created_at, now) >= pending_expiry_seconds:
            return RecoveryPlan("expire", "pending past expiry")
        return RecoveryPlan("skip", "pending")

    if position.status in IN_FLIGHT_STATUSES:
        if idle_seconds < stale_seconds:
            return RecoveryPlan("skip", "execution in progress")
        if position.pending_step:
            return RecoveryPlan("escalate", f"stale {position.pending_step} without a transaction hash")
        return RecoveryPlan("mark_failed", "execution stalled")

    if position.status in PARTIAL_FAILURE_STATUSES:
        if position.pending_step:
            return RecoveryPlan("escalate", f"{position.pending_step} submission state unknown")
        if position.error_type in RETRYABLE_ERROR_TYPES and position.retry_count < max_retries:
            return RecoveryPlan("retry", f"retryable {position.error_type}")
        if idle_seconds < refund_cooldown_seconds:
            return RecoveryPlan("skip", "refund cooldown")
        if position.error_type in CAPACITY_ERROR_TYPES:
            return RecoveryPlan("refund", f"protocol capacity: {position.error_type}")
        if position.error_type in RETRYABLE_ERROR_TYPES:
            return RecoveryPlan("refund", "retries exhausted")
        return RecoveryPlan("refund", f"unrecoverable {position.error_type or 'unknown'} error")

    if position.status == "failed":
        if idle_seconds < refund_cooldown_seconds:
            return RecoveryPlan("skip", "refund cooldown")
        return RecoveryPlan("refund", "failed before execution")

    return RecoveryPlan("skip", position.status)
