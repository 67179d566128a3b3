from .bounces import BounceRecord, EmailBounceTracker, bounce_retry_delay_seconds
from .store import PositionStore, compute_integrity_hash, normalize_address, normalize_email
from .types import (
    ALLOWED_TRANSITIONS,
    InvalidTransitionError,
    PositionStatus,
    StrategyType,
    UserPosition,
    can_transition,
    generate_position_id,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "BounceRecord",
    "EmailBounceTracker",
    "InvalidTransitionError",
    "PositionStatus",
    "PositionStore",
    "StrategyType",
    "UserPosition",
    "bounce_retry_delay_seconds",
    "can_transition",
    "compute_integrity_hash",
    "generate_position_id",
    "normalize_address",
    "normalize_email",
]
