from .idempotency import IdempotencyRecord, IdempotencyStore, new_owner_token, signature_digest
from .rate_limit import (
    API_LIMIT,
    AdaptiveTighteningRecord,
    LimitRule,
    RateLimitDecision,
    RateLimiter,
    RateLimitWindow,
    TighteningPolicy,
    webhook_limit,
)
from .unresolved import UnresolvedPaymentBuffer
from .service import AdmissionService

__all__ = [
    "API_LIMIT",
    "AdaptiveTighteningRecord",
    "AdmissionService",
    "IdempotencyRecord",
    "IdempotencyStore",
    "LimitRule",
    "RateLimitDecision",
    "RateLimitWindow",
    "RateLimiter",
    "TighteningPolicy",
    "UnresolvedPaymentBuffer",
    "new_owner_token",
    "signature_digest",
    "webhook_limit",
]
