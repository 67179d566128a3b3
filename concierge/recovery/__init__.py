from .planner import plan_recovery_action
from .refunds import ProviderRefund, ProviderRefundClient, RefundProviderError
from .service import RecoveryService
from .types import RecoveryPlan, RecoveryReport, RefundOutcome

__all__ = [
    "ProviderRefund",
    "ProviderRefundClient",
    "RecoveryPlan",
    "RecoveryReport",
    "RecoveryService",
    "RefundOutcome",
    "RefundProviderError",
    "plan_recovery_action",
]
