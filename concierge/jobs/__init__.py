from .queue import JobQueue, compute_retry_delay_seconds
from .types import ExecutionJob, QueueMetrics, ReprocessResult
from .worker import JobWorker, payment_lock_key

__all__ = [
    "ExecutionJob",
    "JobQueue",
    "JobWorker",
    "QueueMetrics",
    "ReprocessResult",
    "compute_retry_delay_seconds",
    "payment_lock_key",
]
