from .async_utils import guarded_call
from .errors import (
    AdmissionError,
    ChainRpcError,
    ExecutionError,
    IndeterminateError,
    StoreUnavailableError,
    ValidationError,
)
from .events import EventPublisher
from .logging import log_event
from .result import Err, Ok, Result

__all__ = [
    "AdmissionError",
    "ChainRpcError",
    "Err",
    "EventPublisher",
    "ExecutionError",
    "IndeterminateError",
    "Ok",
    "Result",
    "StoreUnavailableError",
    "ValidationError",
    "guarded_call",
    "log_event",
]
