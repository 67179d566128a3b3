from .logging import JsonFormatter, setup_logger
from .settings import AppSettings, RuntimeConfig

__all__ = [
    "AppSettings",
    "JsonFormatter",
    "RuntimeConfig",
    "setup_logger",
]
