from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, TypeVar

from .logging import log_event

T = TypeVar("T")


async def guarded_call(
    action: Callable[[], Awaitable[T] | T],
    *,
    logger: logging.Logger,
    event: str,
    message: str,
    level: str = "warning",
    default: T | None = None,
    **fields: Any,
) -> T | None:
    """Run a best-effort side step; failures are logged and replaced by ``default``."""
    try:
        outcome = action()
        return await outcome if inspect.isawaitable(outcome) else outcome
    except asyncio.CancelledError:
        raise
    except Exception as error:
        log_event(
            logger,
            level=level,
            event=event,
            message=message,
            error=str(error) or type(error).__name__,
            error_class=type(error).__name__,
            **fields,
        )
        return default
