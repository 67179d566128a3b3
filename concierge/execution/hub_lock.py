from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, TypeVar

from concierge.admission.idempotency import IdempotencyStore, new_owner_token
from concierge.common import ChainRpcError, guarded_call, log_event

T = TypeVar("T")


class HubWalletBusyError(ChainRpcError):
    pass


class HubWalletLock:
    """Serializes hub-wallet submissions across workers so nonces never race."""

    def __init__(
        self,
        idempotency: IdempotencyStore,
        *,
        logger: logging.Logger,
        ttl_seconds: int = 180,
        wait_seconds: float = 30.0,
        poll_seconds: float = 0.25,
    ) -> None:
        self._idempotency = idempotency
        self._logger = logger
        self._ttl_seconds = ttl_seconds
        self._wait_seconds = wait_seconds
        self._poll_seconds = poll_seconds

    @staticmethod
    def lock_name(hub_address: str) -> str:
        return f"hub:{hub_address.lower()}"

    async def run(self, hub_address: str, action: Callable[[], Awaitable[T]], *, step: str) -> T:
        key = self.lock_name(hub_address)
        owner_token = new_owner_token("hub")
        deadline = time.monotonic() + self._wait_seconds
        while not await self._idempotency.try_acquire(key, ttl_seconds=self._ttl_seconds, owner_token=owner_token):
            if time.monotonic() >= deadline:
                log_event(
                    self._logger,
                    level="warning",
                    event="hub_lock_timeout",
                    message="Hub wallet lock not acquired in time",
                    step=step,
                )
                raise HubWalletBusyError(f"network busy: hub wallet lock held during {step}", method=step)
            await asyncio.sleep(self._poll_seconds)

        try:
            return await action()
        finally:
            # the lock TTL covers a failed release
            await guarded_call(
                lambda: self._idempotency.release(key, owner_token),
                logger=self._logger,
                event="hub_lock_release_failed",
                message="Failed to release hub wallet lock",
                step=step,
            )
