from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from concierge.common import guarded_call, log_event

from .settings import RuntimeConfig

if TYPE_CHECKING:
    from concierge.execution import ChainClient
    from concierge.recovery import ProviderRefundClient
    from concierge.storage import ConfigUpdateHandler, StorageGateway

    from .settings import AppSettings

RuntimeConfigProvider = Callable[[], Awaitable[RuntimeConfig]]


async def wait_with_stop(stop_event: asyncio.Event, timeout_seconds: float) -> None:
    if timeout_seconds <= 0:
        return

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        pass


def runtime_config_provider(storage: StorageGateway, defaults: RuntimeConfig) -> RuntimeConfigProvider:
    async def provide() -> RuntimeConfig:
        return RuntimeConfig.from_redis(await storage.get_runtime_config(), defaults)

    return provide


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    chain_client: ChainClient,
    refund_client: ProviderRefundClient | None,
    config_listener_loop: asyncio.AbstractEventLoop,
    on_config_update: ConfigUpdateHandler,
) -> None:
    while not stop_event.is_set():
        try:
            await storage.connect()
            storage.start_config_listener(config_listener_loop, on_update=on_config_update)
            await chain_client.connect()
            if refund_client is not None:
                await refund_client.connect()
            return
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="bootstrap_error",
                    message="Failed to initialize dependencies",
                    details={"error": str(error)},
                ),
                logger=logger,
                event="bootstrap_publish_error_failed",
                message="Failed to publish bootstrap error",
            )
            await close_dependencies(
                logger=logger,
                storage=storage,
                chain_client=chain_client,
                refund_client=refund_client,
            )
            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


async def close_dependencies(
    *,
    logger: logging.Logger,
    storage: StorageGateway,
    chain_client: ChainClient,
    refund_client: ProviderRefundClient | None,
) -> None:
    await guarded_call(
        chain_client.close,
        logger=logger,
        event="chain_client_close_failed",
        message="Failed to close chain client",
    )
    if refund_client is not None:
        await guarded_call(
            refund_client.close,
            logger=logger,
            event="refund_client_close_failed",
            message="Failed to close refund client",
        )
    await guarded_call(
        storage.close,
        logger=logger,
        event="storage_close_failed",
        message="Failed to close storage",
    )
