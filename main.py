from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import Any

from aiohttp import web
from dotenv import load_dotenv

from concierge.common import guarded_call, log_event
from concierge.execution import ChainConfig
from concierge.runtime import AppSettings, RuntimeConfig, setup_logger
from concierge.runtime.container import (
    build_chain_client,
    build_http_app,
    build_refund_client,
    build_services,
    build_workers,
)
from concierge.runtime.loop import run_recovery_loop, run_worker_loop
from concierge.runtime.loop_helpers import bootstrap_dependencies, close_dependencies
from concierge.storage import StorageGateway, StorageSettings


async def main() -> None:
    load_dotenv()
    logger = setup_logger()

    app_settings = AppSettings.from_env()
    storage_settings = StorageSettings.from_env()
    chain = ChainConfig.from_env()
    runtime_defaults = RuntimeConfig.from_env_defaults()

    storage = StorageGateway(storage_settings, logger)
    chain_client = build_chain_client(app_settings, chain, logger)
    refund_client = build_refund_client(app_settings, logger)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    async def on_config_update(config: dict[str, Any]) -> None:
        runtime = RuntimeConfig.from_redis(config, runtime_defaults)
        log_event(
            logger,
            level="info",
            event="runtime_config_updated",
            message="Runtime config updated",
            execution_enabled=runtime.execution_enabled,
            gas_topup_policy=runtime.gas_topup_policy,
            max_gas_price_gwei=runtime.max_gas_price_gwei,
        )
        if runtime.emergency_signature_bypass:
            await storage.publish_event(
                level="CRITICAL",
                event="signature_bypass_enabled",
                message="Webhook signature verification is bypassed by runtime config",
                details={"config_schema_version": runtime.config_schema_version},
            )

    await bootstrap_dependencies(
        logger=logger,
        stop_event=stop_event,
        app_settings=app_settings,
        storage=storage,
        chain_client=chain_client,
        refund_client=refund_client,
        config_listener_loop=loop,
        on_config_update=on_config_update,
    )

    services = build_services(
        app_settings=app_settings,
        storage=storage,
        chain=chain,
        chain_client=chain_client,
        refund_client=refund_client,
        runtime_defaults=runtime_defaults,
        logger=logger,
    )
    workers = build_workers(services, app_settings=app_settings, run_id=storage_settings.run_id, logger=logger)
    app = build_http_app(services, app_settings=app_settings, storage=storage, logger=logger)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=app_settings.http_host, port=app_settings.http_port)
    await site.start()

    await storage.publish_event(
        level="INFO",
        event="service_started",
        message="Concierge service started",
        details={
            "dry_run": app_settings.dry_run,
            "workers": len(workers),
            "hub_address": chain_client.hub_address,
            "refund_destination": app_settings.refund_destination,
        },
    )

    tasks = [
        asyncio.create_task(
            run_worker_loop(
                logger=logger,
                stop_event=stop_event,
                app_settings=app_settings,
                storage=storage,
                worker=worker,
            )
        )
        for worker in workers
    ]
    tasks.append(
        asyncio.create_task(
            run_recovery_loop(
                logger=logger,
                stop_event=stop_event,
                app_settings=app_settings,
                queue=services.queue,
                idempotency=services.idempotency,
                recovery=services.recovery,
            )
        )
    )

    try:
        await stop_event.wait()
    finally:
        stop_event.set()
        await asyncio.gather(*tasks, return_exceptions=True)
        await guarded_call(
            runner.cleanup,
            logger=logger,
            event="http_cleanup_failed",
            message="Failed to stop HTTP server",
        )
        await guarded_call(
            lambda: storage.publish_event(
                level="INFO",
                event="service_stopped",
                message="Concierge service stopped gracefully",
            ),
            logger=logger,
            event="shutdown_publish_failed",
            message="Failed to publish shutdown event",
        )
        await close_dependencies(
            logger=logger,
            storage=storage,
            chain_client=chain_client,
            refund_client=refund_client,
        )
        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")


if __name__ == "__main__":
    asyncio.run(main())
