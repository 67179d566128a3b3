from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from concierge.admission import IdempotencyStore, new_owner_token
from concierge.common import guarded_call, log_event

from .loop_helpers import wait_with_stop

if TYPE_CHECKING:
    from concierge.jobs import JobQueue, JobWorker
    from concierge.recovery import RecoveryService
    from concierge.storage import StorageGateway

    from .settings import AppSettings

HEARTBEAT_INTERVAL_SECONDS = 30.0
RECOVERY_LOCK_KEY = "maintenance:recovery"


async def run_worker_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    worker: JobWorker,
) -> None:
    loop = asyncio.get_running_loop()
    last_heartbeat = 0.0
    processed = 0

    while not stop_event.is_set():
        delay_seconds = 0.0
        try:
            now_time = loop.time()
            if now_time - last_heartbeat >= HEARTBEAT_INTERVAL_SECONDS:
                last_heartbeat = now_time
                await guarded_call(
                    lambda: storage.update_heartbeat(worker_id=worker.worker_id, payload={"processed": processed}),
                    logger=logger,
                    event="worker_heartbeat_failed",
                    message="Failed to update worker heartbeat",
                    worker_id=worker.worker_id,
                )

            outcome = await worker.process_next()
            if outcome is None:
                delay_seconds = app_settings.worker_idle_seconds
            else:
                processed += 1
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="worker_loop_error",
                message="Worker loop iteration failed",
                worker_id=worker.worker_id,
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="worker_loop_error",
                    message="Worker loop iteration failed",
                    details={"worker_id": worker.worker_id, "error": str(error)},
                ),
                logger=logger,
                event="worker_loop_publish_failed",
                message="Failed to publish worker loop error",
            )
            delay_seconds = app_settings.error_backoff_seconds

        await wait_with_stop(stop_event, delay_seconds)


async def run_recovery_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    queue: JobQueue,
    idempotency: IdempotencyStore,
    recovery: RecoveryService,
) -> None:
    """Periodic maintenance: stale jobs, queue alerts, recovery scan.

    Replicas share one pass per interval through a store lock.
    """
    while not stop_event.is_set():
        owner_token = new_owner_token("maintenance")
        try:
            acquired = await idempotency.try_acquire(
                RECOVERY_LOCK_KEY,
                ttl_seconds=max(5, int(app_settings.recovery_interval_seconds * 0.9)),
                owner_token=owner_token,
            )
            if acquired:
                requeued = await queue.requeue_stale(older_than_seconds=app_settings.job_lock_ttl_seconds)
                metrics = await queue.check_backpressure()
                report = await recovery.scan(limit=app_settings.recovery_scan_limit)
                log_event(
                    logger,
                    level="info",
                    event="maintenance_pass_completed",
                    message="Maintenance pass completed",
                    requeued=requeued,
                    queue_depth=metrics.depth,
                    dead_letter=metrics.dead_letter,
                    scanned=report.scanned,
                )
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="maintenance_loop_error",
                message="Maintenance pass failed",
                error=str(error),
            )

        await wait_with_stop(stop_event, app_settings.recovery_interval_seconds)
