from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from concierge.admission.idempotency import IdempotencyStore, new_owner_token
from concierge.common import guarded_call, log_event
from concierge.execution.types import ExecutionOutcome

from .queue import JobQueue
from .types import ExecutionJob

if TYPE_CHECKING:
    from concierge.execution import StrategyExecutor

ACK_OUTCOMES = frozenset({"success", "already_complete", "failed", "indeterminate", "requires_recovery"})


def payment_lock_key(payment_id: str) -> str:
    return f"payment:{payment_id}"


async def _cancel_task(task: asyncio.Task[None] | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


class JobWorker:
    def __init__(
        self,
        *,
        worker_id: str,
        queue: JobQueue,
        idempotency: IdempotencyStore,
        executor: StrategyExecutor,
        logger: logging.Logger,
        lock_ttl_seconds: int = 600,
    ) -> None:
        self.worker_id = worker_id
        self._queue = queue
        self._idempotency = idempotency
        self._executor = executor
        self._logger = logger
        self._lock_ttl_seconds = lock_ttl_seconds

    async def process_next(self) -> ExecutionOutcome | None:
        job = await self._queue.dequeue()
        if job is None:
            return None
        return await self.process(job)

    async def process(self, job: ExecutionJob) -> ExecutionOutcome | None:
        lock_key = payment_lock_key(job.payment_id)
        owner_token = new_owner_token(self.worker_id)
        acquired = await self._idempotency.try_acquire(
            lock_key,
            ttl_seconds=self._lock_ttl_seconds,
            owner_token=owner_token,
        )
        if not acquired:
            await self._queue.nack(job, retry=False, error="payment lock held by another worker")
            return None

        refresh_task = asyncio.create_task(self._refresh_lock_loop(lock_key, owner_token))
        try:
            job = await self._queue.mark_processing(job)
            try:
                outcome = await self._executor.execute(job)
            except asyncio.CancelledError:
                raise
            except Exception as error:
                log_event(
                    self._logger,
                    level="exception",
                    event="job_execution_error",
                    message="Unexpected error while executing job",
                    job_id=job.job_id,
                    payment_id=job.payment_id,
                    worker_id=self.worker_id,
                    error=str(error),
                )
                await self._queue.nack(job, retry=True, error=str(error) or type(error).__name__)
                return ExecutionOutcome(kind="deferred", message=str(error))

            await self._settle(job, outcome)
            return outcome
        finally:
            await _cancel_task(refresh_task)
            await guarded_call(
                lambda: self._idempotency.release(lock_key, owner_token),
                logger=self._logger,
                event="payment_lock_release_failed",
                message="Failed to release payment lock",
                payment_id=job.payment_id,
            )

    async def _settle(self, job: ExecutionJob, outcome: ExecutionOutcome) -> None:
        log_event(
            self._logger,
            level="info" if outcome.kind in {"success", "already_complete"} else "warning",
            event="job_outcome",
            message="Execution job finished",
            job_id=job.job_id,
            payment_id=job.payment_id,
            worker_id=self.worker_id,
            attempts=job.attempts,
            outcome=outcome.kind,
            position_id=outcome.position_id,
            status=outcome.status,
            error=outcome.error.to_dict() if outcome.error is not None else None,
            detail=outcome.message,
        )
        if outcome.kind in ACK_OUTCOMES:
            await self._queue.ack(job)
            await self._idempotency.mark_processed(job.payment_id)
            return
        if outcome.kind == "invalid":
            await self._queue.dead_letter(job, reason=outcome.message or "invalid job payload")
            return
        if outcome.kind == "deferred":
            await self._queue.defer(job, reason=outcome.message or outcome.kind)
            return
        await self._queue.nack(job, retry=True, error=outcome.message or outcome.kind)

    async def _refresh_lock_loop(self, lock_key: str, owner_token: str) -> None:
        interval = max(1.0, self._lock_ttl_seconds / 3)
        while True:
            await asyncio.sleep(interval)
            refreshed = await guarded_call(
                lambda: self._idempotency.refresh(
                    lock_key,
                    owner_token=owner_token,
                    ttl_seconds=self._lock_ttl_seconds,
                ),
                logger=self._logger,
                event="payment_lock_refresh_failed",
                message="Failed to refresh payment lock",
                default=False,
            )
            if not refreshed:
                log_event(
                    self._logger,
                    level="warning",
                    event="payment_lock_lost",
                    message="Payment lock no longer owned by this worker",
                    lock_key=lock_key,
                    worker_id=self.worker_id,
                )
                return
