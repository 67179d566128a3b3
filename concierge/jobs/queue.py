from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from concierge.common import EventPublisher, StoreUnavailableError, guarded_call, log_event
from concierge.storage import KeyValueStore, StorageSettings, now_iso, now_ts
from concierge.storage.helpers import dump_json, load_json_object, parse_iso_timestamp

from .types import ExecutionJob, NackResult, QueueMetrics, ReprocessResult, new_job_id


def compute_retry_delay_seconds(*, attempts: int, base_seconds: float, max_seconds: float) -> float:
    if attempts <= 0:
        return 0.0
    return min(max_seconds, base_seconds * float(2 ** (attempts - 1)))


class JobQueue:
    """Redis-list job queue with a delayed lane and a dead-letter lane.

    Delivery is at-least-once: ``dequeue`` moves an id from the ready list to
    the processing list, and ``requeue_stale`` puts abandoned ids back. Callers
    must hold the payment lock before calling ``mark_processing``.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        settings: StorageSettings,
        *,
        logger: logging.Logger,
        max_attempts: int = 5,
        retry_base_seconds: float = 2.0,
        retry_max_seconds: float = 300.0,
        defer_seconds: float = 30.0,
        queue_depth_alert_threshold: int = 100,
        dead_letter_alert_threshold: int = 10,
        events: EventPublisher | None = None,
    ) -> None:
        self._kv = kv
        self._settings = settings
        self._logger = logger
        self._max_attempts = max(1, max_attempts)
        self._retry_base_seconds = retry_base_seconds
        self._retry_max_seconds = retry_max_seconds
        self._defer_seconds = max(0.0, defer_seconds)
        self._queue_depth_alert_threshold = queue_depth_alert_threshold
        self._dead_letter_alert_threshold = dead_letter_alert_threshold
        self._events = events

    @property
    def ready_key(self) -> str:
        return self._settings.key("queue", "ready")

    @property
    def processing_key(self) -> str:
        return self._settings.key("queue", "processing")

    @property
    def delayed_key(self) -> str:
        return self._settings.key("queue", "delayed")

    @property
    def dead_letter_key(self) -> str:
        return self._settings.key("queue", "dead")

    @property
    def succeeded_counter_key(self) -> str:
        return self._settings.key("queue", "stats", "succeeded")

    def record_key(self, job_id: str) -> str:
        return self._settings.key("queue", "job", job_id)

    def payment_key(self, payment_id: str) -> str:
        return self._settings.key("queue", "by_payment", payment_id)

    def _stage_record(self, pipeline: Any, job: ExecutionJob) -> None:
        # dead-lettered records stay until an operator acts on them
        ttl = None if job.state == "dead-lettered" else self._settings.job_record_ttl_seconds
        pipeline.set(self.record_key(job.job_id), dump_json(job.to_record()), ex=ttl)

    async def get(self, job_id: str) -> ExecutionJob | None:
        record = load_json_object(await self._kv.get(self.record_key(job_id)))
        if record is None:
            return None
        try:
            return ExecutionJob.from_record(record)
        except (KeyError, TypeError, ValueError):
            return None

    async def get_by_payment(self, payment_id: str) -> ExecutionJob | None:
        job_id = await self._kv.get(self.payment_key(payment_id))
        return await self.get(job_id) if job_id else None

    async def enqueue(self, payment_id: str, payload: dict[str, Any]) -> tuple[ExecutionJob, bool]:
        job = ExecutionJob(
            job_id=new_job_id(),
            payment_id=payment_id,
            payload=payload,
            max_attempts=self._max_attempts,
            enqueued_at=now_iso(),
        )
        claim_key = self.payment_key(payment_id)
        claim_ttl = self._settings.job_record_ttl_seconds
        if not await self._kv.set(claim_key, job.job_id, ex=claim_ttl, nx=True):
            claimed_id = await self._kv.get(claim_key)
            existing = await self.get(claimed_id) if claimed_id else None
            if existing is not None:
                return existing, False
            # claim without a record: an earlier enqueue failed before its write landed
            if claimed_id:
                await self._kv.delete_if_equals(claim_key, claimed_id)
            if not await self._kv.set(claim_key, job.job_id, ex=claim_ttl, nx=True):
                existing = await self.get_by_payment(payment_id)
                return existing or job, False
            log_event(
                self._logger,
                level="warning",
                event="job_claim_recovered",
                message="Took over a payment claim that had no job record",
                payment_id=payment_id,
                stale_job_id=claimed_id,
                job_id=job.job_id,
            )

        pipeline = self._kv.pipeline()
        self._stage_record(pipeline, job)
        pipeline.lpush(self.ready_key, job.job_id)
        try:
            await pipeline.execute()
        except StoreUnavailableError:
            await guarded_call(
                lambda: self._kv.delete_if_equals(claim_key, job.job_id),
                logger=self._logger,
                event="job_claim_release_failed",
                message="Failed to release payment claim after a failed enqueue",
                payment_id=payment_id,
            )
            raise
        log_event(
            self._logger,
            level="info",
            event="job_enqueued",
            message="Execution job enqueued",
            job_id=job.job_id,
            payment_id=payment_id,
        )
        return job, True

    async def promote_due(self, *, now: float | None = None, limit: int = 100) -> int:
        current = now if now is not None else now_ts()
        due = await self._kv.zrangebyscore(self.delayed_key, 0, current, limit=limit)
        promoted = 0
        for job_id, _ in due:
            # zrem decides which competing consumer owns the promotion
            if await self._kv.zrem(self.delayed_key, job_id):
                await self._kv.lpush(self.ready_key, job_id)
                promoted += 1
        return promoted

    async def dequeue(self, *, now: float | None = None) -> ExecutionJob | None:
        await self.promote_due(now=now)
        while True:
            job_id = await self._kv.lmove(self.ready_key, self.processing_key)
            if job_id is None:
                return None
            job = await self.get(job_id)
            if job is not None:
                return job
            await self._kv.lrem(self.processing_key, 1, job_id)
            log_event(
                self._logger,
                level="warning",
                event="job_record_missing",
                message="Dropped queue entry without a job record",
                job_id=job_id,
            )

    async def mark_processing(self, job: ExecutionJob) -> ExecutionJob:
        updated = replace(job, state="processing", attempts=job.attempts + 1, last_attempt_at=now_iso())
        pipeline = self._kv.pipeline()
        self._stage_record(pipeline, updated)
        await pipeline.execute()
        return updated

    async def ack(self, job: ExecutionJob) -> ExecutionJob:
        updated = replace(job, state="succeeded", last_error=None)
        pipeline = self._kv.pipeline()
        pipeline.lrem(self.processing_key, 1, job.job_id)
        self._stage_record(pipeline, updated)
        await pipeline.execute()
        await self._kv.incr(self.succeeded_counter_key)
        return updated

    async def nack(self, job: ExecutionJob, *, retry: bool, error: str | None = None) -> NackResult:
        if not retry:
            await self._kv.lrem(self.processing_key, 1, job.job_id)
            log_event(
                self._logger,
                level="info",
                event="job_discarded",
                message="Duplicate delivery discarded",
                job_id=job.job_id,
                payment_id=job.payment_id,
                reason=error,
            )
            return "discarded"

        if job.exhausted:
            await self.dead_letter(job, reason=error or "max attempts exhausted")
            return "dead_lettered"

        delay = compute_retry_delay_seconds(
            attempts=job.attempts,
            base_seconds=self._retry_base_seconds,
            max_seconds=self._retry_max_seconds,
        )
        available_at = now_ts() + delay
        updated = replace(job, state="queued", last_error=error, available_at=available_at)
        pipeline = self._kv.pipeline()
        pipeline.lrem(self.processing_key, 1, job.job_id)
        pipeline.zadd(self.delayed_key, {job.job_id: available_at})
        self._stage_record(pipeline, updated)
        await pipeline.execute()
        log_event(
            self._logger,
            level="warning",
            event="job_retry_scheduled",
            message="Execution job scheduled for retry",
            job_id=job.job_id,
            payment_id=job.payment_id,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            delay_seconds=round(delay, 3),
            error=error,
        )
        return "retry_scheduled"

    async def defer(self, job: ExecutionJob, *, reason: str, delay_seconds: float | None = None) -> NackResult:
        """Park a job that could not run yet. The attempt it just used is handed back."""
        delay = self._defer_seconds if delay_seconds is None else max(0.0, delay_seconds)
        available_at = now_ts() + delay
        updated = replace(
            job,
            state="queued",
            attempts=max(0, job.attempts - 1),
            last_error=reason,
            available_at=available_at,
        )
        pipeline = self._kv.pipeline()
        pipeline.lrem(self.processing_key, 1, job.job_id)
        pipeline.zadd(self.delayed_key, {job.job_id: available_at})
        self._stage_record(pipeline, updated)
        await pipeline.execute()
        log_event(
            self._logger,
            level="info",
            event="job_deferred",
            message="Execution job deferred without using an attempt",
            job_id=job.job_id,
            payment_id=job.payment_id,
            attempts=updated.attempts,
            delay_seconds=round(delay, 3),
            reason=reason,
        )
        return "deferred"

    async def dead_letter(self, job: ExecutionJob, *, reason: str) -> ExecutionJob:
        updated = replace(job, state="dead-lettered", last_error=reason)
        pipeline = self._kv.pipeline()
        pipeline.lrem(self.processing_key, 1, job.job_id)
        pipeline.zrem(self.delayed_key, job.job_id)
        pipeline.lrem(self.dead_letter_key, 0, job.job_id)
        pipeline.lpush(self.dead_letter_key, job.job_id)
        self._stage_record(pipeline, updated)
        await pipeline.execute()

        log_event(
            self._logger,
            level="error",
            event="job_dead_lettered",
            message="Execution job moved to dead-letter",
            job_id=job.job_id,
            payment_id=job.payment_id,
            attempts=job.attempts,
            reason=reason,
        )
        if self._events is not None:
            await guarded_call(
                lambda: self._events.publish_event(
                    level="ERROR",
                    event="job_dead_lettered",
                    message="Execution job moved to dead-letter",
                    details={"job_id": job.job_id, "payment_id": job.payment_id, "reason": reason},
                    event_id=f"dead-letter-{job.job_id}",
                ),
                logger=self._logger,
                event="job_dead_letter_publish_failed",
                message="Failed to publish dead-letter event",
            )
        return updated

    async def _load_jobs(self, job_ids: list[str]) -> list[ExecutionJob]:
        if not job_ids:
            return []
        raw_records = await self._kv.mget([self.record_key(job_id) for job_id in job_ids])
        jobs: list[ExecutionJob] = []
        for raw in raw_records:
            record = load_json_object(raw)
            if record is None:
                continue
            try:
                jobs.append(ExecutionJob.from_record(record))
            except (KeyError, TypeError, ValueError):
                continue
        return jobs

    async def list_dead_letter(self, limit: int = 50) -> list[ExecutionJob]:
        job_ids = await self._kv.lrange(self.dead_letter_key, 0, max(0, limit - 1))
        return await self._load_jobs(job_ids)

    async def list_ready(self, limit: int = 50) -> list[ExecutionJob]:
        # ready list is consumed from the right, so the head is the tail of the list
        job_ids = await self._kv.lrange(self.ready_key, -max(1, limit), -1)
        return await self._load_jobs(list(reversed(job_ids)))

    async def reprocess(self, job_ids: list[str]) -> list[ReprocessResult]:
        results: list[ReprocessResult] = []
        for job_id in job_ids:
            job = await self.get(job_id)
            if job is None:
                results.append(ReprocessResult(job_id=job_id, status="not_found"))
                continue
            removed = await self._kv.lrem(self.dead_letter_key, 0, job_id)
            if removed <= 0:
                results.append(ReprocessResult(job_id=job_id, status="not_dead_lettered"))
                continue

            requeued = replace(job, state="queued", attempts=0, last_error=None, available_at=0.0)
            pipeline = self._kv.pipeline()
            self._stage_record(pipeline, requeued)
            pipeline.lpush(self.ready_key, job_id)
            await pipeline.execute()
            log_event(
                self._logger,
                level="warning",
                event="job_reprocessed",
                message="Dead-lettered job re-admitted to the queue",
                job_id=job_id,
                payment_id=job.payment_id,
            )
            results.append(ReprocessResult(job_id=job_id, status="requeued"))
        return results

    async def requeue_stale(self, *, older_than_seconds: float, now: float | None = None) -> int:
        current = now if now is not None else now_ts()
        job_ids = await self._kv.lrange(self.processing_key, 0, -1)
        requeued = 0
        for job in await self._load_jobs(job_ids):
            started = parse_iso_timestamp(job.last_attempt_at) or parse_iso_timestamp(job.enqueued_at)
            if started is not None and current - started < older_than_seconds:
                continue
            if await self._kv.lrem(self.processing_key, 1, job.job_id):
                await self._kv.lpush(self.ready_key, job.job_id)
                requeued += 1
                log_event(
                    self._logger,
                    level="warning",
                    event="job_requeued_stale",
                    message="Stale processing job returned to the ready lane",
                    job_id=job.job_id,
                    payment_id=job.payment_id,
                )
        return requeued

    async def metrics(self, *, now: float | None = None) -> QueueMetrics:
        current = now if now is not None else now_ts()
        ready = await self._kv.llen(self.ready_key)
        delayed = await self._kv.zcard(self.delayed_key)
        processing = await self._kv.llen(self.processing_key)
        dead = await self._kv.llen(self.dead_letter_key)
        succeeded = int(await self._kv.get(self.succeeded_counter_key) or 0)

        oldest_age = 0.0
        oldest_id = await self._kv.lindex(self.ready_key, -1)
        if oldest_id is not None:
            oldest = await self.get(oldest_id)
            enqueued = parse_iso_timestamp(oldest.enqueued_at) if oldest else None
            if enqueued is not None:
                oldest_age = max(0.0, current - enqueued)

        return QueueMetrics(
            depth=ready + delayed,
            ready=ready,
            delayed=delayed,
            processing=processing,
            dead_letter=dead,
            oldest_job_age_seconds=round(oldest_age, 3),
            by_state={
                "queued": ready + delayed,
                "processing": processing,
                "succeeded": succeeded,
                "dead-lettered": dead,
            },
        )

    async def check_backpressure(self) -> QueueMetrics:
        metrics = await self.metrics()
        breaches: dict[str, int] = {}
        if metrics.depth >= self._queue_depth_alert_threshold:
            breaches["depth"] = metrics.depth
        if metrics.dead_letter >= self._dead_letter_alert_threshold:
            breaches["dead_letter"] = metrics.dead_letter
        if not breaches:
            return metrics

        log_event(
            self._logger,
            level="error",
            event="queue_backpressure",
            message="Queue depth crossed alert threshold",
            **breaches,
        )
        if self._events is not None:
            await guarded_call(
                lambda: self._events.publish_event(
                    level="ERROR",
                    event="queue_backpressure",
                    message="Queue depth crossed alert threshold",
                    details={"severity": "high", **metrics.to_dict()},
                ),
                logger=self._logger,
                event="queue_backpressure_publish_failed",
                message="Failed to publish queue backpressure event",
            )
        return metrics
