from __future__ import annotations

import logging

from concierge.common import AdmissionError, Err, Ok, Result, guarded_call, log_event
from concierge.jobs.queue import JobQueue
from concierge.jobs.types import ExecutionJob
from concierge.webhook.types import PaymentEvent

from .idempotency import IdempotencyStore
from .rate_limit import LimitRule, RateLimiter
from .unresolved import UnresolvedPaymentBuffer


class AdmissionService:
    def __init__(
        self,
        *,
        idempotency: IdempotencyStore,
        rate_limiter: RateLimiter,
        queue: JobQueue,
        unresolved: UnresolvedPaymentBuffer,
        webhook_limit: LimitRule,
        signature_ttl_seconds: int,
        logger: logging.Logger,
    ) -> None:
        self._idempotency = idempotency
        self._rate_limiter = rate_limiter
        self._queue = queue
        self._unresolved = unresolved
        self._webhook_limit = webhook_limit
        self._signature_ttl_seconds = signature_ttl_seconds
        self._logger = logger

    async def check_rate_limit(self, client_ip: str) -> AdmissionError | None:
        """Checked ahead of validation, keyed by client address."""
        decision = await self._rate_limiter.check(f"ip:{client_ip}", self._webhook_limit)
        if decision.allowed:
            return None
        return AdmissionError(
            kind="rate_limited",
            message="Too many webhook deliveries from this address.",
            retry_after_seconds=decision.retry_after_seconds,
        )

    async def admit(
        self,
        event: PaymentEvent,
        *,
        signature: str | None,
    ) -> Result[ExecutionJob, AdmissionError]:
        if signature and await self._idempotency.is_signature_seen(signature):
            return Err(AdmissionError(kind="replayed_signature", message="Signature already accepted."))

        result = await self._decide(event)
        if signature:
            await self._idempotency.remember_signature(signature, ttl_seconds=self._signature_ttl_seconds)
        if event.order_id:
            await guarded_call(
                lambda: self._unresolved.resolve(event.order_id),
                logger=self._logger,
                event="unresolved_resolve_failed",
                message="Failed to clear unresolved order entry",
                order_id=event.order_id,
            )

        if isinstance(result, Err):
            log_event(
                self._logger,
                level="info",
                event="webhook_not_admitted",
                message="Webhook acknowledged without a new job",
                payment_id=event.payment_id,
                reason=result.error.kind,
            )
        return result

    async def _decide(self, event: PaymentEvent) -> Result[ExecutionJob, AdmissionError]:
        if event.status != "completed":
            return Err(AdmissionError(kind="not_completed", message=f"Payment status is {event.status}."))
        if not event.payment_id:
            raise ValueError("Admitted events must carry a payment id.")
        if await self._idempotency.is_processed(event.payment_id):
            return Err(AdmissionError(kind="duplicate", message="Payment already processed."))

        job, created = await self._queue.enqueue(event.payment_id, event.to_dict())
        if not created:
            return Err(AdmissionError(kind="duplicate", message="Payment already queued."))
        return Ok(job)
