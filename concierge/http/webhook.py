from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from aiohttp import web

from concierge.admission import AdmissionService, UnresolvedPaymentBuffer
from concierge.common import Err, EventPublisher, StoreUnavailableError, ValidationError, guarded_call, log_event
from concierge.runtime.settings import RuntimeConfig
from concierge.webhook import PaymentEvent, WebhookValidator, extract_signature

RuntimeConfigProvider = Callable[[], Awaitable[RuntimeConfig]]

VALIDATION_STATUS = {
    "bad_signature": 401,
    "malformed_body": 400,
    "malformed_note": 400,
    "unresolved_payment": 422,
}


def client_address(request: web.Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote or "unknown"


class WebhookHandler:
    def __init__(
        self,
        *,
        validator: WebhookValidator,
        admission: AdmissionService,
        unresolved: UnresolvedPaymentBuffer,
        config_provider: RuntimeConfigProvider,
        logger: logging.Logger,
        events: EventPublisher | None = None,
    ) -> None:
        self._validator = validator
        self._admission = admission
        self._unresolved = unresolved
        self._config_provider = config_provider
        self._logger = logger
        self._events = events

    async def _publish(self, *, level: str, event: str, message: str, details: dict[str, Any]) -> None:
        if self._events is None:
            return
        await guarded_call(
            lambda: self._events.publish_event(level=level, event=event, message=message, details=details),
            logger=self._logger,
            event=f"{event}_publish_failed",
            message=f"Failed to publish {event} event",
        )

    async def handle(self, request: web.Request) -> web.Response:
        raw_body = await request.read()
        client_ip = client_address(request)
        try:
            limited = await self._admission.check_rate_limit(client_ip)
            if limited is not None:
                return web.json_response(
                    {"status": "rate_limited", "error": limited.message},
                    status=429,
                    headers={"Retry-After": str(max(1, int(limited.retry_after_seconds + 0.999)))},
                )

            config = await self._config_provider()
            validated = self._validator.validate(
                raw_body,
                request.headers,
                allow_signature_bypass=config.emergency_signature_bypass,
            )
            if isinstance(validated, Err):
                return await self._reject(validated.error, client_ip)

            event = validated.value
            if event.signature_bypassed:
                await self._report_bypass(event, client_ip)

            admitted = await self._admission.admit(event, signature=extract_signature(request.headers))
        except StoreUnavailableError as error:
            log_event(
                self._logger,
                level="error",
                event="webhook_store_unavailable",
                message="Webhook rejected because the store is unavailable",
                error=str(error),
            )
            return web.json_response({"status": "unavailable", "error": "store unavailable"}, status=503)

        if isinstance(admitted, Err):
            return web.json_response({"status": admitted.error.kind, "payment_id": event.payment_id})

        job = admitted.value
        log_event(
            self._logger,
            level="info",
            event="webhook_admitted",
            message="Payment admitted for execution",
            payment_id=event.payment_id,
            job_id=job.job_id,
            event_type=event.event_type,
            resolved_via=event.resolved_via,
        )
        return web.json_response({"status": "admitted", "payment_id": event.payment_id, "job_id": job.job_id})

    async def _reject(self, error: ValidationError, client_ip: str) -> web.Response:
        if error.kind == "unsupported_event":
            return web.json_response({"status": "ignored", "event_type": error.details.get("event_type")})

        status = VALIDATION_STATUS.get(error.kind, 400)
        log_event(
            self._logger,
            level="warning",
            event="webhook_rejected",
            message="Webhook failed validation",
            kind=error.kind,
            error=error.message,
            client_ip=client_ip,
        )
        if error.kind == "bad_signature":
            await self._publish(
                level="WARNING",
                event="signature_rejected",
                message="Webhook signature rejected",
                details={"client_ip": client_ip, **error.details},
            )
        elif error.kind == "unresolved_payment":
            order_id = str(error.details.get("order_id") or "")
            if order_id:
                await self._unresolved.park(
                    order_id,
                    event_id=str(error.details.get("event_id") or ""),
                    reason=error.message,
                    details=error.details,
                )
            await self._publish(
                level="WARNING",
                event="payment_unresolved",
                message="Order event could not be tied to a payment",
                details=dict(error.details),
            )
        return web.json_response({"status": "rejected", "error": error.kind, "message": error.message}, status=status)

    async def _report_bypass(self, event: PaymentEvent, client_ip: str) -> None:
        details = {"payment_id": event.payment_id, "event_id": event.event_id, "client_ip": client_ip}
        log_event(
            self._logger,
            level="critical",
            event="signature_bypass_used",
            message="Webhook accepted without a valid signature under emergency bypass",
            **details,
        )
        await self._publish(
            level="CRITICAL",
            event="signature_bypass_used",
            message="Webhook accepted without a valid signature",
            details=details,
        )
