from __future__ import annotations

import hmac
import logging
from typing import Any, Awaitable, Callable

from aiohttp import web

from concierge.admission import API_LIMIT, IdempotencyStore, RateLimiter, UnresolvedPaymentBuffer, new_owner_token
from concierge.common import StoreUnavailableError, guarded_call, log_event
from concierge.jobs import JobQueue
from concierge.positions import EmailBounceTracker, PositionStore
from concierge.recovery import RecoveryService

from .webhook import client_address

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _bearer_or_key(request: web.Request) -> str:
    authorization = request.headers.get("Authorization", "")
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return request.headers.get("X-API-Key", "").strip()


def _limit_param(request: web.Request, default: int = 50, maximum: int = 500) -> int:
    raw = request.query.get("limit", str(default))
    try:
        limit = int(raw)
    except ValueError as error:
        raise web.HTTPBadRequest(text='{"error": "limit must be an integer"}', content_type="application/json") from error
    return max(1, min(limit, maximum))


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError as error:
        raise web.HTTPBadRequest(text='{"error": "body must be JSON"}', content_type="application/json") from error
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text='{"error": "body must be a JSON object"}', content_type="application/json")
    return body


class AdminHandlers:
    """Operator endpoints. Every mutation holds an admin lock for its target."""

    def __init__(
        self,
        *,
        api_key: str,
        queue: JobQueue,
        idempotency: IdempotencyStore,
        rate_limiter: RateLimiter,
        unresolved: UnresolvedPaymentBuffer,
        recovery: RecoveryService,
        positions: PositionStore,
        bounces: EmailBounceTracker,
        logger: logging.Logger,
        lock_ttl_seconds: int = 300,
        recovery_scan_limit: int = 100,
        live_workers: Callable[[], Awaitable[list[dict[str, str]]]] | None = None,
    ) -> None:
        self._api_key = api_key
        self._queue = queue
        self._idempotency = idempotency
        self._rate_limiter = rate_limiter
        self._unresolved = unresolved
        self._recovery = recovery
        self._positions = positions
        self._bounces = bounces
        self._logger = logger
        self._lock_ttl_seconds = lock_ttl_seconds
        self._recovery_scan_limit = recovery_scan_limit
        self._live_workers = live_workers

    @web.middleware
    async def auth_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        provided = _bearer_or_key(request)
        if not self._api_key or not provided or not hmac.compare_digest(provided, self._api_key):
            log_event(
                self._logger,
                level="warning",
                event="admin_auth_failed",
                message="Admin request rejected",
                path=request.path,
                client_ip=client_address(request),
            )
            return web.json_response({"error": "unauthorized"}, status=401)

        try:
            decision = await self._rate_limiter.check(f"admin:{client_address(request)}", API_LIMIT)
            if not decision.allowed:
                return web.json_response(
                    {"error": "rate_limited"},
                    status=429,
                    headers={"Retry-After": str(max(1, int(decision.retry_after_seconds + 0.999)))},
                )
            return await handler(request)
        except StoreUnavailableError as error:
            log_event(
                self._logger,
                level="error",
                event="admin_store_unavailable",
                message="Admin request failed because the store is unavailable",
                path=request.path,
                error=str(error),
            )
            return web.json_response({"error": "store unavailable"}, status=503)

    async def _locked(self, route: str, target: str, action: Callable[[], Awaitable[Any]]) -> web.Response:
        key = f"admin:{route}:{target}"
        owner_token = new_owner_token("admin")
        if not await self._idempotency.try_acquire(key, ttl_seconds=self._lock_ttl_seconds, owner_token=owner_token):
            return web.json_response({"error": "operation already in progress", "lock": key}, status=409)
        try:
            payload = await action()
        finally:
            await guarded_call(
                lambda: self._idempotency.release(key, owner_token),
                logger=self._logger,
                event="admin_lock_release_failed",
                message="Failed to release admin lock",
                lock=key,
            )
        log_event(
            self._logger,
            level="info",
            event="admin_action",
            message="Admin action completed",
            route=route,
            target=target,
        )
        return web.json_response(payload)

    async def queue_metrics(self, request: web.Request) -> web.Response:
        metrics = await self._queue.metrics()
        payload = metrics.to_dict()
        payload["unresolved"] = await self._unresolved.count()
        if self._live_workers is not None:
            payload["workers"] = await self._live_workers()
        return web.json_response(payload)

    async def dead_letter(self, request: web.Request) -> web.Response:
        jobs = await self._queue.list_dead_letter(_limit_param(request))
        return web.json_response({"count": len(jobs), "items": [job.to_record() for job in jobs]})

    async def reprocess(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        job_ids = body.get("jobIds")
        if job_ids is None and body.get("jobId"):
            job_ids = [body["jobId"]]
        if not isinstance(job_ids, list) or not job_ids or not all(isinstance(item, str) and item for item in job_ids):
            return web.json_response({"error": "jobIds must be a non-empty list of job ids"}, status=400)

        unique_ids = sorted(set(job_ids))

        async def run() -> dict[str, Any]:
            results = await self._queue.reprocess(unique_ids)
            return {"results": [result.to_dict() for result in results]}

        return await self._locked("reprocess", ",".join(unique_ids), run)

    async def unresolved(self, request: web.Request) -> web.Response:
        entries = await self._unresolved.list_entries(limit=_limit_param(request))
        return web.json_response({"count": len(entries), "items": entries})

    async def recovery_scan(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        stale_since = body.get("staleSinceSeconds")
        try:
            stale_since_seconds = float(stale_since) if stale_since is not None else None
            limit = int(body.get("limit") or self._recovery_scan_limit)
        except (TypeError, ValueError):
            return web.json_response({"error": "staleSinceSeconds and limit must be numbers"}, status=400)

        async def run() -> dict[str, Any]:
            report = await self._recovery.scan(stale_since_seconds, limit=max(1, limit))
            return report.to_dict()

        return await self._locked("recovery-scan", "all", run)

    async def position_refund(self, request: web.Request) -> web.Response:
        position_id = request.match_info["position_id"]

        async def run() -> dict[str, Any]:
            outcome = await self._recovery.refund(position_id)
            return outcome.to_dict()

        return await self._locked("refund", position_id, run)

    async def position_detail(self, request: web.Request) -> web.Response:
        position = await self._positions.get(request.match_info["position_id"])
        if position is None:
            return web.json_response({"error": "position not found"}, status=404)
        payload = position.to_dict()
        payload["integrity_ok"] = self._positions.verify_integrity(position)
        return web.json_response(payload)

    async def email_bounce(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        email = str(body.get("email") or "").strip()
        if not email:
            return web.json_response({"error": "email is required"}, status=400)
        reason = str(body.get("reason") or "bounced")
        position_id = body.get("positionId") or None

        async def run() -> dict[str, Any]:
            record = await self._bounces.handle_bounce(email, reason=reason, position_id=position_id)
            return {
                "email": record.email,
                "bounce_count": record.bounce_count,
                "next_retry_at": record.next_retry_at,
                "retries_exhausted": record.retries_exhausted,
            }

        return await self._locked("email-bounce", email.lower(), run)

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self.auth_middleware])
        app.router.add_get("/queue/metrics", self.queue_metrics)
        app.router.add_get("/queue/dead-letter", self.dead_letter)
        app.router.add_post("/queue/reprocess", self.reprocess)
        app.router.add_get("/unresolved", self.unresolved)
        app.router.add_post("/recovery/scan", self.recovery_scan)
        app.router.add_post("/positions/{position_id}/refund", self.position_refund)
        app.router.add_get("/positions/{position_id}", self.position_detail)
        app.router.add_post("/email/bounce", self.email_bounce)
        return app
