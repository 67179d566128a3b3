from __future__ import annotations

import logging
from typing import Awaitable, Callable

from aiohttp import web

from concierge.common import log_event

from .admin import AdminHandlers
from .webhook import WebhookHandler

HealthCheck = Callable[[], Awaitable[None]]

WEBHOOK_PATH = "/webhooks/square"


def create_app(
    *,
    webhook: WebhookHandler,
    admin: AdminHandlers,
    healthcheck: HealthCheck,
    logger: logging.Logger,
) -> web.Application:
    async def healthz(_request: web.Request) -> web.Response:
        try:
            await healthcheck()
        except Exception as error:
            log_event(
                logger,
                level="warning",
                event="healthcheck_failed",
                message="Health check failed",
                error=str(error) or type(error).__name__,
            )
            return web.json_response({"status": "unhealthy"}, status=503)
        return web.json_response({"status": "ok"})

    app = web.Application(client_max_size=1024 * 1024)
    app.router.add_post(WEBHOOK_PATH, webhook.handle)
    app.router.add_get("/healthz", healthz)
    app.add_subapp("/admin", admin.build_app())
    return app
