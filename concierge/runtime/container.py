from __future__ import annotations

import logging
from dataclasses import dataclass

from aiohttp import web

from concierge.admission import (
    AdmissionService,
    IdempotencyStore,
    RateLimiter,
    TighteningPolicy,
    UnresolvedPaymentBuffer,
    webhook_limit,
)
from concierge.execution import (
    ChainClient,
    ChainConfig,
    DryRunChainClient,
    HubWalletLock,
    StrategyExecutor,
    Web3ChainClient,
)
from concierge.http import AdminHandlers, WebhookHandler, create_app
from concierge.jobs import JobQueue, JobWorker
from concierge.positions import EmailBounceTracker, PositionStore
from concierge.recovery import ProviderRefundClient, RecoveryService
from concierge.storage import StorageGateway
from concierge.webhook import WebhookValidator

from .loop_helpers import RuntimeConfigProvider, runtime_config_provider
from .settings import AppSettings, RuntimeConfig


@dataclass(slots=True)
class Services:
    idempotency: IdempotencyStore
    rate_limiter: RateLimiter
    unresolved: UnresolvedPaymentBuffer
    admission: AdmissionService
    queue: JobQueue
    positions: PositionStore
    bounces: EmailBounceTracker
    executor: StrategyExecutor
    recovery: RecoveryService
    validator: WebhookValidator
    config_provider: RuntimeConfigProvider


def build_chain_client(app_settings: AppSettings, chain: ChainConfig, logger: logging.Logger) -> ChainClient:
    if app_settings.dry_run:
        return DryRunChainClient(logger)
    return Web3ChainClient(
        rpc_url=app_settings.rpc_url,
        private_key=app_settings.hub_private_key,
        chain=chain,
        logger=logger,
        read_timeout_seconds=app_settings.rpc_read_timeout_seconds,
        read_max_attempts=app_settings.rpc_read_max_attempts,
        approval_timeout_seconds=app_settings.confirmation_timeout_seconds,
    )


def build_refund_client(app_settings: AppSettings, logger: logging.Logger) -> ProviderRefundClient | None:
    if app_settings.refund_destination != "payment_method":
        return None
    return ProviderRefundClient(
        base_url=app_settings.square_api_base_url,
        access_token=app_settings.square_access_token,
        logger=logger,
    )


def build_services(
    *,
    app_settings: AppSettings,
    storage: StorageGateway,
    chain: ChainConfig,
    chain_client: ChainClient,
    refund_client: ProviderRefundClient | None,
    runtime_defaults: RuntimeConfig,
    logger: logging.Logger,
) -> Services:
    kv = storage.kv
    settings = storage.settings
    config_provider = runtime_config_provider(storage, runtime_defaults)

    idempotency = IdempotencyStore(kv, settings)
    rate_limiter = RateLimiter(
        kv,
        settings,
        logger=logger,
        policy=TighteningPolicy(
            violation_threshold=app_settings.rate_limit_violation_threshold,
            global_multiplier=app_settings.rate_limit_global_multiplier,
            factor_multiplier=app_settings.rate_limit_factor_multiplier,
            duration_seconds=app_settings.rate_limit_tighten_seconds,
        ),
    )
    unresolved = UnresolvedPaymentBuffer(kv, settings)
    queue = JobQueue(
        kv,
        settings,
        logger=logger,
        max_attempts=app_settings.job_max_attempts,
        retry_base_seconds=app_settings.job_retry_base_seconds,
        retry_max_seconds=app_settings.job_retry_max_seconds,
        defer_seconds=app_settings.job_defer_seconds,
        queue_depth_alert_threshold=app_settings.queue_depth_alert_threshold,
        dead_letter_alert_threshold=app_settings.dead_letter_alert_threshold,
        events=storage,
    )
    admission = AdmissionService(
        idempotency=idempotency,
        rate_limiter=rate_limiter,
        queue=queue,
        unresolved=unresolved,
        webhook_limit=webhook_limit(app_settings.webhook_rate_limit_per_minute),
        signature_ttl_seconds=app_settings.signature_replay_ttl_seconds,
        logger=logger,
    )
    positions = PositionStore(kv, settings, logger=logger)
    bounces = EmailBounceTracker(kv, settings, positions, logger=logger)
    hub_lock = HubWalletLock(
        idempotency,
        logger=logger,
        ttl_seconds=app_settings.hub_lock_ttl_seconds,
        wait_seconds=app_settings.hub_lock_wait_seconds,
    )
    executor = StrategyExecutor(
        positions=positions,
        chain_client=chain_client,
        chain=chain,
        hub_lock=hub_lock,
        config_provider=config_provider,
        logger=logger,
        confirmation_timeout_seconds=app_settings.confirmation_timeout_seconds,
        events=storage,
    )
    recovery = RecoveryService(
        positions=positions,
        executor=executor,
        chain_client=chain_client,
        chain=chain,
        idempotency=idempotency,
        hub_lock=hub_lock,
        config_provider=config_provider,
        logger=logger,
        refund_destination=app_settings.refund_destination,
        refund_client=refund_client,
        events=storage,
        stale_seconds=app_settings.stale_position_seconds,
        pending_expiry_days=app_settings.pending_expiry_days,
        max_position_retries=app_settings.max_position_retries,
        discrepancy_sample_size=app_settings.discrepancy_sample_size,
        confirmation_timeout_seconds=app_settings.confirmation_timeout_seconds,
        lock_ttl_seconds=app_settings.job_lock_ttl_seconds,
    )
    validator = WebhookValidator(
        signature_key=app_settings.webhook_signature_key,
        notification_url=app_settings.webhook_notification_url,
    )
    return Services(
        idempotency=idempotency,
        rate_limiter=rate_limiter,
        unresolved=unresolved,
        admission=admission,
        queue=queue,
        positions=positions,
        bounces=bounces,
        executor=executor,
        recovery=recovery,
        validator=validator,
        config_provider=config_provider,
    )


def build_workers(
    services: Services,
    *,
    app_settings: AppSettings,
    run_id: str,
    logger: logging.Logger,
) -> list[JobWorker]:
    return [
        JobWorker(
            worker_id=f"{run_id}-w{index}",
            queue=services.queue,
            idempotency=services.idempotency,
            executor=services.executor,
            logger=logger,
            lock_ttl_seconds=app_settings.job_lock_ttl_seconds,
        )
        for index in range(app_settings.worker_count)
    ]


def build_http_app(
    services: Services,
    *,
    app_settings: AppSettings,
    storage: StorageGateway,
    logger: logging.Logger,
) -> web.Application:
    webhook = WebhookHandler(
        validator=services.validator,
        admission=services.admission,
        unresolved=services.unresolved,
        config_provider=services.config_provider,
        logger=logger,
        events=storage,
    )
    admin = AdminHandlers(
        api_key=app_settings.admin_api_key,
        queue=services.queue,
        idempotency=services.idempotency,
        rate_limiter=services.rate_limiter,
        unresolved=services.unresolved,
        recovery=services.recovery,
        positions=services.positions,
        bounces=services.bounces,
        logger=logger,
        recovery_scan_limit=app_settings.recovery_scan_limit,
        live_workers=storage.live_workers,
    )
    return create_app(webhook=webhook, admin=admin, healthcheck=storage.healthcheck, logger=logger)
