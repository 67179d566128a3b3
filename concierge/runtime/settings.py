from __future__ import annotations

import os
from dataclasses import dataclass

from concierge.common.conversions import to_bool, to_float, to_int

RUNTIME_CONFIG_KEYS = frozenset(
    {
        "schema_version",
        "config_schema_version",
        "execution_enabled",
        "emergency_signature_bypass",
        "max_gas_price_gwei",
        "gas_topup_policy",
        "refund_cooldown_hours",
    }
)


def normalize_gas_topup_policy(value: str | None) -> str:
    policy = (value or "").strip().lower()
    if policy in {"best_effort", "required", "skip"}:
        return policy
    return "best_effort"


def normalize_refund_destination(value: str | None) -> str:
    destination = (value or "").strip().lower()
    if destination in {"wallet", "payment_method"}:
        return destination
    return "wallet"


@dataclass(slots=True)
class AppSettings:
    http_host: str
    http_port: int
    worker_count: int
    worker_idle_seconds: float
    error_backoff_seconds: float
    webhook_signature_key: str
    webhook_notification_url: str
    admin_api_key: str
    rpc_url: str
    hub_private_key: str
    dry_run: bool
    rpc_read_timeout_seconds: float
    rpc_read_max_attempts: int
    confirmation_timeout_seconds: float
    job_max_attempts: int
    job_lock_ttl_seconds: int
    job_retry_base_seconds: float
    job_retry_max_seconds: float
    job_defer_seconds: float
    signature_replay_ttl_seconds: int
    hub_lock_ttl_seconds: int
    hub_lock_wait_seconds: float
    stale_position_seconds: float
    pending_expiry_days: float
    max_position_retries: int
    recovery_interval_seconds: float
    recovery_scan_limit: int
    discrepancy_sample_size: int
    refund_destination: str
    square_api_base_url: str
    square_access_token: str
    queue_depth_alert_threshold: int
    dead_letter_alert_threshold: int
    webhook_rate_limit_per_minute: int
    rate_limit_violation_threshold: int
    rate_limit_global_multiplier: float
    rate_limit_factor_multiplier: float
    rate_limit_tighten_seconds: int

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            http_host=os.getenv("HTTP_HOST", "0.0.0.0").strip() or "0.0.0.0",
            http_port=max(1, to_int(os.getenv("HTTP_PORT") or os.getenv("PORT"), 8080)),
            worker_count=max(1, to_int(os.getenv("WORKER_COUNT"), 2)),
            worker_idle_seconds=max(0.05, to_float(os.getenv("WORKER_IDLE_SECONDS"), 1.0)),
            error_backoff_seconds=max(0.2, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 2.0)),
            webhook_signature_key=os.getenv("SQUARE_WEBHOOK_SIGNATURE_KEY", ""),
            webhook_notification_url=os.getenv("SQUARE_WEBHOOK_NOTIFICATION_URL", "").strip(),
            admin_api_key=(os.getenv("ADMIN_API_KEY") or os.getenv("REPROCESS_API_KEY") or "").strip(),
            rpc_url=(
                os.getenv("AVALANCHE_RPC_URL")
                or os.getenv("AVALANCHE_RPC")
                or "https://api.avax.network/ext/bc/C/rpc"
            ).strip(),
            hub_private_key=os.getenv("HUB_WALLET_PRIVATE_KEY", ""),
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
            rpc_read_timeout_seconds=max(1.0, to_float(os.getenv("RPC_READ_TIMEOUT_SECONDS"), 10.0)),
            rpc_read_max_attempts=max(1, to_int(os.getenv("RPC_READ_MAX_ATTEMPTS"), 3)),
            confirmation_timeout_seconds=max(
                5.0,
                to_float(os.getenv("CONFIRMATION_TIMEOUT_SECONDS"), 90.0),
            ),
            job_max_attempts=max(1, to_int(os.getenv("JOB_MAX_ATTEMPTS"), 5)),
            job_lock_ttl_seconds=max(30, to_int(os.getenv("JOB_LOCK_TTL_SECONDS"), 600)),
            job_retry_base_seconds=max(0.1, to_float(os.getenv("JOB_RETRY_BASE_SECONDS"), 2.0)),
            job_retry_max_seconds=max(1.0, to_float(os.getenv("JOB_RETRY_MAX_SECONDS"), 300.0)),
            job_defer_seconds=max(1.0, to_float(os.getenv("JOB_DEFER_SECONDS"), 30.0)),
            signature_replay_ttl_seconds=max(
                60,
                to_int(os.getenv("SIGNATURE_REPLAY_TTL_SECONDS"), 600),
            ),
            hub_lock_ttl_seconds=max(10, to_int(os.getenv("HUB_LOCK_TTL_SECONDS"), 180)),
            hub_lock_wait_seconds=max(1.0, to_float(os.getenv("HUB_LOCK_WAIT_SECONDS"), 30.0)),
            stale_position_seconds=max(
                60.0,
                to_float(os.getenv("STALE_POSITION_SECONDS"), 3600.0),
            ),
            pending_expiry_days=max(1.0, to_float(os.getenv("PENDING_EXPIRY_DAYS"), 30.0)),
            max_position_retries=max(0, to_int(os.getenv("MAX_POSITION_RETRIES"), 3)),
            recovery_interval_seconds=max(
                5.0,
                to_float(os.getenv("RECOVERY_INTERVAL_SECONDS"), 300.0),
            ),
            recovery_scan_limit=max(1, to_int(os.getenv("RECOVERY_SCAN_LIMIT"), 100)),
            discrepancy_sample_size=max(0, to_int(os.getenv("DISCREPANCY_SAMPLE_SIZE"), 10)),
            refund_destination=normalize_refund_destination(os.getenv("REFUND_DESTINATION")),
            square_api_base_url=os.getenv(
                "SQUARE_API_BASE_URL",
                "https://connect.squareup.com",
            ).strip().rstrip("/"),
            square_access_token=os.getenv("SQUARE_ACCESS_TOKEN", "").strip(),
            queue_depth_alert_threshold=max(
                1,
                to_int(os.getenv("QUEUE_DEPTH_ALERT_THRESHOLD"), 100),
            ),
            dead_letter_alert_threshold=max(
                1,
                to_int(os.getenv("DEAD_LETTER_ALERT_THRESHOLD"), 10),
            ),
            webhook_rate_limit_per_minute=max(
                1,
                to_int(os.getenv("WEBHOOK_RATE_LIMIT_PER_MINUTE"), 120),
            ),
            rate_limit_violation_threshold=max(
                1,
                to_int(os.getenv("RATE_LIMIT_VIOLATION_THRESHOLD"), 50),
            ),
            rate_limit_global_multiplier=min(
                1.0,
                max(0.05, to_float(os.getenv("RATE_LIMIT_GLOBAL_MULTIPLIER"), 0.7)),
            ),
            rate_limit_factor_multiplier=min(
                1.0,
                max(0.05, to_float(os.getenv("RATE_LIMIT_FACTOR_MULTIPLIER"), 0.8)),
            ),
            rate_limit_tighten_seconds=max(
                10,
                to_int(os.getenv("RATE_LIMIT_TIGHTEN_SECONDS"), 300),
            ),
        )


@dataclass(slots=True, frozen=True)
class RuntimeConfig:
    config_schema_version: int
    execution_enabled: bool
    emergency_signature_bypass: bool
    max_gas_price_gwei: float
    gas_topup_policy: str
    refund_cooldown_hours: float

    @classmethod
    def from_env_defaults(cls) -> "RuntimeConfig":
        return cls(
            config_schema_version=max(1, to_int(os.getenv("CONFIG_SCHEMA_VERSION"), 1)),
            execution_enabled=to_bool(os.getenv("EXECUTION_ENABLED"), True),
            emergency_signature_bypass=to_bool(os.getenv("EMERGENCY_SIGNATURE_BYPASS"), False),
            max_gas_price_gwei=max(0.0, to_float(os.getenv("MAX_GAS_PRICE_GWEI"), 0.0)),
            gas_topup_policy=normalize_gas_topup_policy(os.getenv("GAS_TOPUP_POLICY")),
            refund_cooldown_hours=max(0.0, to_float(os.getenv("REFUND_COOLDOWN_HOURS"), 24.0)),
        )

    @classmethod
    def from_redis(cls, redis_config: dict[str, str], defaults: "RuntimeConfig") -> "RuntimeConfig":
        schema_raw = redis_config.get("schema_version") or redis_config.get("config_schema_version")
        return cls(
            config_schema_version=max(1, to_int(schema_raw, defaults.config_schema_version)),
            execution_enabled=to_bool(redis_config.get("execution_enabled"), defaults.execution_enabled),
            emergency_signature_bypass=to_bool(
                redis_config.get("emergency_signature_bypass"),
                defaults.emergency_signature_bypass,
            ),
            max_gas_price_gwei=max(
                0.0,
                to_float(redis_config.get("max_gas_price_gwei"), defaults.max_gas_price_gwei),
            ),
            gas_topup_policy=normalize_gas_topup_policy(
                redis_config.get("gas_topup_policy") or defaults.gas_topup_policy
            ),
            refund_cooldown_hours=max(
                0.0,
                to_float(redis_config.get("refund_cooldown_hours"), defaults.refund_cooldown_hours),
            ),
        )
