from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from concierge.common.conversions import to_bool, to_int

ConfigUpdateHandler = Callable[[dict[str, Any]], Awaitable[None]]


def _sanitize_service_id(value: str, default: str) -> str:
    normalized = (value.strip() or default).replace("/", "-")
    return normalized or default


@dataclass(slots=True)
class StorageSettings:
    redis_url: str
    redis_config_key: str
    heartbeat_key: str
    key_namespace: str
    position_ttl_seconds: int
    global_positions_limit: int
    job_record_ttl_seconds: int
    processed_marker_ttl_seconds: int
    unresolved_ttl_seconds: int
    bounce_ttl_seconds: int
    firestore_enabled: bool
    firestore_project_id: str | None
    service_collection: str
    service_id: str
    service_env: str
    run_id: str
    events_collection: str
    firestore_config_doc: str
    firestore_config_leaf_doc_id: str
    config_schema_version: int

    @classmethod
    def from_env(cls) -> "StorageSettings":
        service_collection = os.getenv("SERVICE_COLLECTION", "services").strip("/") or "services"
        service_id = _sanitize_service_id(os.getenv("SERVICE_ID", "concierge"), "concierge")
        default_config_doc = f"{service_collection}/{service_id}/config/runtime"

        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            redis_config_key=os.getenv("REDIS_CONFIG_KEY", "config:runtime"),
            heartbeat_key=os.getenv("REDIS_HEARTBEAT_KEY", "workers:heartbeat"),
            key_namespace=os.getenv("REDIS_KEY_NAMESPACE", "").strip().strip(":"),
            position_ttl_seconds=max(3600, to_int(os.getenv("POSITION_TTL_SECONDS"), 90 * 24 * 3600)),
            global_positions_limit=max(10, to_int(os.getenv("GLOBAL_POSITIONS_LIMIT"), 1000)),
            job_record_ttl_seconds=max(3600, to_int(os.getenv("JOB_RECORD_TTL_SECONDS"), 7 * 24 * 3600)),
            processed_marker_ttl_seconds=max(
                3600,
                to_int(os.getenv("PROCESSED_MARKER_TTL_SECONDS"), 30 * 24 * 3600),
            ),
            unresolved_ttl_seconds=max(60, to_int(os.getenv("UNRESOLVED_PAYMENT_TTL_SECONDS"), 3600)),
            bounce_ttl_seconds=max(3600, to_int(os.getenv("EMAIL_BOUNCE_TTL_SECONDS"), 7 * 24 * 3600)),
            firestore_enabled=to_bool(os.getenv("FIRESTORE_ENABLED"), True),
            firestore_project_id=os.getenv("FIRESTORE_PROJECT_ID") or None,
            service_collection=service_collection,
            service_id=service_id,
            service_env=os.getenv("SERVICE_ENV", "dev"),
            run_id=os.getenv("SERVICE_RUN_ID")
            or datetime.now(timezone.utc).strftime("run-%Y%m%dT%H%M%SZ"),
            events_collection=os.getenv("FIRESTORE_EVENTS_COLLECTION", "events"),
            firestore_config_doc=os.getenv("FIRESTORE_CONFIG_DOC") or default_config_doc,
            firestore_config_leaf_doc_id=os.getenv("FIRESTORE_CONFIG_LEAF_DOC_ID", "runtime"),
            config_schema_version=max(1, to_int(os.getenv("CONFIG_SCHEMA_VERSION"), 1)),
        )

    def key(self, *parts: str) -> str:
        joined = ":".join(part for part in parts if part != "")
        if self.key_namespace:
            return f"{self.key_namespace}:{joined}"
        return joined
