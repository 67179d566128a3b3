from __future__ import annotations

import logging
import os
from typing import Any

from google.cloud import firestore
from redis import asyncio as redis
from redis.asyncio.client import Redis

from concierge.common import log_event

from .firestore_ops import FirestoreStorageOps
from .kv import KeyValueStore
from .redis_kv import RedisKeyValueStore
from .redis_ops import RedisStorageOps
from .settings import StorageSettings


class StorageGateway(FirestoreStorageOps, RedisStorageOps):
    """Owns the Redis connection every store shares, plus the optional Firestore audit trail."""

    def __init__(self, settings: StorageSettings, logger: logging.Logger) -> None:
        self.settings = settings
        self._logger = logger
        self._redis: Redis | None = None
        self._kv: KeyValueStore | None = None
        self._firestore: firestore.Client | None = None
        self._audit_ref: Any | None = None
        self._config_ref: Any | None = None
        self._watch: Any | None = None
        self._config_doc_path = settings.firestore_config_doc

    @property
    def kv(self) -> KeyValueStore:
        return self._require_kv()

    async def connect(self) -> None:
        credentials = os.getenv("FIREBASE_CREDENTIALS")
        if credentials:
            os.environ.setdefault("GOOGLE_APPLICATION_CREDENTIALS", credentials)

        self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)
        self._kv = RedisKeyValueStore(self._redis)
        await self._kv.ping()
        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis",
            namespace=self.settings.key_namespace or None,
        )

        if self.settings.firestore_enabled:
            await self._open_firestore()
            return
        log_event(
            self._logger,
            level="warning",
            event="firestore_disabled",
            message="Firestore is disabled; audit events go to the log only and runtime config comes from Redis",
        )

    async def healthcheck(self) -> None:
        # Positions, jobs and locks all live in Redis; Firestore only carries audit and config.
        await self._require_kv().ping()

    async def close(self) -> None:
        watch, self._watch = self._watch, None
        try:
            if watch is not None:
                watch.unsubscribe()
        finally:
            if self._redis is not None:
                await self._redis.aclose()
                self._redis = None
            self._kv = None
            self._audit_ref = None
            self._config_ref = None
            self._firestore = None
