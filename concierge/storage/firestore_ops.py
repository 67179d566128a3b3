from __future__ import annotations

import asyncio
import contextlib
import hashlib
from datetime import datetime, timezone
from typing import Any, Awaitable

from google.cloud import firestore

from concierge.common import guarded_call, log_event

from .settings import ConfigUpdateHandler

AUDIT_SEVERITIES = frozenset({"info", "warning", "error", "critical"})
CORRELATION_FIELDS = ("position_id", "payment_id", "job_id")


def resolve_config_doc_path(doc_path: str, leaf_doc_id: str) -> tuple[str, bool]:
    """Return a document path and whether a collection path had to be completed."""
    segments = [part for part in doc_path.split("/") if part]
    if not segments:
        raise ValueError("FIRESTORE_CONFIG_DOC must not be empty.")
    if len(segments) % 2 == 1:
        segments.append(leaf_doc_id)
        return "/".join(segments), True
    return "/".join(segments), False


def audit_document_id(event_id: str) -> str:
    cleaned = event_id.strip().replace("/", "_")
    if not cleaned:
        raise ValueError("Audit event id must not be empty.")
    if len(cleaned) > 128:
        digest = hashlib.sha256(cleaned.encode("utf-8")).hexdigest()[:16]
        cleaned = f"{cleaned[:96]}-{digest}"
    return cleaned


def build_audit_record(
    *,
    severity: str,
    event: str,
    message: str,
    details: dict[str, Any] | None,
    service: dict[str, Any],
) -> dict[str, Any]:
    record: dict[str, Any] = {
        "recorded_at": datetime.now(timezone.utc),
        "server_timestamp": firestore.SERVER_TIMESTAMP,
        "severity": severity,
        "event": event,
        "message": message,
        **service,
    }
    details = dict(details or {})
    for field in CORRELATION_FIELDS:
        value = details.get(field)
        if value:
            record[field] = str(value)
    if details:
        record["details"] = details
    return record


class FirestoreStorageOps:
    """Audit trail and operator config document, both backed by Firestore."""

    def _service_fields(self) -> dict[str, Any]:
        return {
            "service_id": self.settings.service_id,
            "run_id": self.settings.run_id,
            "env": self.settings.service_env,
            "schema_version": self.settings.config_schema_version,
        }

    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        severity = level.lower() if level.lower() in AUDIT_SEVERITIES else "info"
        log_event(
            self._logger,
            level=severity,
            event=event,
            message=message,
            audit=True,
            details=details or {},
        )
        if self._audit_ref is None:
            return

        record = build_audit_record(
            severity=severity,
            event=event,
            message=message,
            details=details,
            service=self._service_fields(),
        )

        async def write() -> None:
            if event_id is None:
                await asyncio.to_thread(self._audit_ref.add, record)
            else:
                document = self._audit_ref.document(audit_document_id(event_id))
                await asyncio.to_thread(document.set, record, merge=True)

        await guarded_call(
            write,
            logger=self._logger,
            event="audit_write_failed",
            message="Failed to write audit event to Firestore",
            level="error",
            audit_event=event,
        )

    def start_config_listener(
        self,
        loop: asyncio.AbstractEventLoop,
        on_update: ConfigUpdateHandler | None = None,
    ) -> None:
        if self._config_ref is None:
            log_event(
                self._logger,
                level="warning",
                event="config_watch_skipped",
                message="Runtime config watcher not started; Firestore is disabled",
            )
            return
        if self._watch is not None:
            return

        def report_failure(task: asyncio.Task[None]) -> None:
            with contextlib.suppress(asyncio.CancelledError):
                error = task.exception()
                if error is not None:
                    log_event(
                        self._logger,
                        level="error",
                        event="config_sync_failed",
                        message="Applying runtime config snapshot failed",
                        error=str(error),
                    )

        def apply(coro: Awaitable[None]) -> None:
            asyncio.ensure_future(coro).add_done_callback(report_failure)

        # Snapshot callbacks arrive on a Firestore worker thread.
        def on_snapshot(snapshots: list[Any], _changes: list[Any], _read_time: Any) -> None:
            if not snapshots or loop.is_closed():
                return
            snapshot = snapshots[0]
            document = (snapshot.to_dict() or {}) if snapshot.exists else {}
            loop.call_soon_threadsafe(apply, self._apply_config_document(document, on_update))

        self._watch = self._config_ref.on_snapshot(on_snapshot)
        log_event(
            self._logger,
            level="info",
            event="config_watch_started",
            message="Watching runtime config document",
            doc_path=self._config_doc_path,
        )

    async def _apply_config_document(
        self,
        document: dict[str, Any],
        on_update: ConfigUpdateHandler | None,
    ) -> None:
        await self.sync_config_to_redis(document, source="snapshot")
        if on_update is not None:
            await on_update(document)

    async def _open_firestore(self) -> None:
        client = firestore.Client(project=self.settings.firestore_project_id)
        self._config_doc_path, completed = resolve_config_doc_path(
            self.settings.firestore_config_doc,
            self.settings.firestore_config_leaf_doc_id,
        )
        if completed:
            log_event(
                self._logger,
                level="warning",
                event="config_doc_path_normalized",
                message="FIRESTORE_CONFIG_DOC named a collection; using its leaf document",
                doc_path=self._config_doc_path,
            )

        service_ref = client.document(f"{self.settings.service_collection}/{self.settings.service_id}")
        self._audit_ref = service_ref.collection(self.settings.events_collection)
        self._config_ref = client.document(self._config_doc_path)
        self._firestore = client

        snapshot = await asyncio.to_thread(self._config_ref.get)
        if snapshot.exists:
            await self.sync_config_to_redis(snapshot.to_dict() or {}, source="startup")
        else:
            # Stale overrides from a deleted document must not survive a restart.
            await self.sync_config_to_redis({}, source="startup_missing")
            log_event(
                self._logger,
                level="warning",
                event="config_missing",
                message="Runtime config document does not exist; using environment defaults",
                doc_path=self._config_doc_path,
            )

        log_event(
            self._logger,
            level="info",
            event="firestore_connected",
            message="Connected to Firestore",
            doc_path=self._config_doc_path,
            audit_collection=self.settings.events_collection,
        )
