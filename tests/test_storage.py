"""
Tests for runtime config sync, worker heartbeats and the Firestore audit helpers.
"""
from unittest.mock import MagicMock

import pytest

from concierge.storage import StorageGateway
from concierge.storage.firestore_ops import audit_document_id, build_audit_record, resolve_config_doc_path


@pytest.fixture
def gateway(kv, settings, logger):
    gateway = StorageGateway(settings, logger)
    gateway._kv = kv
    return gateway


class TestRuntimeConfigSync:
    @pytest.mark.asyncio
    async def test_unknown_keys_are_dropped(self, gateway, kv):
        await gateway.sync_config_to_redis(
            {"execution_enabled": False, "max_gas_price_gwei": 40, "gas_topup_policy": None, "typo_flag": True},
            source="snapshot",
        )

        assert await gateway.get_runtime_config() == {"execution_enabled": "0", "max_gas_price_gwei": "40"}

    @pytest.mark.asyncio
    async def test_empty_document_clears_overrides(self, gateway):
        await gateway.sync_config_to_redis({"execution_enabled": False}, source="startup")

        await gateway.sync_config_to_redis({}, source="startup_missing")

        assert await gateway.get_runtime_config() == {}


class TestHeartbeats:
    @pytest.mark.asyncio
    async def test_heartbeat_is_listed(self, gateway, kv):
        await gateway.update_heartbeat(worker_id="run-test-w0", payload={"processed": 3})

        workers = await gateway.live_workers()

        assert [worker["worker_id"] for worker in workers] == ["run-test-w0"]
        assert workers[0]["processed"] == "3"
        assert workers[0]["run_id"] == "run-test"
        assert "test:workers:heartbeat:run-test-w0" in kv.expiries

    @pytest.mark.asyncio
    async def test_expired_worker_is_pruned(self, gateway, kv):
        await gateway.update_heartbeat(worker_id="run-test-w0")
        await gateway.update_heartbeat(worker_id="run-test-w1")
        await kv.delete("test:workers:heartbeat:run-test-w1")

        workers = await gateway.live_workers()

        assert [worker["worker_id"] for worker in workers] == ["run-test-w0"]
        assert await kv.smembers("test:workers:heartbeat:index") == {"run-test-w0"}


class TestAudit:
    def test_correlation_ids_are_lifted(self):
        record = build_audit_record(
            severity="critical",
            event="refund_sent",
            message="Refund sent",
            details={"position_id": "pos_1", "payment_id": "pay-1", "amount": 25.0},
            service={"service_id": "concierge"},
        )

        assert record["position_id"] == "pos_1"
        assert record["payment_id"] == "pay-1"
        assert "job_id" not in record
        assert record["details"]["amount"] == 25.0
        assert record["service_id"] == "concierge"

    @pytest.mark.asyncio
    async def test_event_id_makes_the_write_idempotent(self, gateway):
        audit_ref = MagicMock()
        gateway._audit_ref = audit_ref

        await gateway.publish_event(level="WARNING", event="refund_sent", message="sent", event_id="refund/pos_1")

        audit_ref.document.assert_called_once_with("refund_pos_1")
        audit_ref.document.return_value.set.assert_called_once()
        audit_ref.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_write_failure_is_logged_not_raised(self, gateway):
        audit_ref = MagicMock()
        audit_ref.add.side_effect = RuntimeError("firestore down")
        gateway._audit_ref = audit_ref

        await gateway.publish_event(level="bogus", event="queue_backpressure", message="deep queue")

        assert audit_ref.add.call_args.args[0]["severity"] == "info"

    def test_long_event_ids_are_shortened(self):
        document_id = audit_document_id("x" * 200)

        assert len(document_id) == 96 + 1 + 16
        assert document_id.startswith("x" * 96)

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("services/concierge/config/runtime", ("services/concierge/config/runtime", False)),
            ("/services/concierge/config/", ("services/concierge/config/runtime", True)),
        ],
    )
    def test_config_doc_path(self, path, expected):
        assert resolve_config_doc_path(path, "runtime") == expected

    def test_empty_config_doc_path_is_rejected(self):
        with pytest.raises(ValueError):
            resolve_config_doc_path("//", "runtime")
