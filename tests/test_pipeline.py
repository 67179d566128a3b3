"""
End-to-end: signed webhook -> admission -> queue -> worker -> strategy
execution against the scripted chain client.
"""
import json

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from concierge.admission import AdmissionService, RateLimiter, UnresolvedPaymentBuffer, webhook_limit
from concierge.http import WEBHOOK_PATH, WebhookHandler
from concierge.jobs import JobQueue, JobWorker
from concierge.webhook import WebhookValidator, compute_signature

from conftest import WALLET

KEY = "whk-secret"
URL = "https://hooks.example.com/webhooks/square"


def signed_payment(payment_id="pay_1", amount_cents=5000, event_id=None, risk="conservative"):
    payment = {
        "id": payment_id,
        "status": "COMPLETED",
        "note": f"wallet:{WALLET} risk:{risk}",
        "order_id": f"ord-{payment_id}",
        "amount_money": {"amount": amount_cents, "currency": "USD"},
    }
    body = {
        "type": "payment.updated",
        "event_id": event_id or f"evt-{payment_id}",
        "data": {"object": {"payment": payment}},
    }
    raw = json.dumps(body).encode("utf-8")
    return raw, {"x-square-hmacsha256-signature": compute_signature(KEY, URL, raw), "Content-Type": "application/json"}


@pytest.fixture
def queue(kv, settings, logger):
    return JobQueue(kv, settings, logger=logger, max_attempts=3)


@pytest.fixture
def worker(queue, idempotency, executor, logger):
    return JobWorker(
        worker_id="w0",
        queue=queue,
        idempotency=idempotency,
        executor=executor,
        logger=logger,
        lock_ttl_seconds=60,
    )


@pytest.fixture
def webhook(kv, settings, logger, idempotency, queue, runtime_config, events):
    unresolved = UnresolvedPaymentBuffer(kv, settings)
    admission = AdmissionService(
        idempotency=idempotency,
        rate_limiter=RateLimiter(kv, settings, logger=logger),
        queue=queue,
        unresolved=unresolved,
        webhook_limit=webhook_limit(10),
        signature_ttl_seconds=600,
        logger=logger,
    )
    return WebhookHandler(
        validator=WebhookValidator(signature_key=KEY, notification_url=URL),
        admission=admission,
        unresolved=unresolved,
        config_provider=runtime_config,
        logger=logger,
        events=events,
    )


@pytest_asyncio.fixture
async def client(webhook):
    app = web.Application()
    app.router.add_post(WEBHOOK_PATH, webhook.handle)
    async with TestClient(TestServer(app)) as test_client:
        yield test_client


async def drain(worker):
    outcomes = []
    while True:
        outcome = await worker.process_next()
        if outcome is None:
            return outcomes
        outcomes.append(outcome)


@pytest.mark.asyncio
async def test_fifty_dollar_conservative_deposit_becomes_active(client, worker, positions, queue, idempotency):
    raw, headers = signed_payment()

    response = await client.post(WEBHOOK_PATH, data=raw, headers=headers)
    assert response.status == 200
    assert (await response.json())["status"] == "admitted"

    outcomes = await drain(worker)

    assert [outcome.kind for outcome in outcomes] == ["success"]
    position = await positions.get_by_payment("pay_1")
    assert position.status == "active"
    assert position.usdc_amount == 50.0
    assert position.aave_supply_amount == 50.0
    assert position.wallet_address == WALLET
    assert (await queue.get_by_payment("pay_1")).state == "succeeded"
    assert await idempotency.is_processed("pay_1")


@pytest.mark.asyncio
async def test_repeated_deliveries_run_one_job_and_one_position(client, worker, positions, queue, chain_client):
    for attempt in range(5):
        raw, headers = signed_payment(event_id=f"evt-retry-{attempt}")
        response = await client.post(WEBHOOK_PATH, data=raw, headers=headers)
        assert response.status == 200

    outcomes = await drain(worker)

    assert [outcome.kind for outcome in outcomes] == ["success"]
    assert (await queue.metrics()).by_state["succeeded"] == 1
    assert chain_client.kinds().count("aave_supply") == 1
    position = await positions.get_by_payment("pay_1")
    assert position.status == "active"
    assert [item.id for item in await positions.list_by_wallet(WALLET)] == [position.id]


@pytest.mark.asyncio
async def test_kill_switch_holds_paid_jobs_until_released(client, worker, queue, positions, runtime_config):
    runtime_config.set(execution_enabled=False)
    raw, headers = signed_payment(payment_id="pay_2", amount_cents=2500)
    await client.post(WEBHOOK_PATH, data=raw, headers=headers)

    for _ in range(4):
        assert (await worker.process(await queue.dequeue(now=9e12))).kind == "deferred"

    runtime_config.set(execution_enabled=True)
    outcome = await worker.process(await queue.dequeue(now=9e12))

    assert outcome.kind == "success"
    assert (await positions.get_by_payment("pay_2")).aave_supply_amount == 25.0
    assert (await queue.metrics()).dead_letter == 0
