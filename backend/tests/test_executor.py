"""
Tests for the execution worker: claim, re-check guardrails, call Amazon, record.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from autopilot.exceptions import CredentialError
from autopilot.models import ActionType
from autopilot.services.action_queue import ActionQueue
from autopilot.services.action_types import ProposedAction
from autopilot.services.executor import ExecutionWorker
from autopilot.services.guardrails import GuardrailSnapshot, GuardrailStore
from autopilot.utils import utcnow

PROFILE_ID = "1234567890"


def _set_bid(target_id="t-1", bid=800_000):
    return ProposedAction(
        ActionType.SET_BID,
        {"targetId": target_id, "campaignId": "c-1", "adGroupId": "ag-1",
         "bidMicros": bid, "currentBidMicros": 1_000_000},
    )


def _server_errors(count):
    return [httpx.Response(500, json={"message": "Internal error"}) for _ in range(count)]


@pytest.fixture
def worker(session_factory, ads_api, no_wait_policy, settings):
    def build(**overrides):
        values = {
            "client_factory": ads_api.client_factory,
            "policy": no_wait_policy,
            "settings": settings,
            "worker_id": "worker-test",
        }
        values.update(overrides)
        return ExecutionWorker(session_factory, **values)
    return build


@pytest.mark.anyio
async def test_applies_queued_action(session_factory, ads_api, worker):
    queue = ActionQueue(session_factory)
    enqueued = await queue.enqueue(PROFILE_ID, _set_bid())

    stats = await worker().run_once()

    assert (stats.processed, stats.applied) == (1, 1)
    item = await queue.get_item(enqueued.item_id)
    assert item.status == "applied"
    assert item.amazon_request_id == "req-1"
    assert item.attempts == 1
    assert item.claimed_by == "worker-test"
    [request] = ads_api.requests
    assert request.url.path == "/sp/targets"


@pytest.mark.anyio
async def test_entity_protected_after_enqueue_is_skipped(session_factory, ads_api, worker):
    queue = ActionQueue(session_factory)
    enqueued = await queue.enqueue(PROFILE_ID, _set_bid())
    await GuardrailStore(session_factory).protect(PROFILE_ID, "target", "t-1")

    stats = await worker().run_once()

    assert stats.skipped == 1
    item = await queue.get_item(enqueued.item_id)
    assert item.status == "skipped"
    assert "Protected entity: target t-1" in item.status_reason
    assert ads_api.requests == []


@pytest.mark.anyio
async def test_bid_outside_new_bounds_is_skipped(session_factory, ads_api, worker):
    queue = ActionQueue(session_factory)
    enqueued = await queue.enqueue(PROFILE_ID, _set_bid(bid=800_000))
    await GuardrailStore(session_factory).update(PROFILE_ID, {"min_bid_micros": 900_000})

    await worker().run_once()

    item = await queue.get_item(enqueued.item_id)
    assert item.status == "skipped"
    assert item.status_reason.startswith("Bid 800000 outside guardrail bounds")
    assert ads_api.requests == []


@pytest.mark.anyio
async def test_retry_is_bounded_by_deliveries(session_factory, ads_api, worker, no_wait_policy):
    """Three attempts per delivery, three deliveries, then the item fails for good."""
    ads_api.responses.extend(_server_errors(9))
    queue = ActionQueue(session_factory)
    enqueued = await queue.enqueue(PROFILE_ID, _set_bid())
    executor = worker()

    first = await executor.run_once()
    item = await queue.get_item(enqueued.item_id)
    assert first.released == 1
    assert item.status == "queued"
    assert (item.attempts, item.deliveries) == (3, 1)
    assert [c.args[0] for c in no_wait_policy.sleep.await_args_list] == [1.0, 2.0]

    await executor.run_once()
    last = await executor.run_once()

    item = await queue.get_item(enqueued.item_id)
    assert last.failed == 1
    assert item.status == "failed"
    assert (item.attempts, item.deliveries) == (9, 3)
    assert "gave up after 3 deliveries" in item.error
    assert len(ads_api.requests) == 9

    # Nothing left to do
    assert (await executor.run_once()).processed == 0
    assert len(ads_api.requests) == 9


@pytest.mark.anyio
async def test_permanent_error_fails_without_retry(session_factory, ads_api, worker):
    ads_api.responses.append(httpx.Response(400, json={"message": "Bid exceeds maximum"}, headers={"x-amz-request-id": "req-400"}))
    queue = ActionQueue(session_factory)
    enqueued = await queue.enqueue(PROFILE_ID, _set_bid())

    stats = await worker().run_once()

    assert stats.failed == 1
    item = await queue.get_item(enqueued.item_id)
    assert item.status == "failed"
    assert "Bid exceeds maximum" in item.error
    assert item.amazon_request_id == "req-400"
    assert item.amazon_api_response == {"message": "Bid exceeds maximum"}
    assert len(ads_api.requests) == 1


@pytest.mark.anyio
async def test_unauthorized_fails_item(session_factory, ads_api, worker):
    ads_api.responses.append(httpx.Response(401, json={"code": "UNAUTHORIZED"}))
    queue = ActionQueue(session_factory)
    enqueued = await queue.enqueue(PROFILE_ID, _set_bid())

    await worker().run_once()

    item = await queue.get_item(enqueued.item_id)
    assert item.status == "failed"
    assert "401" in item.error
    assert len(ads_api.requests) == 1


@pytest.mark.anyio
async def test_missing_credentials_fail_item(session_factory, worker):
    queue = ActionQueue(session_factory)
    enqueued = await queue.enqueue(PROFILE_ID, _set_bid())
    client_factory = AsyncMock(side_effect=CredentialError(f"No Amazon Ads credential for profile {PROFILE_ID}"))

    stats = await worker(client_factory=client_factory).run_once()

    assert stats.failed == 1
    item = await queue.get_item(enqueued.item_id)
    assert item.status == "failed"
    assert "No Amazon Ads credential" in item.error


@pytest.mark.anyio
async def test_kill_switch_at_dequeue_releases_without_counting(session_factory, ads_api, worker):
    queue = ActionQueue(session_factory)
    enqueued = await queue.enqueue(PROFILE_ID, _set_bid())
    paused = Mock()
    paused.load = AsyncMock(return_value=GuardrailSnapshot(PROFILE_ID, automation_enabled=False))

    stats = await worker(guardrails=paused).run_once()

    assert (stats.processed, stats.released) == (1, 1)
    item = await queue.get_item(enqueued.item_id)
    assert item.status == "queued"
    assert item.deliveries == 0
    assert ads_api.requests == []


@pytest.mark.anyio
async def test_paused_profile_is_not_claimed(session_factory, ads_api, worker, set_guardrails):
    await set_guardrails(automation_enabled=False)
    queue = ActionQueue(session_factory)
    enqueued = await queue.enqueue(PROFILE_ID, _set_bid())

    stats = await worker().run_once()

    assert stats.processed == 0
    assert (await queue.get_item(enqueued.item_id)).status == "queued"
    assert ads_api.requests == []


@pytest.mark.anyio
async def test_concurrent_workers_execute_each_item_once(session_factory, ads_api, worker):
    queue = ActionQueue(session_factory)
    ids = [(await queue.enqueue(PROFILE_ID, _set_bid(f"t-{n}"))).item_id for n in range(6)]

    results = await asyncio.gather(
        worker(worker_id="worker-a").run_once(),
        worker(worker_id="worker-b").run_once(),
        worker(worker_id="worker-c").run_once(),
    )

    assert sum(s.applied for s in results) == 6
    assert len(ads_api.requests) == 6
    items = [await queue.get_item(i) for i in ids]
    assert all(i.status == "applied" and i.deliveries == 1 for i in items)
    target_ids = sorted(r.content for r in ads_api.requests)
    assert len(set(target_ids)) == 6


@pytest.mark.anyio
async def test_circuit_opens_after_consecutive_exhaustion(session_factory, ads_api, worker, settings):
    ads_api.responses.extend(_server_errors(6))
    queue = ActionQueue(session_factory)
    for n in range(3):
        await queue.enqueue(PROFILE_ID, _set_bid(f"t-{n}"))

    stats = await worker(settings=settings.model_copy(update={"worker_circuit_threshold": 2})).run_once()

    assert stats.circuit_open
    assert (stats.processed, stats.released) == (2, 2)
    assert len(ads_api.requests) == 6
    assert (await queue.summary(PROFILE_ID))["queued"] == 3


@pytest.mark.anyio
async def test_stale_claim_is_recovered_and_run(session_factory, ads_api, worker):
    queue = ActionQueue(session_factory)
    enqueued = await queue.enqueue(PROFILE_ID, _set_bid())
    await queue.claim_next("dead-worker", now=utcnow() - timedelta(hours=1))

    stats = await worker().run_once()

    assert stats.recovered == 1
    assert stats.applied == 1
    item = await queue.get_item(enqueued.item_id)
    assert item.status == "applied"
    assert item.deliveries == 2


@pytest.mark.anyio
async def test_stale_claim_on_last_delivery_fails(session_factory, ads_api, worker):
    queue = ActionQueue(session_factory)
    enqueued = await queue.enqueue(PROFILE_ID, _set_bid())
    long_ago = utcnow() - timedelta(hours=1)
    for _ in range(3):
        await queue.recover_stale_claims(utcnow())
        await queue.claim_next("dead-worker", now=long_ago)

    stats = await worker().run_once()

    assert (stats.failed, stats.recovered, stats.processed) == (1, 0, 0)
    item = await queue.get_item(enqueued.item_id)
    assert item.status == "failed"
    assert item.deliveries == 3
    assert "gave up after 3 deliveries" in item.error
    assert ads_api.requests == []
