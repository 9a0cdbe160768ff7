"""
Tests for the action queue: idempotent inserts and the status state machine.
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from autopilot.exceptions import ConfigurationError, InvalidTransitionError, NotFoundError
from autopilot.models import ActionQueueItem, ActionSource, ActionStatus, ActionType, ActivityLog
from autopilot.services.action_queue import ActionQueue, EnqueueOutcome, build_idempotency_key, time_bucket
from autopilot.services.action_types import ProposedAction

PROFILE_ID = "1234567890"
NOW = datetime(2026, 3, 10, 9, 30)


def _set_bid(target_id="t-1", bid=800_000):
    return ProposedAction(ActionType.SET_BID, {"targetId": target_id, "bidMicros": bid, "currentBidMicros": 1_000_000})


async def _count(session_factory, **filters) -> int:
    async with session_factory() as db:
        stmt = select(func.count()).select_from(ActionQueueItem)
        for key, value in filters.items():
            stmt = stmt.where(getattr(ActionQueueItem, key) == value)
        return (await db.execute(stmt)).scalar_one()


# ── Idempotency ───────────────────────────────────────────────────────

def test_idempotency_key_ignores_new_value():
    """A second, different bid for the same target in the same bucket is the same intent."""
    first = build_idempotency_key(PROFILE_ID, "set_bid", {"targetId": "t-1", "bidMicros": 800_000}, NOW, 24)
    second = build_idempotency_key(PROFILE_ID, "set_bid", {"targetId": "t-1", "bidMicros": 700_000}, NOW, 24)
    other_target = build_idempotency_key(PROFILE_ID, "set_bid", {"targetId": "t-2", "bidMicros": 800_000}, NOW, 24)
    assert first == second
    assert first != other_target


def test_idempotency_key_normalizes_keyword_text_and_match_type():
    base = {"campaignId": "c-1", "adGroupId": "ag-1", "matchType": "exact"}
    a = build_idempotency_key(PROFILE_ID, "create_keyword", {**base, "keywordText": "Running  Shoes"}, NOW, 24)
    b = build_idempotency_key(PROFILE_ID, "create_keyword", {**base, "keywordText": "running shoes", "matchType": "EXACT"}, NOW, 24)
    assert a == b


def test_idempotency_key_changes_with_bucket():
    payload = {"targetId": "t-1", "bidMicros": 800_000}
    today = build_idempotency_key(PROFILE_ID, "set_bid", payload, NOW, 24)
    tomorrow = build_idempotency_key(PROFILE_ID, "set_bid", payload, NOW + timedelta(days=1), 24)
    later_same_hour_bucket = build_idempotency_key(PROFILE_ID, "set_bid", payload, NOW + timedelta(minutes=20), 1)
    assert today != tomorrow
    assert build_idempotency_key(PROFILE_ID, "set_bid", payload, NOW, 1) == later_same_hour_bucket


def test_time_bucket_treats_naive_as_utc():
    assert time_bucket(NOW, 24) == time_bucket(NOW.replace(hour=23, minute=59), 24)
    assert time_bucket(NOW, 24) + 1 == time_bucket(NOW + timedelta(days=1), 24)


@pytest.mark.anyio
async def test_enqueue_same_intent_twice_stores_one_row(session_factory):
    queue = ActionQueue(session_factory, bucket_hours=24)

    first = await queue.enqueue(PROFILE_ID, _set_bid(bid=800_000), now=NOW)
    second = await queue.enqueue(PROFILE_ID, _set_bid(bid=750_000), now=NOW + timedelta(hours=2))

    assert first.outcome == EnqueueOutcome.INSERTED
    assert second.outcome == EnqueueOutcome.DUPLICATE_IGNORED
    assert second.item_id == first.item_id
    assert second.status == ActionStatus.QUEUED.value
    assert await _count(session_factory) == 1


@pytest.mark.anyio
async def test_enqueue_after_terminal_state_inserts_again(session_factory):
    """Failed items release their key; only live rows hold it."""
    queue = ActionQueue(session_factory, bucket_hours=24)
    first = await queue.enqueue(PROFILE_ID, _set_bid(), now=NOW)
    claimed = await queue.claim_next("worker-a", now=NOW)
    assert claimed.id == first.item_id
    await queue.mark_failed(claimed.id, "Amazon Ads API error (400): bad bid")

    again = await queue.enqueue(PROFILE_ID, _set_bid(), now=NOW)
    assert again.inserted
    assert again.item_id != first.item_id
    assert await _count(session_factory, idempotency_key=first.idempotency_key) == 2


@pytest.mark.anyio
async def test_enqueue_rejects_invalid_payload(session_factory):
    queue = ActionQueue(session_factory)
    with pytest.raises(ConfigurationError, match="Missing required field 'bidMicros'"):
        await queue.enqueue(PROFILE_ID, ProposedAction(ActionType.SET_BID, {"targetId": "t-1"}))
    with pytest.raises(ConfigurationError, match="profile_id is required"):
        await queue.enqueue("", _set_bid())
    assert await _count(session_factory) == 0


@pytest.mark.anyio
async def test_enqueue_writes_activity_log(session_factory):
    queue = ActionQueue(session_factory)
    result = await queue.enqueue(PROFILE_ID, _set_bid(), source=ActionSource.MANUAL, now=NOW)
    async with session_factory() as db:
        log = (await db.execute(
            select(ActivityLog).where(ActivityLog.entity_id == str(result.item_id))
        )).scalar_one()
    assert log.action == "action_enqueued"
    assert log.details["source"] == "manual"


@pytest.mark.anyio
async def test_record_prevented_keeps_one_audit_row(session_factory):
    queue = ActionQueue(session_factory)
    first = await queue.record_prevented(PROFILE_ID, _set_bid(), "Protected entity: target t-1", now=NOW)
    second = await queue.record_prevented(PROFILE_ID, _set_bid(), "Protected entity: target t-1", now=NOW)

    assert first.inserted
    assert not second.inserted
    item = await queue.get_item(first.item_id)
    assert item.status == ActionStatus.PREVENTED.value
    assert item.status_reason == "Protected entity: target t-1"
    # A prevented record does not hold the key for real work
    assert (await queue.enqueue(PROFILE_ID, _set_bid(), now=NOW)).inserted


@pytest.mark.anyio
async def test_concurrent_prevented_records_insert_once(session_factory):
    queue = ActionQueue(session_factory)

    results = await asyncio.gather(*(
        queue.record_prevented(PROFILE_ID, _set_bid(), "Protected entity: target t-1", now=NOW)
        for _ in range(5)
    ))

    inserted = [r for r in results if r.inserted]
    assert len(inserted) == 1
    assert {r.item_id for r in results} == {inserted[0].item_id}
    assert await _count(session_factory, status=ActionStatus.PREVENTED.value) == 1


# ── State machine ─────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_approve_moves_pending_to_queued(session_factory):
    queue = ActionQueue(session_factory)
    result = await queue.enqueue(PROFILE_ID, _set_bid(), status=ActionStatus.PENDING_APPROVAL, now=NOW)

    assert await queue.claim_next("worker-a", now=NOW) is None  # pending items are never claimed
    item = await queue.approve(result.item_id, "looks right")
    assert item.status == ActionStatus.QUEUED.value
    assert item.status_reason == "looks right"
    assert (await queue.claim_next("worker-a", now=NOW)).id == result.item_id


@pytest.mark.anyio
async def test_reject_is_terminal(session_factory):
    queue = ActionQueue(session_factory)
    result = await queue.enqueue(PROFILE_ID, _set_bid(), status=ActionStatus.PENDING_APPROVAL, now=NOW)
    rejected = await queue.reject(result.item_id)
    assert rejected.status == ActionStatus.REJECTED.value

    with pytest.raises(InvalidTransitionError) as exc_info:
        await queue.approve(result.item_id)
    assert exc_info.value.current_status == ActionStatus.REJECTED.value


@pytest.mark.anyio
async def test_transition_unknown_item(session_factory):
    import uuid
    with pytest.raises(NotFoundError):
        await ActionQueue(session_factory).approve(uuid.uuid4())


@pytest.mark.anyio
async def test_claim_then_apply(session_factory):
    queue = ActionQueue(session_factory)
    result = await queue.enqueue(PROFILE_ID, _set_bid(), now=NOW)

    claimed = await queue.claim_next("worker-a", now=NOW)
    assert claimed.status == ActionStatus.EXECUTING.value
    assert claimed.claimed_by == "worker-a"
    assert claimed.deliveries == 1
    assert await queue.claim_next("worker-b", now=NOW) is None

    applied = await queue.mark_applied(claimed.id, "req-123", {"targetingClauses": {"success": [{"index": 0}]}}, 1)
    assert applied.status == ActionStatus.APPLIED.value
    assert applied.amazon_request_id == "req-123"
    assert applied.attempts == 1
    assert applied.applied_at is not None

    # Terminal: no further transitions
    with pytest.raises(InvalidTransitionError):
        await queue.mark_failed(result.item_id, "late failure")


@pytest.mark.anyio
async def test_claim_order_is_oldest_first(session_factory):
    queue = ActionQueue(session_factory)
    older = await queue.enqueue(PROFILE_ID, _set_bid("t-old"), now=NOW)
    await queue.enqueue(PROFILE_ID, _set_bid("t-new"), now=NOW + timedelta(minutes=5))
    assert (await queue.claim_next("worker-a")).id == older.item_id


@pytest.mark.anyio
async def test_claim_skips_paused_profiles_and_excluded_ids(session_factory, set_guardrails):
    queue = ActionQueue(session_factory)
    await set_guardrails(profile_id="paused-profile", automation_enabled=False)
    await queue.enqueue("paused-profile", _set_bid("t-paused"), now=NOW)
    first = await queue.enqueue(PROFILE_ID, _set_bid("t-1"), now=NOW)
    second = await queue.enqueue(PROFILE_ID, _set_bid("t-2"), now=NOW + timedelta(seconds=1))

    claimed = await queue.claim_next("worker-a", exclude={first.item_id})
    assert claimed.id == second.item_id
    assert await queue.claim_next("worker-a", exclude={first.item_id}) is None


@pytest.mark.anyio
async def test_release_returns_item_to_queue(session_factory):
    queue = ActionQueue(session_factory)
    await queue.enqueue(PROFILE_ID, _set_bid(), now=NOW)
    claimed = await queue.claim_next("worker-a", now=NOW)

    released = await queue.release(claimed.id, "Retries exhausted", error="HTTP 503", attempts=3)
    assert released.status == ActionStatus.QUEUED.value
    assert released.claimed_by is None
    assert released.error == "HTTP 503"
    assert released.attempts == 3
    assert released.deliveries == 1

    reclaimed = await queue.claim_next("worker-b", now=NOW)
    assert reclaimed.deliveries == 2
    paused = await queue.release(reclaimed.id, "Automation paused", count_delivery=False)
    assert paused.deliveries == 1


@pytest.mark.anyio
async def test_recover_stale_claims(session_factory):
    queue = ActionQueue(session_factory)
    await queue.enqueue(PROFILE_ID, _set_bid("t-1"), now=NOW)
    await queue.enqueue(PROFILE_ID, _set_bid("t-2"), now=NOW)
    stale = await queue.claim_next("dead-worker", now=NOW - timedelta(hours=1))
    fresh = await queue.claim_next("live-worker", now=NOW)

    recovered = await queue.recover_stale_claims(NOW - timedelta(minutes=15))
    assert recovered == 1
    assert (await queue.get_item(stale.id)).status == ActionStatus.QUEUED.value
    assert (await queue.get_item(fresh.id)).status == ActionStatus.EXECUTING.value

    # The dead worker's late write loses
    with pytest.raises(InvalidTransitionError):
        await queue.mark_applied(stale.id, "req-late", {}, 1)


@pytest.mark.anyio
async def test_summary_and_listing(session_factory):
    queue = ActionQueue(session_factory)
    await queue.enqueue(PROFILE_ID, _set_bid("t-1"), now=NOW)
    await queue.enqueue(PROFILE_ID, _set_bid("t-2"), status=ActionStatus.PENDING_APPROVAL, now=NOW)
    await queue.enqueue("other-profile", _set_bid("t-3"), now=NOW)

    summary = await queue.summary(PROFILE_ID)
    assert summary["queued"] == 1
    assert summary["pending_approval"] == 1
    assert summary["applied"] == 0

    pending = await queue.list_items(PROFILE_ID, statuses=["pending_approval"])
    assert [i.entity_id for i in pending] == ["t-2"]
    assert len(await queue.list_items(PROFILE_ID)) == 2
