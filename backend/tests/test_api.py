"""
Tests for the HTTP surface: manual triggers, approvals, guardrails and cron auth.
"""

import pytest
from httpx import AsyncClient, ASGITransport

from autopilot.database import get_db, get_session_factory
from autopilot.main import app

PROFILE_ID = "1234567890"
CRON_HEADERS = {"X-Cron-Secret": "test-cron-secret"}

SET_BID = {
    "profile_id": PROFILE_ID,
    "action_type": "set_bid",
    "payload": {"targetId": "t-1", "bidMicros": 800_000, "currentBidMicros": 1_000_000},
}


@pytest.fixture
async def api(session_factory, settings):
    async def override_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def _create_rule(api, **overrides):
    body = {
        "profile_id": PROFILE_ID,
        "name": "High ACOS bid down",
        "rule_type": "bid_down_high_acos",
        "params": {"acosThreshold": 30},
    }
    body.update(overrides)
    return await api.post("/api/rules", json=body)


# ── Rules ─────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_create_rule_fills_defaults(api):
    response = await _create_rule(api)
    assert response.status_code == 200
    rule = response.json()
    assert rule["mode"] == "dry_run"
    assert rule["enabled"] is False
    assert rule["params"]["bidReductionPercent"] == 20

    listed = await api.get("/api/rules", params={"profile_id": PROFILE_ID})
    assert [r["id"] for r in listed.json()] == [rule["id"]]


@pytest.mark.anyio
async def test_create_rule_rejects_bad_config(api):
    assert (await _create_rule(api, params={"acosThreshold": -5})).status_code == 400
    assert (await _create_rule(api, rule_type="dayparting")).status_code == 400
    assert (await _create_rule(api, mode="yolo")).status_code == 400

    assert (await _create_rule(api)).status_code == 200
    duplicate = await _create_rule(api)
    assert duplicate.status_code == 409


@pytest.mark.anyio
async def test_run_rule_requires_enabled(api):
    rule = (await _create_rule(api)).json()

    disabled = await api.post(f"/api/rules/{rule['id']}/run")
    assert disabled.status_code == 409

    toggled = await api.post(f"/api/rules/{rule['id']}/toggle", json={})
    assert toggled.json()["enabled"] is True

    run = await api.post(f"/api/rules/{rule['id']}/run")
    assert run.status_code == 200
    assert run.json()["status"] == "success"

    runs = await api.get(f"/api/rules/{rule['id']}/runs")
    assert [r["trigger"] for r in runs.json()] == ["manual"]


@pytest.mark.anyio
async def test_rule_mode_and_unknown_rule(api):
    rule = (await _create_rule(api)).json()

    changed = await api.put(f"/api/rules/{rule['id']}/mode", json={"mode": "suggestion"})
    assert changed.json()["mode"] == "suggestion"
    assert (await api.put(f"/api/rules/{rule['id']}/mode", json={"mode": "yolo"})).status_code == 400
    assert (await api.get("/api/rules/00000000-0000-0000-0000-000000000000")).status_code == 404
    assert (await api.get("/api/rules/not-a-uuid")).status_code == 400


@pytest.mark.anyio
async def test_initialize_default_rules(api):
    response = await api.post("/api/rules/initialize", json={"profile_id": PROFILE_ID})
    assert response.json()["created"] == 4
    again = await api.post("/api/rules/initialize", json={"profile_id": PROFILE_ID})
    assert again.json()["created"] == 0


# ── Actions ───────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_enqueue_test_action_is_idempotent(api):
    first = await api.post("/api/actions/test", json=SET_BID)
    second = await api.post("/api/actions/test", json=SET_BID)

    assert first.json()["outcome"] == "inserted"
    assert first.json()["status"] == "queued"
    assert second.json()["outcome"] == "duplicate_ignored"
    assert second.json()["item_id"] == first.json()["item_id"]

    summary = await api.get("/api/actions/summary", params={"profile_id": PROFILE_ID})
    assert summary.json()["counts"]["queued"] == 1
    assert summary.json()["total"] == 1


@pytest.mark.anyio
async def test_enqueue_test_action_rejections(api):
    unknown = await api.post("/api/actions/test", json={**SET_BID, "action_type": "delete_everything"})
    assert unknown.status_code == 400

    missing = await api.post("/api/actions/test", json={**SET_BID, "payload": {"targetId": "t-1"}})
    assert missing.status_code == 400
    assert "bidMicros" in missing.json()["detail"]

    noop = await api.post("/api/actions/test", json={
        **SET_BID, "payload": {"targetId": "t-1", "bidMicros": 1_005_000, "currentBidMicros": 1_000_000},
    })
    assert noop.json()["outcome"] == "dropped"


@pytest.mark.anyio
async def test_enqueue_test_action_rejects_malformed_micros(api):
    bad_bid = await api.post("/api/actions/test", json={**SET_BID, "payload": {"targetId": "t-1", "bidMicros": "abc"}})
    assert bad_bid.status_code == 400
    assert "'bidMicros' must be a positive integer" in bad_bid.json()["detail"]

    bad_current = await api.post("/api/actions/test", json={
        **SET_BID, "payload": {"targetId": "t-1", "bidMicros": 800_000, "currentBidMicros": "1.0"},
    })
    assert bad_current.status_code == 400
    assert "currentBidMicros" in bad_current.json()["detail"]

    summary = await api.get("/api/actions/summary", params={"profile_id": PROFILE_ID})
    assert summary.json()["total"] == 0


@pytest.mark.anyio
async def test_enqueue_test_action_on_protected_entity(api):
    protect = await api.post(f"/api/guardrails/{PROFILE_ID}/protected", json={"entity_type": "target", "entity_id": "t-1"})
    assert protect.json()["status"] == "protected"

    response = await api.post("/api/actions/test", json=SET_BID)

    assert response.json()["outcome"] == "prevented"
    item = await api.get(f"/api/actions/{response.json()['item_id']}")
    assert item.json()["status"] == "prevented"


@pytest.mark.anyio
async def test_approve_and_reject(api):
    held = (await api.post("/api/actions/test", json={**SET_BID, "require_approval": True})).json()
    other = (await api.post("/api/actions/test", json={
        **SET_BID, "require_approval": True,
        "payload": {"targetId": "t-2", "bidMicros": 800_000, "currentBidMicros": 1_000_000},
    })).json()
    assert held["status"] == "pending_approval"

    approved = await api.post(f"/api/actions/{held['item_id']}/approve", json={"note": "ok"})
    assert approved.json()["status"] == "queued"
    assert (await api.post(f"/api/actions/{held['item_id']}/approve", json={})).status_code == 409

    rejected = await api.post(f"/api/actions/{other['item_id']}/reject", json={})
    assert rejected.json()["status"] == "rejected"

    pending = await api.get("/api/actions", params={"profile_id": PROFILE_ID, "status": "pending_approval"})
    assert pending.json() == []
    assert (await api.get("/api/actions", params={"profile_id": PROFILE_ID, "status": "bogus"})).status_code == 400


@pytest.mark.anyio
async def test_batch_review_reports_each_item(api):
    held = (await api.post("/api/actions/test", json={**SET_BID, "require_approval": True})).json()

    response = await api.post("/api/actions/batch-review", json={
        "action_ids": [held["item_id"], "00000000-0000-0000-0000-000000000000", "nope"],
        "decision": "approve",
    })

    body = response.json()
    assert body["processed"] == 1
    assert body["failed"] == 2
    assert body["results"] == [{"id": held["item_id"], "status": "queued"}]


# ── Guardrails ────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_guardrail_defaults_and_update(api):
    defaults = (await api.get(f"/api/guardrails/{PROFILE_ID}")).json()
    assert defaults["automation_enabled"] is True
    assert defaults["min_bid_micros"] == 100_000

    updated = await api.put(f"/api/guardrails/{PROFILE_ID}", json={"min_bid_micros": 200_000, "max_actions_per_day": 20})
    assert updated.json()["min_bid_micros"] == 200_000
    assert updated.json()["max_actions_per_day"] == 20
    assert updated.json()["max_bid_micros"] == 10_000_000

    inverted = await api.put(f"/api/guardrails/{PROFILE_ID}", json={"min_bid_micros": 20_000_000})
    assert inverted.status_code == 400


@pytest.mark.anyio
async def test_kill_switch(api):
    paused = await api.post(f"/api/guardrails/{PROFILE_ID}/automation", json={"enabled": False, "reason": "Prime Day"})
    assert paused.json()["automation_enabled"] is False
    assert paused.json()["paused_reason"] == "Prime Day"

    resumed = await api.post(f"/api/guardrails/{PROFILE_ID}/automation", json={"enabled": True})
    assert resumed.json()["automation_enabled"] is True
    assert resumed.json()["paused_reason"] is None


@pytest.mark.anyio
async def test_protected_entities(api):
    body = {"entity_type": "campaign", "entity_id": "c-1", "reason": "brand defense"}
    assert (await api.post(f"/api/guardrails/{PROFILE_ID}/protected", json=body)).json()["status"] == "protected"
    assert (await api.post(f"/api/guardrails/{PROFILE_ID}/protected", json=body)).json()["status"] == "already_protected"
    bad = await api.post(f"/api/guardrails/{PROFILE_ID}/protected", json={**body, "entity_type": "portfolio"})
    assert bad.status_code == 400

    listed = await api.get(f"/api/guardrails/{PROFILE_ID}/protected")
    assert [p["entity_id"] for p in listed.json()] == ["c-1"]

    assert (await api.delete(f"/api/guardrails/{PROFILE_ID}/protected/campaign/c-1")).status_code == 200
    assert (await api.delete(f"/api/guardrails/{PROFILE_ID}/protected/campaign/c-1")).status_code == 404


# ── Playbooks ─────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_playbook_lifecycle(api):
    templates = await api.get("/api/playbooks/templates")
    assert {t["key"] for t in templates.json()} >= {"harvest_then_negate"}

    missing = await api.post("/api/playbooks", json={
        "name": "Harvest", "template_key": "harvest_then_negate", "params": {"minConversions": 2},
    })
    assert missing.status_code == 400

    created = await api.post("/api/playbooks", json={
        "name": "Harvest", "template_key": "harvest_then_negate",
        "params": {"minConversions": 2, "minSales": 50, "maxACOS": 30},
    })
    playbook = created.json()

    run = await api.post(f"/api/playbooks/{playbook['id']}/run", json={"profile_id": PROFILE_ID})
    assert run.status_code == 200
    assert run.json()["mode"] == "dry_run"
    assert run.json()["status"] == "success"

    runs = await api.get(f"/api/playbooks/{playbook['id']}/runs")
    assert len(runs.json()) == 1

    await api.post(f"/api/playbooks/{playbook['id']}/toggle", json={"enabled": False})
    disabled = await api.post(f"/api/playbooks/{playbook['id']}/run", json={"profile_id": PROFILE_ID})
    assert disabled.status_code == 409


# ── Alerts ────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_acknowledge_alerts(api, session_factory):
    from autopilot.models import Alert

    async with session_factory() as db:
        alert = Alert(profile_id=PROFILE_ID, title="Budget 92% spent: Campaign c-1", severity="critical")
        db.add(alert)
        await db.commit()

    new = await api.get("/api/alerts", params={"profile_id": PROFILE_ID, "state": "new"})
    assert [a["id"] for a in new.json()] == [str(alert.id)]

    ack = await api.post("/api/alerts/acknowledge", json={"profile_id": PROFILE_ID, "alert_ids": [str(alert.id)]})
    assert ack.json() == {"acknowledged": 1}
    again = await api.post("/api/alerts/acknowledge", json={"profile_id": PROFILE_ID, "alert_ids": [str(alert.id)]})
    assert again.json() == {"acknowledged": 0}

    assert (await api.get("/api/alerts", params={"profile_id": PROFILE_ID, "state": "new"})).json() == []
    assert (await api.get("/api/alerts", params={"profile_id": PROFILE_ID, "severity": "meh"})).status_code == 400


# ── Cron ──────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_cron_requires_secret(api):
    assert (await api.post("/api/cron/rules")).status_code == 401
    assert (await api.post("/api/cron/rules", headers={"X-Cron-Secret": "wrong"})).status_code == 401

    ok = await api.post("/api/cron/rules", headers=CRON_HEADERS)
    assert ok.status_code == 200
    assert ok.json()["runs"] == 0

    bearer = await api.post("/api/cron/actions-worker", headers={"Authorization": "Bearer test-cron-secret"})
    assert bearer.status_code == 200
    assert bearer.json()["processed"] == 0


@pytest.mark.anyio
async def test_cron_runs_enabled_rules(api):
    await _create_rule(api, enabled=True)
    await _create_rule(api, name="Disabled copy")

    response = await api.post("/api/cron/rules", params={"profile_id": PROFILE_ID}, headers=CRON_HEADERS)

    body = response.json()
    assert body["runs"] == 1
    assert body["by_status"] == {"success": 1}
    assert body["results"][0]["mode"] == "dry_run"
