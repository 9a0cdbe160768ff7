"""
Actions Router: the action queue as operators see it.
Approve/reject for suggestion-mode items, queue summary, the test enqueue
entry point and a manual worker pass.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import async_sessionmaker
from autopilot.database import get_session_factory
from autopilot.exceptions import AutopilotError
from autopilot.models import ActionQueueItem, ActionSource, ActionStatus, ActionType
from autopilot.services.action_queue import ActionQueue
from autopilot.services.action_types import ProposedAction, impact_micros, validate_payload
from autopilot.services.executor import ExecutionWorker
from autopilot.services.guardrails import GuardrailStore
from autopilot.services.throttle import Decision, apply_guardrails
from autopilot.utils import http_error, parse_uuid, safe_error_detail

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Request Models ────────────────────────────────────────────────────

class ReviewRequest(BaseModel):
    note: Optional[str] = None


class BatchReviewRequest(BaseModel):
    action_ids: list[str]
    decision: str  # "approve" | "reject"
    note: Optional[str] = None


class TestActionRequest(BaseModel):
    profile_id: str
    action_type: str
    payload: dict
    reason: Optional[str] = None
    require_approval: bool = False


class RunWorkerRequest(BaseModel):
    batch_size: Optional[int] = None


# ── Endpoints ─────────────────────────────────────────────────────────

@router.get("")
async def list_actions(
    profile_id: str = Query(...),
    status: Optional[str] = Query(None, description="Comma-separated statuses"),
    rule_id: Optional[str] = Query(None),
    limit: int = Query(100, le=500),
    offset: int = Query(0, ge=0),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    statuses = [s.strip() for s in status.split(",") if s.strip()] if status else None
    if statuses:
        allowed = {s.value for s in ActionStatus}
        unknown = [s for s in statuses if s not in allowed]
        if unknown:
            raise HTTPException(status_code=400, detail=f"Unknown status: {', '.join(unknown)}")
    items = await ActionQueue(session_factory).list_items(
        profile_id,
        statuses=statuses,
        rule_id=parse_uuid(rule_id, "rule_id") if rule_id else None,
        limit=limit,
        offset=offset,
    )
    return [_serialize_action(i) for i in items]


@router.get("/summary")
async def actions_summary(
    profile_id: str = Query(...),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Item counts per status for one profile."""
    counts = await ActionQueue(session_factory).summary(profile_id)
    return {"profile_id": profile_id, "counts": counts, "total": sum(counts.values())}


@router.get("/{action_id}")
async def get_action(action_id: str, session_factory: async_sessionmaker = Depends(get_session_factory)):
    try:
        item = await ActionQueue(session_factory).get_item(parse_uuid(action_id, "action_id"))
    except AutopilotError as e:
        raise http_error(e)
    return _serialize_action(item)


@router.post("/{action_id}/approve")
async def approve_action(
    action_id: str,
    payload: ReviewRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """pending_approval -> queued. The worker picks it up on its next pass."""
    try:
        item = await ActionQueue(session_factory).approve(parse_uuid(action_id, "action_id"), payload.note)
    except AutopilotError as e:
        raise http_error(e)
    return _serialize_action(item)


@router.post("/{action_id}/reject")
async def reject_action(
    action_id: str,
    payload: ReviewRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    try:
        item = await ActionQueue(session_factory).reject(parse_uuid(action_id, "action_id"), payload.note)
    except AutopilotError as e:
        raise http_error(e)
    return _serialize_action(item)


@router.post("/batch-review")
async def batch_review(payload: BatchReviewRequest, session_factory: async_sessionmaker = Depends(get_session_factory)):
    """Approve or reject several items. Each item is its own transition; failures are reported per item."""
    if payload.decision not in ("approve", "reject"):
        raise HTTPException(status_code=400, detail="decision must be 'approve' or 'reject'")

    queue = ActionQueue(session_factory)
    review = queue.approve if payload.decision == "approve" else queue.reject
    results = []
    errors = []
    for action_id in payload.action_ids:
        try:
            item = await review(parse_uuid(action_id, "action_id"), payload.note)
            results.append({"id": action_id, "status": item.status})
        except HTTPException as e:
            errors.append({"id": action_id, "error": e.detail})
        except AutopilotError as e:
            errors.append({"id": action_id, "error": str(e)})

    return {
        "decision": payload.decision,
        "processed": len(results),
        "failed": len(errors),
        "results": results,
        "errors": errors,
    }


@router.post("/test")
async def enqueue_test_action(
    payload: TestActionRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Enqueue an action directly, skipping rule evaluation. Guardrails,
    idempotency and the state machine apply exactly as for rule output.
    """
    try:
        proposal = ProposedAction(
            action_type=ActionType(payload.action_type),
            payload=payload.payload,
            reason=payload.reason or "Manual test action",
        )
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown action_type '{payload.action_type}'")
    problems = validate_payload(proposal.action_type, proposal.payload)
    if problems:
        raise HTTPException(status_code=400, detail=f"Invalid {proposal.kind} payload: {'; '.join(problems)}")

    queue = ActionQueue(session_factory)
    guardrails = await GuardrailStore(session_factory).load(payload.profile_id)
    admission = apply_guardrails(proposal, guardrails)
    try:
        if admission.decision == Decision.DROP:
            if admission.protected:
                result = await queue.record_prevented(
                    payload.profile_id, proposal, admission.reason, source=ActionSource.MANUAL,
                )
                return {"outcome": "prevented", "reason": admission.reason, "item_id": str(result.item_id)}
            return {"outcome": "dropped", "reason": admission.reason, "item_id": None}

        proposal = admission.proposal
        needs_approval = payload.require_approval or guardrails.requires_approval(
            impact_micros(proposal.action_type, proposal.payload)
        )
        result = await queue.enqueue(
            payload.profile_id,
            proposal,
            status=ActionStatus.PENDING_APPROVAL if needs_approval else ActionStatus.QUEUED,
            source=ActionSource.MANUAL,
            status_reason=admission.reason,
        )
    except AutopilotError as e:
        raise http_error(e)

    return {
        "outcome": result.outcome.value,
        "item_id": str(result.item_id) if result.item_id else None,
        "status": result.status,
        "idempotency_key": result.idempotency_key,
        "reason": admission.reason,
    }


@router.post("/run-worker")
async def run_worker(payload: RunWorkerRequest, session_factory: async_sessionmaker = Depends(get_session_factory)):
    """Run one worker pass in-process. Scheduled passes go through /cron/actions-worker."""
    try:
        stats = await ExecutionWorker(session_factory).run_once(batch_size=payload.batch_size)
    except Exception as e:
        logger.exception("Manual worker pass failed")
        raise HTTPException(status_code=500, detail=safe_error_detail(e, "Worker pass failed"))
    return {"status": "ok", **stats.to_dict()}


# ── Serializer ────────────────────────────────────────────────────────

def _serialize_action(item: ActionQueueItem) -> dict:
    return {
        "id": str(item.id),
        "profile_id": item.profile_id,
        "action_type": item.action_type,
        "entity_type": item.entity_type,
        "entity_id": item.entity_id,
        "payload": item.payload,
        "status": item.status,
        "status_reason": item.status_reason,
        "source": item.source,
        "rule_id": str(item.rule_id) if item.rule_id else None,
        "playbook_run_id": str(item.playbook_run_id) if item.playbook_run_id else None,
        "reason": item.reason,
        "error": item.error,
        "attempts": item.attempts,
        "deliveries": item.deliveries,
        "idempotency_key": item.idempotency_key,
        "amazon_request_id": item.amazon_request_id,
        "amazon_api_response": item.amazon_api_response,
        "applied_at": item.applied_at.isoformat() if item.applied_at else None,
        "created_at": item.created_at.isoformat() if item.created_at else None,
        "updated_at": item.updated_at.isoformat() if item.updated_at else None,
    }
