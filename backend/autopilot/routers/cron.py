"""
Cron / Scheduled Jobs: endpoints for an external scheduler.

There is no in-process scheduler. A cron service calls these on an interval:
  POST /api/cron/rules            evaluate every enabled rule
  POST /api/cron/actions-worker   run one execution worker pass

Authenticate with CRON_SECRET, sent as either
  X-Cron-Secret: <CRON_SECRET>
  Authorization: Bearer <CRON_SECRET>
"""

import logging
import secrets
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.ext.asyncio import async_sessionmaker
from autopilot.config import get_settings
from autopilot.database import get_session_factory
from autopilot.services.executor import ExecutionWorker
from autopilot.services.rule_engine import RuleEngine
from autopilot.utils import safe_error_detail

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


async def _require_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    authorization: str | None = Header(None),
) -> None:
    """Verify the request came from the scheduler."""
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(500, "CRON_SECRET not configured")
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if not token or not secrets.compare_digest(token, secret):
        raise HTTPException(401, "Invalid cron secret")


@router.post("/rules")
async def cron_rules(
    profile_id: Optional[str] = Query(None),
    _: None = Depends(_require_cron_secret),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Scheduled evaluation of enabled rules, optionally for one profile."""
    try:
        results = await RuleEngine(session_factory).run_scheduled(profile_id)
    except Exception as e:
        logger.exception("Cron rule evaluation failed")
        raise HTTPException(500, safe_error_detail(e, "Rule evaluation failed"))

    by_status: dict[str, int] = {}
    for r in results:
        by_status[r.status] = by_status.get(r.status, 0) + 1
    logger.info(f"Cron rules completed: {len(results)} run(s) {by_status}")
    return {
        "status": "ok",
        "runs": len(results),
        "by_status": by_status,
        "alerts_created": sum(r.alerts_created for r in results),
        "actions_enqueued": sum(r.actions_enqueued for r in results),
        "results": [r.to_dict() for r in results],
    }


@router.post("/actions-worker")
async def cron_actions_worker(
    batch_size: Optional[int] = Query(None, ge=1, le=500),
    _: None = Depends(_require_cron_secret),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Scheduled worker pass. Overlapping calls are safe: claims are exclusive."""
    try:
        stats = await ExecutionWorker(session_factory).run_once(batch_size=batch_size)
    except Exception as e:
        logger.exception("Cron worker pass failed")
        raise HTTPException(500, safe_error_detail(e, "Worker pass failed"))
    return {"status": "ok", **stats.to_dict()}
