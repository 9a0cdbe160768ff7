"""
Alerts Router: read and acknowledge alerts produced by rule runs.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from autopilot.database import get_db
from autopilot.models import ActivityLog, Alert, AlertState, Severity
from autopilot.utils import parse_uuid, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


class AcknowledgeRequest(BaseModel):
    profile_id: str
    alert_ids: list[str]


@router.get("")
async def list_alerts(
    profile_id: str = Query(...),
    state: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    rule_id: Optional[str] = Query(None),
    limit: int = Query(100, le=500),
    db: AsyncSession = Depends(get_db),
):
    query = select(Alert).where(Alert.profile_id == profile_id)
    if state:
        if state not in {s.value for s in AlertState}:
            raise HTTPException(status_code=400, detail=f"Unknown alert state '{state}'")
        query = query.where(Alert.state == state)
    if severity:
        if severity not in {s.value for s in Severity}:
            raise HTTPException(status_code=400, detail=f"Unknown severity '{severity}'")
        query = query.where(Alert.severity == severity)
    if rule_id:
        query = query.where(Alert.rule_id == parse_uuid(rule_id, "rule_id"))
    result = await db.execute(query.order_by(Alert.created_at.desc()).limit(limit))
    return [_serialize_alert(a) for a in result.scalars().all()]


@router.post("/acknowledge")
async def acknowledge_alerts(payload: AcknowledgeRequest, db: AsyncSession = Depends(get_db)):
    """new -> acknowledged. Already-acknowledged alerts are left as they are."""
    ids = [parse_uuid(a, "alert_id") for a in payload.alert_ids]
    if not ids:
        return {"acknowledged": 0}
    result = await db.execute(
        update(Alert)
        .where(
            Alert.id.in_(ids),
            Alert.profile_id == payload.profile_id,
            Alert.state == AlertState.NEW.value,
        )
        .values(state=AlertState.ACKNOWLEDGED.value, acknowledged_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        db.add(ActivityLog(
            profile_id=payload.profile_id,
            action="alerts_acknowledged",
            category="alerts",
            description=f"Acknowledged {result.rowcount} alert(s)",
            details={"alert_ids": payload.alert_ids},
        ))
    return {"acknowledged": result.rowcount or 0}


def _serialize_alert(a: Alert) -> dict:
    return {
        "id": str(a.id),
        "rule_id": str(a.rule_id) if a.rule_id else None,
        "profile_id": a.profile_id,
        "entity_type": a.entity_type,
        "entity_id": a.entity_id,
        "severity": a.severity,
        "title": a.title,
        "message": a.message,
        "data": a.data,
        "state": a.state,
        "acknowledged_at": a.acknowledged_at.isoformat() if a.acknowledged_at else None,
        "created_at": a.created_at.isoformat() if a.created_at else None,
    }
