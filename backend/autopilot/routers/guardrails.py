"""
Guardrails Router: per-profile limits, the automation kill switch and
protected entities.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import async_sessionmaker
from autopilot.database import get_session_factory
from autopilot.exceptions import AutopilotError
from autopilot.models import EntityType, ProtectedEntity
from autopilot.services.guardrails import GuardrailSnapshot, GuardrailStore
from autopilot.utils import http_error, micros_to_amount

logger = logging.getLogger(__name__)

router = APIRouter()

PROTECTABLE_TYPES = (
    EntityType.CAMPAIGN.value,
    EntityType.AD_GROUP.value,
    EntityType.KEYWORD.value,
    EntityType.TARGET.value,
)


# ── Request Models ────────────────────────────────────────────────────

class GuardrailUpdate(BaseModel):
    min_bid_micros: Optional[int] = Field(None, ge=0)
    max_bid_micros: Optional[int] = Field(None, ge=0)
    max_bid_change_percent: Optional[float] = Field(None, gt=0, le=100)
    require_approval_above_micros: Optional[int] = Field(None, ge=0)
    max_actions_per_day: Optional[int] = Field(None, ge=0)


class AutomationToggle(BaseModel):
    enabled: bool
    reason: Optional[str] = None


class ProtectRequest(BaseModel):
    entity_type: str
    entity_id: str
    reason: Optional[str] = None


def _check_entity_type(entity_type: str) -> str:
    if entity_type not in PROTECTABLE_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"entity_type must be one of {', '.join(PROTECTABLE_TYPES)}",
        )
    return entity_type


# ── Endpoints ─────────────────────────────────────────────────────────

@router.get("/{profile_id}")
async def get_guardrails(profile_id: str, session_factory: async_sessionmaker = Depends(get_session_factory)):
    snapshot = await GuardrailStore(session_factory).load(profile_id)
    return _serialize_snapshot(snapshot)


@router.put("/{profile_id}")
async def update_guardrails(
    profile_id: str,
    payload: GuardrailUpdate,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Only the fields present in the body change. Send null to clear an optional limit."""
    try:
        snapshot = await GuardrailStore(session_factory).update(profile_id, payload.model_dump(exclude_unset=True))
    except AutopilotError as e:
        raise http_error(e)
    return _serialize_snapshot(snapshot)


@router.post("/{profile_id}/automation")
async def set_automation(
    profile_id: str,
    payload: AutomationToggle,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Kill switch. When off, rule runs are skipped and the worker claims
    nothing for this profile; queued items stay queued until it is back on.
    """
    snapshot = await GuardrailStore(session_factory).set_automation_enabled(profile_id, payload.enabled, payload.reason)
    return _serialize_snapshot(snapshot)


@router.get("/{profile_id}/protected")
async def list_protected(profile_id: str, session_factory: async_sessionmaker = Depends(get_session_factory)):
    entities = await GuardrailStore(session_factory).list_protected(profile_id)
    return [_serialize_protected(p) for p in entities]


@router.post("/{profile_id}/protected")
async def protect_entity(
    profile_id: str,
    payload: ProtectRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    _check_entity_type(payload.entity_type)
    created = await GuardrailStore(session_factory).protect(
        profile_id, payload.entity_type, payload.entity_id, payload.reason,
    )
    return {
        "status": "protected" if created else "already_protected",
        "entity_type": payload.entity_type,
        "entity_id": payload.entity_id,
    }


@router.delete("/{profile_id}/protected/{entity_type}/{entity_id}")
async def unprotect_entity(
    profile_id: str,
    entity_type: str,
    entity_id: str,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    _check_entity_type(entity_type)
    removed = await GuardrailStore(session_factory).unprotect(profile_id, entity_type, entity_id)
    if not removed:
        raise HTTPException(status_code=404, detail=f"{entity_type} {entity_id} is not protected")
    return {"status": "unprotected", "entity_type": entity_type, "entity_id": entity_id}


# ── Serializers ───────────────────────────────────────────────────────

def _serialize_snapshot(s: GuardrailSnapshot) -> dict:
    return {
        "profile_id": s.profile_id,
        "automation_enabled": s.automation_enabled,
        "paused_reason": s.paused_reason,
        "min_bid_micros": s.min_bid_micros,
        "max_bid_micros": s.max_bid_micros,
        "min_bid": micros_to_amount(s.min_bid_micros),
        "max_bid": micros_to_amount(s.max_bid_micros),
        "max_bid_change_percent": s.max_bid_change_percent,
        "require_approval_above_micros": s.require_approval_above_micros,
        "max_actions_per_day": s.max_actions_per_day,
        "protected_count": len(s.protected),
    }


def _serialize_protected(p: ProtectedEntity) -> dict:
    return {
        "id": str(p.id),
        "entity_type": p.entity_type,
        "entity_id": p.entity_id,
        "reason": p.reason,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }
