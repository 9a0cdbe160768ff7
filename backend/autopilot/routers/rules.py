"""
Rules Router: automation rule management and the manual runRule trigger.
Rules are never deleted; disable them instead so their history stays intact.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from autopilot.database import get_db, get_session_factory
from autopilot.exceptions import AutopilotError
from autopilot.models import ActivityLog, AutomationMode, AutomationRule, AutomationRuleRun, Severity
from autopilot.services.rule_engine import RuleEngine
from autopilot.services.rules import RULE_DEFINITIONS, validate_rule_config
from autopilot.utils import http_error, parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Request Models ────────────────────────────────────────────────────

class CreateRuleRequest(BaseModel):
    profile_id: str
    name: str
    rule_type: str
    mode: str = AutomationMode.DRY_RUN.value
    enabled: bool = False
    severity: str = Severity.WARN.value
    params: dict = {}
    action: Optional[dict] = None
    throttle: Optional[dict] = None


class UpdateRuleRequest(BaseModel):
    name: Optional[str] = None
    severity: Optional[str] = None
    params: Optional[dict] = None
    action: Optional[dict] = None
    throttle: Optional[dict] = None


class ToggleRequest(BaseModel):
    enabled: Optional[bool] = None  # None flips the current value


class ModeRequest(BaseModel):
    mode: str


class InitializeRequest(BaseModel):
    profile_id: str


# ── Helpers ───────────────────────────────────────────────────────────

async def _get_rule(db: AsyncSession, rule_id: str) -> AutomationRule:
    rule = await db.get(AutomationRule, parse_uuid(rule_id, "rule_id"))
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found")
    return rule


def _check_choice(value: str, enum_cls, field_name: str) -> str:
    allowed = [m.value for m in enum_cls]
    if value not in allowed:
        raise HTTPException(status_code=400, detail=f"Invalid {field_name} '{value}'; expected one of {', '.join(allowed)}")
    return value


def _log(db: AsyncSession, rule: AutomationRule, action: str, description: str, details: Optional[dict] = None):
    db.add(ActivityLog(
        profile_id=rule.profile_id,
        action=action,
        category="rules",
        description=description,
        details=details,
        entity_type="rule",
        entity_id=str(rule.id),
    ))


# ── Endpoints ─────────────────────────────────────────────────────────

@router.get("")
async def list_rules(
    profile_id: str = Query(...),
    enabled: Optional[bool] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    query = select(AutomationRule).where(AutomationRule.profile_id == profile_id).order_by(AutomationRule.created_at)
    if enabled is not None:
        query = query.where(AutomationRule.enabled.is_(enabled))
    result = await db.execute(query)
    return [_serialize_rule(r) for r in result.scalars().all()]


@router.get("/types")
async def list_rule_types():
    """Rule types with their default params and allowed action descriptors."""
    return [
        {
            "rule_type": d.rule_type.value,
            "description": d.description,
            "default_params": d.params_model().model_dump(by_alias=True),
            "action_types": list(d.action_types),
            "default_action": d.default_action,
        }
        for d in RULE_DEFINITIONS.values()
    ]


@router.post("")
async def create_rule(payload: CreateRuleRequest, db: AsyncSession = Depends(get_db)):
    _check_choice(payload.mode, AutomationMode, "mode")
    _check_choice(payload.severity, Severity, "severity")
    try:
        params, action, throttle = validate_rule_config(payload.rule_type, payload.params, payload.action, payload.throttle)
    except AutopilotError as e:
        raise http_error(e)

    existing = await db.execute(
        select(AutomationRule.id).where(
            AutomationRule.profile_id == payload.profile_id,
            AutomationRule.name == payload.name,
        )
    )
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail=f"A rule named '{payload.name}' already exists for this profile")

    rule = AutomationRule(
        profile_id=payload.profile_id,
        name=payload.name,
        rule_type=payload.rule_type,
        mode=payload.mode,
        enabled=payload.enabled,
        severity=payload.severity,
        params=params,
        action=action,
        throttle=throttle,
    )
    db.add(rule)
    await db.flush()
    _log(db, rule, "rule_created", f"Created {rule.rule_type} rule '{rule.name}' ({rule.mode})")
    return _serialize_rule(rule)


@router.post("/initialize")
async def initialize_rules(
    payload: InitializeRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Create the default rule set for a profile: disabled, dry run."""
    created = await RuleEngine(session_factory).initialize_defaults(payload.profile_id)
    return {"created": len(created), "rules": [_serialize_rule(r) for r in created]}


@router.get("/{rule_id}")
async def get_rule(rule_id: str, db: AsyncSession = Depends(get_db)):
    return _serialize_rule(await _get_rule(db, rule_id))


@router.patch("/{rule_id}")
async def update_rule(rule_id: str, payload: UpdateRuleRequest, db: AsyncSession = Depends(get_db)):
    """Change name, severity or configuration. The whole config is re-validated."""
    rule = await _get_rule(db, rule_id)
    changes = payload.model_dump(exclude_unset=True)
    if "severity" in changes:
        _check_choice(payload.severity, Severity, "severity")
    if {"params", "action", "throttle"} & set(changes):
        try:
            params, action, throttle = validate_rule_config(
                rule.rule_type,
                payload.params if payload.params is not None else rule.params,
                payload.action if payload.action is not None else rule.action,
                payload.throttle if payload.throttle is not None else rule.throttle,
            )
        except AutopilotError as e:
            raise http_error(e)
        rule.params, rule.action, rule.throttle = params, action, throttle
    if payload.name and payload.name != rule.name:
        clash = await db.execute(
            select(AutomationRule.id).where(
                AutomationRule.profile_id == rule.profile_id,
                AutomationRule.name == payload.name,
            )
        )
        if clash.scalar_one_or_none():
            raise HTTPException(status_code=409, detail=f"A rule named '{payload.name}' already exists for this profile")
        rule.name = payload.name
    if payload.severity:
        rule.severity = payload.severity

    _log(db, rule, "rule_updated", f"Updated rule '{rule.name}': {', '.join(sorted(changes)) or 'no changes'}", changes)
    await db.flush()
    return _serialize_rule(rule)


@router.post("/{rule_id}/toggle")
async def toggle_rule(rule_id: str, payload: ToggleRequest, db: AsyncSession = Depends(get_db)):
    rule = await _get_rule(db, rule_id)
    rule.enabled = (not rule.enabled) if payload.enabled is None else payload.enabled
    _log(db, rule, "rule_enabled" if rule.enabled else "rule_disabled",
         f"{'Enabled' if rule.enabled else 'Disabled'} rule '{rule.name}'")
    await db.flush()
    return _serialize_rule(rule)


@router.put("/{rule_id}/mode")
async def set_rule_mode(rule_id: str, payload: ModeRequest, db: AsyncSession = Depends(get_db)):
    rule = await _get_rule(db, rule_id)
    _check_choice(payload.mode, AutomationMode, "mode")
    previous = rule.mode
    rule.mode = payload.mode
    _log(db, rule, "rule_mode_changed", f"Rule '{rule.name}' mode {previous} -> {rule.mode}",
         {"from": previous, "to": rule.mode})
    await db.flush()
    return _serialize_rule(rule)


@router.post("/{rule_id}/run")
async def run_rule(rule_id: str, session_factory: async_sessionmaker = Depends(get_session_factory)):
    """Evaluate the rule now (manual trigger). Respects mode, throttle and guardrails."""
    try:
        result = await RuleEngine(session_factory).run_rule(parse_uuid(rule_id, "rule_id"), trigger="manual")
    except AutopilotError as e:
        raise http_error(e)
    return result.to_dict()


@router.get("/{rule_id}/runs")
async def list_rule_runs(rule_id: str, limit: int = Query(50, le=500), db: AsyncSession = Depends(get_db)):
    rule = await _get_rule(db, rule_id)
    result = await db.execute(
        select(AutomationRuleRun)
        .where(AutomationRuleRun.rule_id == rule.id)
        .order_by(AutomationRuleRun.started_at.desc())
        .limit(limit)
    )
    return [_serialize_run(r) for r in result.scalars().all()]


# ── Serializers ───────────────────────────────────────────────────────

def _serialize_rule(r: AutomationRule) -> dict:
    return {
        "id": str(r.id),
        "profile_id": r.profile_id,
        "name": r.name,
        "rule_type": r.rule_type,
        "mode": r.mode,
        "enabled": r.enabled,
        "severity": r.severity,
        "params": r.params,
        "action": r.action,
        "throttle": r.throttle,
        "last_run_at": r.last_run_at.isoformat() if r.last_run_at else None,
        "created_at": r.created_at.isoformat() if r.created_at else None,
        "updated_at": r.updated_at.isoformat() if r.updated_at else None,
    }


def _serialize_run(run: AutomationRuleRun) -> dict:
    return {
        "id": str(run.id),
        "rule_id": str(run.rule_id),
        "profile_id": run.profile_id,
        "trigger": run.trigger,
        "mode": run.mode,
        "status": run.status,
        "alerts_created": run.alerts_created,
        "actions_enqueued": run.actions_enqueued,
        "actions_deferred": run.actions_deferred,
        "actions_dropped": run.actions_dropped,
        "duplicates_ignored": run.duplicates_ignored,
        "summary": run.summary,
        "error": run.error,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
    }
