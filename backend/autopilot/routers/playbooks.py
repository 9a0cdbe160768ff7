"""
Playbooks Router: templates, per-profile playbook definitions and the
manual runPlaybook trigger.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import async_sessionmaker
from autopilot.database import get_session_factory
from autopilot.exceptions import AutopilotError
from autopilot.models import AutomationMode, PlaybookDefinition, PlaybookRun
from autopilot.services.playbooks import PLAYBOOK_TEMPLATES, PlaybookOrchestrator
from autopilot.utils import http_error, parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Request Models ────────────────────────────────────────────────────

class CreatePlaybookRequest(BaseModel):
    name: str
    template_key: str
    params: dict = {}
    profile_id: Optional[str] = None  # None = usable for any profile
    description: Optional[str] = None
    mode: str = AutomationMode.DRY_RUN.value


class TogglePlaybookRequest(BaseModel):
    enabled: bool


class RunPlaybookRequest(BaseModel):
    profile_id: str
    mode: Optional[str] = None  # defaults to the definition's mode


# ── Endpoints ─────────────────────────────────────────────────────────

@router.get("/templates")
async def list_templates():
    return [t.to_dict() for t in PLAYBOOK_TEMPLATES.values()]


@router.get("")
async def list_playbooks(
    profile_id: Optional[str] = Query(None),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    definitions = await PlaybookOrchestrator(session_factory).list_definitions(profile_id)
    return [_serialize_definition(d) for d in definitions]


@router.post("")
async def create_playbook(
    payload: CreatePlaybookRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Params are validated against the template; required params must be given explicitly."""
    try:
        definition = await PlaybookOrchestrator(session_factory).create_definition(
            name=payload.name,
            template_key=payload.template_key,
            params=payload.params,
            profile_id=payload.profile_id,
            description=payload.description,
            mode=payload.mode,
        )
    except AutopilotError as e:
        raise http_error(e)
    return _serialize_definition(definition)


@router.post("/{playbook_id}/toggle")
async def toggle_playbook(
    playbook_id: str,
    payload: TogglePlaybookRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    try:
        definition = await PlaybookOrchestrator(session_factory).set_enabled(
            parse_uuid(playbook_id, "playbook_id"), payload.enabled,
        )
    except AutopilotError as e:
        raise http_error(e)
    return _serialize_definition(definition)


@router.post("/{playbook_id}/run")
async def run_playbook(
    playbook_id: str,
    payload: RunPlaybookRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Run now for one profile. A run that started always comes back as a
    PlaybookRun, including failed ones; only lookup and validation errors
    are raised.
    """
    try:
        run = await PlaybookOrchestrator(session_factory).run(
            parse_uuid(playbook_id, "playbook_id"), payload.profile_id, payload.mode,
        )
    except AutopilotError as e:
        raise http_error(e)
    return _serialize_run(run)


@router.get("/{playbook_id}/runs")
async def list_playbook_runs(
    playbook_id: str,
    limit: int = Query(50, le=500),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    runs = await PlaybookOrchestrator(session_factory).list_runs(parse_uuid(playbook_id, "playbook_id"), limit)
    return [_serialize_run(r) for r in runs]


# ── Serializers ───────────────────────────────────────────────────────

def _serialize_definition(d: PlaybookDefinition) -> dict:
    return {
        "id": str(d.id),
        "profile_id": d.profile_id,
        "name": d.name,
        "description": d.description,
        "template_key": d.template_key,
        "params": d.params,
        "mode": d.mode,
        "enabled": d.enabled,
        "created_at": d.created_at.isoformat() if d.created_at else None,
    }


def _serialize_run(run: PlaybookRun) -> dict:
    return {
        "id": str(run.id),
        "playbook_id": str(run.playbook_id),
        "profile_id": run.profile_id,
        "mode": run.mode,
        "status": run.status,
        "actions_enqueued": run.actions_enqueued,
        "alerts_created": run.alerts_created,
        "steps": run.steps,
        "error": run.error,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
    }
