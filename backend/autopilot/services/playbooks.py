"""
Playbook Orchestrator: multi-step strategies run on demand for one profile.

A template is a pure function (params, ProfileMetrics) -> [ProposedAction].
The orchestrator validates params, loads the metrics the template asks for,
passes each proposal through the guardrails and inserts it in its own
transaction, so one failed insert never aborts the rest of the batch.

    dry_run     nothing executable is written; simulated actions go to steps
    suggestion  inserted as pending_approval
    auto        inserted as queued (pending_approval above the approval threshold)
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
from pydantic import Field, ValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from autopilot.exceptions import ConfigurationError, ConflictError, NotFoundError
from autopilot.models import (
    ActionSource, ActionStatus, ActionType, ActivityLog, AutomationMode, EntityType,
    PlaybookDefinition, PlaybookRun, RunStatus,
)
from autopilot.services.action_queue import ActionQueue
from autopilot.services.action_types import ProposedAction, impact_micros, normalize_match_type
from autopilot.services.guardrails import GuardrailStore
from autopilot.services.metrics_provider import DatabaseMetricsProvider, DateRange, MetricsProvider, ProfileMetrics
from autopilot.services.rules import RuleParams, reduced_bid
from autopilot.services.throttle import Decision, apply_guardrails
from autopilot.utils import utcnow

logger = logging.getLogger(__name__)


# ── Template params ───────────────────────────────────────────────────

class HarvestThenNegateParams(RuleParams):
    min_conversions: int = Field(2, ge=1)
    min_sales: float = Field(50, ge=0)
    max_acos: float = Field(20, gt=0, alias="maxACOS")
    lookback_days: int = Field(14, ge=1, le=90)
    exact_bid_multiplier: float = Field(1.2, gt=0, le=5)
    negative_match_type: str = "negativeExact"

    @field_validator("negative_match_type")
    @classmethod
    def _negative_match(cls, value: str) -> str:
        if normalize_match_type(value, negative=True) is None:
            raise ValueError(f"{value!r} is not a negative match type")
        return value


class BidDownParams(RuleParams):
    acos_threshold: float = Field(25, gt=0)
    bid_reduction_percent: float = Field(20, gt=0, lt=100)
    min_bid_micros: int = Field(100_000, gt=0)
    lookback_days: int = Field(7, ge=1, le=90)


class PlacementOptimizerParams(RuleParams):
    target_acos: float = Field(25, gt=0)
    max_adjustment: int = Field(100, ge=0, le=900)
    min_adjustment: int = Field(-50, ge=-100, le=0)
    step_size: int = Field(10, gt=0)
    lookback_days: int = Field(14, ge=1, le=90)
    min_spend: float = Field(50, ge=0)
    min_impressions: int = Field(500, ge=0)


# ── Templates ─────────────────────────────────────────────────────────

def harvest_then_negate(params: HarvestThenNegateParams, metrics: ProfileMetrics) -> list[ProposedAction]:
    """Each qualifying search term becomes an exact keyword plus a negative in its source ad group."""
    proposals = []
    for term in metrics.scope(EntityType.SEARCH_TERM.value):
        if term.conversions is None or term.sales is None or not (term.name and term.campaign_id and term.ad_group_id):
            continue
        acos = term.acos
        if term.conversions < params.min_conversions or term.sales < params.min_sales:
            continue
        if acos is None or acos > params.max_acos:
            continue

        reason = f"'{term.name}': {term.conversions} conversions, ${term.sales:,.2f} sales, ACOS {acos:.1f}%"
        keyword = {
            "campaignId": term.campaign_id,
            "adGroupId": term.ad_group_id,
            "keywordText": term.name,
            "matchType": "exact",
        }
        if term.cpc:
            keyword["bidMicros"] = int(round(term.cpc * params.exact_bid_multiplier * 1_000_000))
        proposals.append(ProposedAction(ActionType.CREATE_KEYWORD, keyword, reason=f"Harvest {reason}"))
        proposals.append(ProposedAction(
            ActionType.ADD_ADGROUP_NEGATIVE,
            {
                "campaignId": term.campaign_id,
                "adGroupId": term.ad_group_id,
                "keywordText": term.name,
                "matchType": params.negative_match_type,
            },
            reason=f"Negate at source after harvest: {reason}",
        ))
    return proposals


def bid_down_high_acos(params: BidDownParams, metrics: ProfileMetrics) -> list[ProposedAction]:
    proposals = []
    for target in metrics.scope(EntityType.TARGET.value):
        acos = target.acos
        if acos is None or target.bid_micros is None or acos <= params.acos_threshold:
            continue
        new_bid = reduced_bid(target.bid_micros, params.bid_reduction_percent, params.min_bid_micros)
        if new_bid >= target.bid_micros:
            continue
        payload = {"targetId": target.entity_id, "bidMicros": new_bid, "currentBidMicros": target.bid_micros}
        if target.campaign_id:
            payload["campaignId"] = target.campaign_id
        if target.ad_group_id:
            payload["adGroupId"] = target.ad_group_id
        proposals.append(ProposedAction(
            ActionType.SET_BID, payload,
            reason=f"ACOS {acos:.1f}% > {params.acos_threshold:g}%; bid {target.bid_micros} -> {new_bid} micros",
        ))
    return proposals


def placement_optimizer(params: PlacementOptimizerParams, metrics: ProfileMetrics) -> list[ProposedAction]:
    # Not implemented: accepted and run, always proposes nothing.
    return []


@dataclass(frozen=True)
class PlaybookTemplate:
    key: str
    name: str
    description: str
    params_model: type[RuleParams]
    required: tuple[str, ...]
    scopes: tuple[str, ...]
    build: Callable[[RuleParams, ProfileMetrics], list[ProposedAction]]

    @property
    def default_params(self) -> dict:
        return self.params_model().model_dump(by_alias=True)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "default_params": self.default_params,
            "required_params": list(self.required),
        }


PLAYBOOK_TEMPLATES: dict[str, PlaybookTemplate] = {t.key: t for t in (
    PlaybookTemplate(
        "harvest_then_negate", "Harvest then negate",
        "Promote converting search terms to exact keywords, then negate them in the source ad group",
        HarvestThenNegateParams, ("minConversions", "minSales", "maxACOS"),
        (EntityType.SEARCH_TERM.value,), harvest_then_negate,
    ),
    PlaybookTemplate(
        "bid_down_high_acos", "Bid down high ACOS",
        "Lower bids on targets above the ACOS goal, never below the bid floor",
        BidDownParams, ("acosThreshold", "bidReductionPercent"),
        (EntityType.TARGET.value,), bid_down_high_acos,
    ),
    PlaybookTemplate(
        "placement_optimizer", "Placement optimizer",
        "Top-of-search and product page adjustments (not implemented; proposes nothing)",
        PlacementOptimizerParams, ("targetAcos",),
        (), placement_optimizer,
    ),
)}


def get_template(key: str) -> PlaybookTemplate:
    template = PLAYBOOK_TEMPLATES.get(key)
    if template is None:
        raise ConfigurationError(f"Unknown playbook template: {key!r}")
    return template


def validate_playbook_params(template_key: str, params: Optional[dict]) -> dict:
    """Required params must be given explicitly; the rest fall back to template defaults."""
    template = get_template(template_key)
    params = params or {}
    missing = [p for p in template.required if p not in params]
    if missing:
        raise ConfigurationError(f"Missing required parameter(s) for {template_key}: {', '.join(missing)}")
    try:
        return template.params_model.model_validate(params).model_dump(by_alias=True)
    except ValidationError as e:
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise ConfigurationError(f"Invalid {template_key} params: {problems}")


def _parse_mode(mode: str) -> AutomationMode:
    try:
        return AutomationMode(mode)
    except ValueError:
        raise ConfigurationError(f"Unknown mode {mode!r}; expected dry_run, suggestion or auto")


# ── Orchestrator ──────────────────────────────────────────────────────

class PlaybookOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        metrics_provider: Optional[MetricsProvider] = None,
        queue: Optional[ActionQueue] = None,
        guardrails: Optional[GuardrailStore] = None,
    ):
        self.session_factory = session_factory
        self.metrics = metrics_provider or DatabaseMetricsProvider(session_factory)
        self.queue = queue or ActionQueue(session_factory)
        self.guardrails = guardrails or GuardrailStore(session_factory)

    # ── Definitions ───────────────────────────────────────────────────

    async def create_definition(
        self,
        name: str,
        template_key: str,
        params: Optional[dict] = None,
        profile_id: Optional[str] = None,
        description: Optional[str] = None,
        mode: str = AutomationMode.DRY_RUN.value,
    ) -> PlaybookDefinition:
        final_params = validate_playbook_params(template_key, params)
        definition = PlaybookDefinition(
            profile_id=str(profile_id) if profile_id else None,
            name=name,
            description=description or get_template(template_key).description,
            template_key=template_key,
            params=final_params,
            mode=_parse_mode(mode).value,
            enabled=True,
        )
        async with self.session_factory() as db:
            db.add(definition)
            await db.commit()
        logger.info(f"Created playbook '{name}' ({template_key}) for profile {profile_id or 'any'}")
        return definition

    async def set_enabled(self, definition_id: uuid.UUID, enabled: bool) -> PlaybookDefinition:
        async with self.session_factory() as db:
            definition = await db.get(PlaybookDefinition, definition_id)
            if definition is None:
                raise NotFoundError(f"Playbook {definition_id} not found")
            definition.enabled = enabled
            await db.commit()
        return definition

    async def list_definitions(self, profile_id: Optional[str] = None) -> list[PlaybookDefinition]:
        stmt = select(PlaybookDefinition).order_by(PlaybookDefinition.created_at.desc())
        if profile_id:
            stmt = stmt.where(
                (PlaybookDefinition.profile_id == str(profile_id)) | PlaybookDefinition.profile_id.is_(None)
            )
        async with self.session_factory() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def list_runs(self, definition_id: uuid.UUID, limit: int = 50) -> list[PlaybookRun]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PlaybookRun)
                .where(PlaybookRun.playbook_id == definition_id)
                .order_by(PlaybookRun.started_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # ── Runs ──────────────────────────────────────────────────────────

    async def run(
        self,
        definition_id: uuid.UUID,
        profile_id: str,
        mode: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PlaybookRun:
        """
        Execute one playbook for one profile. The run row is written first and
        always finished, with partial insert failures recorded in steps/error.
        """
        if not profile_id:
            raise ConfigurationError("profile_id is required to run a playbook")
        now = now or utcnow()
        async with self.session_factory() as db:
            definition = await db.get(PlaybookDefinition, definition_id)
        if definition is None:
            raise NotFoundError(f"Playbook {definition_id} not found")
        if not definition.enabled:
            raise ConflictError(f"Playbook '{definition.name}' is disabled")
        if definition.profile_id and definition.profile_id != str(profile_id):
            raise ConflictError(f"Playbook '{definition.name}' belongs to profile {definition.profile_id}")
        run_mode = _parse_mode(mode or definition.mode)
        template = get_template(definition.template_key)

        run = PlaybookRun(
            playbook_id=definition.id,
            profile_id=str(profile_id),
            mode=run_mode.value,
            status=RunStatus.RUNNING.value,
            started_at=now,
        )
        async with self.session_factory() as db:
            db.add(run)
            await db.commit()

        steps = {
            "template": template.key,
            "proposals": 0,
            "inserted": 0,
            "duplicates": 0,
            "prevented": 0,
            "dropped": 0,
            "insert_failures": 0,
            "simulated_actions": [],
        }
        errors: list[str] = []
        status = RunStatus.SUCCESS
        try:
            guardrails = await self.guardrails.load(profile_id)
            if run_mode != AutomationMode.DRY_RUN and not guardrails.automation_enabled:
                raise ConflictError(f"Automation paused for profile {profile_id}: {guardrails.paused_reason or 'kill switch off'}")

            params = template.params_model.model_validate(definition.params or {})
            metrics = await self._load_metrics(template, params, str(profile_id), now)
            proposals = template.build(params, metrics)
            steps["proposals"] = len(proposals)

            attempted = 0
            for proposal in proposals:
                admission = apply_guardrails(proposal, guardrails)
                if run_mode == AutomationMode.DRY_RUN:
                    steps["simulated_actions"].append({
                        **admission.proposal.to_dict(),
                        "decision": admission.decision.value,
                        "decision_reason": admission.reason,
                    })
                    continue
                if admission.decision == Decision.DROP:
                    if admission.protected:
                        attempted += 1
                        try:
                            await self.queue.record_prevented(
                                str(profile_id), proposal, admission.reason,
                                source=ActionSource.PLAYBOOK, playbook_run_id=run.id, now=now,
                            )
                        except (ConfigurationError, SQLAlchemyError) as e:
                            steps["insert_failures"] += 1
                            errors.append(f"prevented {proposal.kind} {proposal.entity_id}: {e}")
                            logger.error(f"Playbook run {run.id}: prevented record for {proposal.entity_id} failed: {e}")
                            continue
                        steps["prevented"] += 1
                    else:
                        steps["dropped"] += 1
                    continue

                attempted += 1
                item = admission.proposal
                held = run_mode == AutomationMode.SUGGESTION or guardrails.requires_approval(
                    impact_micros(item.action_type, item.payload)
                )
                try:
                    enqueued = await self.queue.enqueue(
                        str(profile_id), item,
                        status=ActionStatus.PENDING_APPROVAL if held else ActionStatus.QUEUED,
                        source=ActionSource.PLAYBOOK, playbook_run_id=run.id,
                        status_reason=admission.reason, now=now,
                    )
                except (ConfigurationError, SQLAlchemyError) as e:
                    steps["insert_failures"] += 1
                    errors.append(f"{item.kind} {item.entity_id}: {e}")
                    logger.error(f"Playbook run {run.id}: insert of {item.kind} for {item.entity_id} failed: {e}")
                    continue
                if enqueued.inserted:
                    steps["inserted"] += 1
                else:
                    steps["duplicates"] += 1

            if attempted and steps["insert_failures"] == attempted:
                status = RunStatus.FAILED
        except (ConflictError, ValidationError) as e:
            status = RunStatus.FAILED
            errors.append(str(e))
            logger.warning(f"Playbook run {run.id} ({definition.name}) failed: {e}")
        except Exception as e:
            status = RunStatus.FAILED
            errors.append(str(e))
            logger.error(f"Playbook run {run.id} ({definition.name}) failed: {e}", exc_info=True)

        return await self._finish(run.id, definition, status, steps, errors)

    async def _load_metrics(self, template: PlaybookTemplate, params, profile_id: str, now: datetime) -> ProfileMetrics:
        date_range = DateRange.trailing(getattr(params, "lookback_days", 14), now)
        metrics = ProfileMetrics(profile_id=profile_id, date_range=date_range)
        for scope in template.scopes:
            metrics.by_scope[scope] = await self.metrics.get_metrics(profile_id, scope, date_range)
        return metrics

    async def _finish(
        self, run_id: uuid.UUID, definition: PlaybookDefinition, status: RunStatus, steps: dict, errors: list[str],
    ) -> PlaybookRun:
        counts = {k: v for k, v in steps.items() if k != "simulated_actions"}
        async with self.session_factory() as db:
            run = await db.get(PlaybookRun, run_id)
            run.status = status.value
            run.steps = steps
            run.actions_enqueued = steps["inserted"]
            run.alerts_created = 0
            run.error = "; ".join(errors)[:4000] if errors else None
            run.finished_at = utcnow()
            db.add(ActivityLog(
                profile_id=run.profile_id,
                action="playbook_run",
                category="playbooks",
                description=(
                    f"Playbook '{definition.name}' [{run.mode}] {status.value}: "
                    f"{steps['inserted']} enqueued, {steps['prevented']} prevented, "
                    f"{steps['insert_failures']} insert failures"
                ),
                details=counts,
                entity_type="playbook",
                entity_id=str(definition.id),
                status=status.value,
            ))
            await db.commit()
        logger.info(f"Playbook '{definition.name}' run {run_id} finished {status.value}: "
                    f"{counts}")
        return run
