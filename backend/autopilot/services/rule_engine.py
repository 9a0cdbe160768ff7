"""
Rule Engine: loads a rule, evaluates it against the metrics window and
routes every proposed action through the throttle into the queue.

    dry_run     alerts only; each proposal becomes an alert carrying the
                simulated action, the queue is never written
    suggestion  admitted proposals land in pending_approval
    auto        admitted proposals are queued, or held for approval when
                their monetary impact is above the profile threshold

Admission and insert for one rule are serialized on the rule row lock, so
two overlapping runs of the same rule cannot both pass the daily cap.
Every run leaves an automation_rule_runs record, including failed ones.
"""

import logging
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker
from autopilot.exceptions import ConflictError, NotFoundError
from autopilot.models import (
    ActionSource, ActionStatus, ActivityLog, Alert, AutomationMode, AutomationRule, AutomationRuleRun,
    RunStatus, Severity,
)
from autopilot.services import rules as rule_defs
from autopilot.services.action_queue import ActionQueue
from autopilot.services.action_types import ProposedAction, impact_micros
from autopilot.services.guardrails import GuardrailSnapshot, GuardrailStore
from autopilot.services.metrics_provider import DatabaseMetricsProvider, MetricsProvider
from autopilot.services.throttle import Admission, Decision, ThrottleController
from autopilot.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RuleRunResult:
    rule_id: uuid.UUID
    run_id: Optional[uuid.UUID]
    mode: str
    status: str = RunStatus.RUNNING.value
    alerts_created: int = 0
    actions_enqueued: int = 0
    actions_deferred: int = 0
    actions_dropped: int = 0
    duplicates_ignored: int = 0
    error: Optional[str] = None
    decisions: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["rule_id"] = str(self.rule_id)
        data["run_id"] = str(self.run_id) if self.run_id else None
        return data


class RuleEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        metrics_provider: Optional[MetricsProvider] = None,
        queue: Optional[ActionQueue] = None,
        guardrails: Optional[GuardrailStore] = None,
        throttle: Optional[ThrottleController] = None,
    ):
        self.session_factory = session_factory
        self.metrics = metrics_provider or DatabaseMetricsProvider(session_factory)
        self.queue = queue or ActionQueue(session_factory)
        self.guardrails = guardrails or GuardrailStore(session_factory)
        self.throttle = throttle or ThrottleController()

    # ── Entry points ──────────────────────────────────────────────────

    async def run_rule(self, rule_id: uuid.UUID, trigger: str = "manual", now: Optional[datetime] = None) -> RuleRunResult:
        """
        Evaluate one enabled rule. Raises NotFoundError / ConflictError for a
        missing or disabled rule; evaluation failures are recorded on the
        run and returned with status "failed".
        """
        now = now or utcnow()
        async with self.session_factory() as db:
            rule = await db.get(AutomationRule, rule_id)
        if rule is None:
            raise NotFoundError(f"Rule {rule_id} not found")
        if not rule.enabled:
            raise ConflictError(f"Rule '{rule.name}' is disabled")

        result = RuleRunResult(rule_id=rule.id, run_id=None, mode=rule.mode)
        result.run_id = await self._start_run(rule, trigger, now)
        try:
            guardrails = await self.guardrails.load(rule.profile_id)
            if not guardrails.automation_enabled:
                result.status = RunStatus.SKIPPED.value
                result.error = f"Automation paused for profile {rule.profile_id}: {guardrails.paused_reason or 'kill switch off'}"
                logger.info(f"Rule {rule.name} skipped: {result.error}")
            else:
                window = await self._load_window(rule, now)
                evaluation = rule_defs.evaluate(rule, window, now)
                result.alerts_created += await self._save_alerts(rule, evaluation.alerts)
                await self._route_proposals(rule, evaluation.proposals, result, now)
                result.status = RunStatus.SUCCESS.value
        except Exception as e:
            logger.error(f"Rule {rule.name} ({rule.id}) failed: {e}", exc_info=True)
            result.status = RunStatus.FAILED.value
            result.error = str(e)

        await self._finish_run(rule, result, now)
        logger.info(
            f"Rule {rule.name} [{rule.mode}] {result.status}: {result.alerts_created} alerts, "
            f"{result.actions_enqueued} enqueued, {result.actions_deferred} deferred, "
            f"{result.actions_dropped} dropped, {result.duplicates_ignored} duplicates"
        )
        return result

    async def run_scheduled(self, profile_id: Optional[str] = None, now: Optional[datetime] = None) -> list[RuleRunResult]:
        """Run every enabled rule. One rule failing never stops the others."""
        now = now or utcnow()
        stmt = select(AutomationRule.id).where(AutomationRule.enabled.is_(True)).order_by(AutomationRule.created_at)
        if profile_id:
            stmt = stmt.where(AutomationRule.profile_id == str(profile_id))
        async with self.session_factory() as db:
            rule_ids = (await db.execute(stmt)).scalars().all()

        results = []
        for rule_id in rule_ids:
            try:
                results.append(await self.run_rule(rule_id, trigger="schedule", now=now))
            except (NotFoundError, ConflictError) as e:
                # Deleted or disabled since the list was read
                logger.info(f"Scheduled run of rule {rule_id} skipped: {e}")
        return results

    async def initialize_defaults(self, profile_id: str) -> list[AutomationRule]:
        """Create the default rule set for a profile (disabled, dry run). Existing names are left alone."""
        created = []
        async with self.session_factory() as db:
            existing = set((await db.execute(
                select(AutomationRule.name).where(AutomationRule.profile_id == str(profile_id))
            )).scalars().all())
            for template in rule_defs.DEFAULT_RULES:
                if template["name"] in existing:
                    continue
                params, action, throttle = rule_defs.validate_rule_config(
                    template["rule_type"], template["params"], template["action"], template["throttle"],
                )
                rule = AutomationRule(
                    profile_id=str(profile_id),
                    name=template["name"],
                    rule_type=template["rule_type"],
                    severity=template["severity"],
                    mode=AutomationMode.DRY_RUN.value,
                    enabled=False,
                    params=params,
                    action=action,
                    throttle=throttle,
                )
                db.add(rule)
                created.append(rule)
            if created:
                db.add(ActivityLog(
                    profile_id=str(profile_id),
                    action="rules_initialized",
                    category="automation",
                    description=f"Created {len(created)} default rules",
                    details={"rules": [r.name for r in created]},
                ))
            await db.commit()
        logger.info(f"Initialized {len(created)} default rules for profile {profile_id}")
        return created

    # ── Run bookkeeping ───────────────────────────────────────────────

    async def _start_run(self, rule: AutomationRule, trigger: str, now: datetime) -> uuid.UUID:
        run = AutomationRuleRun(
            rule_id=rule.id,
            profile_id=rule.profile_id,
            trigger=trigger,
            mode=rule.mode,
            status=RunStatus.RUNNING.value,
            started_at=now,
        )
        async with self.session_factory() as db:
            db.add(run)
            await db.commit()
        return run.id

    async def _finish_run(self, rule: AutomationRule, result: RuleRunResult, now: datetime) -> None:
        async with self.session_factory() as db:
            run = await db.get(AutomationRuleRun, result.run_id)
            run.status = result.status
            run.alerts_created = result.alerts_created
            run.actions_enqueued = result.actions_enqueued
            run.actions_deferred = result.actions_deferred
            run.actions_dropped = result.actions_dropped
            run.duplicates_ignored = result.duplicates_ignored
            run.error = result.error
            run.summary = {"decisions": result.decisions[:200]}
            run.finished_at = utcnow()
            stored_rule = await db.get(AutomationRule, rule.id)
            if stored_rule is not None:
                stored_rule.last_run_at = now
            await db.commit()

    # ── Evaluation ────────────────────────────────────────────────────

    async def _load_window(self, rule: AutomationRule, now: datetime) -> rule_defs.MetricsWindow:
        request = rule_defs.window_for(rule, now)
        window = rule_defs.MetricsWindow(profile_id=rule.profile_id, date_range=request.date_range)
        if request.scope is None:
            return window
        window.entities = await self.metrics.get_metrics(rule.profile_id, request.scope, request.date_range)
        if request.history_range is not None:
            window.history = await self.metrics.get_daily_metrics(rule.profile_id, request.scope, request.history_range)
        return window

    async def _save_alerts(self, rule: AutomationRule, drafts: list[rule_defs.AlertDraft]) -> int:
        if not drafts:
            return 0
        async with self.session_factory() as db:
            for draft in drafts:
                db.add(Alert(
                    rule_id=rule.id,
                    profile_id=rule.profile_id,
                    entity_type=draft.entity_type,
                    entity_id=draft.entity_id,
                    severity=draft.severity,
                    title=draft.title[:512],
                    message=draft.message,
                    data=draft.data,
                ))
            await db.commit()
        return len(drafts)

    async def _route_proposals(
        self, rule: AutomationRule, proposals: list[ProposedAction], result: RuleRunResult, now: datetime,
    ) -> None:
        if not proposals:
            return
        mode = AutomationMode(rule.mode)
        simulated: list[rule_defs.AlertDraft] = []

        async with self.session_factory() as guard:
            # FOR NO KEY UPDATE: blocks a concurrent run of this rule but not
            # the FK checks of the inserts made below.
            await guard.execute(
                select(AutomationRule.id).where(AutomationRule.id == rule.id).with_for_update(key_share=True)
            )
            guardrails = await self.guardrails.load(rule.profile_id, db=guard)
            for proposal in proposals:
                admission = await self.throttle.admit(guard, rule, proposal, guardrails, now)
                if mode == AutomationMode.DRY_RUN:
                    simulated.append(self._simulated_alert(rule, admission))
                    result.decisions.append(self._decision(admission, "simulated"))
                    continue
                await self._apply_admission(rule, mode, admission, guardrails, result, now)
            await guard.commit()

        result.alerts_created += await self._save_alerts(rule, simulated)

    async def _apply_admission(
        self,
        rule: AutomationRule,
        mode: AutomationMode,
        admission: Admission,
        guardrails: GuardrailSnapshot,
        result: RuleRunResult,
        now: datetime,
    ) -> None:
        proposal = admission.proposal
        if admission.decision == Decision.DEFER:
            result.actions_deferred += 1
            result.decisions.append(self._decision(admission, "deferred"))
            return
        if admission.decision == Decision.DROP:
            result.actions_dropped += 1
            result.decisions.append(self._decision(admission, "dropped"))
            if admission.protected:
                await self.queue.record_prevented(
                    rule.profile_id, proposal, admission.reason, source=ActionSource.RULE, rule_id=rule.id, now=now,
                )
            return

        if mode == AutomationMode.SUGGESTION:
            status = ActionStatus.PENDING_APPROVAL
        elif guardrails.requires_approval(impact_micros(proposal.action_type, proposal.payload)):
            status = ActionStatus.PENDING_APPROVAL
        else:
            status = ActionStatus.QUEUED

        enqueued = await self.queue.enqueue(
            rule.profile_id, proposal,
            status=status, source=ActionSource.RULE, rule_id=rule.id,
            status_reason=admission.reason, now=now,
        )
        if enqueued.inserted:
            result.actions_enqueued += 1
            result.decisions.append({**self._decision(admission, enqueued.status), "item_id": str(enqueued.item_id)})
        else:
            result.duplicates_ignored += 1
            result.decisions.append(self._decision(admission, "duplicate_ignored"))

    @staticmethod
    def _decision(admission: Admission, outcome: str) -> dict:
        return {
            "action_type": admission.proposal.kind,
            "entity_id": admission.proposal.entity_id,
            "outcome": outcome,
            "reason": admission.reason,
        }

    @staticmethod
    def _simulated_alert(rule: AutomationRule, admission: Admission) -> rule_defs.AlertDraft:
        proposal = admission.proposal
        verdict = {
            Decision.ALLOW: "would run",
            Decision.DEFER: "would be deferred",
            Decision.DROP: "would be dropped",
        }[admission.decision]
        return rule_defs.AlertDraft(
            severity=Severity.INFO.value,
            title=f"[Dry run] {proposal.kind} on {proposal.entity_type} {proposal.entity_id} {verdict}",
            message=proposal.reason or rule.name,
            entity_type=proposal.entity_type,
            entity_id=proposal.entity_id,
            data={
                "dry_run": True,
                "simulated_action": proposal.to_dict(),
                "decision": admission.decision.value,
                "decision_reason": admission.reason,
            },
        )
