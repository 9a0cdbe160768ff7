"""
Throttle controller: decides whether a proposed action may proceed now.

    Drop   protected entity, or the bid change is a no-op after clamping
    Defer  rule cooldown on the entity, rule daily cap, or profile daily cap
    Allow  possibly with the bid clamped into guardrail bounds

Stateless per call: every decision is made from the action_queue history,
so restarts and concurrent processes see the same counts.
"""

import enum
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from autopilot.models import ActionQueueItem, ActionStatus, ActionType, AutomationRule
from autopilot.services.action_types import BID_FIELD, ProposedAction, intent_parts
from autopilot.services.guardrails import GuardrailSnapshot

logger = logging.getLogger(__name__)

# Bid changes smaller than one cent are not worth an API call.
NOOP_TOLERANCE_MICROS = 10_000

ROLLING_WINDOW = timedelta(hours=24)


class Decision(str, enum.Enum):
    ALLOW = "allow"
    DEFER = "defer"
    DROP = "drop"


@dataclass
class Admission:
    decision: Decision
    proposal: ProposedAction
    reason: Optional[str] = None
    # Dropped because a guardrail protects the entity; callers keep an audit record.
    protected: bool = False

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOW


@dataclass(frozen=True)
class ThrottleConfig:
    cooldown_hours: float = 24
    max_actions_per_day: Optional[int] = None

    @classmethod
    def from_rule(cls, rule: AutomationRule) -> "ThrottleConfig":
        throttle = rule.throttle or {}
        return cls(
            cooldown_hours=float(throttle.get("cooldownHours", 24) or 0),
            max_actions_per_day=throttle.get("maxActionsPerDay"),
        )


def apply_guardrails(proposal: ProposedAction, guardrails: GuardrailSnapshot) -> Admission:
    """
    The guardrail half of admission, shared with playbooks (which have no
    rule throttle). Pure: no database access.
    """
    protected = guardrails.protected_refs(proposal.payload)
    if protected:
        refs = ", ".join(f"{t} {i}" for t, i in protected)
        return Admission(Decision.DROP, proposal, f"Protected entity: {refs}", protected=True)

    new_bid = proposal.payload.get(BID_FIELD)
    if new_bid is None:
        return Admission(Decision.ALLOW, proposal)

    current_bid = proposal.payload.get("currentBidMicros")
    clamped = guardrails.clamp_bid(int(new_bid), current_bid)
    if current_bid is not None and proposal.action_type != ActionType.CREATE_KEYWORD:
        if abs(clamped - int(current_bid)) < NOOP_TOLERANCE_MICROS:
            return Admission(
                Decision.DROP, proposal,
                f"No-op: bid {clamped} within {NOOP_TOLERANCE_MICROS} micros of current {current_bid}",
            )
    if clamped == new_bid:
        return Admission(Decision.ALLOW, proposal)

    adjusted = replace(proposal, payload={**proposal.payload, BID_FIELD: clamped})
    return Admission(
        Decision.ALLOW, adjusted,
        f"Bid clamped from {new_bid} to {clamped} (bounds {guardrails.min_bid_micros}-{guardrails.max_bid_micros})",
    )


class ThrottleController:
    async def admit(
        self,
        db: AsyncSession,
        rule: AutomationRule,
        proposal: ProposedAction,
        guardrails: GuardrailSnapshot,
        now: datetime,
    ) -> Admission:
        admission = apply_guardrails(proposal, guardrails)
        if not admission.allowed:
            return admission

        config = ThrottleConfig.from_rule(rule)
        counted = ActionQueueItem.status != ActionStatus.PREVENTED.value
        window_start = now - ROLLING_WINDOW

        entity_id = proposal.entity_id
        if config.cooldown_hours > 0 and entity_id is not None:
            # Cooldown is per intent: a new keyword in an ad group does not
            # block a different keyword in the same ad group.
            recent = (await db.execute(
                select(ActionQueueItem.created_at, ActionQueueItem.payload)
                .where(
                    ActionQueueItem.rule_id == rule.id,
                    ActionQueueItem.action_type == proposal.kind,
                    ActionQueueItem.entity_type == proposal.entity_type,
                    ActionQueueItem.entity_id == entity_id,
                    ActionQueueItem.created_at > now - timedelta(hours=config.cooldown_hours),
                    counted,
                )
                .order_by(ActionQueueItem.created_at.desc())
            )).all()
            intent = intent_parts(proposal.action_type, proposal.payload)
            last_action_at = next(
                (created_at for created_at, payload in recent
                 if intent_parts(proposal.action_type, payload or {}) == intent),
                None,
            )
            if last_action_at is not None:
                return Admission(
                    Decision.DEFER, admission.proposal,
                    f"Cooldown: last {proposal.kind} on {proposal.entity_type} {entity_id} at {last_action_at.isoformat()}",
                )

        if config.max_actions_per_day is not None:
            rule_count = (await db.execute(
                select(func.count()).select_from(ActionQueueItem).where(
                    ActionQueueItem.rule_id == rule.id,
                    ActionQueueItem.created_at > window_start,
                    counted,
                )
            )).scalar_one()
            if rule_count >= config.max_actions_per_day:
                return Admission(
                    Decision.DEFER, admission.proposal,
                    f"Daily cap reached for rule ({rule_count}/{config.max_actions_per_day})",
                )

        if guardrails.max_actions_per_day is not None:
            profile_count = (await db.execute(
                select(func.count()).select_from(ActionQueueItem).where(
                    ActionQueueItem.profile_id == str(rule.profile_id),
                    ActionQueueItem.created_at > window_start,
                    counted,
                )
            )).scalar_one()
            if profile_count >= guardrails.max_actions_per_day:
                return Admission(
                    Decision.DEFER, admission.proposal,
                    f"Daily cap reached for profile ({profile_count}/{guardrails.max_actions_per_day})",
                )

        return admission
