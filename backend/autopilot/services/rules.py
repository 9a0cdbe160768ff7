"""
Rule definitions and evaluators.

Each rule type registers a typed params model, the metrics window it needs
and a pure evaluator:

    evaluator(rule, params, window, now) -> EvaluationResult

Evaluators never touch the database or the clock; "now" is always passed
in so a dry run can be replayed exactly. Entities with missing metrics are
skipped, and ACOS with zero sales is treated as no signal.
"""

import logging
import statistics
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from autopilot.exceptions import ConfigurationError
from autopilot.models import ActionType, EntityType, RuleType, Severity
from autopilot.services.action_types import ProposedAction
from autopilot.services.metrics_provider import DateRange, EntityMetrics

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  CONFIG MODELS
# ══════════════════════════════════════════════════════════════════════

class RuleParams(BaseModel):
    """camelCase on the wire, snake_case in code. Unknown keys are configuration errors."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class BudgetDepletionParams(RuleParams):
    percent_threshold: float = Field(80, gt=0, le=100)
    before_hour_local: int = Field(16, ge=0, le=24)
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone {value!r}")
        return value


class SpendSpikeParams(RuleParams):
    lookback_days: int = Field(7, ge=3, le=90)
    stdev_multiplier: float = Field(2.0, gt=0)
    min_spend: float = Field(5.0, ge=0)


class SearchTermHarvestParams(RuleParams):
    window_days: int = Field(14, ge=1, le=90)
    min_conversions: int = Field(2, ge=1)
    min_sales: float = Field(0, ge=0)
    max_acos: float = Field(35, gt=0)
    bid_multiplier: float = Field(1.2, gt=0, le=5)
    negate_source: bool = True


class SearchTermPruneParams(RuleParams):
    window_days: int = Field(14, ge=1, le=90)
    min_clicks: int = Field(20, ge=1)
    max_conversions: int = Field(0, ge=0)
    negate_scope: str = Field("ad_group", pattern="^(ad_group|campaign)$")


class BidDownHighAcosParams(RuleParams):
    acos_threshold: float = Field(30, gt=0)
    bid_reduction_percent: float = Field(20, gt=0, lt=100)
    min_bid_micros: int = Field(100_000, gt=0)
    lookback_days: int = Field(7, ge=1, le=90)
    min_clicks: int = Field(0, ge=0)
    entity_type: str = Field("target", pattern="^(target|keyword)$")


class PlacementOptimizerParams(RuleParams):
    pass


class ActionDescriptor(RuleParams):
    type: str = "alert_only"
    budget_increase_percent: float = Field(20, gt=0, le=100)
    max_budget_micros: Optional[int] = Field(None, gt=0)


class ThrottleParams(RuleParams):
    cooldown_hours: float = Field(24, ge=0)
    max_actions_per_day: Optional[int] = Field(None, ge=1)


# ══════════════════════════════════════════════════════════════════════
#  EVALUATION TYPES
# ══════════════════════════════════════════════════════════════════════

@dataclass
class AlertDraft:
    severity: str
    title: str
    message: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    data: dict = field(default_factory=dict)


@dataclass
class EvaluationResult:
    alerts: list[AlertDraft] = field(default_factory=list)
    proposals: list[ProposedAction] = field(default_factory=list)
    skipped: int = 0  # entities without usable metrics


@dataclass
class WindowRequest:
    scope: Optional[str]
    date_range: DateRange
    history_range: Optional[DateRange] = None


@dataclass
class MetricsWindow:
    profile_id: str
    date_range: DateRange
    entities: list[EntityMetrics] = field(default_factory=list)
    history: list[EntityMetrics] = field(default_factory=list)


@dataclass(frozen=True)
class RuleDefinition:
    rule_type: RuleType
    params_model: type[RuleParams]
    window: Callable[[Any, datetime], WindowRequest]
    evaluate: Callable[[Any, Any, MetricsWindow, datetime], EvaluationResult]
    action_types: tuple[str, ...]
    default_action: str
    description: str


def _aware(now: datetime) -> datetime:
    return now if now.tzinfo else now.replace(tzinfo=timezone.utc)


def _money(value: Optional[float]) -> str:
    return f"${value:,.2f}" if value is not None else "n/a"


# ══════════════════════════════════════════════════════════════════════
#  EVALUATORS
# ══════════════════════════════════════════════════════════════════════

def _budget_window(params: BudgetDepletionParams, now: datetime) -> WindowRequest:
    local_day = _aware(now).astimezone(ZoneInfo(params.timezone)).date()
    return WindowRequest(scope=EntityType.CAMPAIGN.value, date_range=DateRange.single(local_day))


def evaluate_budget_depletion(rule, params: BudgetDepletionParams, window: MetricsWindow, now: datetime) -> EvaluationResult:
    result = EvaluationResult()
    local_now = _aware(now).astimezone(ZoneInfo(params.timezone))
    if local_now.hour >= params.before_hour_local:
        # Running out late in the day is normal pacing, not a problem.
        return result

    action = ActionDescriptor.model_validate(rule.action or {})
    for campaign in window.entities:
        if campaign.budget_utilization is None:
            result.skipped += 1
            continue
        if campaign.budget_utilization < params.percent_threshold:
            continue

        label = campaign.name or campaign.entity_id
        result.alerts.append(AlertDraft(
            severity=Severity.CRITICAL.value,
            title=f"Budget {campaign.budget_utilization:.0f}% spent: {label}",
            message=(
                f"Campaign {label} has used {campaign.budget_utilization:.1f}% of its daily budget "
                f"before {params.before_hour_local}:00 ({params.timezone})."
            ),
            entity_type=EntityType.CAMPAIGN.value,
            entity_id=campaign.entity_id,
            data={"budgetUtilization": campaign.budget_utilization, "spend": campaign.spend},
        ))

        if action.type == ActionType.PAUSE_CAMPAIGN.value:
            result.proposals.append(ProposedAction(
                ActionType.PAUSE_CAMPAIGN,
                {"campaignId": campaign.entity_id},
                reason=f"Budget {campaign.budget_utilization:.0f}% spent before {params.before_hour_local}:00",
            ))
        elif action.type == ActionType.UPDATE_CAMPAIGN_BUDGET.value:
            current = campaign.daily_budget_micros
            if not current:
                result.skipped += 1
                continue
            new_budget = int(round(current * (1 + action.budget_increase_percent / 100)))
            if action.max_budget_micros:
                new_budget = min(new_budget, action.max_budget_micros)
            if new_budget <= current:
                continue
            result.proposals.append(ProposedAction(
                ActionType.UPDATE_CAMPAIGN_BUDGET,
                {"campaignId": campaign.entity_id, "dailyBudgetMicros": new_budget, "currentBudgetMicros": current},
                reason=f"Budget {campaign.budget_utilization:.0f}% spent; raising daily budget {action.budget_increase_percent:g}%",
            ))
    return result


def _spike_window(params: SpendSpikeParams, now: datetime) -> WindowRequest:
    return WindowRequest(
        scope=EntityType.CAMPAIGN.value,
        date_range=DateRange.single(now.date()),
        history_range=DateRange.trailing(params.lookback_days, now),
    )


def evaluate_spend_spike(rule, params: SpendSpikeParams, window: MetricsWindow, now: datetime) -> EvaluationResult:
    result = EvaluationResult()
    action = ActionDescriptor.model_validate(rule.action or {})

    series: dict[str, list[float]] = {}
    for day in window.history:
        if day.spend is not None:
            series.setdefault(day.entity_id, []).append(day.spend)

    for campaign in window.entities:
        history = series.get(campaign.entity_id, [])
        if campaign.spend is None or len(history) < 3:
            result.skipped += 1
            continue
        if campaign.spend < params.min_spend:
            continue

        mean = statistics.fmean(history)
        stdev = statistics.pstdev(history)
        threshold = mean + params.stdev_multiplier * stdev
        if campaign.spend <= threshold:
            continue

        label = campaign.name or campaign.entity_id
        result.alerts.append(AlertDraft(
            severity=rule.severity or Severity.WARN.value,
            title=f"Spend spike: {label}",
            message=(
                f"Today's spend {_money(campaign.spend)} is above the {len(history)}-day mean "
                f"{_money(mean)} + {params.stdev_multiplier:g}σ ({_money(threshold)})."
            ),
            entity_type=EntityType.CAMPAIGN.value,
            entity_id=campaign.entity_id,
            data={"spend": campaign.spend, "mean": round(mean, 2), "stdev": round(stdev, 2), "threshold": round(threshold, 2)},
        ))
        if action.type == ActionType.PAUSE_CAMPAIGN.value:
            result.proposals.append(ProposedAction(
                ActionType.PAUSE_CAMPAIGN,
                {"campaignId": campaign.entity_id},
                reason=f"Spend {_money(campaign.spend)} exceeded spike threshold {_money(threshold)}",
            ))
    return result


def _search_term_window(params, now: datetime) -> WindowRequest:
    return WindowRequest(scope=EntityType.SEARCH_TERM.value, date_range=DateRange.trailing(params.window_days, now))


def evaluate_search_term_harvest(rule, params: SearchTermHarvestParams, window: MetricsWindow, now: datetime) -> EvaluationResult:
    result = EvaluationResult()
    for term in window.entities:
        if term.conversions is None or term.sales is None or not (term.name and term.campaign_id and term.ad_group_id):
            result.skipped += 1
            continue
        if term.conversions < params.min_conversions or term.sales < params.min_sales:
            continue
        acos = term.acos
        if acos is None or acos > params.max_acos:
            continue

        reason = (
            f"'{term.name}': {term.conversions} conversions, {_money(term.sales)} sales, "
            f"ACOS {acos:.1f}% over {params.window_days}d"
        )
        keyword = {
            "campaignId": term.campaign_id,
            "adGroupId": term.ad_group_id,
            "keywordText": term.name,
            "matchType": "exact",
        }
        if term.cpc:
            keyword["bidMicros"] = int(round(term.cpc * params.bid_multiplier * 1_000_000))
        result.proposals.append(ProposedAction(ActionType.CREATE_KEYWORD, keyword, reason=f"Harvest {reason}"))
        if params.negate_source:
            result.proposals.append(ProposedAction(
                ActionType.ADD_ADGROUP_NEGATIVE,
                {
                    "campaignId": term.campaign_id,
                    "adGroupId": term.ad_group_id,
                    "keywordText": term.name,
                    "matchType": "negativeExact",
                },
                reason=f"Negate harvested term in source ad group: {reason}",
            ))
    return result


def evaluate_search_term_prune(rule, params: SearchTermPruneParams, window: MetricsWindow, now: datetime) -> EvaluationResult:
    result = EvaluationResult()
    for term in window.entities:
        if term.clicks is None or term.conversions is None or not (term.name and term.campaign_id):
            result.skipped += 1
            continue
        if term.clicks < params.min_clicks or term.conversions > params.max_conversions:
            continue

        reason = (
            f"'{term.name}': {term.clicks} clicks, {term.conversions} conversions, "
            f"{_money(term.spend)} spend over {params.window_days}d"
        )
        if params.negate_scope == "campaign":
            result.proposals.append(ProposedAction(
                ActionType.ADD_CAMPAIGN_NEGATIVE,
                {"campaignId": term.campaign_id, "keywordText": term.name, "matchType": "negativeExact"},
                reason=reason,
            ))
        elif term.ad_group_id:
            result.proposals.append(ProposedAction(
                ActionType.ADD_ADGROUP_NEGATIVE,
                {
                    "campaignId": term.campaign_id,
                    "adGroupId": term.ad_group_id,
                    "keywordText": term.name,
                    "matchType": "negativeExact",
                },
                reason=reason,
            ))
        else:
            result.skipped += 1
    return result


def _bid_down_window(params: BidDownHighAcosParams, now: datetime) -> WindowRequest:
    return WindowRequest(scope=params.entity_type, date_range=DateRange.trailing(params.lookback_days, now))


def reduced_bid(current_bid_micros: int, reduction_percent: float, floor_micros: int) -> int:
    return max(int(round(current_bid_micros * (1 - reduction_percent / 100))), floor_micros)


def evaluate_bid_down_high_acos(rule, params: BidDownHighAcosParams, window: MetricsWindow, now: datetime) -> EvaluationResult:
    result = EvaluationResult()
    keyword_scope = params.entity_type == EntityType.KEYWORD.value
    for entity in window.entities:
        acos = entity.acos
        if acos is None or entity.bid_micros is None:
            result.skipped += 1
            continue
        if (entity.clicks or 0) < params.min_clicks or acos <= params.acos_threshold:
            continue

        new_bid = reduced_bid(entity.bid_micros, params.bid_reduction_percent, params.min_bid_micros)
        if new_bid >= entity.bid_micros:
            # Already at or below the floor; never raise a bid from here.
            result.skipped += 1
            continue
        payload = {
            "keywordId" if keyword_scope else "targetId": entity.entity_id,
            "bidMicros": new_bid,
            "currentBidMicros": entity.bid_micros,
        }
        if entity.campaign_id:
            payload["campaignId"] = entity.campaign_id
        if entity.ad_group_id:
            payload["adGroupId"] = entity.ad_group_id
        result.proposals.append(ProposedAction(
            ActionType.SET_KEYWORD_BID if keyword_scope else ActionType.SET_BID,
            payload,
            reason=(
                f"ACOS {acos:.1f}% > {params.acos_threshold:g}% over {params.lookback_days}d; "
                f"bid {entity.bid_micros} -> {new_bid} micros"
            ),
        ))
    return result


def evaluate_placement_optimizer(rule, params: PlacementOptimizerParams, window: MetricsWindow, now: datetime) -> EvaluationResult:
    # Not implemented: placement rules are accepted and always evaluate to nothing.
    return EvaluationResult()


def _no_window(params, now: datetime) -> WindowRequest:
    return WindowRequest(scope=None, date_range=DateRange.single(now.date()))


# ══════════════════════════════════════════════════════════════════════
#  REGISTRY
# ══════════════════════════════════════════════════════════════════════

RULE_DEFINITIONS: dict[RuleType, RuleDefinition] = {d.rule_type: d for d in (
    RuleDefinition(
        RuleType.BUDGET_DEPLETION, BudgetDepletionParams, _budget_window, evaluate_budget_depletion,
        action_types=("alert_only", ActionType.PAUSE_CAMPAIGN.value, ActionType.UPDATE_CAMPAIGN_BUDGET.value),
        default_action="alert_only",
        description="Alert when a campaign burns through its daily budget early in the day",
    ),
    RuleDefinition(
        RuleType.SPEND_SPIKE, SpendSpikeParams, _spike_window, evaluate_spend_spike,
        action_types=("alert_only", ActionType.PAUSE_CAMPAIGN.value),
        default_action="alert_only",
        description="Alert when today's spend is far above the recent daily average",
    ),
    RuleDefinition(
        RuleType.SEARCH_TERM_HARVEST, SearchTermHarvestParams, _search_term_window, evaluate_search_term_harvest,
        action_types=(ActionType.CREATE_KEYWORD.value,),
        default_action=ActionType.CREATE_KEYWORD.value,
        description="Promote converting search terms to exact keywords",
    ),
    RuleDefinition(
        RuleType.SEARCH_TERM_PRUNE, SearchTermPruneParams, _search_term_window, evaluate_search_term_prune,
        action_types=("add_negative",),
        default_action="add_negative",
        description="Negate search terms that spend clicks without converting",
    ),
    RuleDefinition(
        RuleType.BID_DOWN_HIGH_ACOS, BidDownHighAcosParams, _bid_down_window, evaluate_bid_down_high_acos,
        action_types=(ActionType.SET_BID.value,),
        default_action=ActionType.SET_BID.value,
        description="Lower bids on targets or keywords whose ACOS is above target",
    ),
    RuleDefinition(
        RuleType.PLACEMENT_OPTIMIZER, PlacementOptimizerParams, _no_window, evaluate_placement_optimizer,
        action_types=("alert_only",),
        default_action="alert_only",
        description="Placement adjustments (not implemented; evaluates to nothing)",
    ),
)}


def get_definition(rule_type: str) -> RuleDefinition:
    try:
        return RULE_DEFINITIONS[RuleType(rule_type)]
    except ValueError:
        raise ConfigurationError(f"Unknown rule type: {rule_type!r}")


def _errors(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'value'}: {err['msg']}" for err in exc.errors()
    )


def validate_rule_config(
    rule_type: str,
    params: Optional[dict] = None,
    action: Optional[dict] = None,
    throttle: Optional[dict] = None,
) -> tuple[dict, dict, dict]:
    """
    Validate and normalize a rule's configuration. Returns (params, action,
    throttle) with defaults filled in; raises ConfigurationError otherwise.
    """
    definition = get_definition(rule_type)
    try:
        parsed_params = definition.params_model.model_validate(params or {})
        parsed_action = ActionDescriptor.model_validate(action or {"type": definition.default_action})
        parsed_throttle = ThrottleParams.model_validate(throttle or {})
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid {definition.rule_type.value} configuration: {_errors(exc)}")
    if parsed_action.type not in definition.action_types:
        raise ConfigurationError(
            f"Action '{parsed_action.type}' is not available for {definition.rule_type.value}; "
            f"choose one of {', '.join(definition.action_types)}"
        )
    return (
        parsed_params.model_dump(by_alias=True),
        parsed_action.model_dump(by_alias=True, exclude_none=True),
        parsed_throttle.model_dump(by_alias=True),
    )


def parse_params(rule) -> RuleParams:
    definition = get_definition(rule.rule_type)
    try:
        return definition.params_model.model_validate(rule.params or {})
    except ValidationError as exc:
        raise ConfigurationError(f"Rule {rule.id} has invalid params: {_errors(exc)}")


def window_for(rule, now: datetime) -> WindowRequest:
    return get_definition(rule.rule_type).window(parse_params(rule), now)


def evaluate(rule, window: MetricsWindow, now: datetime) -> EvaluationResult:
    """Evaluate one rule against a metrics window. Pure and deterministic."""
    definition = get_definition(rule.rule_type)
    result = definition.evaluate(rule, parse_params(rule), window, now)
    if result.skipped:
        logger.debug(f"Rule {rule.id} ({rule.rule_type}): {result.skipped} entities skipped for missing metrics")
    return result


# Rules created by POST /rules/initialize: disabled, dry run.
DEFAULT_RULES = [
    {
        "name": "Budget depletion alert",
        "rule_type": RuleType.BUDGET_DEPLETION.value,
        "severity": Severity.CRITICAL.value,
        "params": {"percentThreshold": 80, "beforeHourLocal": 16},
        "action": {"type": "alert_only"},
        "throttle": {"cooldownHours": 24, "maxActionsPerDay": 5},
    },
    {
        "name": "Spend spike alert",
        "rule_type": RuleType.SPEND_SPIKE.value,
        "severity": Severity.WARN.value,
        "params": {"lookbackDays": 7, "stdevMultiplier": 2.0, "minSpend": 5.0},
        "action": {"type": "alert_only"},
        "throttle": {"cooldownHours": 12, "maxActionsPerDay": 10},
    },
    {
        "name": "Search term harvest",
        "rule_type": RuleType.SEARCH_TERM_HARVEST.value,
        "severity": Severity.INFO.value,
        "params": {"windowDays": 14, "minConversions": 2, "maxAcos": 35},
        "action": {"type": ActionType.CREATE_KEYWORD.value},
        "throttle": {"cooldownHours": 48, "maxActionsPerDay": 50},
    },
    {
        "name": "Search term prune",
        "rule_type": RuleType.SEARCH_TERM_PRUNE.value,
        "severity": Severity.INFO.value,
        "params": {"windowDays": 14, "minClicks": 20, "maxConversions": 0, "negateScope": "ad_group"},
        "action": {"type": "add_negative"},
        "throttle": {"cooldownHours": 72, "maxActionsPerDay": 100},
    },
]
