"""
Action type registry.

Every ActionType has exactly one ActionSpec: which entity it targets, which
payload fields it needs, which fields identify the logical intent (for the
idempotency key) and the coroutine that performs it against Amazon Ads.
The module refuses to import if an ActionType has no ActionSpec.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional
from autopilot.ads_api import AmazonAdsClient, ApiResponse
from autopilot.models import ActionType, EntityType
from autopilot.utils import micros_to_amount

logger = logging.getLogger(__name__)

Handler = Callable[[AmazonAdsClient, dict], Awaitable[ApiResponse]]

# Payload key -> entity type, for guardrail lookups
ENTITY_REF_FIELDS = {
    "campaignId": EntityType.CAMPAIGN.value,
    "adGroupId": EntityType.AD_GROUP.value,
    "keywordId": EntityType.KEYWORD.value,
    "targetId": EntityType.TARGET.value,
}

BID_FIELD = "bidMicros"

_MATCH_TYPES = {
    "exact": "EXACT",
    "phrase": "PHRASE",
    "broad": "BROAD",
    "negativeexact": "NEGATIVE_EXACT",
    "negativephrase": "NEGATIVE_PHRASE",
}


def normalize_match_type(value: str | None, negative: bool = False) -> str | None:
    """'negativeExact', 'negative_exact', 'NEGATIVE_EXACT' -> 'NEGATIVE_EXACT'."""
    if not value:
        return None
    normalized = _MATCH_TYPES.get(value.replace("_", "").replace("-", "").lower())
    if normalized and negative and not normalized.startswith("NEGATIVE_"):
        normalized = f"NEGATIVE_{normalized}" if normalized in ("EXACT", "PHRASE") else None
    if normalized and not negative and normalized.startswith("NEGATIVE_"):
        return None
    return normalized


@dataclass(frozen=True)
class ActionSpec:
    action_type: ActionType
    entity_type: str
    entity_field: str
    required: tuple[str, ...]
    intent_fields: tuple[str, ...]
    handler: Handler
    # Either of these satisfies the payload requirement (placement adjustments)
    any_of: tuple[str, ...] = ()
    negative: bool = False

    def entity_id(self, payload: dict) -> Optional[str]:
        value = payload.get(self.entity_field)
        return str(value) if value is not None else None


# ── Handlers ──────────────────────────────────────────────────────────

def _state_handler(update: str, id_field: str, state: str) -> Handler:
    async def handler(client: AmazonAdsClient, payload: dict) -> ApiResponse:
        method = getattr(client, update)
        return await method([{id_field: str(payload[id_field]), "state": state}])
    handler.__name__ = f"{update}_{state.lower()}"
    return handler


async def _update_campaign_budget(client: AmazonAdsClient, payload: dict) -> ApiResponse:
    return await client.update_campaigns([{
        "campaignId": str(payload["campaignId"]),
        "budget": {
            "budget": micros_to_amount(payload["dailyBudgetMicros"]),
            "budgetType": "DAILY",
        },
    }])


async def _set_placement_adjustment(client: AmazonAdsClient, payload: dict) -> ApiResponse:
    placements = []
    if payload.get("placementTop") is not None:
        placements.append({"placement": "PLACEMENT_TOP", "percentage": int(payload["placementTop"])})
    if payload.get("placementProductPage") is not None:
        placements.append({"placement": "PLACEMENT_PRODUCT_PAGE", "percentage": int(payload["placementProductPage"])})
    return await client.update_campaigns([{
        "campaignId": str(payload["campaignId"]),
        "dynamicBidding": {"placementBidding": placements},
    }])


async def _set_ad_group_bid(client: AmazonAdsClient, payload: dict) -> ApiResponse:
    return await client.update_ad_groups([{
        "adGroupId": str(payload["adGroupId"]),
        "defaultBid": micros_to_amount(payload[BID_FIELD]),
    }])


async def _set_keyword_bid(client: AmazonAdsClient, payload: dict) -> ApiResponse:
    return await client.update_keywords([{
        "keywordId": str(payload["keywordId"]),
        "bid": micros_to_amount(payload[BID_FIELD]),
    }])


async def _create_keyword(client: AmazonAdsClient, payload: dict) -> ApiResponse:
    keyword = {
        "campaignId": str(payload["campaignId"]),
        "adGroupId": str(payload["adGroupId"]),
        "keywordText": payload["keywordText"],
        "matchType": normalize_match_type(payload["matchType"]),
        "state": "ENABLED",
    }
    if payload.get(BID_FIELD):
        keyword["bid"] = micros_to_amount(payload[BID_FIELD])
    return await client.create_keywords([keyword])


async def _set_target_bid(client: AmazonAdsClient, payload: dict) -> ApiResponse:
    return await client.update_targets([{
        "targetId": str(payload["targetId"]),
        "bid": micros_to_amount(payload[BID_FIELD]),
    }])


async def _add_campaign_negative(client: AmazonAdsClient, payload: dict) -> ApiResponse:
    return await client.create_campaign_negative_keywords([{
        "campaignId": str(payload["campaignId"]),
        "keywordText": payload["keywordText"],
        "matchType": normalize_match_type(payload.get("matchType") or "negativeExact", negative=True),
        "state": "ENABLED",
    }])


async def _add_adgroup_negative(client: AmazonAdsClient, payload: dict) -> ApiResponse:
    return await client.create_negative_keywords([{
        "campaignId": str(payload["campaignId"]),
        "adGroupId": str(payload["adGroupId"]),
        "keywordText": payload["keywordText"],
        "matchType": normalize_match_type(payload.get("matchType") or "negativeExact", negative=True),
        "state": "ENABLED",
    }])


# ── Registry ──────────────────────────────────────────────────────────

_CAMPAIGN = EntityType.CAMPAIGN.value
_AD_GROUP = EntityType.AD_GROUP.value
_KEYWORD = EntityType.KEYWORD.value
_TARGET = EntityType.TARGET.value

ACTION_SPECS: dict[ActionType, ActionSpec] = {spec.action_type: spec for spec in (
    ActionSpec(ActionType.PAUSE_CAMPAIGN, _CAMPAIGN, "campaignId", ("campaignId",), ("campaignId",),
               _state_handler("update_campaigns", "campaignId", "PAUSED")),
    ActionSpec(ActionType.ENABLE_CAMPAIGN, _CAMPAIGN, "campaignId", ("campaignId",), ("campaignId",),
               _state_handler("update_campaigns", "campaignId", "ENABLED")),
    ActionSpec(ActionType.UPDATE_CAMPAIGN_BUDGET, _CAMPAIGN, "campaignId", ("campaignId", "dailyBudgetMicros"),
               ("campaignId",), _update_campaign_budget),
    ActionSpec(ActionType.SET_PLACEMENT_ADJUSTMENT, _CAMPAIGN, "campaignId", ("campaignId",), ("campaignId",),
               _set_placement_adjustment, any_of=("placementTop", "placementProductPage")),
    ActionSpec(ActionType.PAUSE_AD_GROUP, _AD_GROUP, "adGroupId", ("adGroupId",), ("adGroupId",),
               _state_handler("update_ad_groups", "adGroupId", "PAUSED")),
    ActionSpec(ActionType.ENABLE_AD_GROUP, _AD_GROUP, "adGroupId", ("adGroupId",), ("adGroupId",),
               _state_handler("update_ad_groups", "adGroupId", "ENABLED")),
    ActionSpec(ActionType.SET_AD_GROUP_BID, _AD_GROUP, "adGroupId", ("adGroupId", BID_FIELD), ("adGroupId",),
               _set_ad_group_bid),
    ActionSpec(ActionType.PAUSE_KEYWORD, _KEYWORD, "keywordId", ("keywordId",), ("keywordId",),
               _state_handler("update_keywords", "keywordId", "PAUSED")),
    ActionSpec(ActionType.ENABLE_KEYWORD, _KEYWORD, "keywordId", ("keywordId",), ("keywordId",),
               _state_handler("update_keywords", "keywordId", "ENABLED")),
    ActionSpec(ActionType.SET_KEYWORD_BID, _KEYWORD, "keywordId", ("keywordId", BID_FIELD), ("keywordId",),
               _set_keyword_bid),
    ActionSpec(ActionType.CREATE_KEYWORD, _AD_GROUP, "adGroupId",
               ("campaignId", "adGroupId", "keywordText", "matchType"),
               ("adGroupId", "keywordText", "matchType"), _create_keyword),
    ActionSpec(ActionType.PAUSE_TARGET, _TARGET, "targetId", ("targetId",), ("targetId",),
               _state_handler("update_targets", "targetId", "PAUSED")),
    ActionSpec(ActionType.ENABLE_TARGET, _TARGET, "targetId", ("targetId",), ("targetId",),
               _state_handler("update_targets", "targetId", "ENABLED")),
    ActionSpec(ActionType.SET_BID, _TARGET, "targetId", ("targetId", BID_FIELD), ("targetId",),
               _set_target_bid),
    ActionSpec(ActionType.ADD_CAMPAIGN_NEGATIVE, _CAMPAIGN, "campaignId", ("campaignId", "keywordText"),
               ("campaignId", "keywordText", "matchType"), _add_campaign_negative, negative=True),
    ActionSpec(ActionType.ADD_ADGROUP_NEGATIVE, _AD_GROUP, "adGroupId", ("campaignId", "adGroupId", "keywordText"),
               ("adGroupId", "keywordText", "matchType"), _add_adgroup_negative, negative=True),
)}

_unregistered = set(ActionType) - set(ACTION_SPECS)
if _unregistered:
    raise RuntimeError(f"Action types without a handler: {sorted(t.value for t in _unregistered)}")


@dataclass
class ProposedAction:
    """An action a rule or playbook wants to take, before admission and enqueue."""
    action_type: ActionType
    payload: dict
    reason: Optional[str] = None

    def __post_init__(self):
        self.action_type = ActionType(self.action_type)

    @property
    def kind(self) -> str:
        return self.action_type.value

    @property
    def spec(self) -> ActionSpec:
        return get_spec(self.action_type)

    @property
    def entity_type(self) -> str:
        return self.spec.entity_type

    @property
    def entity_id(self) -> Optional[str]:
        return self.spec.entity_id(self.payload)

    def to_dict(self) -> dict:
        return {
            "action_type": self.kind,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "reason": self.reason,
        }


def get_spec(action_type: str | ActionType) -> ActionSpec:
    """Raises ValueError for unknown action types."""
    return ACTION_SPECS[ActionType(action_type)]


def validate_payload(action_type: str | ActionType, payload: dict) -> list[str]:
    """Return a list of problems with the payload; empty when it can be executed."""
    try:
        spec = get_spec(action_type)
    except ValueError:
        return [f"Unknown action type: {action_type!r}"]
    if not isinstance(payload, dict):
        return ["Payload must be an object"]

    problems = [f"Missing required field '{f}'" for f in spec.required if payload.get(f) in (None, "")]
    if spec.any_of and all(payload.get(f) is None for f in spec.any_of):
        problems.append(f"One of {', '.join(spec.any_of)} is required")

    for money_field in (BID_FIELD, "dailyBudgetMicros"):
        value = payload.get(money_field)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            problems.append(f"'{money_field}' must be a positive integer (micros)")
    for current_field in ("currentBidMicros", "currentBudgetMicros"):
        value = payload.get(current_field)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            problems.append(f"'{current_field}' must be a non-negative integer (micros)")

    if "matchType" in spec.required or (spec.negative and payload.get("matchType")):
        if payload.get("matchType") and normalize_match_type(payload["matchType"], negative=spec.negative) is None:
            problems.append(f"Unsupported matchType {payload['matchType']!r} for {spec.action_type.value}")
    return problems


def entity_refs(payload: dict) -> list[tuple[str, str]]:
    """Every (entity_type, entity_id) the payload touches, parents included."""
    return [
        (entity_type, str(payload[key]))
        for key, entity_type in ENTITY_REF_FIELDS.items()
        if payload.get(key) not in (None, "")
    ]


def impact_micros(action_type: str | ActionType, payload: dict) -> int:
    """
    Monetary size of a change, compared against the approval threshold.
    Bid and budget changes count the delta when the current value is known.
    """
    for new_field, current_field in ((BID_FIELD, "currentBidMicros"), ("dailyBudgetMicros", "currentBudgetMicros")):
        new_value = payload.get(new_field)
        if new_value is None:
            continue
        if ActionType(action_type) == ActionType.CREATE_KEYWORD:
            return 0
        current = payload.get(current_field)
        return abs(int(new_value) - int(current)) if current is not None else int(new_value)
    return 0


def intent_parts(action_type: str | ActionType, payload: dict) -> list[str]:
    spec = get_spec(action_type)
    parts = []
    for f in spec.intent_fields:
        value = payload.get(f)
        if f == "matchType":
            value = normalize_match_type(value or ("negativeExact" if spec.negative else None), negative=spec.negative)
        elif f == "keywordText" and value:
            value = " ".join(str(value).lower().split())
        parts.append("" if value is None else str(value))
    return parts
