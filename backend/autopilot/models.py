"""
Amazon Ads Autopilot: Database Models
Rules, alerts, the action queue, guardrails, playbooks and the performance
read model the automation core evaluates against.
"""

import uuid
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    String, Text, Float, Integer, BigInteger, Boolean, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import UUID
from autopilot.database import Base


def _utcnow() -> datetime:
    """Naive UTC now, matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class CredentialStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    ERROR = "error"


class RuleType(str, enum.Enum):
    BUDGET_DEPLETION = "budget_depletion"
    SPEND_SPIKE = "spend_spike"
    SEARCH_TERM_HARVEST = "search_term_harvest"
    SEARCH_TERM_PRUNE = "search_term_prune"
    BID_DOWN_HIGH_ACOS = "bid_down_high_acos"
    PLACEMENT_OPTIMIZER = "placement_optimizer"


class AutomationMode(str, enum.Enum):
    DRY_RUN = "dry_run"
    SUGGESTION = "suggestion"
    AUTO = "auto"


class Severity(str, enum.Enum):
    INFO = "info"
    WARN = "warn"
    CRITICAL = "critical"


class AlertState(str, enum.Enum):
    NEW = "new"
    ACKNOWLEDGED = "acknowledged"


class EntityType(str, enum.Enum):
    CAMPAIGN = "campaign"
    AD_GROUP = "ad_group"
    KEYWORD = "keyword"
    TARGET = "target"
    SEARCH_TERM = "search_term"


class ActionType(str, enum.Enum):
    PAUSE_CAMPAIGN = "pause_campaign"
    ENABLE_CAMPAIGN = "enable_campaign"
    UPDATE_CAMPAIGN_BUDGET = "update_campaign_budget"
    SET_PLACEMENT_ADJUSTMENT = "set_placement_adjustment"
    PAUSE_AD_GROUP = "pause_ad_group"
    ENABLE_AD_GROUP = "enable_ad_group"
    SET_AD_GROUP_BID = "set_ad_group_bid"
    PAUSE_KEYWORD = "pause_keyword"
    ENABLE_KEYWORD = "enable_keyword"
    SET_KEYWORD_BID = "set_keyword_bid"
    CREATE_KEYWORD = "create_keyword"
    PAUSE_TARGET = "pause_target"
    ENABLE_TARGET = "enable_target"
    SET_BID = "set_bid"
    ADD_CAMPAIGN_NEGATIVE = "add_campaign_negative"
    ADD_ADGROUP_NEGATIVE = "add_adgroup_negative"


class ActionStatus(str, enum.Enum):
    PENDING_APPROVAL = "pending_approval"
    QUEUED = "queued"
    EXECUTING = "executing"  # claimed by a worker, call in flight
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"
    PREVENTED = "prevented"  # dropped by a guardrail before it could run
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({
    ActionStatus.APPLIED, ActionStatus.FAILED, ActionStatus.SKIPPED,
    ActionStatus.PREVENTED, ActionStatus.REJECTED,
})

# Rows in these states hold their idempotency key.
LIVE_STATUSES = (
    ActionStatus.PENDING_APPROVAL, ActionStatus.QUEUED,
    ActionStatus.EXECUTING, ActionStatus.APPLIED,
)
LIVE_STATUS_CLAUSE = text("status IN ('pending_approval', 'queued', 'executing', 'applied')")
PREVENTED_STATUS_CLAUSE = text("status = 'prevented'")


class ActionSource(str, enum.Enum):
    RULE = "rule"
    PLAYBOOK = "playbook"
    MANUAL = "manual"


class RunStatus(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


# ══════════════════════════════════════════════════════════════════════
#  CREDENTIALS: per-profile Amazon Ads API access
# ══════════════════════════════════════════════════════════════════════

class Credential(Base):
    __tablename__ = "credentials"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_id: Mapped[str] = mapped_column(String(512), nullable=False)
    client_secret: Mapped[str] = mapped_column(Text, nullable=True)  # encrypted
    access_token: Mapped[str] = mapped_column(Text, nullable=False)  # encrypted
    refresh_token: Mapped[str] = mapped_column(Text, nullable=True)  # encrypted
    token_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    region: Mapped[str] = mapped_column(String(10), default="na")  # na | eu | fe
    status: Mapped[str] = mapped_column(String(20), default=CredentialStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)


# ══════════════════════════════════════════════════════════════════════
#  GUARDRAILS: per-profile safety configuration
# ══════════════════════════════════════════════════════════════════════

class GuardrailSettings(Base):
    """
    One row per profile. A missing row means defaults apply.
    automation_enabled is the durable kill switch read by both the rule
    engine and the execution worker.
    """
    __tablename__ = "guardrail_settings"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    automation_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    paused_reason: Mapped[str] = mapped_column(Text, nullable=True)
    paused_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    min_bid_micros: Mapped[int] = mapped_column(BigInteger, default=100_000, nullable=False)
    max_bid_micros: Mapped[int] = mapped_column(BigInteger, default=10_000_000, nullable=False)
    max_bid_change_percent: Mapped[float] = mapped_column(Float, nullable=True)
    require_approval_above_micros: Mapped[int] = mapped_column(BigInteger, default=1_000_000, nullable=True)
    max_actions_per_day: Mapped[int] = mapped_column(Integer, default=100, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)


class ProtectedEntity(Base):
    """Entities automation must never modify (brand campaigns, hero keywords, ...)."""
    __tablename__ = "protected_entities"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)  # campaign | ad_group | keyword | target
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("profile_id", "entity_type", "entity_id", name="uq_protected_entity"),
        Index("ix_protected_entities_profile_id", "profile_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  AUTOMATION RULES
# ══════════════════════════════════════════════════════════════════════

class AutomationRule(Base):
    """
    A configured rule for one profile. Rules are disabled rather than deleted
    so queue items and alerts keep a valid owner.
    """
    __tablename__ = "automation_rules"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    rule_type: Mapped[str] = mapped_column(String(50), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), default=AutomationMode.DRY_RUN.value, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), default=Severity.WARN.value)
    params: Mapped[dict] = mapped_column(JSON, default=dict)
    action: Mapped[dict] = mapped_column(JSON, default=dict)  # {"type": "pause_campaign", ...}
    throttle: Mapped[dict] = mapped_column(JSON, default=dict)  # {"cooldownHours": 24, "maxActionsPerDay": 5}
    last_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    runs: Mapped[list["AutomationRuleRun"]] = relationship("AutomationRuleRun", back_populates="rule")

    __table_args__ = (
        UniqueConstraint("profile_id", "name", name="uq_automation_rule_name"),
        Index("ix_automation_rules_profile_id", "profile_id"),
        Index("ix_automation_rules_enabled", "enabled"),
    )


class AutomationRuleRun(Base):
    """One evaluation of a rule, manual or scheduled."""
    __tablename__ = "automation_rule_runs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    rule_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=False)
    trigger: Mapped[str] = mapped_column(String(20), default="manual")  # manual | schedule
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=RunStatus.RUNNING.value)
    alerts_created: Mapped[int] = mapped_column(Integer, default=0)
    actions_enqueued: Mapped[int] = mapped_column(Integer, default=0)
    actions_deferred: Mapped[int] = mapped_column(Integer, default=0)
    actions_dropped: Mapped[int] = mapped_column(Integer, default=0)
    duplicates_ignored: Mapped[int] = mapped_column(Integer, default=0)
    summary: Mapped[dict] = mapped_column(JSON, nullable=True)
    error: Mapped[str] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    finished_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    rule: Mapped["AutomationRule"] = relationship("AutomationRule", back_populates="runs")

    __table_args__ = (
        Index("ix_rule_runs_rule_id", "rule_id"),
        Index("ix_rule_runs_started_at", "started_at"),
    )


class Alert(Base):
    __tablename__ = "alerts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    rule_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("automation_rules.id", ondelete="SET NULL"), nullable=True)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=True)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=True)
    severity: Mapped[str] = mapped_column(String(20), default=Severity.INFO.value)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=True)
    data: Mapped[dict] = mapped_column(JSON, nullable=True)
    state: Mapped[str] = mapped_column(String(20), default=AlertState.NEW.value)
    acknowledged_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_alerts_profile_state", "profile_id", "state"),
        Index("ix_alerts_rule_id", "rule_id"),
        Index("ix_alerts_created_at", "created_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  ACTION QUEUE
# ══════════════════════════════════════════════════════════════════════

class ActionQueueItem(Base):
    """
    Unit of work for the execution worker. Status only moves through
    compare-and-set updates in services.action_queue.
    """
    __tablename__ = "action_queue"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=ActionStatus.QUEUED.value, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=True)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=True)

    # Provenance
    source: Mapped[str] = mapped_column(String(20), default=ActionSource.RULE.value)
    rule_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("automation_rules.id", ondelete="SET NULL"), nullable=True)
    playbook_run_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("playbook_runs.id", ondelete="SET NULL"), nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=True)

    # Lifecycle
    status_reason: Mapped[str] = mapped_column(Text, nullable=True)
    error: Mapped[str] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deliveries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    claimed_by: Mapped[str] = mapped_column(String(255), nullable=True)
    claimed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    # Result, read by outcome attribution
    amazon_request_id: Mapped[str] = mapped_column(String(255), nullable=True)
    amazon_api_response: Mapped[dict] = mapped_column(JSON, nullable=True)
    applied_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index(
            "uq_action_queue_live_idempotency_key",
            "idempotency_key",
            unique=True,
            postgresql_where=LIVE_STATUS_CLAUSE,
            sqlite_where=LIVE_STATUS_CLAUSE,
        ),
        Index(
            "uq_action_queue_prevented_idempotency_key",
            "idempotency_key",
            unique=True,
            postgresql_where=PREVENTED_STATUS_CLAUSE,
            sqlite_where=PREVENTED_STATUS_CLAUSE,
        ),
        Index("ix_action_queue_status_created", "status", "created_at"),
        Index("ix_action_queue_profile_status", "profile_id", "status"),
        Index("ix_action_queue_rule_created", "rule_id", "created_at"),
        Index("ix_action_queue_entity", "entity_type", "entity_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  PLAYBOOKS
# ══════════════════════════════════════════════════════════════════════

class PlaybookDefinition(Base):
    __tablename__ = "playbook_definitions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=True)  # None = usable for any profile
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=True)
    template_key: Mapped[str] = mapped_column(String(50), nullable=False)
    params: Mapped[dict] = mapped_column(JSON, default=dict)
    mode: Mapped[str] = mapped_column(String(20), default=AutomationMode.DRY_RUN.value)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    runs: Mapped[list["PlaybookRun"]] = relationship("PlaybookRun", back_populates="playbook")

    __table_args__ = (
        Index("ix_playbook_definitions_profile_id", "profile_id"),
    )


class PlaybookRun(Base):
    __tablename__ = "playbook_runs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    playbook_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("playbook_definitions.id", ondelete="CASCADE"), nullable=False)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=RunStatus.RUNNING.value)
    actions_enqueued: Mapped[int] = mapped_column(Integer, default=0)
    alerts_created: Mapped[int] = mapped_column(Integer, default=0)
    steps: Mapped[dict] = mapped_column(JSON, nullable=True)
    error: Mapped[str] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    finished_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    playbook: Mapped["PlaybookDefinition"] = relationship("PlaybookDefinition", back_populates="runs")

    __table_args__ = (
        Index("ix_playbook_runs_playbook_id", "playbook_id"),
        Index("ix_playbook_runs_started_at", "started_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  PERFORMANCE DAILY: read model written by the reporting ETL
# ══════════════════════════════════════════════════════════════════════

class PerformanceDaily(Base):
    """
    One row per entity per date. Populated outside this service; the rule
    engine and playbooks only read it through the metrics provider.
    """
    __tablename__ = "performance_daily"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)  # campaign | ad_group | keyword | target | search_term
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    date: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD
    campaign_id: Mapped[str] = mapped_column(String(255), nullable=True)
    ad_group_id: Mapped[str] = mapped_column(String(255), nullable=True)
    entity_name: Mapped[str] = mapped_column(String(512), nullable=True)  # keyword text / search term
    match_type: Mapped[str] = mapped_column(String(50), nullable=True)
    bid_micros: Mapped[int] = mapped_column(BigInteger, nullable=True)
    daily_budget_micros: Mapped[int] = mapped_column(BigInteger, nullable=True)

    spend: Mapped[float] = mapped_column(Float, nullable=True)
    sales: Mapped[float] = mapped_column(Float, nullable=True)
    clicks: Mapped[int] = mapped_column(Integer, nullable=True)
    impressions: Mapped[int] = mapped_column(BigInteger, nullable=True)
    conversions: Mapped[int] = mapped_column(Integer, nullable=True)
    budget_utilization: Mapped[float] = mapped_column(Float, nullable=True)  # percent of daily budget spent

    synced_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("profile_id", "entity_type", "entity_id", "date", name="uq_performance_daily"),
        Index("ix_perf_daily_profile_scope_date", "profile_id", "entity_type", "date"),
    )


# ══════════════════════════════════════════════════════════════════════
#  ACTIVITY LOG: Audit trail for every action
# ══════════════════════════════════════════════════════════════════════

class ActivityLog(Base):
    """Logs all operator-facing mutations for audit trail."""
    __tablename__ = "activity_log"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)  # action_queue, guardrails, rules, playbooks
    description: Mapped[str] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=True)  # action, rule, guardrail, playbook
    entity_id: Mapped[str] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="success")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_activity_log_profile_id", "profile_id"),
        Index("ix_activity_log_category", "category"),
        Index("ix_activity_log_created_at", "created_at"),
        Index("ix_activity_log_entity", "entity_type", "entity_id"),
    )
