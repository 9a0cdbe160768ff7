"""
Action Queue: durable, idempotent store of actions awaiting execution.

Inserts are upserts against a partial unique index on idempotency_key
(live rows only: pending_approval, queued, executing, applied), so the same
logical action proposed twice inside one time bucket is stored once.

Every status change is a compare-and-set UPDATE ... WHERE status IN (...)
committed on its own, so two workers can never both move the same item and
a claim is durable before any external call is made.

    pending_approval --approve--> queued
    pending_approval / queued --reject--> rejected
    queued --claim--> executing
    executing --> applied | failed | skipped | queued (released)
"""

import enum
import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from autopilot.config import get_settings
from autopilot.database import insert_for
from autopilot.exceptions import ConfigurationError, InvalidTransitionError, NotFoundError
from autopilot.models import (
    ActionQueueItem, ActionSource, ActionStatus, ActionType, ActivityLog, GuardrailSettings,
    LIVE_STATUSES, LIVE_STATUS_CLAUSE, PREVENTED_STATUS_CLAUSE,
)
from autopilot.services.action_types import ProposedAction, intent_parts, validate_payload
from autopilot.utils import utcnow

logger = logging.getLogger(__name__)

# How many queued candidates one claim attempt looks at before giving up.
CLAIM_SCAN_SIZE = 10
CLAIM_SCAN_ROUNDS = 5


class EnqueueOutcome(str, enum.Enum):
    INSERTED = "inserted"
    DUPLICATE_IGNORED = "duplicate_ignored"


@dataclass
class EnqueueResult:
    outcome: EnqueueOutcome
    idempotency_key: str
    item_id: Optional[uuid.UUID] = None
    status: Optional[str] = None

    @property
    def inserted(self) -> bool:
        return self.outcome == EnqueueOutcome.INSERTED


def time_bucket(now: datetime, bucket_hours: int) -> int:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return int(now.timestamp()) // (bucket_hours * 3600)


def build_idempotency_key(
    profile_id: str,
    action_type: str,
    payload: dict,
    now: datetime,
    bucket_hours: int,
) -> str:
    """
    Deterministic key for one logical intent (profile, action, target entity)
    inside one time bucket. The new value (bid, budget) is not part of the
    key: a second, different bid for the same target in the same bucket is
    the same intent.
    """
    parts = [str(profile_id), ActionType(action_type).value, *intent_parts(action_type, payload), str(time_bucket(now, bucket_hours))]
    return hashlib.sha256(":".join(parts).encode()).hexdigest()


def _values(statuses: Iterable[ActionStatus]) -> list[str]:
    return [s.value for s in statuses]


class ActionQueue:
    def __init__(self, session_factory: async_sessionmaker, bucket_hours: Optional[int] = None):
        self.session_factory = session_factory
        self.bucket_hours = bucket_hours or get_settings().idempotency_bucket_hours

    # ── Insertion ─────────────────────────────────────────────────────

    def key_for(self, profile_id: str, proposal: ProposedAction, now: datetime) -> str:
        return build_idempotency_key(profile_id, proposal.action_type, proposal.payload, now, self.bucket_hours)

    async def enqueue(
        self,
        profile_id: str,
        proposal: ProposedAction,
        *,
        status: ActionStatus = ActionStatus.QUEUED,
        source: ActionSource = ActionSource.RULE,
        rule_id: Optional[uuid.UUID] = None,
        playbook_run_id: Optional[uuid.UUID] = None,
        status_reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EnqueueResult:
        """
        Insert or report DuplicateIgnored. Duplicates are a normal outcome,
        never an error. Invalid payloads raise ConfigurationError.
        """
        if not profile_id:
            raise ConfigurationError("profile_id is required to enqueue an action")
        if status not in (ActionStatus.QUEUED, ActionStatus.PENDING_APPROVAL):
            raise ValueError(f"Actions can only be enqueued as queued or pending_approval, not {status.value}")
        problems = validate_payload(proposal.action_type, proposal.payload)
        if problems:
            raise ConfigurationError(f"Invalid {proposal.kind} payload: {'; '.join(problems)}")

        now = now or utcnow()
        key = self.key_for(profile_id, proposal, now)
        async with self.session_factory() as db:
            stmt = (
                insert_for(db, ActionQueueItem)
                .values(**self._row(profile_id, proposal, key, status, source, rule_id, playbook_run_id, status_reason, now))
                .on_conflict_do_nothing(index_elements=["idempotency_key"], index_where=LIVE_STATUS_CLAUSE)
                .returning(ActionQueueItem.id)
            )
            item_id = (await db.execute(stmt)).scalar_one_or_none()
            if item_id is None:
                existing = (await db.execute(
                    select(ActionQueueItem.id, ActionQueueItem.status).where(
                        ActionQueueItem.idempotency_key == key,
                        ActionQueueItem.status.in_(_values(LIVE_STATUSES)),
                    )
                )).first()
                await db.rollback()
                logger.info(f"Duplicate {proposal.kind} for {proposal.entity_id} ignored (key {key[:12]})")
                return EnqueueResult(
                    outcome=EnqueueOutcome.DUPLICATE_IGNORED,
                    idempotency_key=key,
                    item_id=existing[0] if existing else None,
                    status=existing[1] if existing else None,
                )

            db.add(self._log(profile_id, item_id, "action_enqueued",
                             f"{ActionStatus(status).value}: {proposal.kind} on {proposal.entity_type} {proposal.entity_id}",
                             {"source": ActionSource(source).value, "reason": proposal.reason}))
            await db.commit()

        logger.info(f"Enqueued {proposal.kind} for {proposal.entity_type} {proposal.entity_id} "
                    f"as {ActionStatus(status).value} (profile {profile_id}, item {item_id})")
        return EnqueueResult(
            outcome=EnqueueOutcome.INSERTED, idempotency_key=key, item_id=item_id, status=ActionStatus(status).value,
        )

    async def record_prevented(
        self,
        profile_id: str,
        proposal: ProposedAction,
        reason: str,
        *,
        source: ActionSource = ActionSource.RULE,
        rule_id: Optional[uuid.UUID] = None,
        playbook_run_id: Optional[uuid.UUID] = None,
        now: Optional[datetime] = None,
    ) -> EnqueueResult:
        """
        Keep an auditable, never-executed record of a proposal a guardrail
        blocked. One record per key; repeats inside the bucket are ignored.
        """
        now = now or utcnow()
        key = self.key_for(profile_id, proposal, now)
        row = self._row(profile_id, proposal, key, ActionStatus.PREVENTED, source, rule_id, playbook_run_id, reason, now)
        async with self.session_factory() as db:
            stmt = (
                insert_for(db, ActionQueueItem)
                .values(**row)
                .on_conflict_do_nothing(index_elements=["idempotency_key"], index_where=PREVENTED_STATUS_CLAUSE)
                .returning(ActionQueueItem.id)
            )
            if (await db.execute(stmt)).scalar_one_or_none() is None:
                existing = (await db.execute(
                    select(ActionQueueItem.id).where(
                        ActionQueueItem.idempotency_key == key,
                        ActionQueueItem.status == ActionStatus.PREVENTED.value,
                    )
                )).scalars().first()
                await db.rollback()
                return EnqueueResult(EnqueueOutcome.DUPLICATE_IGNORED, key, existing, ActionStatus.PREVENTED.value)

            db.add(self._log(profile_id, row["id"], "action_prevented", reason, {"action_type": proposal.kind}))
            await db.commit()
        logger.info(f"Prevented {proposal.kind} on {proposal.entity_type} {proposal.entity_id}: {reason}")
        return EnqueueResult(EnqueueOutcome.INSERTED, key, row["id"], ActionStatus.PREVENTED.value)

    @staticmethod
    def _row(profile_id, proposal, key, status, source, rule_id, playbook_run_id, status_reason, now) -> dict:
        return {
            "id": uuid.uuid4(),
            "profile_id": str(profile_id),
            "action_type": proposal.spec.action_type.value,
            "payload": proposal.payload,
            "idempotency_key": key,
            "status": ActionStatus(status).value,
            "entity_type": proposal.entity_type,
            "entity_id": proposal.entity_id,
            "source": ActionSource(source).value,
            "rule_id": rule_id,
            "playbook_run_id": playbook_run_id,
            "reason": proposal.reason,
            "status_reason": status_reason,
            "created_at": now,
            "updated_at": now,
        }

    @staticmethod
    def _log(profile_id, item_id, action: str, description: Optional[str], details: Optional[dict] = None) -> ActivityLog:
        return ActivityLog(
            profile_id=str(profile_id),
            action=action,
            category="action_queue",
            description=description,
            details=details,
            entity_type="action",
            entity_id=str(item_id),
        )

    # ── Transitions ───────────────────────────────────────────────────

    async def _transition(
        self,
        item_id: uuid.UUID,
        from_statuses: Iterable[ActionStatus],
        to_status: ActionStatus,
        reason: Optional[str],
        extra: Optional[dict] = None,
        log_action: Optional[str] = None,
    ) -> ActionQueueItem:
        async with self.session_factory() as db:
            result = await db.execute(
                update(ActionQueueItem)
                .where(
                    ActionQueueItem.id == item_id,
                    ActionQueueItem.status.in_(_values(from_statuses)),
                )
                .values(status=to_status.value, status_reason=reason, updated_at=utcnow(), **(extra or {}))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = (await db.execute(
                    select(ActionQueueItem.status).where(ActionQueueItem.id == item_id)
                )).scalar_one_or_none()
                await db.rollback()
                if current is None:
                    raise NotFoundError(f"Action {item_id} not found")
                raise InvalidTransitionError(item_id, current, to_status.value)

            item = await self._fetch(db, item_id)
            db.add(self._log(item.profile_id, item_id, log_action or f"action_{to_status.value}", reason,
                             {"status": to_status.value}))
            await db.commit()
        return item

    async def approve(self, item_id: uuid.UUID, note: Optional[str] = None) -> ActionQueueItem:
        return await self._transition(
            item_id, [ActionStatus.PENDING_APPROVAL], ActionStatus.QUEUED,
            note or "Approved by operator", log_action="action_approved",
        )

    async def reject(self, item_id: uuid.UUID, note: Optional[str] = None) -> ActionQueueItem:
        return await self._transition(
            item_id, [ActionStatus.PENDING_APPROVAL, ActionStatus.QUEUED], ActionStatus.REJECTED,
            note or "Rejected by operator",
        )

    async def claim_next(
        self, worker_id: str, now: Optional[datetime] = None, exclude: Optional[set[uuid.UUID]] = None,
    ) -> Optional[ActionQueueItem]:
        """
        Atomically move the oldest claimable item from queued to executing.
        Profiles with automation paused are not claimed from, nor are the
        ids in `exclude`. Returns None when nothing is left.
        """
        now = now or utcnow()
        paused_profiles = select(GuardrailSettings.profile_id).where(GuardrailSettings.automation_enabled.is_(False))
        stmt = (
            select(ActionQueueItem.id)
            .where(
                ActionQueueItem.status == ActionStatus.QUEUED.value,
                ActionQueueItem.profile_id.not_in(paused_profiles),
            )
            .order_by(ActionQueueItem.created_at, ActionQueueItem.id)
            .limit(CLAIM_SCAN_SIZE)
        )
        if exclude:
            stmt = stmt.where(ActionQueueItem.id.not_in(list(exclude)))
        async with self.session_factory() as db:
            for _ in range(CLAIM_SCAN_ROUNDS):
                candidates = (await db.execute(stmt)).scalars().all()
                if not candidates:
                    return None
                item = await self._claim_first(db, candidates, worker_id, now)
                if item is not None:
                    return item
                # Every candidate went to another worker; look again.
        return None

    async def _claim_first(
        self, db: AsyncSession, candidates: list[uuid.UUID], worker_id: str, now: datetime,
    ) -> Optional[ActionQueueItem]:
        for item_id in candidates:
            result = await db.execute(
                update(ActionQueueItem)
                .where(ActionQueueItem.id == item_id, ActionQueueItem.status == ActionStatus.QUEUED.value)
                .values(
                    status=ActionStatus.EXECUTING.value,
                    claimed_by=worker_id,
                    claimed_at=now,
                    deliveries=ActionQueueItem.deliveries + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                item = await self._fetch(db, item_id)
                await db.commit()
                logger.debug(f"Worker {worker_id} claimed action {item_id}")
                return item
            # Another worker won this one; release our write lock and try the next.
            await db.commit()
        return None

    async def mark_applied(
        self, item_id: uuid.UUID, request_id: Optional[str], response: Optional[dict], attempts: int,
    ) -> ActionQueueItem:
        return await self._transition(
            item_id, [ActionStatus.EXECUTING], ActionStatus.APPLIED, "Applied via Amazon Ads API",
            extra={
                "amazon_request_id": request_id,
                "amazon_api_response": response,
                "applied_at": utcnow(),
                "error": None,
                "attempts": ActionQueueItem.attempts + attempts,
            },
        )

    async def mark_failed(
        self, item_id: uuid.UUID, error: str, attempts: int = 0,
        request_id: Optional[str] = None, response=None,
    ) -> ActionQueueItem:
        return await self._transition(
            item_id, [ActionStatus.EXECUTING], ActionStatus.FAILED, error,
            extra={
                "error": error,
                "amazon_request_id": request_id,
                "amazon_api_response": response if isinstance(response, dict) else ({"message": response} if response else None),
                "attempts": ActionQueueItem.attempts + attempts,
            },
        )

    async def mark_skipped(self, item_id: uuid.UUID, reason: str) -> ActionQueueItem:
        return await self._transition(item_id, [ActionStatus.EXECUTING], ActionStatus.SKIPPED, reason)

    async def release(
        self, item_id: uuid.UUID, reason: str, error: Optional[str] = None, attempts: int = 0,
        count_delivery: bool = True,
    ) -> ActionQueueItem:
        """
        Hand an in-flight item back to the queue for a later pass. With
        count_delivery=False the claim is not counted against the delivery
        cap (the item was never attempted).
        """
        extra = {"claimed_by": None, "claimed_at": None, "attempts": ActionQueueItem.attempts + attempts}
        if error is not None:
            extra["error"] = error
        if not count_delivery:
            extra["deliveries"] = ActionQueueItem.deliveries - 1
        return await self._transition(
            item_id, [ActionStatus.EXECUTING], ActionStatus.QUEUED, reason, extra=extra, log_action="action_released",
        )

    async def fail_exhausted_claims(self, older_than: datetime, max_deliveries: int) -> int:
        """Fail stale claims that already used their last delivery instead of handing them out again."""
        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                update(ActionQueueItem)
                .where(
                    ActionQueueItem.status == ActionStatus.EXECUTING.value,
                    ActionQueueItem.claimed_at < older_than,
                    ActionQueueItem.deliveries >= max_deliveries,
                )
                .values(
                    status=ActionStatus.FAILED.value,
                    status_reason="Claim expired on final delivery",
                    error=f"Worker lost the claim on delivery {max_deliveries}; gave up after {max_deliveries} deliveries",
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount:
            logger.warning(f"Failed {result.rowcount} stale action claim(s) that reached {max_deliveries} deliveries")
        return result.rowcount or 0

    async def recover_stale_claims(self, older_than: datetime) -> int:
        """Requeue items whose worker died mid-flight (claimed before `older_than`)."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(ActionQueueItem)
                .where(
                    ActionQueueItem.status == ActionStatus.EXECUTING.value,
                    ActionQueueItem.claimed_at < older_than,
                )
                .values(
                    status=ActionStatus.QUEUED.value,
                    status_reason="Claim expired; returned to queue",
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount:
            logger.warning(f"Recovered {result.rowcount} stale action claim(s) older than {older_than}")
        return result.rowcount or 0

    # ── Reads ─────────────────────────────────────────────────────────

    @staticmethod
    async def _fetch(db: AsyncSession, item_id: uuid.UUID) -> ActionQueueItem:
        return (await db.execute(
            select(ActionQueueItem)
            .where(ActionQueueItem.id == item_id)
            .execution_options(populate_existing=True)
        )).scalar_one()

    async def get_item(self, item_id: uuid.UUID) -> ActionQueueItem:
        async with self.session_factory() as db:
            item = (await db.execute(select(ActionQueueItem).where(ActionQueueItem.id == item_id))).scalar_one_or_none()
        if not item:
            raise NotFoundError(f"Action {item_id} not found")
        return item

    async def list_items(
        self,
        profile_id: str,
        statuses: Optional[list[str]] = None,
        rule_id: Optional[uuid.UUID] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ActionQueueItem]:
        stmt = select(ActionQueueItem).where(ActionQueueItem.profile_id == str(profile_id))
        if statuses:
            stmt = stmt.where(ActionQueueItem.status.in_(statuses))
        if rule_id:
            stmt = stmt.where(ActionQueueItem.rule_id == rule_id)
        stmt = stmt.order_by(ActionQueueItem.created_at.desc()).limit(limit).offset(offset)
        async with self.session_factory() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def summary(self, profile_id: str) -> dict[str, int]:
        async with self.session_factory() as db:
            rows = (await db.execute(
                select(ActionQueueItem.status, func.count())
                .where(ActionQueueItem.profile_id == str(profile_id))
                .group_by(ActionQueueItem.status)
            )).all()
        counts = {s.value: 0 for s in ActionStatus}
        counts.update({status: count for status, count in rows})
        return counts

    async def applied_since(self, profile_id: str, since: datetime) -> list[ActionQueueItem]:
        """Applied actions for outcome attribution, oldest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(ActionQueueItem)
                .where(
                    ActionQueueItem.profile_id == str(profile_id),
                    ActionQueueItem.status == ActionStatus.APPLIED.value,
                    ActionQueueItem.applied_at >= since,
                )
                .order_by(ActionQueueItem.applied_at)
            )
            return list(result.scalars().all())
