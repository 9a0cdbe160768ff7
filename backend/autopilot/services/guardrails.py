"""
Guardrail Store: per-profile safety configuration.

Snapshots are loaded fresh for every decision (engine admission and worker
execution), so a change made between enqueue and dequeue is always seen.
Writes go through upserts keyed on the unique profile / protected-entity
constraints rather than read-modify-write.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from autopilot.database import insert_for
from autopilot.exceptions import ConfigurationError
from autopilot.models import ActivityLog, GuardrailSettings, ProtectedEntity
from autopilot.services.action_types import entity_refs
from autopilot.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_GUARDRAILS = {
    "automation_enabled": True,
    "paused_reason": None,
    "min_bid_micros": 100_000,        # $0.10
    "max_bid_micros": 10_000_000,     # $10.00
    "max_bid_change_percent": None,
    "require_approval_above_micros": 1_000_000,  # $1.00
    "max_actions_per_day": 100,
}

EDITABLE_FIELDS = tuple(k for k in DEFAULT_GUARDRAILS if k not in ("automation_enabled", "paused_reason"))


@dataclass(frozen=True)
class GuardrailSnapshot:
    profile_id: str
    automation_enabled: bool = True
    paused_reason: Optional[str] = None
    min_bid_micros: int = DEFAULT_GUARDRAILS["min_bid_micros"]
    max_bid_micros: int = DEFAULT_GUARDRAILS["max_bid_micros"]
    max_bid_change_percent: Optional[float] = None
    require_approval_above_micros: Optional[int] = DEFAULT_GUARDRAILS["require_approval_above_micros"]
    max_actions_per_day: Optional[int] = DEFAULT_GUARDRAILS["max_actions_per_day"]
    protected: frozenset = field(default_factory=frozenset)  # {(entity_type, entity_id)}

    def protected_refs(self, payload: dict) -> list[tuple[str, str]]:
        return [ref for ref in entity_refs(payload) if ref in self.protected]

    def is_protected(self, payload: dict) -> bool:
        return bool(self.protected_refs(payload))

    def bid_in_bounds(self, bid_micros: int) -> bool:
        return self.min_bid_micros <= bid_micros <= self.max_bid_micros

    def clamp_bid(self, new_bid_micros: int, current_bid_micros: Optional[int] = None) -> int:
        """Limit the step size (when configured), then clamp to [min, max]. The floor always wins."""
        bid = float(new_bid_micros)
        if self.max_bid_change_percent and current_bid_micros:
            max_step = current_bid_micros * self.max_bid_change_percent / 100
            bid = min(max(bid, current_bid_micros - max_step), current_bid_micros + max_step)
        bid = min(max(bid, self.min_bid_micros), self.max_bid_micros)
        return int(round(bid))

    def requires_approval(self, impact_micros: int) -> bool:
        if self.require_approval_above_micros is None:
            return False
        return impact_micros >= self.require_approval_above_micros


class GuardrailStore:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def load(self, profile_id: str, db: Optional[AsyncSession] = None) -> GuardrailSnapshot:
        if db is not None:
            return await self._load(db, profile_id)
        async with self.session_factory() as session:
            return await self._load(session, profile_id)

    async def _load(self, db: AsyncSession, profile_id: str) -> GuardrailSnapshot:
        profile_id = str(profile_id)
        row = (await db.execute(
            select(GuardrailSettings)
            .where(GuardrailSettings.profile_id == profile_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        protected = (await db.execute(
            select(ProtectedEntity.entity_type, ProtectedEntity.entity_id)
            .where(ProtectedEntity.profile_id == profile_id)
        )).all()

        values = dict(DEFAULT_GUARDRAILS)
        if row:
            for key in DEFAULT_GUARDRAILS:
                values[key] = getattr(row, key)
        return GuardrailSnapshot(
            profile_id=profile_id,
            protected=frozenset((t, str(i)) for t, i in protected),
            **values,
        )

    async def update(self, profile_id: str, changes: dict) -> GuardrailSnapshot:
        """Upsert editable limits. Unknown keys are ignored."""
        changes = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS}
        min_bid = changes.get("min_bid_micros")
        max_bid = changes.get("max_bid_micros")
        async with self.session_factory() as db:
            if min_bid is not None or max_bid is not None:
                current = await self._load(db, profile_id)
                lo = min_bid if min_bid is not None else current.min_bid_micros
                hi = max_bid if max_bid is not None else current.max_bid_micros
                if lo > hi:
                    raise ConfigurationError(f"min_bid_micros ({lo}) cannot exceed max_bid_micros ({hi})")
            await self._upsert(db, profile_id, changes)
            db.add(ActivityLog(
                profile_id=str(profile_id),
                action="guardrails_updated",
                category="guardrails",
                description=f"Guardrails updated: {', '.join(sorted(changes)) or 'no changes'}",
                details=changes,
                entity_type="guardrail",
                entity_id=str(profile_id),
            ))
            await db.commit()
            snapshot = await self._load(db, profile_id)
        logger.info(f"Guardrails updated for profile {profile_id}: {changes}")
        return snapshot

    async def set_automation_enabled(self, profile_id: str, enabled: bool, reason: Optional[str] = None) -> GuardrailSnapshot:
        """The kill switch. Turning it off stops rule evaluation and dequeueing for the profile."""
        changes = {
            "automation_enabled": enabled,
            "paused_reason": None if enabled else (reason or "Paused by operator"),
            "paused_at": None if enabled else utcnow(),
        }
        async with self.session_factory() as db:
            await self._upsert(db, profile_id, changes)
            db.add(ActivityLog(
                profile_id=str(profile_id),
                action="automation_resumed" if enabled else "automation_paused",
                category="guardrails",
                description=changes["paused_reason"] or "Automation resumed",
                entity_type="guardrail",
                entity_id=str(profile_id),
            ))
            await db.commit()
            snapshot = await self._load(db, profile_id)
        logger.warning(f"Automation {'enabled' if enabled else 'PAUSED'} for profile {profile_id}"
                       + (f": {reason}" if reason and not enabled else ""))
        return snapshot

    async def _upsert(self, db: AsyncSession, profile_id: str, changes: dict) -> None:
        values = {"profile_id": str(profile_id), **changes}
        stmt = insert_for(db, GuardrailSettings).values(**values)
        if changes:
            stmt = stmt.on_conflict_do_update(
                index_elements=[GuardrailSettings.profile_id],
                set_={**changes, "updated_at": utcnow()},
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=[GuardrailSettings.profile_id])
        await db.execute(stmt)

    async def protect(self, profile_id: str, entity_type: str, entity_id: str, reason: Optional[str] = None) -> bool:
        """Returns False when the entity was already protected."""
        async with self.session_factory() as db:
            stmt = (
                insert_for(db, ProtectedEntity)
                .values(profile_id=str(profile_id), entity_type=entity_type, entity_id=str(entity_id), reason=reason)
                .on_conflict_do_nothing(index_elements=["profile_id", "entity_type", "entity_id"])
                .returning(ProtectedEntity.id)
            )
            inserted = (await db.execute(stmt)).scalar_one_or_none() is not None
            if inserted:
                db.add(ActivityLog(
                    profile_id=str(profile_id),
                    action="entity_protected",
                    category="guardrails",
                    description=f"Protected {entity_type} {entity_id}" + (f": {reason}" if reason else ""),
                    entity_type=entity_type,
                    entity_id=str(entity_id),
                ))
            await db.commit()
        return inserted

    async def unprotect(self, profile_id: str, entity_type: str, entity_id: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                delete(ProtectedEntity).where(
                    ProtectedEntity.profile_id == str(profile_id),
                    ProtectedEntity.entity_type == entity_type,
                    ProtectedEntity.entity_id == str(entity_id),
                )
            )
            removed = result.rowcount > 0
            if removed:
                db.add(ActivityLog(
                    profile_id=str(profile_id),
                    action="entity_unprotected",
                    category="guardrails",
                    description=f"Removed protection from {entity_type} {entity_id}",
                    entity_type=entity_type,
                    entity_id=str(entity_id),
                ))
            await db.commit()
        return removed

    async def list_protected(self, profile_id: str) -> list[ProtectedEntity]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ProtectedEntity)
                .where(ProtectedEntity.profile_id == str(profile_id))
                .order_by(ProtectedEntity.created_at.desc())
            )
            return list(result.scalars().all())
