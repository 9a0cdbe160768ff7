"""
Execution Worker: drains the action queue against the Amazon Ads API.

One pass:
    1. Requeue claims left behind by a dead worker
    2. Claim items one at a time (queued -> executing, durable before any call)
    3. Re-check guardrails on the fresh snapshot: kill switch, protected
       entities and bid bounds may have changed since the item was enqueued
    4. Call the handler under the retry policy
    5. Record the terminal state, or hand the item back when retries ran out
       and it still has deliveries left

Several workers can run concurrently; the claim CAS guarantees each item is
executed by at most one of them at a time.
"""

import asyncio
import logging
import socket
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
from autopilot.ads_api import AdsApiError, AmazonAdsClient
from autopilot.config import Settings, get_settings
from autopilot.exceptions import CredentialError, InvalidTransitionError
from autopilot.models import ActionQueueItem
from autopilot.services.action_queue import ActionQueue
from autopilot.services.action_types import BID_FIELD, get_spec, validate_payload
from autopilot.services.backoff import BackoffPolicy
from autopilot.services.guardrails import GuardrailStore
from autopilot.services.token_service import get_ads_client_for_profile
from autopilot.utils import utcnow

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], Awaitable[AmazonAdsClient]]


def is_retriable(exc: Exception) -> bool:
    """Transport errors, 429 and 5xx. Everything else fails the item on the first try."""
    return isinstance(exc, AdsApiError) and exc.retriable


def retry_after(exc: Exception) -> Optional[float]:
    return exc.retry_after if isinstance(exc, AdsApiError) else None


@dataclass
class WorkerStats:
    processed: int = 0
    applied: int = 0
    failed: int = 0
    skipped: int = 0
    released: int = 0
    recovered: int = 0
    circuit_open: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class ExecutionWorker:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        queue: Optional[ActionQueue] = None,
        guardrails: Optional[GuardrailStore] = None,
        client_factory: Optional[ClientFactory] = None,
        policy: Optional[BackoffPolicy] = None,
        settings: Optional[Settings] = None,
        worker_id: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.queue = queue or ActionQueue(session_factory, self.settings.idempotency_bucket_hours)
        self.guardrails = guardrails or GuardrailStore(session_factory)
        self.client_factory = client_factory or self._client_for_profile
        self.policy = policy or BackoffPolicy.from_settings(self.settings)
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"

    async def _client_for_profile(self, profile_id: str) -> AmazonAdsClient:
        async with self.session_factory() as db:
            try:
                client = await get_ads_client_for_profile(db, profile_id)
            except CredentialError:
                # Persist the expired status set during the failed refresh
                await db.commit()
                raise
            await db.commit()
        return client

    # ── Passes ────────────────────────────────────────────────────────

    async def run_once(self, now: Optional[datetime] = None, batch_size: Optional[int] = None) -> WorkerStats:
        """Process up to batch_size items. Returns counts for the pass."""
        now = now or utcnow()
        batch_size = batch_size or self.settings.worker_batch_size
        stats = WorkerStats()
        stale_before = now - timedelta(minutes=self.settings.claim_timeout_minutes)
        stats.failed = await self.queue.fail_exhausted_claims(stale_before, self.settings.action_max_deliveries)
        stats.recovered = await self.queue.recover_stale_claims(stale_before)

        clients: dict[str, AmazonAdsClient] = {}
        consecutive_exhausted = 0
        handed_back: set[uuid.UUID] = set()  # released this pass; retried on a later one
        try:
            while stats.processed < batch_size:
                item = await self.queue.claim_next(self.worker_id, now=utcnow(), exclude=handed_back)
                if item is None:
                    break
                stats.processed += 1
                try:
                    outcome = await self._process(item, clients, stats)
                except InvalidTransitionError as e:
                    # The claim was recovered as stale while we worked on it
                    logger.warning(f"Worker {self.worker_id} lost action {item.id}: {e}")
                    continue

                if outcome in ("released", "exhausted"):
                    handed_back.add(item.id)
                consecutive_exhausted = consecutive_exhausted + 1 if outcome == "exhausted" else 0
                if consecutive_exhausted >= self.settings.worker_circuit_threshold:
                    stats.circuit_open = True
                    logger.error(
                        f"Worker {self.worker_id}: {consecutive_exhausted} consecutive items exhausted retries; "
                        f"stopping this pass"
                    )
                    break
        finally:
            for client in clients.values():
                await client.aclose()

        if stats.processed or stats.recovered:
            logger.info(f"Worker {self.worker_id} pass: {stats.to_dict()}")
        return stats

    async def run_forever(self, interval_seconds: float = 30.0, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        logger.info(f"Worker {self.worker_id} started (interval {interval_seconds}s)")
        while not stop.is_set():
            try:
                stats = await self.run_once()
            except Exception as e:
                logger.error(f"Worker pass failed: {e}", exc_info=True)
                stats = WorkerStats()
            if stats.processed:
                continue  # more may be waiting
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info(f"Worker {self.worker_id} stopped")

    # ── One item ──────────────────────────────────────────────────────

    async def _process(self, item: ActionQueueItem, clients: dict[str, AmazonAdsClient], stats: WorkerStats) -> str:
        guardrails = await self.guardrails.load(item.profile_id)
        if not guardrails.automation_enabled:
            await self.queue.release(item.id, "Automation paused for profile; not executed", count_delivery=False)
            stats.released += 1
            return "released"

        protected = guardrails.protected_refs(item.payload or {})
        if protected:
            refs = ", ".join(f"{t} {i}" for t, i in protected)
            await self.queue.mark_skipped(item.id, f"Protected entity: {refs}")
            stats.skipped += 1
            return "skipped"

        bid = (item.payload or {}).get(BID_FIELD)
        if isinstance(bid, int) and not guardrails.bid_in_bounds(bid):
            await self.queue.mark_skipped(
                item.id,
                f"Bid {bid} outside guardrail bounds {guardrails.min_bid_micros}-{guardrails.max_bid_micros}",
            )
            stats.skipped += 1
            return "skipped"

        problems = validate_payload(item.action_type, item.payload)
        if problems:
            await self.queue.mark_failed(item.id, f"Invalid payload: {'; '.join(problems)}")
            stats.failed += 1
            return "failed"

        client = clients.get(item.profile_id)
        if client is None:
            try:
                client = await self.client_factory(item.profile_id)
            except CredentialError as e:
                await self.queue.mark_failed(item.id, str(e))
                stats.failed += 1
                return "failed"
            clients[item.profile_id] = client

        spec = get_spec(item.action_type)
        outcome = await self.policy.execute(
            lambda: spec.handler(client, item.payload),
            is_retriable=is_retriable,
            retry_after=retry_after,
            label=f"{item.action_type} {item.id}",
        )

        if outcome.succeeded:
            response = outcome.result
            await self.queue.mark_applied(item.id, response.request_id, response.data, outcome.attempts)
            stats.applied += 1
            return "applied"

        error = outcome.error
        request_id = getattr(error, "request_id", None)
        response = getattr(error, "response", None)
        if not outcome.exhausted:
            await self.queue.mark_failed(item.id, str(error), outcome.attempts, request_id, response)
            stats.failed += 1
            return "failed"

        if item.deliveries >= self.settings.action_max_deliveries:
            await self.queue.mark_failed(
                item.id,
                f"{error} (gave up after {item.deliveries} deliveries)",
                outcome.attempts, request_id, response,
            )
            stats.failed += 1
        else:
            await self.queue.release(
                item.id, f"Retries exhausted on delivery {item.deliveries}; requeued",
                error=str(error), attempts=outcome.attempts,
            )
            stats.released += 1
        return "exhausted"
