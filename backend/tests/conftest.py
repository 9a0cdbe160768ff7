"""
Shared fixtures: a fresh SQLite database per test, a session factory bound
to it, in-memory metrics and an Amazon Ads client backed by httpx.MockTransport.
"""

import os

# Must be set before autopilot.database builds its module-level engine.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "development"
os.environ["API_KEY"] = ""
os.environ["ENCRYPTION_KEY"] = ""
os.environ["CRON_SECRET"] = "test-cron-secret"

import httpx
import pytest
from unittest.mock import AsyncMock
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from autopilot.ads_api import AmazonAdsClient
from autopilot.config import get_settings
from autopilot.database import Base
from autopilot.models import AutomationRule, GuardrailSettings
from autopilot.services.backoff import BackoffPolicy
from autopilot.services.metrics_provider import EntityMetrics
from autopilot.services.rules import validate_rule_config
import autopilot.models  # noqa: F401

PROFILE_ID = "1234567890"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'autopilot.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def settings():
    get_settings.cache_clear()
    return get_settings()


@pytest.fixture
def no_wait_policy():
    """Backoff policy whose sleeps return immediately; the mock records the delays."""
    return BackoffPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0, jitter=0.0, sleep=AsyncMock())


class FakeMetricsProvider:
    """MetricsProvider serving fixed aggregates per scope."""

    def __init__(self, metrics: dict | None = None, daily: dict | None = None):
        self.metrics = metrics or {}
        self.daily = daily or {}
        self.calls = []

    async def get_metrics(self, profile_id, entity_scope, date_range):
        self.calls.append(("metrics", profile_id, entity_scope, date_range))
        return list(self.metrics.get(entity_scope, []))

    async def get_daily_metrics(self, profile_id, entity_scope, date_range):
        self.calls.append(("daily", profile_id, entity_scope, date_range))
        return list(self.daily.get(entity_scope, []))


@pytest.fixture
def fake_metrics():
    return FakeMetricsProvider()


@pytest.fixture
def ads_api():
    """
    Records Amazon Ads requests and answers them from `responses`, a list of
    httpx.Response (or exceptions) consumed in order; 200 once it runs out.
    """
    class Recorder:
        def __init__(self):
            self.requests: list[httpx.Request] = []
            self.responses: list = []

        def handler(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            if self.responses:
                response = self.responses.pop(0)
                if isinstance(response, Exception):
                    raise response
                return response
            return httpx.Response(200, json={}, headers={"x-amz-request-id": f"req-{len(self.requests)}"})

        async def client_factory(self, profile_id: str) -> AmazonAdsClient:
            return AmazonAdsClient(
                client_id="amzn1.application-oa2-client.test",
                access_token="Atza|test-token",
                profile_id=profile_id,
                transport=httpx.MockTransport(self.handler),
            )

    return Recorder()


@pytest.fixture
def target_metrics():
    def build(entity_id="t-1", bid_micros=1_000_000, spend=45.0, sales=100.0, clicks=50, **extra):
        return EntityMetrics(
            entity_type="target",
            entity_id=entity_id,
            campaign_id=extra.pop("campaign_id", "c-1"),
            ad_group_id=extra.pop("ad_group_id", "ag-1"),
            bid_micros=bid_micros,
            spend=spend,
            sales=sales,
            clicks=clicks,
            conversions=extra.pop("conversions", 3),
            **extra,
        )
    return build


@pytest.fixture
def make_rule(session_factory):
    async def create(
        rule_type="bid_down_high_acos",
        params=None,
        action=None,
        throttle=None,
        mode="auto",
        enabled=True,
        profile_id=PROFILE_ID,
        name=None,
    ) -> AutomationRule:
        params, action, throttle = validate_rule_config(rule_type, params, action, throttle)
        rule = AutomationRule(
            profile_id=profile_id,
            name=name or f"{rule_type} ({mode})",
            rule_type=rule_type,
            mode=mode,
            enabled=enabled,
            params=params,
            action=action,
            throttle=throttle,
        )
        async with session_factory() as db:
            db.add(rule)
            await db.commit()
        return rule
    return create


@pytest.fixture
def set_guardrails(session_factory):
    async def apply(profile_id=PROFILE_ID, **values) -> None:
        async with session_factory() as db:
            db.add(GuardrailSettings(profile_id=profile_id, **values))
            await db.commit()
    return apply
