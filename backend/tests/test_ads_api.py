"""
Tests for the Amazon Ads REST client against httpx.MockTransport.
"""

import json

import httpx
import pytest

from autopilot.ads_api import AdsApiError, AmazonAdsClient, AuthExpiredError
from autopilot.models import ActionType
from autopilot.services.action_types import get_spec

PROFILE_ID = "1234567890"


def test_profile_is_required():
    with pytest.raises(ValueError, match="profile_id is required"):
        AmazonAdsClient(client_id="cid", access_token="tok", profile_id="")


def test_unknown_region():
    with pytest.raises(ValueError, match="Unsupported region"):
        AmazonAdsClient(client_id="cid", access_token="tok", profile_id=PROFILE_ID, region="mars")


@pytest.mark.anyio
async def test_set_bid_request_shape(ads_api):
    client = await ads_api.client_factory(PROFILE_ID)
    async with client:
        response = await get_spec(ActionType.SET_BID).handler(client, {"targetId": "t-1", "bidMicros": 800_000})

    [request] = ads_api.requests
    assert request.method == "PUT"
    assert request.url == "https://advertising-api.amazon.com/sp/targets"
    assert request.headers["Amazon-Advertising-API-Scope"] == PROFILE_ID
    assert request.headers["Amazon-Advertising-API-ClientId"] == "amzn1.application-oa2-client.test"
    assert request.headers["Authorization"] == "Bearer Atza|test-token"
    assert request.headers["Content-Type"] == "application/vnd.spTargetingClause.v3+json"
    assert json.loads(request.content) == {"targetingClauses": [{"targetId": "t-1", "bid": 0.8}]}
    assert response.request_id == "req-1"


@pytest.mark.anyio
async def test_create_keyword_request_shape(ads_api):
    client = await ads_api.client_factory(PROFILE_ID)
    async with client:
        await get_spec(ActionType.CREATE_KEYWORD).handler(client, {
            "campaignId": "c-1", "adGroupId": "ag-1", "keywordText": "trail shoes",
            "matchType": "exact", "bidMicros": 1_250_000,
        })

    [request] = ads_api.requests
    assert (request.method, request.url.path) == ("POST", "/sp/keywords")
    assert json.loads(request.content) == {"keywords": [{
        "campaignId": "c-1", "adGroupId": "ag-1", "keywordText": "trail shoes",
        "matchType": "EXACT", "state": "ENABLED", "bid": 1.25,
    }]}


@pytest.mark.anyio
async def test_negative_and_budget_request_shapes(ads_api):
    client = await ads_api.client_factory(PROFILE_ID)
    async with client:
        await get_spec(ActionType.ADD_ADGROUP_NEGATIVE).handler(client, {
            "campaignId": "c-1", "adGroupId": "ag-1", "keywordText": "free shoes",
        })
        await get_spec(ActionType.UPDATE_CAMPAIGN_BUDGET).handler(client, {
            "campaignId": "c-1", "dailyBudgetMicros": 50_000_000,
        })
        await get_spec(ActionType.PAUSE_CAMPAIGN).handler(client, {"campaignId": "c-2"})

    negative, budget, pause = ads_api.requests
    assert negative.url.path == "/sp/negativeKeywords"
    assert json.loads(negative.content)["negativeKeywords"][0]["matchType"] == "NEGATIVE_EXACT"
    assert json.loads(budget.content) == {"campaigns": [{
        "campaignId": "c-1", "budget": {"budget": 50.0, "budgetType": "DAILY"},
    }]}
    assert json.loads(pause.content) == {"campaigns": [{"campaignId": "c-2", "state": "PAUSED"}]}


@pytest.mark.anyio
async def test_rate_limit_is_retriable_with_retry_after(ads_api):
    ads_api.responses.append(httpx.Response(429, json={"message": "Too Many Requests"}, headers={"Retry-After": "3"}))
    client = await ads_api.client_factory(PROFILE_ID)
    async with client:
        with pytest.raises(AdsApiError) as exc_info:
            await client.update_targets([{"targetId": "t-1", "bid": 0.8}])

    error = exc_info.value
    assert error.status_code == 429
    assert error.retriable
    assert error.retry_after == 3.0
    assert "Too Many Requests" in str(error)


@pytest.mark.anyio
async def test_unauthorized_raises_auth_expired(ads_api):
    ads_api.responses.append(httpx.Response(401, json={"code": "UNAUTHORIZED"}))
    client = await ads_api.client_factory(PROFILE_ID)
    async with client:
        with pytest.raises(AuthExpiredError) as exc_info:
            await client.update_campaigns([{"campaignId": "c-1", "state": "PAUSED"}])
    assert not exc_info.value.retriable


@pytest.mark.anyio
async def test_multi_status_item_errors_are_permanent(ads_api):
    ads_api.responses.append(httpx.Response(207, json={"targetingClauses": {
        "success": [],
        "error": [{"index": 0, "errors": [{"errorType": "INVALID_ARGUMENT", "message": "bid below minimum"}]}],
    }}, headers={"x-amz-request-id": "req-207"}))
    client = await ads_api.client_factory(PROFILE_ID)
    async with client:
        with pytest.raises(AdsApiError) as exc_info:
            await client.update_targets([{"targetId": "t-1", "bid": 0.01}])

    error = exc_info.value
    assert error.status_code == 422
    assert not error.retriable
    assert error.request_id == "req-207"
    assert "bid below minimum" in str(error)


@pytest.mark.anyio
async def test_transport_error_is_retriable(ads_api):
    ads_api.responses.append(httpx.ConnectError("connection refused"))
    client = await ads_api.client_factory(PROFILE_ID)
    async with client:
        with pytest.raises(AdsApiError) as exc_info:
            await client.update_targets([{"targetId": "t-1", "bid": 0.8}])
    assert exc_info.value.status_code is None
    assert exc_info.value.retriable
