"""
Amazon Ads API Client
Thin async wrapper around the Sponsored Products v3 REST endpoints the
execution worker writes to. One HTTP attempt per call: retry and backoff
belong to the worker, which needs the raw status semantics to decide.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional
import httpx

logger = logging.getLogger(__name__)

# ── Region URL Mapping ────────────────────────────────────────────────
REGION_URLS = {
    "na": "https://advertising-api.amazon.com",
    "eu": "https://advertising-api-eu.amazon.com",
    "fe": "https://advertising-api-fe.amazon.com",
}

# Versioned media types per resource
CAMPAIGN_MEDIA = "spCampaign.v3"
AD_GROUP_MEDIA = "spAdGroup.v3"
KEYWORD_MEDIA = "spKeyword.v3"
TARGET_MEDIA = "spTargetingClause.v3"
NEGATIVE_KEYWORD_MEDIA = "spNegativeKeyword.v3"
CAMPAIGN_NEGATIVE_KEYWORD_MEDIA = "spCampaignNegativeKeyword.v3"


@dataclass
class ApiResponse:
    status_code: int
    data: dict = field(default_factory=dict)
    request_id: Optional[str] = None


class AdsApiError(Exception):
    """
    Failed Amazon Ads call. status_code is None for transport failures
    (connect errors, timeouts), which are always retriable.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        retry_after: Optional[float] = None,
        response: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.request_id = request_id
        self.retry_after = retry_after
        self.response = response

    @property
    def retriable(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class AuthExpiredError(AdsApiError):
    """401 from Amazon. Never retried; the profile has to be reconnected."""
    pass


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _error_message(resp: httpx.Response) -> str:
    """Pull the most useful message out of an Amazon error body."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:500] or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        if body.get("message"):
            return str(body["message"])
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return str(errors[0].get("message") or errors[0])
        if body.get("details"):
            return str(body["details"])
        if body.get("code"):
            return str(body["code"])
    return str(body)[:500]


def _item_errors(data: Any) -> list[dict]:
    """
    v3 batch endpoints answer 207 with per-resource success/error lists:
    {"keywords": {"success": [...], "error": [{"index": 0, "errors": [...]}]}}
    """
    if not isinstance(data, dict):
        return []
    found = []
    for value in data.values():
        if isinstance(value, dict) and isinstance(value.get("error"), list):
            found.extend(e for e in value["error"] if e)
    return found


class AmazonAdsClient:
    """
    Client for one advertising profile. Every request carries the profile
    scope header; callers never get a client without an explicit profile.
    """

    def __init__(
        self,
        client_id: str,
        access_token: str,
        profile_id: str,
        region: str = "na",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not profile_id:
            raise ValueError("profile_id is required for Amazon Ads calls")
        self.client_id = client_id
        self.access_token = access_token
        self.profile_id = str(profile_id)
        self.region = region.lower()
        self._http = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    @property
    def base_url(self) -> str:
        url = REGION_URLS.get(self.region)
        if not url:
            raise ValueError(f"Unsupported region: {self.region}. Use na, eu, or fe.")
        return url

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Amazon-Advertising-API-ClientId": self.client_id,
            "Amazon-Advertising-API-Scope": self.profile_id,
        }

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "AmazonAdsClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, media_type: str, body: dict) -> ApiResponse:
        content_type = f"application/vnd.{media_type}+json"
        headers = {**self.headers, "Content-Type": content_type, "Accept": content_type}

        logger.info(f"Amazon Ads call: {method} {path} (profile {self.profile_id})")
        try:
            resp = await self._http.request(method, path, json=body, headers=headers)
        except httpx.TransportError as e:
            raise AdsApiError(f"Network error calling {method} {path}: {e}") from e

        request_id = resp.headers.get("x-amz-request-id")
        if resp.status_code >= 400:
            message = _error_message(resp)
            logger.warning(f"Amazon Ads {method} {path} failed: {resp.status_code} {message} (request {request_id})")
            error_cls = AuthExpiredError if resp.status_code == 401 else AdsApiError
            raise error_cls(
                f"Amazon Ads API error ({resp.status_code}): {message}",
                status_code=resp.status_code,
                request_id=request_id,
                retry_after=_parse_retry_after(resp.headers.get("retry-after")),
                response=message,
            )

        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            data = {"raw": resp.text[:2000]}

        item_errors = _item_errors(data)
        if item_errors:
            # 207 with rejected items: the request itself was understood, resending won't help.
            raise AdsApiError(
                f"Amazon Ads rejected {len(item_errors)} item(s): {str(item_errors)[:500]}",
                status_code=422,
                request_id=request_id,
                response=data,
            )

        return ApiResponse(status_code=resp.status_code, data=data, request_id=request_id)

    # ── Campaigns ─────────────────────────────────────────────────────

    async def update_campaigns(self, campaigns: list[dict]) -> ApiResponse:
        return await self._request("PUT", "/sp/campaigns", CAMPAIGN_MEDIA, {"campaigns": campaigns})

    # ── Ad groups ─────────────────────────────────────────────────────

    async def update_ad_groups(self, ad_groups: list[dict]) -> ApiResponse:
        return await self._request("PUT", "/sp/adGroups", AD_GROUP_MEDIA, {"adGroups": ad_groups})

    # ── Keywords ──────────────────────────────────────────────────────

    async def create_keywords(self, keywords: list[dict]) -> ApiResponse:
        return await self._request("POST", "/sp/keywords", KEYWORD_MEDIA, {"keywords": keywords})

    async def update_keywords(self, keywords: list[dict]) -> ApiResponse:
        return await self._request("PUT", "/sp/keywords", KEYWORD_MEDIA, {"keywords": keywords})

    # ── Targets ───────────────────────────────────────────────────────

    async def update_targets(self, targets: list[dict]) -> ApiResponse:
        return await self._request("PUT", "/sp/targets", TARGET_MEDIA, {"targetingClauses": targets})

    # ── Negatives ─────────────────────────────────────────────────────

    async def create_negative_keywords(self, negatives: list[dict]) -> ApiResponse:
        return await self._request(
            "POST", "/sp/negativeKeywords", NEGATIVE_KEYWORD_MEDIA, {"negativeKeywords": negatives}
        )

    async def create_campaign_negative_keywords(self, negatives: list[dict]) -> ApiResponse:
        return await self._request(
            "POST", "/sp/campaignNegativeKeywords", CAMPAIGN_NEGATIVE_KEYWORD_MEDIA,
            {"campaignNegativeKeywords": negatives},
        )


def create_ads_client(
    client_id: str,
    access_token: str,
    profile_id: str,
    region: str = "na",
    timeout: float = 30.0,
) -> AmazonAdsClient:
    """Factory function to create an Amazon Ads client instance."""
    return AmazonAdsClient(
        client_id=client_id,
        access_token=access_token,
        profile_id=profile_id,
        region=region,
        timeout=timeout,
    )
