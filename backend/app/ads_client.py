"""
Amazon Ads API Client
Thin async wrapper over the Sponsored Products v3 REST endpoints the
automation engine reads from and mutates.
"""

import logging
from typing import Any, Iterator, Optional, Protocol, Sequence
import httpx

from app.config import Settings
from app.exceptions import AdsApiError

logger = logging.getLogger(__name__)

# Sponsored Products v3 vendor media types
MEDIA_TYPES = {
    "campaign": "application/vnd.spCampaign.v3+json",
    "adGroup": "application/vnd.spAdGroup.v3+json",
    "keyword": "application/vnd.spKeyword.v3+json",
    "target": "application/vnd.spTargetingClause.v3+json",
    "negativeKeyword": "application/vnd.spNegativeKeyword.v3+json",
    "negativeTarget": "application/vnd.spNegativeTargetingClause.v3+json",
}


class AuthProvider(Protocol):
    async def auth_headers(self) -> dict[str, str]: ...


def chunked(items: Sequence, size: int) -> Iterator[list]:
    """Yield consecutive slices of at most ``size`` items."""
    for i in range(0, len(items), size):
        yield list(items[i:i + size])


def item_errors(response: Any, result_key: str) -> list[dict]:
    """
    Per-item failures from a v3 bulk response (HTTP 207).
    Shape: {result_key: {"success": [...], "error": [{"index": n, "errors": [...]}]}}
    """
    if not isinstance(response, dict):
        return []
    section = response.get(result_key)
    if not isinstance(section, dict):
        return []
    errors = section.get("error") or []
    return [e for e in errors if isinstance(e, dict)]


class AmazonAdsClient:
    """
    Each request carries the auth headers from the injected provider and the
    profile scope header; non-2xx responses raise AdsApiError(status, details).
    """

    def __init__(
        self,
        auth: AuthProvider,
        base_url: str,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    async def request(
        self,
        method: str,
        path: str,
        profile_id: Optional[str] = None,
        json: Any = None,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
        media_type: Optional[str] = None,
    ) -> Any:
        extra = dict(headers or {})
        if extra.pop("Authorization", None):
            logger.warning("Explicit Authorization header ignored; the auth provider supplies it.")

        final_headers = await self.auth.auth_headers()
        if media_type:
            final_headers["Content-Type"] = media_type
            final_headers["Accept"] = media_type
        final_headers.update(extra)
        if profile_id:
            final_headers["Amazon-Advertising-API-Scope"] = str(profile_id)

        url = f"{self.base_url}{path}"
        try:
            if self._http_client is not None:
                response = await self._http_client.request(
                    method.upper(), url, headers=final_headers, json=json, params=params, timeout=self.timeout,
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.request(
                        method.upper(), url, headers=final_headers, json=json, params=params, timeout=self.timeout,
                    )
        except httpx.HTTPError as e:
            logger.error(f"Amazon Ads API request failed for {method.upper()} {path}: {e}")
            raise AdsApiError(500, {"message": str(e)}) from e

        if response.status_code >= 400:
            details = self._error_body(response)
            logger.error(f"Amazon Ads API request failed for {method.upper()} {path}: {response.status_code} {details}")
            raise AdsApiError(response.status_code, details)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    @staticmethod
    def _error_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {"message": response.text or response.reason_phrase}

    async def _paginated_list(
        self,
        path: str,
        media_type: str,
        profile_id: str,
        body: dict,
        result_key: str,
        max_pages: int = 50,
    ) -> list:
        """Follow nextToken until exhausted (or max_pages)."""
        items = []
        next_token = None
        for _ in range(max_pages):
            page_body = dict(body)
            if next_token:
                page_body["nextToken"] = next_token
            result = await self.request("post", path, profile_id=profile_id, json=page_body, media_type=media_type)
            items.extend((result or {}).get(result_key) or [])
            next_token = (result or {}).get("nextToken")
            if not next_token:
                break
        if next_token:
            logger.warning(f"Stopped listing {path} after {max_pages} pages; remaining results were not fetched.")
        return items

    # ── Reads ────────────────────────────────────────────────────────

    async def list_campaigns(self, profile_id: str, campaign_ids: list[str]) -> list[dict]:
        return await self._paginated_list(
            "/sp/campaigns/list", MEDIA_TYPES["campaign"], profile_id,
            {"campaignIdFilter": {"include": [str(c) for c in campaign_ids]}, "maxResults": 500},
            "campaigns",
        )

    async def list_ad_groups(self, profile_id: str, ad_group_ids: list[str]) -> list[dict]:
        return await self._paginated_list(
            "/sp/adGroups/list", MEDIA_TYPES["adGroup"], profile_id,
            {"adGroupIdFilter": {"include": [str(a) for a in ad_group_ids]}},
            "adGroups",
        )

    async def list_keywords(self, profile_id: str, keyword_ids: list[str]) -> list[dict]:
        return await self._paginated_list(
            "/sp/keywords/list", MEDIA_TYPES["keyword"], profile_id,
            {"keywordIdFilter": {"include": [str(k) for k in keyword_ids]}},
            "keywords",
        )

    async def list_targets(self, profile_id: str, target_ids: list[str]) -> list[dict]:
        return await self._paginated_list(
            "/sp/targets/list", MEDIA_TYPES["target"], profile_id,
            {"targetIdFilter": {"include": [str(t) for t in target_ids]}},
            "targetingClauses",
        )

    # ── Mutations ────────────────────────────────────────────────────

    async def update_keywords(self, profile_id: str, updates: list[dict]) -> dict:
        """updates: [{"keywordId": ..., "bid": ...}]"""
        return await self.request(
            "put", "/sp/keywords", profile_id=profile_id,
            json={"keywords": updates}, media_type=MEDIA_TYPES["keyword"],
        )

    async def update_targets(self, profile_id: str, updates: list[dict]) -> dict:
        """updates: [{"targetId": ..., "bid": ...}]"""
        return await self.request(
            "put", "/sp/targets", profile_id=profile_id,
            json={"targetingClauses": updates}, media_type=MEDIA_TYPES["target"],
        )

    async def update_campaign_budgets(self, profile_id: str, budgets: dict[str, float]) -> dict:
        """budgets: {campaign_id: new daily budget}"""
        campaigns = [
            {"campaignId": str(cid), "budget": {"budget": amount, "budgetType": "DAILY"}}
            for cid, amount in budgets.items()
        ]
        return await self.request(
            "put", "/sp/campaigns", profile_id=profile_id,
            json={"campaigns": campaigns}, media_type=MEDIA_TYPES["campaign"],
        )

    async def create_negative_keywords(self, profile_id: str, negatives: list[dict]) -> dict:
        payload = [{**n, "state": "ENABLED"} for n in negatives]
        return await self.request(
            "post", "/sp/negativeKeywords", profile_id=profile_id,
            json={"negativeKeywords": payload}, media_type=MEDIA_TYPES["negativeKeyword"],
        )

    async def create_negative_targets(self, profile_id: str, negatives: list[dict]) -> dict:
        payload = [{**n, "state": "ENABLED"} for n in negatives]
        return await self.request(
            "post", "/sp/negativeTargets", profile_id=profile_id,
            json={"negativeTargetingClauses": payload}, media_type=MEDIA_TYPES["negativeTarget"],
        )


def create_ads_client(settings: Settings, auth: AuthProvider) -> AmazonAdsClient:
    return AmazonAdsClient(auth=auth, base_url=settings.ads_api_url, timeout=settings.ads_api_timeout_seconds)
