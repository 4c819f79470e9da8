"""
Search Term Negation — turns wasteful customer search terms into negatives
in the ad group they came from.

ASIN-like terms become negative product targets (ASIN_SAME_AS); everything
else becomes a negative keyword with the configured match type. Evaluation
runs against the settled report, so the reference date is lagged.
"""

import logging
import re
from datetime import date, timedelta

from app.ads_client import AmazonAdsClient, item_errors
from app.exceptions import AdsApiError
from app.models import AutomationRule
from app.schemas import RuleConfig
from app.services.actions import ActionResult, RuleApplier, campaign_bucket
from app.services.performance_fetcher import PerformanceEntity

logger = logging.getLogger(__name__)

ASIN_PATTERN = re.compile(r"^b0[a-z0-9]{8}$", re.IGNORECASE)


def is_asin(term: str) -> bool:
    return bool(ASIN_PATTERN.match(term or ""))


class SearchTermNegationApplier(RuleApplier):
    def __init__(self, ads_client: AmazonAdsClient, report_lag_days: int = 2):
        super().__init__(ads_client)
        self.report_lag_days = report_lag_days

    async def evaluate(
        self,
        rule: AutomationRule,
        config: RuleConfig,
        performance: dict[str, PerformanceEntity],
        throttled: set[str],
        today: date,
    ) -> ActionResult:
        reference_date = today - timedelta(days=self.report_lag_days)

        negative_keywords: list[dict] = []
        negative_targets: list[dict] = []
        keyword_entries: list[tuple[str, dict]] = []
        target_entries: list[tuple[str, dict]] = []

        for entity in performance.values():
            term = entity.entity_text or entity.entity_id
            if term in throttled:
                continue
            group, metrics = self.match(entity, config.condition_groups, reference_date)
            if group is None or group.action.type != "negateSearchTerm":
                continue

            asin = is_asin(term)
            entry = {
                "searchTerm": term,
                "campaignId": entity.campaign_id,
                "adGroupId": entity.ad_group_id,
                "matchType": "NEGATIVE_PRODUCT_TARGET" if asin else group.action.match_type,
                "triggeringMetrics": metrics,
            }
            if asin:
                negative_targets.append({
                    "campaignId": entity.campaign_id,
                    "adGroupId": entity.ad_group_id,
                    "expression": [{"type": "ASIN_SAME_AS", "value": term}],
                })
                target_entries.append((term, entry))
            else:
                negative_keywords.append({
                    "campaignId": entity.campaign_id,
                    "adGroupId": entity.ad_group_id,
                    "keywordText": term,
                    "matchType": group.action.match_type,
                })
                keyword_entries.append((term, entry))

        errors: list[dict] = []
        created_keywords = await self._submit(
            "negativeKeywords", negative_keywords, keyword_entries, "negativeKeywords",
            self.ads_client.create_negative_keywords, rule.profile_id, errors,
        )
        created_targets = await self._submit(
            "negativeTargets", negative_targets, target_entries, "negativeTargetingClauses",
            self.ads_client.create_negative_targets, rule.profile_id, errors,
        )

        actions_by_campaign: dict = {}
        for _, entry in created_keywords + created_targets:
            campaign_bucket(actions_by_campaign, entry["campaignId"])["newNegatives"].append(entry)

        parts = []
        if created_keywords:
            parts.append(f"Created {len(created_keywords)} new negative keyword(s)")
        if created_targets:
            parts.append(f"Created {len(created_targets)} new negative product target(s)")
        summary = " and ".join(parts) + "." if parts else "No search terms met the criteria for negation."
        if errors:
            summary += f" {len(errors)} create batch(es) failed."

        details = {"actions_by_campaign": actions_by_campaign}
        if errors:
            details["errors"] = errors
        return ActionResult(
            summary=summary,
            details=details,
            acted_on_entities=[term for term, _ in created_keywords + created_targets],
            errors=errors,
        )

    async def _submit(
        self,
        batch_name: str,
        payload: list[dict],
        entries: list[tuple[str, dict]],
        result_key: str,
        send,
        profile_id: str,
        errors: list[dict],
    ) -> list[tuple[str, dict]]:
        """Best-effort bulk create; returns the entries that were created."""
        if not payload:
            return []
        try:
            response = await send(profile_id, payload)
        except AdsApiError as e:
            logger.error(f"Failed to create {len(payload)} {batch_name}: {e}")
            errors.append({"batch": batch_name, **e.to_dict()})
            return []

        failed_items = item_errors(response, result_key)
        if failed_items:
            logger.warning(f"{len(failed_items)} of {len(payload)} {batch_name} were rejected")
            errors.append({"batch": batch_name, "status": 207, "details": failed_items})
        failed_indexes = {e.get("index") for e in failed_items}
        return [entry for i, entry in enumerate(entries) if i not in failed_indexes]
