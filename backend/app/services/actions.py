"""
Shared result type and base class for the rule-type appliers.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from app.ads_client import AmazonAdsClient
from app.models import AutomationRule
from app.schemas import Condition, ConditionGroup, RuleConfig
from app.services.conditions import find_matching_group, triggering_metrics
from app.services.metrics import Totals, aggregate
from app.services.performance_fetcher import PerformanceEntity


@dataclass
class ActionResult:
    summary: str
    details: dict = field(default_factory=lambda: {"actions_by_campaign": {}})
    # Throttle keys of entities whose mutation actually succeeded
    acted_on_entities: list[str] = field(default_factory=list)
    # Failed mutation batches: [{"batch": ..., "status": ..., "details": ...}]
    errors: list[dict] = field(default_factory=list)

    @property
    def has_actions(self) -> bool:
        return any(
            c.get("changes") or c.get("newNegatives")
            for c in self.details.get("actions_by_campaign", {}).values()
        )


def empty_actions(campaign_ids: list[str]) -> dict:
    """details payload for a run that changed nothing."""
    return {"actions_by_campaign": {cid: {"changes": [], "newNegatives": []} for cid in campaign_ids}}


def campaign_bucket(actions_by_campaign: dict, campaign_id: str) -> dict:
    return actions_by_campaign.setdefault(campaign_id, {"changes": [], "newNegatives": []})


class RuleApplier:
    """
    One applier per rule type. ``evaluate`` picks the first matching
    condition group for every eligible entity, applies the actions against
    the Ads API and reports what actually went through.
    """

    def __init__(self, ads_client: AmazonAdsClient):
        self.ads_client = ads_client

    async def evaluate(
        self,
        rule: AutomationRule,
        config: RuleConfig,
        performance: dict[str, PerformanceEntity],
        throttled: set[str],
        today: date,
    ) -> ActionResult:
        raise NotImplementedError

    @staticmethod
    def match(
        entity: PerformanceEntity,
        groups: list[ConditionGroup],
        reference_date: date,
    ) -> tuple[Optional[ConditionGroup], list[dict]]:
        """First firing group for the entity and the metrics that triggered it."""
        cache: dict = {}

        def metrics_for(condition: Condition) -> Totals:
            key = condition.time_window
            if key not in cache:
                cache[key] = aggregate(entity.daily_data, condition.time_window, reference_date)
            return cache[key]

        group = find_matching_group(groups, metrics_for)
        if group is None:
            return None, []
        return group, triggering_metrics(group, metrics_for)
