"""
Builders for rules and performance entities used across the tests.
"""

import uuid
from datetime import date, timedelta

from app.models import AutomationRule
from app.services.metrics import DailySample
from app.services.performance_fetcher import PerformanceEntity


def make_rule(rule_type="BID_ADJUSTMENT", config=None, campaign_ids=("111",), **kwargs) -> AutomationRule:
    return AutomationRule(
        id=kwargs.pop("id", uuid.uuid4()),
        name=kwargs.pop("name", "Test rule"),
        profile_id=kwargs.pop("profile_id", "9999"),
        ad_type=kwargs.pop("ad_type", "SP"),
        rule_type=rule_type,
        is_active=kwargs.pop("is_active", True),
        scope={"campaignIds": list(campaign_ids)},
        config=config or {},
        **kwargs,
    )


def daily_samples(end: date, days: int, **per_day) -> list[DailySample]:
    """``days`` identical samples ending at ``end`` (inclusive)."""
    return [DailySample(date=end - timedelta(days=i), **per_day) for i in range(days)]


def make_entity(entity_id="kw1", entity_type="keyword", campaign_id="111", **kwargs) -> PerformanceEntity:
    return PerformanceEntity(
        entity_id=entity_id,
        entity_type=entity_type,
        campaign_id=campaign_id,
        entity_text=kwargs.pop("entity_text", entity_id),
        ad_group_id=kwargs.pop("ad_group_id", "222"),
        **kwargs,
    )
