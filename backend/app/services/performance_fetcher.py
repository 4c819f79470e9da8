"""
Performance Data Fetcher — builds the entity → daily samples map a rule is
evaluated against.

Two sources with different settlement characteristics:
  - raw_stream_events: Marketing Stream hourly events, available within the
    hour but still subject to correction.
  - sponsored_products_search_term_report: settled daily report rows,
    published with a multi-day lag.

Bid rules use both (stream for the most recent days, report for anything
older, with disjoint date ranges). Search term rules use the settled report
only. Budget rules use today's stream totals plus live campaign budgets.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import String, and_, cast, func, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.ads_client import AmazonAdsClient
from app.config import Settings
from app.exceptions import AdsApiError
from app.models import AutomationRule, RuleType, SearchTermReport
from app.schemas import RuleConfig
from app.services.metrics import DailySample, max_lookback_days

logger = logging.getLogger(__name__)

KEYWORD_MATCH_TYPES = {"BROAD", "PHRASE", "EXACT"}


@dataclass
class PerformanceEntity:
    entity_id: str
    entity_type: str  # keyword | target | searchTerm | campaign
    campaign_id: str
    entity_text: Optional[str] = None
    match_type: Optional[str] = None
    ad_group_id: Optional[str] = None
    current_bid: Optional[float] = None
    current_budget: Optional[float] = None
    daily_data: list[DailySample] = field(default_factory=list)

    def add_sample(self, sample: DailySample) -> None:
        """Rows for the same date (e.g. traffic vs conversion groupings) are summed, never duplicated."""
        for existing in self.daily_data:
            if existing.date == sample.date:
                existing.impressions += sample.impressions
                existing.clicks += sample.clicks
                existing.spend += sample.spend
                existing.sales += sample.sales
                existing.orders += sample.orders
                return
        self.daily_data.append(sample)


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def __contains__(self, d: date) -> bool:
        return self.start <= d <= self.end


def bid_source_ranges(today: date, lookback_days: int, stream_days: int, report_lag_days: int) -> tuple[DateRange, DateRange]:
    """
    (stream, report) ranges for hybrid bid rules. The report range ends
    before the stream range starts so no (entity, date) is counted twice.
    """
    stream = DateRange(today - timedelta(days=stream_days - 1), today)
    report_end = today - timedelta(days=max(report_lag_days, stream_days))
    report = DateRange(report_end - timedelta(days=lookback_days - 1), report_end)
    return stream, report


def search_term_range(today: date, lookback_days: int, report_lag_days: int) -> DateRange:
    end = today - timedelta(days=report_lag_days)
    return DateRange(end - timedelta(days=lookback_days - 1), end)


def _sample_from_row(row) -> DailySample:
    return DailySample(
        date=row["performance_date"],
        impressions=int(row["impressions"] or 0),
        clicks=int(row["clicks"] or 0),
        spend=float(row["spend"] or 0),
        sales=float(row["sales"] or 0),
        orders=int(row["orders"] or 0),
    )


# ── SQL ──────────────────────────────────────────────────────────────

_STREAM_LOCAL_DATE = "((event_data->>'time_window_start')::timestamptz AT TIME ZONE :tz)::date"

STREAM_ENTITY_SQL = text(f"""
    SELECT
        {_STREAM_LOCAL_DATE} AS performance_date,
        COALESCE(event_data->>'keyword_id', event_data->>'target_id') AS entity_id,
        COALESCE(event_data->>'keyword_text', event_data->>'targeting') AS entity_text,
        event_data->>'match_type' AS match_type,
        event_data->>'campaign_id' AS campaign_id,
        event_data->>'ad_group_id' AS ad_group_id,
        SUM(CASE WHEN event_type = 'sp-traffic' THEN COALESCE((event_data->>'impressions')::bigint, 0) ELSE 0 END) AS impressions,
        SUM(CASE WHEN event_type = 'sp-traffic' THEN COALESCE((event_data->>'clicks')::bigint, 0) ELSE 0 END) AS clicks,
        SUM(CASE WHEN event_type = 'sp-traffic' THEN COALESCE((event_data->>'cost')::numeric, 0) ELSE 0 END) AS spend,
        SUM(CASE WHEN event_type = 'sp-conversion' THEN COALESCE((event_data->>'attributed_sales_1d')::numeric, 0) ELSE 0 END) AS sales,
        SUM(CASE WHEN event_type = 'sp-conversion' THEN COALESCE((event_data->>'attributed_conversions_1d')::bigint, 0) ELSE 0 END) AS orders
    FROM raw_stream_events
    WHERE event_type IN ('sp-traffic', 'sp-conversion')
      AND {_STREAM_LOCAL_DATE} BETWEEN :start_date AND :end_date
      AND COALESCE(event_data->>'keyword_id', event_data->>'target_id') IS NOT NULL
      AND (event_data->>'campaign_id') = ANY(:campaign_ids)
    GROUP BY 1, 2, 3, 4, 5, 6
""")

STREAM_CAMPAIGN_SQL = text(f"""
    SELECT
        event_data->>'campaign_id' AS campaign_id,
        SUM(CASE WHEN event_type = 'sp-traffic' THEN COALESCE((event_data->>'impressions')::bigint, 0) ELSE 0 END) AS impressions,
        SUM(CASE WHEN event_type = 'sp-traffic' THEN COALESCE((event_data->>'clicks')::bigint, 0) ELSE 0 END) AS clicks,
        SUM(CASE WHEN event_type = 'sp-traffic' THEN COALESCE((event_data->>'cost')::numeric, 0) ELSE 0 END) AS spend,
        SUM(CASE WHEN event_type = 'sp-conversion' THEN COALESCE((event_data->>'attributed_sales_1d')::numeric, 0) ELSE 0 END) AS sales,
        SUM(CASE WHEN event_type = 'sp-conversion' THEN COALESCE((event_data->>'attributed_conversions_1d')::bigint, 0) ELSE 0 END) AS orders
    FROM raw_stream_events
    WHERE event_type IN ('sp-traffic', 'sp-conversion')
      AND {_STREAM_LOCAL_DATE} = :today
      AND (event_data->>'campaign_id') = ANY(:campaign_ids)
    GROUP BY 1
""")


class PerformanceFetcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ads_client: AmazonAdsClient,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.ads_client = ads_client
        self.settings = settings

    async def fetch(
        self,
        rule: AutomationRule,
        config: RuleConfig,
        campaign_ids: Optional[list[str]],
        today: date,
    ) -> dict[str, PerformanceEntity]:
        """
        Entity map for the rule. An empty or missing scope returns {} without
        touching either source: an unscoped rule must never act on the whole account.
        """
        if not campaign_ids:
            logger.info(f"Rule '{rule.name}' has an empty campaign scope. Skipping data fetch.")
            return {}

        campaign_ids = [str(c) for c in campaign_ids]
        lookback = max_lookback_days(config.condition_groups)

        if rule.rule_type == RuleType.BID_ADJUSTMENT.value:
            performance = await self.fetch_bid_adjustment_data(campaign_ids, lookback, today)
        elif rule.rule_type == RuleType.SEARCH_TERM_AUTOMATION.value:
            performance = await self.fetch_search_term_data(campaign_ids, lookback, today)
        elif rule.rule_type == RuleType.BUDGET_ACCELERATION.value:
            performance = await self.fetch_budget_acceleration_data(rule.profile_id, campaign_ids, today)
        else:
            performance = {}

        logger.info(f"Aggregated daily data for {len(performance)} unique entities for rule '{rule.name}'.")
        return performance

    # ── BID_ADJUSTMENT ───────────────────────────────────────────────

    async def fetch_bid_adjustment_data(
        self, campaign_ids: list[str], lookback_days: int, today: date,
    ) -> dict[str, PerformanceEntity]:
        stream_range, report_range = bid_source_ranges(
            today, lookback_days, self.settings.stream_days, self.settings.report_lag_days,
        )
        stream_rows = await self._stream_entity_rows(campaign_ids, stream_range)
        report_rows = await self._report_entity_rows(campaign_ids, report_range)

        performance: dict[str, PerformanceEntity] = {}
        for rows, allowed in ((stream_rows, stream_range), (report_rows, report_range)):
            for row in rows:
                entity_id = row["entity_id"]
                if not entity_id:
                    continue
                sample = _sample_from_row(row)
                if sample.date not in allowed:
                    continue
                entity = performance.get(entity_id)
                if entity is None:
                    entity = PerformanceEntity(
                        entity_id=entity_id,
                        entity_type="keyword" if row["match_type"] in KEYWORD_MATCH_TYPES else "target",
                        entity_text=row["entity_text"],
                        match_type=row["match_type"],
                        campaign_id=row["campaign_id"],
                        ad_group_id=row["ad_group_id"],
                    )
                    performance[entity_id] = entity
                else:
                    # Conversion events often lack the descriptive fields
                    if not entity.match_type and row["match_type"]:
                        entity.match_type = row["match_type"]
                        entity.entity_type = "keyword" if row["match_type"] in KEYWORD_MATCH_TYPES else "target"
                    entity.entity_text = entity.entity_text or row["entity_text"]
                    entity.ad_group_id = entity.ad_group_id or row["ad_group_id"]
                entity.add_sample(sample)
        return performance

    async def _stream_entity_rows(self, campaign_ids: list[str], window: DateRange) -> list:
        async with self.session_factory() as db:
            result = await db.execute(STREAM_ENTITY_SQL, {
                "tz": self.settings.reporting_timezone,
                "start_date": window.start,
                "end_date": window.end,
                "campaign_ids": campaign_ids,
            })
            return list(result.mappings().all())

    async def _report_entity_rows(self, campaign_ids: list[str], window: DateRange) -> list:
        r = SearchTermReport
        stmt = (
            select(
                r.report_date.label("performance_date"),
                cast(r.keyword_id, String).label("entity_id"),
                func.coalesce(r.keyword_text, r.targeting).label("entity_text"),
                r.match_type.label("match_type"),
                cast(r.campaign_id, String).label("campaign_id"),
                cast(r.ad_group_id, String).label("ad_group_id"),
                func.sum(func.coalesce(r.impressions, 0)).label("impressions"),
                func.sum(func.coalesce(r.clicks, 0)).label("clicks"),
                func.sum(func.coalesce(r.cost, 0)).label("spend"),
                func.sum(func.coalesce(r.sales_1d, 0)).label("sales"),
                func.sum(func.coalesce(r.purchases_1d, 0)).label("orders"),
            )
            .where(and_(
                r.report_date >= window.start,
                r.report_date <= window.end,
                r.keyword_id.is_not(None),
                cast(r.campaign_id, String).in_(campaign_ids),
            ))
            .group_by(
                r.report_date, r.keyword_id, func.coalesce(r.keyword_text, r.targeting),
                r.match_type, r.campaign_id, r.ad_group_id,
            )
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.mappings().all())

    # ── SEARCH_TERM_AUTOMATION ───────────────────────────────────────

    async def fetch_search_term_data(
        self, campaign_ids: list[str], lookback_days: int, today: date,
    ) -> dict[str, PerformanceEntity]:
        window = search_term_range(today, lookback_days, self.settings.report_lag_days)
        rows = await self._search_term_rows(campaign_ids, window)

        performance: dict[str, PerformanceEntity] = {}
        for row in rows:
            term = row["search_term"]
            if not term:
                continue
            entity = performance.get(term)
            if entity is None:
                entity = PerformanceEntity(
                    entity_id=term,
                    entity_type="searchTerm",
                    entity_text=term,
                    campaign_id=row["campaign_id"],
                    ad_group_id=row["ad_group_id"],
                )
                performance[term] = entity
            entity.add_sample(_sample_from_row(row))
        return performance

    async def _search_term_rows(self, campaign_ids: list[str], window: DateRange) -> list:
        r = SearchTermReport
        stmt = (
            select(
                r.report_date.label("performance_date"),
                r.customer_search_term.label("search_term"),
                cast(r.campaign_id, String).label("campaign_id"),
                cast(r.ad_group_id, String).label("ad_group_id"),
                func.sum(func.coalesce(r.impressions, 0)).label("impressions"),
                func.sum(func.coalesce(r.clicks, 0)).label("clicks"),
                func.sum(func.coalesce(r.cost, 0)).label("spend"),
                func.sum(func.coalesce(r.sales_1d, 0)).label("sales"),
                func.sum(func.coalesce(r.purchases_1d, 0)).label("orders"),
            )
            .where(and_(
                r.report_date >= window.start,
                r.report_date <= window.end,
                r.customer_search_term.is_not(None),
                cast(r.campaign_id, String).in_(campaign_ids),
            ))
            .group_by(r.report_date, r.customer_search_term, r.campaign_id, r.ad_group_id)
            .order_by(r.campaign_id, r.ad_group_id, r.report_date)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.mappings().all())

    # ── BUDGET_ACCELERATION ──────────────────────────────────────────

    async def fetch_budget_acceleration_data(
        self, profile_id: str, campaign_ids: list[str], today: date,
    ) -> dict[str, PerformanceEntity]:
        """
        Budgets come from the API, not local storage: an earlier acceleration
        today may already have raised them. A failed budget fetch aborts the run.
        """
        try:
            campaigns = await self.ads_client.list_campaigns(profile_id, campaign_ids)
        except AdsApiError as e:
            logger.error(f"Failed to fetch campaign budgets for budget acceleration: {e}")
            return {}

        budgets: dict[str, float] = {}
        for c in campaigns:
            budget = (c.get("budget") or {}).get("budget")
            if isinstance(budget, (int, float)) and not isinstance(budget, bool):
                budgets[str(c.get("campaignId"))] = float(budget)
        logger.info(f"Fetched current budgets for {len(budgets)} campaigns.")

        rows = {row["campaign_id"]: row for row in await self._stream_campaign_rows(campaign_ids, today)}

        performance: dict[str, PerformanceEntity] = {}
        for campaign_id in campaign_ids:
            if campaign_id not in budgets:
                continue
            row = rows.get(campaign_id) or {}
            sample = DailySample(
                date=today,
                impressions=int(row.get("impressions") or 0),
                clicks=int(row.get("clicks") or 0),
                spend=float(row.get("spend") or 0),
                sales=float(row.get("sales") or 0),
                orders=int(row.get("orders") or 0),
            )
            performance[campaign_id] = PerformanceEntity(
                entity_id=campaign_id,
                entity_type="campaign",
                campaign_id=campaign_id,
                current_budget=budgets[campaign_id],
                daily_data=[sample],
            )
        return performance

    async def _stream_campaign_rows(self, campaign_ids: list[str], today: date) -> list:
        async with self.session_factory() as db:
            result = await db.execute(STREAM_CAMPAIGN_SQL, {
                "tz": self.settings.reporting_timezone,
                "today": today,
                "campaign_ids": campaign_ids,
            })
            return list(result.mappings().all())
