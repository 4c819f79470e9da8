"""
Tests for the performance data fetcher.

Stream queries use PostgreSQL JSON operators, so stream rows are patched in;
report queries run against the SQLite test database.
"""

from datetime import date, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.config import Settings
from app.exceptions import AdsApiError
from app.models import SearchTermReport
from app.schemas import parse_rule_config
from app.services.performance_fetcher import PerformanceFetcher, bid_source_ranges, search_term_range
from tests.factories import make_rule

TODAY = date(2026, 10, 19)


def _config(rule_type="BID_ADJUSTMENT", window=30, action=None):
    return parse_rule_config(rule_type, {
        "conditionGroups": [{
            "conditions": [{"metric": "spend", "timeWindow": window, "operator": ">", "value": 1}],
            "action": action or {"type": "adjustBidPercent", "value": -10},
        }],
        "frequency": {"unit": "hours", "value": 1},
    })


def _stream_row(day, entity_id="101", match_type="EXACT", spend=1.0, clicks=1, orders=0, sales=0.0):
    return {
        "performance_date": day, "entity_id": entity_id, "entity_text": "blue widget",
        "match_type": match_type, "campaign_id": "111", "ad_group_id": "222",
        "impressions": 10, "clicks": clicks, "spend": spend, "sales": sales, "orders": orders,
    }


def _report_row(day, keyword_id=101, term="blue widget", cost=2.0, clicks=3, **kwargs):
    return SearchTermReport(
        report_date=day, campaign_id=kwargs.get("campaign_id", 111), ad_group_id=222,
        keyword_id=keyword_id, keyword_text="blue widget", match_type=kwargs.get("match_type", "EXACT"),
        customer_search_term=term, targeting=kwargs.get("targeting"),
        impressions=20, clicks=clicks, cost=cost, sales_1d=kwargs.get("sales", 0.0), purchases_1d=kwargs.get("orders", 0),
    )


async def _seed(session_factory, rows):
    async with session_factory() as db:
        db.add_all(rows)
        await db.commit()


def test_hybrid_ranges_are_disjoint():
    stream, report = bid_source_ranges(TODAY, lookback_days=30, stream_days=2, report_lag_days=2)
    assert (stream.start, stream.end) == (date(2026, 10, 18), TODAY)
    assert (report.start, report.end) == (date(2026, 9, 18), date(2026, 10, 17))
    assert report.end < stream.start


def test_ranges_follow_configuration():
    stream, report = bid_source_ranges(TODAY, lookback_days=7, stream_days=1, report_lag_days=3)
    assert stream.start == TODAY
    # A longer settlement lag leaves a gap rather than an overlap
    assert report.end == TODAY - timedelta(days=3)
    window = search_term_range(TODAY, lookback_days=14, report_lag_days=2)
    assert (window.start, window.end) == (date(2026, 10, 4), date(2026, 10, 17))


@pytest.mark.anyio
async def test_empty_scope_touches_nothing():
    ads_client = MagicMock()
    session_factory = MagicMock()
    fetcher = PerformanceFetcher(session_factory, ads_client, Settings())

    result = await fetcher.fetch(make_rule(campaign_ids=[]), _config(), [], TODAY)

    assert result == {}
    session_factory.assert_not_called()
    ads_client.assert_not_called()


@pytest.mark.anyio
async def test_bid_data_unions_stream_and_report(session_factory):
    await _seed(session_factory, [
        _report_row(date(2026, 10, 17)),
        _report_row(date(2026, 10, 10)),
        # Outside the report range: stream owns this date
        _report_row(date(2026, 10, 18), cost=100.0),
        # Another campaign
        _report_row(date(2026, 10, 17), keyword_id=999, campaign_id=555),
    ])
    fetcher = PerformanceFetcher(session_factory, MagicMock(), Settings())
    stream_rows = [
        _stream_row(TODAY, spend=1.5),
        # Conversion grouping for the same entity and day
        _stream_row(TODAY, match_type=None, spend=0.0, clicks=0, orders=1, sales=25.0),
        _stream_row(date(2026, 10, 18), spend=0.5),
    ]

    with patch.object(fetcher, "_stream_entity_rows", AsyncMock(return_value=stream_rows)):
        result = await fetcher.fetch(make_rule(), _config(), ["111"], TODAY)

    assert list(result) == ["101"]
    entity = result["101"]
    assert entity.entity_type == "keyword"
    by_date = {s.date: s for s in entity.daily_data}
    assert sorted(by_date) == [date(2026, 10, 10), date(2026, 10, 17), date(2026, 10, 18), TODAY]
    assert by_date[TODAY].spend == pytest.approx(1.5)
    assert by_date[TODAY].orders == 1
    assert by_date[TODAY].sales == pytest.approx(25.0)
    assert by_date[date(2026, 10, 18)].spend == pytest.approx(0.5)
    assert by_date[date(2026, 10, 17)].spend == pytest.approx(2.0)


@pytest.mark.anyio
async def test_non_keyword_match_type_is_target(session_factory):
    await _seed(session_factory, [
        _report_row(date(2026, 10, 15), keyword_id=303, match_type="TARGETING_EXPRESSION", targeting="close-match"),
    ])
    fetcher = PerformanceFetcher(session_factory, MagicMock(), Settings())
    with patch.object(fetcher, "_stream_entity_rows", AsyncMock(return_value=[])):
        result = await fetcher.fetch(make_rule(), _config(), ["111"], TODAY)
    assert result["303"].entity_type == "target"


@pytest.mark.anyio
async def test_search_term_data_keyed_by_term(session_factory):
    await _seed(session_factory, [
        _report_row(date(2026, 10, 17), term="cheap widget", cost=1.0),
        _report_row(date(2026, 10, 17), keyword_id=102, term="cheap widget", cost=2.0),
        _report_row(date(2026, 10, 16), term="B07XJ8C8F5", cost=4.0),
        # Not settled yet
        _report_row(date(2026, 10, 18), term="cheap widget", cost=50.0),
    ])
    fetcher = PerformanceFetcher(session_factory, MagicMock(), Settings())
    config = _config("SEARCH_TERM_AUTOMATION", window=14, action={"type": "negateSearchTerm"})

    result = await fetcher.fetch(make_rule("SEARCH_TERM_AUTOMATION"), config, ["111"], TODAY)

    assert set(result) == {"cheap widget", "B07XJ8C8F5"}
    cheap = result["cheap widget"]
    assert cheap.entity_type == "searchTerm"
    assert cheap.campaign_id == "111"
    assert cheap.ad_group_id == "222"
    assert [(s.date, s.spend) for s in cheap.daily_data] == [(date(2026, 10, 17), pytest.approx(3.0))]


@pytest.mark.anyio
async def test_budget_data_uses_live_budgets():
    ads_client = MagicMock()
    ads_client.list_campaigns = AsyncMock(return_value=[
        {"campaignId": "111", "budget": {"budget": 50.0, "budgetType": "DAILY"}},
        {"campaignId": "222", "budget": {"budget": 20}},
    ])
    fetcher = PerformanceFetcher(MagicMock(), ads_client, Settings())
    stream = [{"campaign_id": "111", "impressions": 100, "clicks": 9, "spend": 40.0, "sales": 120.0, "orders": 4}]
    config = _config("BUDGET_ACCELERATION", window=1, action={"type": "increaseBudgetPercent", "value": 50})

    with patch.object(fetcher, "_stream_campaign_rows", AsyncMock(return_value=stream)):
        result = await fetcher.fetch(make_rule("BUDGET_ACCELERATION"), config, ["111", "222", "333"], TODAY)

    assert set(result) == {"111", "222"}
    assert result["111"].current_budget == 50.0
    assert result["111"].daily_data[0].spend == 40.0
    assert result["222"].daily_data[0].spend == 0.0


@pytest.mark.anyio
async def test_budget_fetch_failure_returns_empty():
    ads_client = MagicMock()
    ads_client.list_campaigns = AsyncMock(side_effect=AdsApiError(503, {"message": "down"}))
    fetcher = PerformanceFetcher(MagicMock(), ads_client, Settings())
    config = _config("BUDGET_ACCELERATION", window=1, action={"type": "increaseBudgetPercent", "value": 50})

    with patch.object(fetcher, "_stream_campaign_rows", AsyncMock(return_value=[])) as stream:
        result = await fetcher.fetch(make_rule("BUDGET_ACCELERATION"), config, ["111"], TODAY)

    assert result == {}
    stream.assert_not_awaited()
