"""
Tests for budget acceleration and the daily budget override store.
"""

from datetime import date, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.exceptions import AdsApiError
from app.schemas import parse_rule_config
from app.services.budget_acceleration import BudgetAccelerationApplier, BudgetOverrideStore
from app.services.metrics import DailySample
from tests.factories import make_entity, make_rule

TODAY = date(2026, 10, 19)


def _config(action=None):
    return parse_rule_config("BUDGET_ACCELERATION", {
        "conditionGroups": [{
            "conditions": [
                {"metric": "roas", "timeWindow": "TODAY", "operator": ">", "value": 2.5},
                {"metric": "budgetUtilization", "timeWindow": "TODAY", "operator": ">", "value": 75},
            ],
            "action": action or {"type": "increaseBudgetPercent", "value": 50},
        }],
        "frequency": {"unit": "hours", "value": 1},
    })


def _campaign(budget=50.0, spend=40.0, sales=120.0, campaign_id="111"):
    return make_entity(
        campaign_id, "campaign", campaign_id=campaign_id, ad_group_id=None,
        current_budget=budget,
        daily_data=[DailySample(date=TODAY, spend=spend, sales=sales)],
    )


def _client():
    client = MagicMock()
    client.update_campaign_budgets = AsyncMock(return_value={})
    return client


@pytest.mark.anyio
async def test_acceleration_scenario(session_factory):
    """budget 50, spend 40, sales 120 -> roas 3.0, utilization 80 -> budget 75."""
    store = BudgetOverrideStore(session_factory)
    client = _client()
    rule = make_rule("BUDGET_ACCELERATION")

    result = await BudgetAccelerationApplier(client, store).evaluate(
        rule, _config(), {"111": _campaign()}, set(), TODAY,
    )

    client.update_campaign_budgets.assert_awaited_once_with("9999", {"111": 75.0})
    change = result.details["actions_by_campaign"]["111"]["changes"][0]
    assert change["oldBudget"] == 50.0
    assert change["newBudget"] == 75.0
    utilization = next(m for m in change["triggeringMetrics"] if m["metric"] == "budgetUtilization")
    assert utilization["value"] == 80.0

    pending = await store.pending_for(TODAY)
    assert [(o.campaign_id, o.original_budget, o.profile_id) for o in pending] == [("111", 50.0, "9999")]


@pytest.mark.anyio
async def test_second_acceleration_keeps_first_original_budget(session_factory):
    store = BudgetOverrideStore(session_factory)
    client = _client()
    applier = BudgetAccelerationApplier(client, store)
    rule = make_rule("BUDGET_ACCELERATION")

    await applier.evaluate(rule, _config(), {"111": _campaign(budget=50.0, spend=40.0)}, set(), TODAY)
    await applier.evaluate(rule, _config(), {"111": _campaign(budget=75.0, spend=70.0, sales=300.0)}, set(), TODAY)

    assert client.update_campaign_budgets.await_args_list[1].args == ("9999", {"111": 112.5})
    pending = await store.pending_for(TODAY)
    assert len(pending) == 1
    assert pending[0].original_budget == 50.0


@pytest.mark.anyio
async def test_never_decreases_budget(session_factory):
    store = BudgetOverrideStore(session_factory)
    client = _client()

    result = await BudgetAccelerationApplier(client, store).evaluate(
        make_rule("BUDGET_ACCELERATION"), _config({"type": "setBudgetAmount", "value": 40}),
        {"111": _campaign()}, set(), TODAY,
    )

    client.update_campaign_budgets.assert_not_awaited()
    assert not result.has_actions
    assert await store.pending_for(TODAY) == []


@pytest.mark.anyio
async def test_set_budget_amount(session_factory):
    client = _client()
    await BudgetAccelerationApplier(client, BudgetOverrideStore(session_factory)).evaluate(
        make_rule("BUDGET_ACCELERATION"), _config({"type": "setBudgetAmount", "value": 200}),
        {"111": _campaign()}, set(), TODAY,
    )
    client.update_campaign_budgets.assert_awaited_once_with("9999", {"111": 200.0})


@pytest.mark.anyio
async def test_zero_budget_has_zero_utilization(session_factory):
    client = _client()
    result = await BudgetAccelerationApplier(client, BudgetOverrideStore(session_factory)).evaluate(
        make_rule("BUDGET_ACCELERATION"), _config(), {"111": _campaign(budget=0.0)}, set(), TODAY,
    )
    client.update_campaign_budgets.assert_not_awaited()
    assert not result.has_actions


@pytest.mark.anyio
async def test_failed_update_reports_error(session_factory):
    client = _client()
    client.update_campaign_budgets = AsyncMock(side_effect=AdsApiError(429, {"message": "throttled"}))

    result = await BudgetAccelerationApplier(client, BudgetOverrideStore(session_factory)).evaluate(
        make_rule("BUDGET_ACCELERATION"), _config(), {"111": _campaign()}, set(), TODAY,
    )

    assert not result.has_actions
    assert result.errors == [{"batch": "campaigns", "status": 429, "details": {"message": "throttled"}}]


@pytest.mark.anyio
async def test_mark_reverted_clears_pending(session_factory):
    store = BudgetOverrideStore(session_factory)
    await store.record(None, "9999", {"111": 50.0, "222": 20.0}, TODAY)
    await store.record(None, "9999", {"333": 10.0}, date(2026, 10, 18))

    pending = await store.pending_for(TODAY)
    assert {o.campaign_id for o in pending} == {"111", "222"}

    await store.mark_reverted([pending[0].id], datetime(2026, 10, 20, 7, 55))
    remaining = await store.pending_for(TODAY)
    assert [o.campaign_id for o in remaining] == [pending[1].campaign_id]
