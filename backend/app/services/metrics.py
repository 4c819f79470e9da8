"""
Metric window aggregation over per-entity daily samples.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, Union

TODAY = "TODAY"


@dataclass
class DailySample:
    date: date
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    sales: float = 0.0
    orders: int = 0


@dataclass
class Totals:
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    sales: float = 0.0
    orders: int = 0
    acos: float = 0.0
    roas: float = 0.0
    # Only populated for campaign-level budget rules
    budget_utilization: float = 0.0

    def get(self, metric: str) -> float:
        if metric == "budgetUtilization":
            return self.budget_utilization
        return getattr(self, metric)


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


def window_days(window: Union[int, str]) -> int:
    return 1 if window == TODAY else int(window)


def aggregate(
    daily_data: Iterable[DailySample],
    window: Union[int, str],
    reference_date: Union[date, datetime],
) -> Totals:
    """
    Totals for the inclusive N-day window ending at reference_date.
    "TODAY" is a 1-day window. acos = spend/sales, roas = sales/spend (0 when undefined).
    """
    end = _as_date(reference_date)
    start = end - timedelta(days=window_days(window) - 1)

    totals = Totals()
    for sample in daily_data:
        if start <= _as_date(sample.date) <= end:
            totals.impressions += sample.impressions
            totals.clicks += sample.clicks
            totals.spend += sample.spend
            totals.sales += sample.sales
            totals.orders += sample.orders

    totals.acos = totals.spend / totals.sales if totals.sales > 0 else 0.0
    totals.roas = totals.sales / totals.spend if totals.spend > 0 else 0.0
    return totals


def max_lookback_days(condition_groups) -> int:
    """Largest numeric time window across all conditions; TODAY counts as 1."""
    windows = [
        c.time_window
        for g in condition_groups
        for c in g.conditions
        if c.time_window != TODAY
    ]
    return max(windows + [1])
