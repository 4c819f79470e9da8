"""
Condition evaluation: ordered condition groups, first match wins.
"""

from typing import Callable, Optional

from app.schemas import Condition, ConditionGroup
from app.services.metrics import Totals

MetricsFor = Callable[[Condition], Totals]


def check_condition(metric_value: float, operator: str, threshold: float) -> bool:
    if operator == ">":
        return metric_value > threshold
    if operator == "<":
        return metric_value < threshold
    if operator == "=":
        return metric_value == threshold
    return False


def group_matches(group: ConditionGroup, metrics_for: MetricsFor) -> bool:
    """All conditions hold (AND). Stops at the first failing condition."""
    for condition in group.conditions:
        value = metrics_for(condition).get(condition.metric)
        if not check_condition(value, condition.operator, condition.value):
            return False
    return True


def find_matching_group(groups: list[ConditionGroup], metrics_for: MetricsFor) -> Optional[ConditionGroup]:
    """The first group, in stored order, whose conditions all hold."""
    for group in groups:
        if group_matches(group, metrics_for):
            return group
    return None


def triggering_metrics(group: ConditionGroup, metrics_for: MetricsFor) -> list[dict]:
    """Metric values behind a firing group, for the audit log."""
    return [
        {
            "metric": c.metric,
            "timeWindow": c.time_window,
            "value": round(metrics_for(c).get(c.metric), 4),
            "condition": f"{c.operator} {c.value:g}",
        }
        for c in group.conditions
    ]
