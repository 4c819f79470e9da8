"""
Typed rule configuration.

Rules are stored as JSON (camelCase keys, written by the rule builder UI).
They are parsed into these models once when a rule is loaded so the
evaluators work with validated objects.
"""

from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, PositiveInt, ValidationError, field_validator

from app.config import parse_hhmm
from app.exceptions import ConfigurationError
from app.models import RuleType

Metric = Literal[
    "spend", "sales", "acos", "roas", "orders", "clicks", "impressions", "budgetUtilization",
]
Operator = Literal[">", "<", "="]
TimeUnit = Literal["minutes", "hours", "days"]
TimeWindow = Union[PositiveInt, Literal["TODAY"]]


class _RuleModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Condition(_RuleModel):
    metric: Metric
    time_window: TimeWindow = Field(alias="timeWindow")
    operator: Operator
    value: float


# ── Actions (discriminated on "type") ─────────────────────────────────

class AdjustBidPercentAction(_RuleModel):
    type: Literal["adjustBidPercent"]
    value: float  # signed percent
    min_bid: Optional[float] = Field(None, alias="minBid")
    max_bid: Optional[float] = Field(None, alias="maxBid")


class NegateSearchTermAction(_RuleModel):
    type: Literal["negateSearchTerm"]
    match_type: Literal["NEGATIVE_EXACT", "NEGATIVE_PHRASE"] = Field("NEGATIVE_EXACT", alias="matchType")


class IncreaseBudgetPercentAction(_RuleModel):
    type: Literal["increaseBudgetPercent"]
    value: float


class SetBudgetAmountAction(_RuleModel):
    type: Literal["setBudgetAmount"]
    value: float


RuleAction = Annotated[
    Union[AdjustBidPercentAction, NegateSearchTermAction, IncreaseBudgetPercentAction, SetBudgetAmountAction],
    Field(discriminator="type"),
]

ALLOWED_ACTIONS = {
    RuleType.BID_ADJUSTMENT: {"adjustBidPercent"},
    RuleType.SEARCH_TERM_AUTOMATION: {"negateSearchTerm"},
    RuleType.BUDGET_ACCELERATION: {"increaseBudgetPercent", "setBudgetAmount"},
}


class ConditionGroup(_RuleModel):
    conditions: list[Condition] = Field(min_length=1)
    action: RuleAction


class Frequency(_RuleModel):
    unit: TimeUnit
    value: PositiveInt
    start_time: Optional[str] = Field(None, alias="startTime")

    @field_validator("start_time")
    @classmethod
    def _check_start_time(cls, v: Optional[str]) -> Optional[str]:
        if v:
            parse_hhmm(v)
        return v or None


class Cooldown(_RuleModel):
    unit: TimeUnit = "hours"
    value: int = Field(0, ge=0)


class RuleConfig(_RuleModel):
    condition_groups: list[ConditionGroup] = Field(default_factory=list, alias="conditionGroups")
    frequency: Frequency
    cooldown: Cooldown = Field(default_factory=Cooldown)


def parse_rule_config(rule_type: str, config: Optional[dict]) -> RuleConfig:
    """
    Validate a stored rule config for the given rule type.
    Raises ConfigurationError for unknown rule types, malformed JSON shapes
    and actions that do not belong to the rule type.
    """
    try:
        kind = RuleType(rule_type)
    except ValueError:
        raise ConfigurationError(f"Unknown rule type: {rule_type}")
    try:
        parsed = RuleConfig.model_validate(config or {})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid rule config: {e.error_count()} error(s): {e.errors()[0]['msg']}") from e

    allowed = ALLOWED_ACTIONS[kind]
    for i, group in enumerate(parsed.condition_groups):
        if group.action.type not in allowed:
            raise ConfigurationError(
                f"Condition group {i + 1}: action '{group.action.type}' is not valid for {kind.value} rules"
            )
    return parsed
