"""
Budget Acceleration — intraday budget increases for campaigns that are
converting well and running out of budget.

Increases are strictly additive within a day. The budget a campaign had
before its first acceleration of the day is recorded in
daily_budget_overrides (first writer wins) and restored by the nightly
reset sweep, which is why these rules take no part in cooldowns.
"""

import logging
import uuid
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.ads_client import AmazonAdsClient, item_errors
from app.database import dialect_insert
from app.exceptions import AdsApiError
from app.models import AutomationRule, DailyBudgetOverride
from app.schemas import RuleConfig
from app.services.actions import ActionResult, RuleApplier, campaign_bucket
from app.services.conditions import find_matching_group, triggering_metrics
from app.services.metrics import TODAY, Totals, aggregate
from app.services.performance_fetcher import PerformanceEntity
from app.utils import utcnow

logger = logging.getLogger(__name__)


class BudgetOverrideStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self,
        rule_id: Optional[uuid.UUID],
        profile_id: str,
        original_budgets: dict[str, float],
        override_date: date,
    ) -> None:
        """
        Insert one override row per campaign. Existing rows for the same
        (campaign, date) are left untouched so the first pre-acceleration
        budget of the day survives later increases.
        """
        if not original_budgets:
            return
        now = utcnow()
        rows = [
            {
                "id": uuid.uuid4(),
                "campaign_id": str(campaign_id),
                "profile_id": profile_id,
                "rule_id": rule_id,
                "original_budget": float(budget),
                "override_date": override_date,
                "created_at": now,
            }
            for campaign_id, budget in original_budgets.items()
        ]
        async with self.session_factory() as db:
            stmt = dialect_insert(db, DailyBudgetOverride).values(rows).on_conflict_do_nothing(
                index_elements=["campaign_id", "override_date"],
            )
            await db.execute(stmt)
            await db.commit()

    async def pending_for(self, override_date: date) -> list[DailyBudgetOverride]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(DailyBudgetOverride)
                .where(
                    DailyBudgetOverride.override_date == override_date,
                    DailyBudgetOverride.reverted_at.is_(None),
                )
                .order_by(DailyBudgetOverride.created_at)
            )
            return list(result.scalars().all())

    async def pending_through(self, override_date: date) -> list[DailyBudgetOverride]:
        """
        Un-reverted overrides dated on or before ``override_date``, oldest
        first. Picks up rows written after an earlier day's sweep had run.
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(DailyBudgetOverride)
                .where(
                    DailyBudgetOverride.override_date <= override_date,
                    DailyBudgetOverride.reverted_at.is_(None),
                )
                .order_by(DailyBudgetOverride.override_date, DailyBudgetOverride.created_at)
            )
            return list(result.scalars().all())

    async def mark_reverted(self, override_ids: list[uuid.UUID], reverted_at: Optional[datetime] = None) -> None:
        if not override_ids:
            return
        async with self.session_factory() as db:
            await db.execute(
                update(DailyBudgetOverride)
                .where(DailyBudgetOverride.id.in_(override_ids))
                .values(reverted_at=reverted_at or utcnow())
            )
            await db.commit()


def compute_new_budget(current_budget: float, action) -> float:
    if action.type == "increaseBudgetPercent":
        raw = Decimal(str(current_budget)) * (Decimal(1) + Decimal(str(action.value)) / Decimal(100))
    else:
        raw = Decimal(str(action.value))
    return float(raw.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def today_totals(entity: PerformanceEntity, today: date) -> Totals:
    """Today's totals plus budgetUtilization = spend / current budget * 100."""
    totals = aggregate(entity.daily_data, TODAY, today)
    budget = entity.current_budget or 0.0
    totals.budget_utilization = totals.spend / budget * 100 if budget > 0 else 0.0
    return totals


class BudgetAccelerationApplier(RuleApplier):
    def __init__(self, ads_client: AmazonAdsClient, override_store: BudgetOverrideStore):
        super().__init__(ads_client)
        self.override_store = override_store

    async def evaluate(
        self,
        rule: AutomationRule,
        config: RuleConfig,
        performance: dict[str, PerformanceEntity],
        throttled: set[str],
        today: date,
    ) -> ActionResult:
        # throttled is ignored: the daily override row bounds these rules instead
        planned: dict[str, dict] = {}
        originals: dict[str, float] = {}
        new_budgets: dict[str, float] = {}

        for entity in performance.values():
            if entity.current_budget is None:
                continue
            totals = today_totals(entity, today)
            metrics_for = lambda _condition, _totals=totals: _totals
            group = find_matching_group(config.condition_groups, metrics_for)
            if group is None or group.action.type not in ("increaseBudgetPercent", "setBudgetAmount"):
                continue

            new_budget = compute_new_budget(entity.current_budget, group.action)
            if new_budget <= entity.current_budget:
                continue

            campaign_id = entity.campaign_id
            originals[campaign_id] = entity.current_budget
            new_budgets[campaign_id] = new_budget
            planned[campaign_id] = {
                "entityType": "campaign",
                "entityId": campaign_id,
                "oldBudget": entity.current_budget,
                "newBudget": new_budget,
                "triggeringMetrics": triggering_metrics(group, metrics_for),
            }

        if not new_budgets:
            return ActionResult(summary="No campaigns met the criteria for budget acceleration.")

        await self.override_store.record(rule.id, rule.profile_id, originals, today)

        errors: list[dict] = []
        campaign_ids = list(new_budgets)
        try:
            response = await self.ads_client.update_campaign_budgets(rule.profile_id, new_budgets)
        except AdsApiError as e:
            logger.error(f"Failed to apply budget increases for {len(campaign_ids)} campaign(s): {e}")
            errors.append({"batch": "campaigns", **e.to_dict()})
            return ActionResult(
                summary=f"Budget update failed for {len(campaign_ids)} campaign(s).",
                details={"actions_by_campaign": {}, "errors": errors},
                errors=errors,
            )

        failed_items = item_errors(response, "campaigns")
        if failed_items:
            logger.warning(f"{len(failed_items)} of {len(campaign_ids)} budget updates were rejected")
            errors.append({"batch": "campaigns", "status": 207, "details": failed_items})
        failed_indexes = {e.get("index") for e in failed_items}
        applied = [cid for i, cid in enumerate(campaign_ids) if i not in failed_indexes]

        actions_by_campaign: dict = {}
        for campaign_id in applied:
            campaign_bucket(actions_by_campaign, campaign_id)["changes"].append(planned[campaign_id])

        summary = f"Increased budgets for {len(applied)} campaign(s)."
        details = {"actions_by_campaign": actions_by_campaign}
        if errors:
            summary += f" {len(failed_items)} update(s) rejected."
            details["errors"] = errors
        return ActionResult(summary=summary, details=details, acted_on_entities=applied, errors=errors)
