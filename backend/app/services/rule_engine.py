"""
Rule Engine — evaluates due automation rules and applies their actions.

One tick loads the active rules, keeps the due ones and processes them
sequentially. Per rule:
  parse config → load cooldowns → fetch performance → applier for the rule
  type → throttle acted-on entities → audit log → stamp last_run_at.

A failing rule is logged as FAILURE and never stops the rest of the tick.
The nightly sweep restores budgets raised by acceleration rules.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.ads_client import AmazonAdsClient, create_ads_client, item_errors
from app.config import Settings, get_settings
from app.exceptions import AdsApiError, ConfigurationError
from app.models import AdType, AutomationRule, LogStatus, RuleType
from app.schemas import parse_rule_config
from app.services.actions import RuleApplier, empty_actions
from app.services.automation_log import AutomationLogWriter
from app.services.bid_adjustment import BidAdjustmentApplier
from app.services.budget_acceleration import BudgetAccelerationApplier, BudgetOverrideStore
from app.services.performance_fetcher import PerformanceFetcher
from app.services.schedule import is_rule_due
from app.services.search_term_negation import SearchTermNegationApplier
from app.services.throttle_service import ThrottleTracker
from app.services.token_service import LwaTokenProvider
from app.utils import as_aware_utc, reporting_today, utcnow

logger = logging.getLogger(__name__)

# Retry cadence for rules whose config cannot be parsed
INVALID_CONFIG_RETRY = timedelta(days=1)


class RuleEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ads_client: AmazonAdsClient,
        settings: Settings,
        fetcher: Optional[PerformanceFetcher] = None,
        throttles: Optional[ThrottleTracker] = None,
        log_writer: Optional[AutomationLogWriter] = None,
        override_store: Optional[BudgetOverrideStore] = None,
        appliers: Optional[dict[RuleType, RuleApplier]] = None,
    ):
        self.session_factory = session_factory
        self.ads_client = ads_client
        self.settings = settings
        self.fetcher = fetcher or PerformanceFetcher(session_factory, ads_client, settings)
        self.throttles = throttles or ThrottleTracker(session_factory)
        self.log_writer = log_writer or AutomationLogWriter(session_factory)
        self.override_store = override_store or BudgetOverrideStore(session_factory)
        self.appliers = appliers if appliers is not None else {
            RuleType.BID_ADJUSTMENT: BidAdjustmentApplier(
                ads_client, bid_floor=settings.bid_floor, chunk_size=settings.bid_lookup_chunk_size,
            ),
            RuleType.SEARCH_TERM_AUTOMATION: SearchTermNegationApplier(
                ads_client, report_lag_days=settings.report_lag_days,
            ),
            RuleType.BUDGET_ACCELERATION: BudgetAccelerationApplier(ads_client, self.override_store),
        }

    def applier_for(self, rule_type: str) -> RuleApplier:
        try:
            applier = self.appliers.get(RuleType(rule_type))
        except ValueError:
            applier = None
        if applier is None:
            raise ConfigurationError(f"Unknown rule type: {rule_type}")
        return applier

    # ── Tick ─────────────────────────────────────────────────────────

    async def load_active_rules(self) -> list[AutomationRule]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(AutomationRule)
                .where(AutomationRule.is_active.is_(True))
                .order_by(AutomationRule.created_at)
            )
            return list(result.scalars().all())

    def is_due(self, rule: AutomationRule, now: datetime) -> bool:
        try:
            config = parse_rule_config(rule.rule_type, rule.config)
        except ConfigurationError:
            # Still run so the FAILURE is logged, but at most once a day
            return rule.last_run_at is None or as_aware_utc(now) - as_aware_utc(rule.last_run_at) >= INVALID_CONFIG_RETRY
        return is_rule_due(config.frequency, rule.last_run_at, now, self.settings.schedule_tz)

    async def run_due_rules(self, now: Optional[datetime] = None) -> dict:
        """Process every active rule that is due. Returns a small summary for callers."""
        now = now or datetime.now(timezone.utc)
        logger.info(f"Tick: checking for due rules at {now.isoformat()}")

        rules = await self.load_active_rules()
        due = [r for r in rules if self.is_due(r, now)]
        if not due:
            logger.info("No rules are due to run.")
            return {"active": len(rules), "due": 0, "results": {}}

        logger.info(f"Found {len(due)} rule(s) to run.")
        results = {}
        for rule in due:
            status = await self.process_rule(rule, now)
            results[str(rule.id)] = status.value if status else "SKIPPED"
        return {"active": len(rules), "due": len(due), "results": results}

    # ── Single rule ──────────────────────────────────────────────────

    async def process_rule(self, rule: AutomationRule, now: Optional[datetime] = None) -> Optional[LogStatus]:
        """
        Run one rule end to end. Returns the logged status, or None when the
        rule was skipped without a log entry (empty scope). last_run_at is
        stamped no matter how the run ended.
        """
        now = now or datetime.now(timezone.utc)
        logger.info(f"Processing rule '{rule.name}' (ID: {rule.id}).")
        try:
            return await self._run(rule, now)
        except Exception as e:
            logger.exception(f"Error processing rule '{rule.name}' ({rule.id})")
            details = {"error": str(e)}
            if isinstance(e, AdsApiError):
                details["status"] = e.status
                details["details"] = e.details
            await self.log_writer.write(rule, LogStatus.FAILURE, "Rule processing failed due to an error.", details)
            return LogStatus.FAILURE
        finally:
            await self._stamp_last_run(rule, now)

    async def _run(self, rule: AutomationRule, now: datetime) -> Optional[LogStatus]:
        config = parse_rule_config(rule.rule_type, rule.config)
        applier = self.applier_for(rule.rule_type)
        rule_type = RuleType(rule.rule_type)

        campaign_ids = rule.campaign_ids
        if not campaign_ids:
            logger.info(f"Rule '{rule.name}' has no campaigns in scope. Skipping.")
            return None

        if rule_type == RuleType.BID_ADJUSTMENT and (rule.ad_type or AdType.SP.value) != AdType.SP.value:
            summary = f"Bid adjustment is not supported for {rule.ad_type} rules."
            await self.log_writer.write(rule, LogStatus.NO_ACTION, summary, empty_actions(campaign_ids))
            return LogStatus.NO_ACTION

        uses_cooldown = rule_type != RuleType.BUDGET_ACCELERATION and config.cooldown.value > 0
        throttled: set[str] = set()
        if uses_cooldown:
            throttled = await self.throttles.get_throttled(rule.id, now)
            if throttled:
                logger.info(f"Found {len(throttled)} throttled entities for rule '{rule.name}'.")

        today = reporting_today(self.settings.reporting_timezone, now)
        performance = await self.fetcher.fetch(rule, config, campaign_ids, today)

        if not performance and rule_type != RuleType.BUDGET_ACCELERATION:
            await self.log_writer.write(
                rule, LogStatus.NO_ACTION,
                "No entities to process; no performance data found for the campaigns in scope.",
                empty_actions(campaign_ids),
            )
            return LogStatus.NO_ACTION

        result = await applier.evaluate(rule, config, performance, throttled, today)

        if uses_cooldown and result.acted_on_entities:
            await self.throttles.apply(rule.id, result.acted_on_entities, config.cooldown, now)

        if result.has_actions:
            status, summary, details = LogStatus.SUCCESS, result.summary, result.details
        elif result.errors:
            status, summary = LogStatus.FAILURE, result.summary
            details = {**empty_actions(campaign_ids), "errors": result.errors}
        else:
            status, summary, details = LogStatus.NO_ACTION, "No entities met the rule criteria.", empty_actions(campaign_ids)

        await self.log_writer.write(rule, status, summary, details)
        return status

    async def _stamp_last_run(self, rule: AutomationRule, now: datetime) -> None:
        stamp = as_aware_utc(now).replace(tzinfo=None)
        try:
            async with self.session_factory() as db:
                await db.execute(
                    update(AutomationRule).where(AutomationRule.id == rule.id).values(last_run_at=stamp)
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to update last_run_at for rule '{rule.name}' ({rule.id}): {e}")
            return
        rule.last_run_at = stamp

    # ── Nightly budget reset ─────────────────────────────────────────

    async def reset_budgets(self, now: Optional[datetime] = None) -> dict:
        """
        Restore every campaign accelerated today (or on an earlier day whose
        sweep had already run) to its recorded original budget. The oldest
        pending row wins per campaign. One bulk PUT per profile; rows are
        marked reverted only when every PUT and every campaign in it
        succeeded, so a failed sweep can simply be retried.
        """
        today = reporting_today(self.settings.reporting_timezone, now)
        logger.info(f"Starting daily budget reset for {today.isoformat()}")

        overrides = await self.override_store.pending_through(today)
        if not overrides:
            logger.info("No budgets to reset today.")
            return {"date": today.isoformat(), "reset": 0}

        fallback_profile = None
        if any(not o.profile_id for o in overrides):
            fallback_profile = await self._first_rule_profile()
            if not fallback_profile:
                logger.error("Cannot reset budgets: no profile id found in the rules table.")
                return {"date": today.isoformat(), "reset": 0, "error": "No profile id available for budget reset."}

        by_profile: dict[str, dict[str, float]] = {}
        for o in overrides:
            budgets = by_profile.setdefault(o.profile_id or fallback_profile, {})
            budgets.setdefault(o.campaign_id, o.original_budget)

        logger.info(f"Found {len(overrides)} override(s) to reset across {len(by_profile)} profile(s).")
        failed_items: dict[str, list[dict]] = {}
        try:
            for profile_id, budgets in by_profile.items():
                response = await self.ads_client.update_campaign_budgets(profile_id, budgets)
                errors = item_errors(response, "campaigns")
                if errors:
                    failed_items[profile_id] = errors
        except AdsApiError as e:
            logger.error(f"Budget reset failed, no overrides marked as reverted: {e}")
            return {"date": today.isoformat(), "reset": 0, "error": str(e), "details": e.details}

        if failed_items:
            count = sum(len(errors) for errors in failed_items.values())
            logger.error(f"Budget reset rejected for {count} campaign(s), no overrides marked as reverted: {failed_items}")
            return {
                "date": today.isoformat(), "reset": 0,
                "error": f"Budget reset rejected for {count} campaign(s).",
                "details": failed_items,
            }

        await self.override_store.mark_reverted([o.id for o in overrides], utcnow())
        logger.info(f"Marked {len(overrides)} overrides as reverted.")
        return {"date": today.isoformat(), "reset": len(overrides)}

    async def _first_rule_profile(self) -> Optional[str]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(AutomationRule.profile_id).order_by(AutomationRule.created_at).limit(1)
            )
            return result.scalar_one_or_none()


def create_rule_engine(settings: Optional[Settings] = None) -> RuleEngine:
    """Engine wired to the application database and the live Ads API."""
    from app.database import async_session

    settings = settings or get_settings()
    auth = LwaTokenProvider.from_settings(settings)
    return RuleEngine(async_session, create_ads_client(settings, auth), settings)
