"""
Bid Adjustment — percentage bid changes for keywords and product targets.

Flow per run:
  1. Resolve the live bid of every entity (chunked list calls), falling back
     to the ad group default bid for entities that inherit it.
  2. Evaluate condition groups, first match wins.
  3. Round (down on decreases, up on increases), clamp, drop no-ops.
  4. One PUT for keywords and one for targets, independent of each other.
"""

import logging
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR
from datetime import date
from typing import Awaitable, Callable, Optional

from app.ads_client import AmazonAdsClient, chunked, item_errors
from app.exceptions import AdsApiError
from app.models import AutomationRule
from app.schemas import RuleConfig
from app.services.actions import ActionResult, RuleApplier, campaign_bucket
from app.services.performance_fetcher import PerformanceEntity

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def compute_new_bid(
    current_bid: float,
    percent: float,
    min_bid: Optional[float] = None,
    max_bid: Optional[float] = None,
    bid_floor: float = 0.02,
) -> float:
    """
    current * (1 + percent/100), rounded to the cent toward the direction of
    the change, then clamped to the floor, minBid and maxBid in that order.
    """
    raw = Decimal(str(current_bid)) * (Decimal(1) + Decimal(str(percent)) / Decimal(100))
    new_bid = raw.quantize(CENT, rounding=ROUND_FLOOR if percent < 0 else ROUND_CEILING)
    new_bid = max(new_bid, Decimal(str(bid_floor)))
    if min_bid is not None:
        new_bid = max(new_bid, Decimal(str(min_bid)))
    if max_bid is not None:
        new_bid = min(new_bid, Decimal(str(max_bid)))
    return float(new_bid.quantize(CENT))


class BidAdjustmentApplier(RuleApplier):
    def __init__(self, ads_client: AmazonAdsClient, bid_floor: float = 0.02, chunk_size: int = 100):
        super().__init__(ads_client)
        self.bid_floor = bid_floor
        self.chunk_size = chunk_size

    async def evaluate(
        self,
        rule: AutomationRule,
        config: RuleConfig,
        performance: dict[str, PerformanceEntity],
        throttled: set[str],
        today: date,
    ) -> ActionResult:
        keywords = {eid: e for eid, e in performance.items() if e.entity_type == "keyword"}
        targets = {eid: e for eid, e in performance.items() if e.entity_type == "target"}

        await self.resolve_current_bids(rule.profile_id, keywords, targets)

        keyword_updates: list[dict] = []
        target_updates: list[dict] = []
        planned: dict[str, tuple[PerformanceEntity, dict]] = {}

        for entity in list(keywords.values()) + list(targets.values()):
            if entity.entity_id in throttled or entity.current_bid is None:
                continue
            group, metrics = self.match(entity, config.condition_groups, today)
            if group is None or group.action.type != "adjustBidPercent":
                continue

            action = group.action
            new_bid = compute_new_bid(entity.current_bid, action.value, action.min_bid, action.max_bid, self.bid_floor)
            if new_bid == entity.current_bid:
                continue

            planned[entity.entity_id] = (entity, {
                "entityType": entity.entity_type,
                "entityId": entity.entity_id,
                "entityText": entity.entity_text,
                "oldBid": entity.current_bid,
                "newBid": new_bid,
                "triggeringMetrics": metrics,
            })
            if entity.entity_type == "keyword":
                keyword_updates.append({"keywordId": entity.entity_id, "bid": new_bid})
            else:
                target_updates.append({"targetId": entity.entity_id, "bid": new_bid})

        errors: list[dict] = []
        applied: list[str] = []
        applied += await self._submit(
            "keywords", keyword_updates, "keywordId", "keywords",
            lambda batch: self.ads_client.update_keywords(rule.profile_id, batch), errors,
        )
        applied += await self._submit(
            "targets", target_updates, "targetId", "targetingClauses",
            lambda batch: self.ads_client.update_targets(rule.profile_id, batch), errors,
        )

        actions_by_campaign: dict = {}
        for entity_id in applied:
            entity, change = planned[entity_id]
            campaign_bucket(actions_by_campaign, entity.campaign_id)["changes"].append(change)

        summary = f"Adjusted bids for {len(applied)} target(s)/keyword(s)."
        if errors:
            summary += f" {len(errors)} update batch(es) failed."
        details = {"actions_by_campaign": actions_by_campaign}
        if errors:
            details["errors"] = errors
        return ActionResult(summary=summary, details=details, acted_on_entities=applied, errors=errors)

    async def _submit(
        self,
        batch_name: str,
        updates: list[dict],
        id_key: str,
        result_key: str,
        send: Callable[[list[dict]], Awaitable[dict]],
        errors: list[dict],
    ) -> list[str]:
        """Send one bulk update; returns the ids that went through."""
        if not updates:
            return []
        try:
            response = await send(updates)
        except AdsApiError as e:
            logger.error(f"Failed to apply {batch_name} bid updates ({len(updates)} items): {e}")
            errors.append({"batch": batch_name, **e.to_dict()})
            return []

        failed_items = item_errors(response, result_key)
        failed_indexes = {e.get("index") for e in failed_items}
        if failed_items:
            logger.warning(f"{len(failed_items)} of {len(updates)} {batch_name} bid updates were rejected")
            errors.append({"batch": batch_name, "status": 207, "details": failed_items})
        return [str(u[id_key]) for i, u in enumerate(updates) if i not in failed_indexes]

    # ── Current bid resolution ───────────────────────────────────────

    async def resolve_current_bids(
        self,
        profile_id: str,
        keywords: dict[str, PerformanceEntity],
        targets: dict[str, PerformanceEntity],
    ) -> None:
        """
        Sets current_bid in place. Entities whose lookup chunk failed are left
        without a bid (skipped); entities the API returns without a bid, or
        does not return at all, inherit their ad group's default bid.
        """
        inheriting: list[PerformanceEntity] = []

        for entities, fetch, id_key in (
            (keywords, self.ads_client.list_keywords, "keywordId"),
            (targets, self.ads_client.list_targets, "targetId"),
        ):
            if not entities:
                continue
            found, failed = await self._lookup_bids(profile_id, list(entities), fetch, id_key)
            for entity_id, entity in entities.items():
                if entity_id in failed:
                    continue
                bid = found.get(entity_id)
                if bid is not None:
                    entity.current_bid = bid
                else:
                    inheriting.append(entity)

        if inheriting:
            logger.info(f"Found {len(inheriting)} entity/entities inheriting bids. Fetching ad group default bids...")
            await self._apply_default_bids(profile_id, inheriting)

    async def _lookup_bids(
        self, profile_id: str, ids: list[str], fetch, id_key: str,
    ) -> tuple[dict[str, Optional[float]], set[str]]:
        found: dict[str, Optional[float]] = {}
        failed: set[str] = set()
        for chunk in chunked(ids, self.chunk_size):
            try:
                items = await fetch(profile_id, chunk)
            except AdsApiError as e:
                logger.error(f"Failed to fetch current bids for {len(chunk)} {id_key} value(s): {e}")
                failed.update(chunk)
                continue
            for item in items:
                bid = item.get("bid")
                found[str(item.get(id_key))] = float(bid) if _is_number(bid) else None
        return found, failed

    async def _apply_default_bids(self, profile_id: str, entities: list[PerformanceEntity]) -> None:
        ad_group_ids = sorted({e.ad_group_id for e in entities if e.ad_group_id})
        if not ad_group_ids:
            logger.info("No valid ad group ids found for fetching default bids.")
            return

        default_bids: dict[str, float] = {}
        for chunk in chunked(ad_group_ids, self.chunk_size):
            try:
                ad_groups = await self.ads_client.list_ad_groups(profile_id, chunk)
            except AdsApiError as e:
                logger.error(f"Failed to fetch ad group default bids: {e}")
                continue
            for ag in ad_groups:
                if _is_number(ag.get("defaultBid")):
                    default_bids[str(ag.get("adGroupId"))] = float(ag["defaultBid"])

        for entity in entities:
            bid = default_bids.get(str(entity.ad_group_id))
            if bid is None:
                logger.warning(f"No default bid for ad group {entity.ad_group_id} (entity {entity.entity_id})")
                continue
            entity.current_bid = bid


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
