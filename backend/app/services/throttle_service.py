"""
Throttle Service — per-entity cooldowns.

A throttle row keys a single (rule, entity) pair, so acting on one keyword
never blocks its siblings, and one rule's cooldowns never affect another rule.
"""

import logging
import uuid
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import dialect_insert
from app.models import AutomationActionThrottle
from app.schemas import Cooldown
from app.services.schedule import duration
from app.utils import as_aware_utc, utcnow

logger = logging.getLogger(__name__)


def _naive_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return utcnow()
    return as_aware_utc(value).replace(tzinfo=None)


class ThrottleTracker:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_throttled(self, rule_id: uuid.UUID, now: Optional[datetime] = None) -> set[str]:
        """Entity ids still cooling down for this rule."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(AutomationActionThrottle.entity_id).where(
                    AutomationActionThrottle.rule_id == rule_id,
                    AutomationActionThrottle.throttle_until > _naive_utc(now),
                )
            )
            return set(result.scalars().all())

    async def apply(
        self,
        rule_id: uuid.UUID,
        entity_ids: Iterable[str],
        cooldown: Cooldown,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Upsert throttle_until = now + cooldown for each entity.
        Returns the number of entities throttled (0 when the cooldown is disabled).
        """
        if cooldown.value <= 0:
            return 0
        # One INSERT .. ON CONFLICT cannot touch the same row twice
        unique_ids = list(dict.fromkeys(str(e) for e in entity_ids))
        if not unique_ids:
            return 0

        until = _naive_utc(now) + duration(cooldown.unit, cooldown.value)
        rows = [
            {"id": uuid.uuid4(), "rule_id": rule_id, "entity_id": entity_id, "throttle_until": until}
            for entity_id in unique_ids
        ]
        async with self.session_factory() as db:
            stmt = dialect_insert(db, AutomationActionThrottle).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=["rule_id", "entity_id"],
                set_={"throttle_until": stmt.excluded.throttle_until},
            )
            await db.execute(stmt)
            await db.commit()

        logger.info(f"Throttled {len(unique_ids)} entities for rule {rule_id} for {cooldown.value} {cooldown.unit}.")
        return len(unique_ids)
