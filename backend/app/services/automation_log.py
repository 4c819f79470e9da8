"""
Automation Log — append-only run history read by the dashboard.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models import AutomationLog, AutomationRule, LogStatus

logger = logging.getLogger(__name__)


class AutomationLogWriter:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def write(
        self,
        rule: AutomationRule,
        status: LogStatus,
        summary: str,
        details: Optional[dict] = None,
    ) -> bool:
        """
        Persist one log entry. A failed write is logged and reported as False;
        it never interrupts rule processing.
        """
        try:
            async with self.session_factory() as db:
                db.add(AutomationLog(
                    rule_id=rule.id,
                    status=status.value,
                    summary=summary,
                    details=details or {},
                ))
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to write automation log for rule '{rule.name}' ({rule.id}): {e}")
            return False

        logger.info(f"Logged {status.value} for rule '{rule.name}': {summary}")
        return True
