"""
In-process scheduler for the rule engine.

Started from the FastAPI lifespan. Ticks every RULE_TICK_SECONDS and, once
per reporting day after BUDGET_RESET_TIME, runs the budget reset sweep.
Ticks (including those triggered through the cron endpoints) share a lock,
so two runs never overlap. Stopping waits for the current tick to finish.
"""

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from app.config import Settings
from app.services.rule_engine import RuleEngine
from app.services.schedule import budget_reset_due

logger = logging.getLogger(__name__)


class AutomationScheduler:
    def __init__(self, engine: RuleEngine, settings: Settings):
        self.engine = engine
        self.settings = settings
        self.last_tick_at: Optional[datetime] = None
        self.last_reset_date: Optional[date] = None
        self._lock = asyncio.Lock()
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            logger.warning("Scheduler is already running. Skipping new start.")
            return
        logger.info(f"Starting automation scheduler (tick every {self.settings.rule_tick_seconds}s)")
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name="automation-scheduler")

    async def stop(self) -> None:
        if not self.running:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Automation scheduler stopped")

    async def run_rules(self, now: Optional[datetime] = None) -> dict:
        async with self._lock:
            return await self.engine.run_due_rules(now)

    async def reset_budgets(self, now: Optional[datetime] = None) -> dict:
        """Run the sweep now. Does not count as the nightly reset."""
        async with self._lock:
            return await self.engine.reset_budgets(now)

    async def tick(self, now: Optional[datetime] = None) -> None:
        now = now or datetime.now(timezone.utc)
        await self.run_rules(now)
        self.last_tick_at = now

        reset_date = budget_reset_due(
            now,
            self.settings.budget_reset_at,
            ZoneInfo(self.settings.reporting_timezone),
            self.last_reset_date,
        )
        if reset_date is not None:
            result = await self.reset_budgets(now)
            if "error" not in result:
                self.last_reset_date = reset_date

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.settings.rule_tick_seconds)
            except asyncio.TimeoutError:
                pass

    def status(self) -> dict:
        return {
            "enabled": self.settings.scheduler_enabled,
            "running": self.running,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_budget_reset": self.last_reset_date.isoformat() if self.last_reset_date else None,
        }
