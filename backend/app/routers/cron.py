"""
Cron / Scheduled Jobs — Endpoints for an external scheduler.

The in-process scheduler already ticks the rule engine; these endpoints let
an external cron (or an operator) trigger the same work when the in-process
scheduler is disabled, e.g. with several web workers.

Both verify CRON_SECRET:
  X-Cron-Secret: <CRON_SECRET>
  OR Authorization: Bearer <CRON_SECRET>
"""

import logging
from fastapi import APIRouter, Depends, Header, HTTPException, Request

from app.config import get_settings
from app.scheduler import AutomationScheduler
from app.utils import safe_error_detail

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


async def _require_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    authorization: str | None = Header(None),
) -> None:
    """Verify the request carries the configured cron secret."""
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(500, "CRON_SECRET not configured")
    # Accept X-Cron-Secret header or Bearer token
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if token != secret:
        raise HTTPException(401, "Invalid cron secret")


def _get_scheduler(request: Request) -> AutomationScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(500, "Rule engine not initialized")
    return scheduler


@router.post("/rules/run")
async def cron_run_rules(
    _: None = Depends(_require_cron_secret),
    scheduler: AutomationScheduler = Depends(_get_scheduler),
):
    """
    Run every due automation rule once.
    POST /api/cron/rules/run
    Header: X-Cron-Secret: <CRON_SECRET>
    """
    try:
        result = await scheduler.run_rules()
        logger.info(f"Cron rule run completed: {result}")
        return {"status": "ok", "result": result}
    except Exception as e:
        raise HTTPException(500, safe_error_detail(e, "Rule run failed"))


@router.post("/budgets/reset")
async def cron_reset_budgets(
    _: None = Depends(_require_cron_secret),
    scheduler: AutomationScheduler = Depends(_get_scheduler),
):
    """
    Restore today's accelerated budgets to their original values.
    POST /api/cron/budgets/reset
    Header: X-Cron-Secret: <CRON_SECRET>
    """
    try:
        result = await scheduler.reset_budgets()
    except Exception as e:
        raise HTTPException(500, safe_error_detail(e, "Budget reset failed"))
    if "error" in result:
        raise HTTPException(502, result["error"])
    logger.info(f"Cron budget reset completed: {result}")
    return {"status": "ok", "result": result}
