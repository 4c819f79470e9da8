"""
Amazon Ads Rule Automation — FastAPI Backend
Evaluates operator-defined automation rules against Marketing Stream and
settled report data, and applies bid, budget and negation changes through
the Amazon Ads API. All state persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from app.config import get_settings
from app.database import init_db, check_db_connection
from app.routers import cron
from app.scheduler import AutomationScheduler
from app.services.rule_engine import create_rule_engine

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Amazon Ads Rule Automation...")
    try:
        await init_db()
        logger.info("Database initialized — all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible

    scheduler = AutomationScheduler(create_rule_engine(settings), settings)
    app.state.scheduler = scheduler
    if settings.scheduler_enabled:
        scheduler.start()
    else:
        logger.info("In-process scheduler disabled; rules run via /api/cron/rules/run only.")
    yield
    logger.info("Shutting down...")
    await scheduler.stop()


app = FastAPI(
    title="Amazon Ads Rule Automation",
    description="Rule-driven bid, budget and negative keyword automation for Amazon Ads",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(cron.router, prefix="/api")  # Guarded by CRON_SECRET


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Amazon Ads Rule Automation",
        "database": "connected" if db_ok else "disconnected",
        "scheduler": scheduler.status() if scheduler else {"enabled": settings.scheduler_enabled, "running": False},
    }
