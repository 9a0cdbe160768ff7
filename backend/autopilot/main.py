"""
Amazon Ads Autopilot: FastAPI Backend
Rule engine, throttled action queue and execution worker for Sponsored
Products automation. All state persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from autopilot.config import get_settings
from autopilot.database import init_db, check_db_connection
from autopilot.auth import require_auth
from autopilot.routers import actions, alerts, cron, guardrails, playbooks, rules

settings = get_settings()

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Amazon Ads Autopilot...")
    try:
        await init_db()
        logger.info("Database initialized, all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="Amazon Ads Autopilot",
    description="Rule-driven automation for Amazon Sponsored Products",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Register Routers (all require auth) ──────────────────────────────
_auth = [Depends(require_auth)]
app.include_router(rules.router, prefix="/api/rules", tags=["Rules"], dependencies=_auth)
app.include_router(alerts.router, prefix="/api/alerts", tags=["Alerts"], dependencies=_auth)
app.include_router(actions.router, prefix="/api/actions", tags=["Action Queue"], dependencies=_auth)
app.include_router(guardrails.router, prefix="/api/guardrails", tags=["Guardrails"], dependencies=_auth)
app.include_router(playbooks.router, prefix="/api/playbooks", tags=["Playbooks"], dependencies=_auth)
app.include_router(cron.router, prefix="/api")  # No API key; uses CRON_SECRET


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Amazon Ads Autopilot",
        "database": "connected" if db_ok else "disconnected",
    }
