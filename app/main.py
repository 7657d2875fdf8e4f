"""AdPulse — FastAPI Application Entry Point.

Background sync core for multi-tenant ad & commerce data.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.api.oauth_routes import router as oauth_router
from app.api.sync_routes import router as sync_router
from app.core.logging import get_logger
from app.database import _mask_url, db_url, engine, init_db, test_connection
from app.services.sync_service import SyncService

logger = get_logger("main")

# Serverless instances only answer requests; a long-lived process drains the queue
RUNS_BACKGROUND = not (
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the sync service, then start workers and timers."""
    logger.info(f"🚀 AdPulse starting ({'worker' if RUNS_BACKGROUND else 'request-only'} mode)")
    if not test_connection():
        logger.error(f"❌ Database {_mask_url(db_url)} unreachable; background sync not started")
        app.state.sync_service = SyncService(engine)
        yield
        return

    init_db()
    service = SyncService(engine)
    app.state.sync_service = service
    if RUNS_BACKGROUND:
        await service.start()
    try:
        yield
    finally:
        if RUNS_BACKGROUND:
            await service.stop()
        logger.info("AdPulse shut down")


app = FastAPI(
    title="AdPulse",
    description="Keeps a local mirror of Google Ads, Meta and Shopify performance data fresh for many tenants.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync_router)
app.include_router(oauth_router)


@app.get("/health", tags=["System"])
async def health_check(request: Request):
    """Liveness plus database reachability and queue depth."""
    service: SyncService = request.app.state.sync_service
    database_ok = test_connection(service.engine)
    return {
        "status": "healthy" if database_ok else "degraded",
        "service": "adpulse",
        "version": "1.0.0",
        "database": "postgresql" if db_url.startswith("postgresql") else "sqlite",
        "workers_running": service.pool.running,
        "queue": service.queue_status() if database_ok else None,
    }
