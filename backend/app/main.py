"""
Amazon Ads Report Ingestion — FastAPI Backend
Keeps hourly and daily Sponsored Products performance data in PostgreSQL by
requesting, polling and parsing Ads API reports on a schedule.
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
import httpx
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.config import get_settings
from app.database import check_db_connection, dispose_engine, init_db
from app.auth import require_auth
from app.ads_client import create_ads_client
from app.errors import ConfigurationError
from app.rate_limiter import AdaptiveRateLimiter
from app.routers import cron, datasets
from app.services.report_parser import ReportParser
from app.services.report_worker import ReportWorker
from app.services.scheduler import ReportScheduler, start_interval_scheduler
from app.services.token_service import TokenService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


def build_report_scheduler(http: httpx.AsyncClient) -> tuple[ReportScheduler, AdaptiveRateLimiter]:
    """Wire limiter → client → parser → worker → scheduler from settings."""
    if settings.is_production and not settings.has_ads_credentials:
        raise ConfigurationError("Amazon Ads credentials are required in production.")
    limiter = AdaptiveRateLimiter(
        max_concurrent=settings.ads_api_max_concurrent,
        min_interval=settings.ads_api_min_interval_ms / 1000,
        retry_buffer=settings.ads_api_retry_buffer_ms / 1000,
        default_backoff=settings.ads_api_default_backoff_ms / 1000,
    )
    token_service = TokenService(
        client_id=settings.ads_api_client_id,
        client_secret=settings.ads_api_client_secret,
        refresh_token=settings.ads_api_refresh_token,
        http=http,
    )
    client = create_ads_client(token_service, limiter, http, region=settings.ads_api_region)
    worker = ReportWorker(
        client,
        ReportParser(client),
        poll_interval=timedelta(minutes=settings.report_poll_interval_minutes),
        handle_timeout=timedelta(hours=settings.report_handle_timeout_hours),
    )
    scheduler = ReportScheduler(
        worker,
        max_concurrent_reports=settings.max_concurrent_reports,
        stale_after=timedelta(minutes=settings.stale_refreshing_minutes),
    )
    return scheduler, limiter


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Amazon Ads Report Ingestion...")
    http = httpx.AsyncClient()
    report_scheduler, limiter = build_report_scheduler(http)
    app.state.report_scheduler = report_scheduler
    app.state.rate_limiter = limiter
    interval_scheduler = None
    try:
        await init_db()
        logger.info("Database initialized, all tables ready.")
        released = await report_scheduler.recover_stale()
        if released:
            logger.info(f"Startup recovery released {released} stale datasets")
        if settings.scheduler_enabled:
            interval_scheduler = start_interval_scheduler(report_scheduler, settings.scheduler_interval_minutes)
    except ConfigurationError:
        raise
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")
    if interval_scheduler is not None:
        interval_scheduler.shutdown(wait=False)
    await report_scheduler.shutdown(timeout=settings.shutdown_grace_seconds)
    await http.aclose()
    await dispose_engine()


app = FastAPI(
    title="Amazon Ads Report Ingestion",
    description="Scheduled Amazon Ads report ingestion into time-bucketed performance tables",
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

# ── Register Routers ─────────────────────────────────────────────────
_auth = [Depends(require_auth)]
app.include_router(datasets.router, prefix="/api", tags=["Report Datasets"], dependencies=_auth)
app.include_router(cron.router, prefix="/api")  # No API key, uses CRON_SECRET


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    report_scheduler = getattr(app.state, "report_scheduler", None)
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Amazon Ads Report Ingestion",
        "database": "connected" if db_ok else "disconnected",
        "refreshes_in_flight": report_scheduler.in_flight if report_scheduler else 0,
    }
