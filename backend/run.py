import uvicorn

from app.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    # Single process: the interval scheduler, its in-flight tasks and the
    # Ads API rate limiter are all process-local state
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=not settings.is_production,
        workers=1,
        log_level="info",
    )
