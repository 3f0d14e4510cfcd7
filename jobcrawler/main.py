"""
FastAPI application: admin API plus the crawl scheduler and periodic sync.
"""
import logging
import traceback
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .app.crawl import router as crawl_router
from .app.services import Services, build_services
from .app.sites import router as sites_router
from .app.sync import router as sync_router
from .core.config import Settings, load_settings
from .core.logging_config import configure_logging

logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    When ``services`` is given (tests) it is used as-is and the lifespan does
    not touch the database; otherwise PostgreSQL-backed services are built on
    startup.
    """
    settings = services.settings if services is not None else (settings or load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle application lifecycle events."""
        logger.info(f"[jobcrawler] env: ENVIRONMENT={settings.environment}")
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)

        try:
            await app.state.services.start()
        except Exception as e:
            logger.error(f"[jobcrawler] Failed to start scheduler: {e}", exc_info=True)

        yield

        await app.state.services.stop()
        logger.info("[jobcrawler] Shutdown complete")

    app = FastAPI(title="Job Crawler API", version=__version__, lifespan=lifespan)
    app.state.services = services

    @app.middleware("http")
    async def error_masking_middleware(request: Request, call_next):
        """Mask detailed errors in production; show full errors in dev."""
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled error: {e}")
            if settings.is_dev:
                logger.error(traceback.format_exc())
                return JSONResponse(
                    status_code=500,
                    content={"status": "error", "error": str(e), "traceback": traceback.format_exc()},
                )
            return JSONResponse(
                status_code=500,
                content={"status": "error", "error": "An internal error occurred. Please try again later."},
            )

    app.include_router(sites_router)
    app.include_router(crawl_router)
    app.include_router(sync_router)

    @app.get("/health")
    def health(request: Request):
        services = request.app.state.services
        scheduled = len(services.scheduler.scheduled_site_ids()) if services else 0
        return {"status": "ok", "version": __version__, "scheduled_sites": scheduled}

    return app


def run():
    """Console entry point: load settings, configure logging and serve."""
    settings = load_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings=settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
