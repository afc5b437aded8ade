"""FastAPI application entry point for the Nexa platform jobs API."""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from nexa_platform.app.config import get_settings
from nexa_platform.domain.schemas import HealthResponse
from nexa_platform.infra.database import async_session, init_db
from nexa_platform.services.background_jobs import run_sweeps

logger = logging.getLogger(__name__)


async def sweep_loop(interval_minutes: int):
    """Run the offer and deadline sweeps every *interval_minutes*."""
    while True:
        try:
            async with async_session() as db:
                results = await run_sweeps(db)
                logger.info("Sweep loop: %s", results)
        except Exception as e:
            logger.error("Sweep loop error: %s", e)
        await asyncio.sleep(interval_minutes * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database, optionally start sweeps."""
    await init_db()

    settings = get_settings()
    task = None
    if settings.run_sweeps_in_app:
        task = asyncio.create_task(sweep_loop(settings.sweep_interval_minutes))
    yield
    if task is not None:
        task.cancel()


settings = get_settings()

logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Nexa Platform API",
    lifespan=lifespan,
    debug=settings.debug,
)

from nexa_platform.app.routes.jobs import router as jobs_router

app.include_router(jobs_router)


@app.get("/health", tags=["health"], response_model=HealthResponse)
async def health_check():
    """Return service health status."""
    return HealthResponse(status="ok", service="nexa-platform")


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "nexa_platform.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
