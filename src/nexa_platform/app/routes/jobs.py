"""Internal scheduler endpoint for the sweep and batch jobs."""
import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from nexa_platform.app.config import get_settings
from nexa_platform.infra.database import get_db
from nexa_platform.services.background_jobs import JOBS, run_job

logger = logging.getLogger(__name__)


async def verify_internal_token(x_internal_token: str = Header(...)):
    """Verify that the request includes a valid internal auth token."""
    settings = get_settings()
    if x_internal_token != settings.admin_password:
        raise HTTPException(status_code=401, detail="Invalid internal token")


router = APIRouter(
    prefix="/api/internal/jobs",
    tags=["jobs"],
    dependencies=[Depends(verify_internal_token)],
)


@router.get("")
async def list_jobs():
    return {"jobs": sorted(JOBS)}


@router.post("/{job}")
async def trigger_job(job: str, db: AsyncSession = Depends(get_db)):
    """Run one job and return its summary.

    Called by an external scheduler (cron, Cloud Scheduler) on its own cadence.
    """
    if job not in JOBS:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job}")

    summary = await run_job(job, db, get_settings())
    logger.info("Job %s finished: %s", job, summary)
    return {"ok": True, "job": job, "results": summary.model_dump()}
