"""Background jobs for the offer/contract workflow.

All jobs are idempotent: running twice produces no duplicate transitions,
notifications or charges. They are plain async functions taking a session
so the CLI, the internal scheduler endpoint and the in-app sweep loop can
all call them.
"""

import logging
from collections.abc import Awaitable, Callable

from pydantic import BaseModel
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from nexa_platform.app.config import Settings, get_settings
from nexa_platform.domain.enums import EscalationPolicy, OfferStatus
from nexa_platform.domain.models import Offer
from nexa_platform.domain.schemas import OfferExpirySummary
from nexa_platform.domain.timeutils import utcnow
from nexa_platform.infra.database import conditional_update
from nexa_platform.infra.pagarme_client import get_payment_gateway
from nexa_platform.infra.socket_relay import SocketRelay
from nexa_platform.services.deadline_monitor import check_deadlines
from nexa_platform.services.payment_processor import process_pending_payments
from nexa_platform.services.withdrawal_processor import process_pending_withdrawals

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Offer expiry
# ---------------------------------------------------------------------------


async def expire_offers(db: AsyncSession) -> OfferExpirySummary:
    """Expire pending offers whose ``expires_at`` has passed."""
    now = utcnow()

    result = await db.execute(
        select(Offer).where(
            and_(
                Offer.status == OfferStatus.PENDING.value,
                Offer.expires_at <= now,
            )
        )
    )
    offers = result.scalars().all()

    summary = OfferExpirySummary()
    for offer in offers:
        claimed = await conditional_update(
            db,
            offer,
            Offer.status == OfferStatus.PENDING.value,
            status=OfferStatus.EXPIRED.value,
        )
        if not claimed:
            continue
        await db.commit()
        summary.expired += 1
        logger.info(
            "Offer expired: offer=%s brand=%s creator=%s", offer.id, offer.brand_id, offer.creator_id
        )

    logger.info("Offer expiry: %d of %d candidates expired", summary.expired, len(offers))
    return summary


# ---------------------------------------------------------------------------
# Job registry
# ---------------------------------------------------------------------------

JobRunner = Callable[[AsyncSession, Settings], Awaitable[BaseModel]]


async def _expire_offers(db: AsyncSession, settings: Settings) -> BaseModel:
    return await expire_offers(db)


async def _timeline_deadlines(db: AsyncSession, settings: Settings) -> BaseModel:
    return await check_deadlines(
        db, EscalationPolicy.SUSPENSION, settings=settings, relay=SocketRelay.from_settings(settings)
    )


async def _milestone_deadlines(db: AsyncSession, settings: Settings) -> BaseModel:
    return await check_deadlines(
        db, EscalationPolicy.PENALTY, settings=settings, relay=SocketRelay.from_settings(settings)
    )


async def _payments(db: AsyncSession, settings: Settings) -> BaseModel:
    return await process_pending_payments(db, get_payment_gateway(settings), settings=settings)


async def _withdrawals(db: AsyncSession, settings: Settings) -> BaseModel:
    return await process_pending_withdrawals(db, get_payment_gateway(settings), settings=settings)


JOBS: dict[str, JobRunner] = {
    "offers:expire": _expire_offers,
    "timeline:check-deadlines": _timeline_deadlines,
    "milestones:check-deadlines": _milestone_deadlines,
    "payments:process": _payments,
    "withdrawals:process": _withdrawals,
}

# Jobs the in-app sweep loop runs each tick, in order
SWEEP_JOBS = ["offers:expire", "timeline:check-deadlines", "milestones:check-deadlines"]


async def run_job(name: str, db: AsyncSession, settings: Settings | None = None) -> BaseModel:
    """Run one registered job by name; raises KeyError for unknown names."""
    runner = JOBS[name]
    return await runner(db, settings or get_settings())


async def run_sweeps(db: AsyncSession, settings: Settings | None = None) -> dict:
    """Run every sweep job, isolating failures per job."""
    settings = settings or get_settings()
    results = {}
    for name in SWEEP_JOBS:
        try:
            summary = await run_job(name, db, settings)
            results[name] = summary.model_dump()
        except Exception as exc:
            logger.error("Sweep job %s failed: %s", name, exc, exc_info=True)
            await db.rollback()
            results[name] = {"error": str(exc)}
    return results
