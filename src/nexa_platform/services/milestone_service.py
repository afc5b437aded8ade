"""Milestone (campaign timeline) operations for a contract.

Milestones are created with the contract and then driven by the creator
(complete, justify delay), the brand (approve, extend) and the deadline
sweep (delayed).

This is the service-layer API the milestone controllers call; this package
ships no HTTP routes for it.
"""

import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from nexa_platform.app.config import Settings, get_settings
from nexa_platform.domain.enums import MILESTONE_TITLES, MilestoneStatus, MilestoneType, WorkflowActor
from nexa_platform.domain.models import CampaignTimeline, Contract
from nexa_platform.domain.timeutils import as_utc, utcnow
from nexa_platform.infra.database import conditional_update
from nexa_platform.infra.socket_relay import SocketRelay
from nexa_platform.services.notification_service import NotificationService
from nexa_platform.services.workflow_state_machine import InvalidTransitionError, state_machine

logger = logging.getLogger(__name__)

M = MilestoneStatus

DEFAULT_MILESTONES = list(MilestoneType)


def build_default_milestones(contract: Contract) -> list[CampaignTimeline]:
    """Spread the four milestone types evenly across the contract window."""
    start = as_utc(contract.started_at)
    end = as_utc(contract.expected_completion_at)
    step = (end - start) / len(DEFAULT_MILESTONES)

    milestones = []
    for index, milestone_type in enumerate(DEFAULT_MILESTONES, start=1):
        milestones.append(
            CampaignTimeline(
                contract_id=contract.id,
                milestone_type=milestone_type.value,
                title=MILESTONE_TITLES[milestone_type],
                deadline=start + step * index,
                status=M.PENDING.value,
                is_delayed=False,
                penalty_applied=False,
                extension_days=0,
            )
        )
    return milestones


def actor_for(contract: Contract, user_id: str) -> WorkflowActor:
    """Map a user to their side of the contract."""
    if user_id == contract.brand_id:
        return WorkflowActor.BRAND
    if user_id == contract.creator_id:
        return WorkflowActor.CREATOR
    raise PermissionError(f"User {user_id} is not a party to contract {contract.id}")


class MilestoneService:
    """Create and advance contract milestones."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings | None = None,
        relay: SocketRelay | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.notifications = NotificationService(db, relay)

    async def create_default_milestones(self, contract: Contract) -> list[CampaignTimeline]:
        """Add the default milestones for *contract* (flushed, not committed)."""
        milestones = build_default_milestones(contract)
        self.db.add_all(milestones)
        await self.db.flush()
        return milestones

    async def get_milestone(self, milestone_id: str) -> CampaignTimeline:
        result = await self.db.execute(
            select(CampaignTimeline)
            .where(CampaignTimeline.id == milestone_id)
            .options(selectinload(CampaignTimeline.contract))
        )
        milestone = result.scalar_one_or_none()
        if milestone is None:
            raise LookupError(f"Milestone {milestone_id} not found")
        return milestone

    async def _transition(self, milestone: CampaignTimeline, target: MilestoneStatus, **values) -> None:
        current = milestone.status
        claimed = await conditional_update(
            self.db,
            milestone,
            CampaignTimeline.status == current,
            status=target.value,
            **values,
        )
        if not claimed:
            raise InvalidTransitionError(
                M(current), target, "Milestone was modified concurrently"
            )

    async def complete_milestone(
        self, milestone_id: str, user_id: str, comment: str | None = None
    ) -> CampaignTimeline:
        milestone = await self.get_milestone(milestone_id)
        actor = actor_for(milestone.contract, user_id)
        state_machine.validate_milestone_transition(milestone, M.COMPLETED, actor)

        values = {"completed_at": utcnow()}
        if comment is not None:
            values["comment"] = comment
        await self._transition(milestone, M.COMPLETED, **values)
        await self.db.commit()

        logger.info("Milestone %s completed by %s %s", milestone.id, actor.value, user_id)
        return milestone

    async def approve_milestone(
        self, milestone_id: str, brand_id: str, comment: str | None = None
    ) -> CampaignTimeline:
        milestone = await self.get_milestone(milestone_id)
        actor = actor_for(milestone.contract, brand_id)
        state_machine.validate_milestone_transition(milestone, M.APPROVED, actor)

        values = {}
        if comment is not None:
            values["comment"] = comment
        await self._transition(milestone, M.APPROVED, **values)
        await self.db.commit()

        logger.info("Milestone %s approved by brand %s", milestone.id, brand_id)
        return milestone

    async def justify_delay(self, milestone_id: str, creator_id: str, justification: str) -> CampaignTimeline:
        """Record the creator's reason for a missed deadline (once)."""
        milestone = await self.get_milestone(milestone_id)
        if actor_for(milestone.contract, creator_id) != WorkflowActor.CREATOR:
            raise PermissionError("Only the creator can justify a delay")

        current = M(milestone.status)
        if current != M.DELAYED:
            raise InvalidTransitionError(current, M.DELAYED, "Only delayed milestones can be justified")
        if milestone.justification:
            raise InvalidTransitionError(current, M.DELAYED, "Delay was already justified")

        claimed = await conditional_update(
            self.db,
            milestone,
            CampaignTimeline.status == M.DELAYED.value,
            CampaignTimeline.justification.is_(None),
            justification=justification,
        )
        if not claimed:
            raise InvalidTransitionError(current, M.DELAYED, "Delay was already justified")
        await self.db.commit()

        logger.info("Delay justified for milestone %s", milestone.id)
        return milestone

    async def extend_milestone(
        self,
        milestone_id: str,
        days: int,
        reason: str,
        extended_by: str,
    ) -> CampaignTimeline:
        """Push the deadline by *days* and re-arm overdue detection."""
        if days <= 0:
            raise ValueError("Extension must be at least one day")

        milestone = await self.get_milestone(milestone_id)
        contract = milestone.contract
        if actor_for(contract, extended_by) != WorkflowActor.BRAND:
            raise PermissionError("Only the brand can extend a deadline")

        current = M(milestone.status)
        if current == M.COMPLETED:
            raise InvalidTransitionError(current, current, "Completed milestones cannot be extended")
        target = M.PENDING if current == M.DELAYED else current

        await self._transition(
            milestone,
            target,
            deadline=as_utc(milestone.deadline) + timedelta(days=days),
            extension_days=(milestone.extension_days or 0) + days,
            extension_reason=reason,
            extended_at=utcnow(),
            extended_by=extended_by,
            is_delayed=False,
            delay_notified_at=None,
        )
        await self.notifications.notify_milestone_extended(milestone, contract)
        await self.db.commit()

        logger.info(
            "Milestone %s extended by %d days (total %d)", milestone.id, days, milestone.extension_days
        )
        return milestone
