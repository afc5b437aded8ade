"""Milestone deadline sweep with penalty or suspension escalation.

One sweep:

1. finds milestones past their deadline, not completed and not yet
   notified, and claims each with a conditional UPDATE so overlapping
   sweeps never warn twice;
2. notifies creator and brand (``timeline_overdue``) and posts a system
   message into the offer's chat room;
3. escalates onto the creator account, depending on the policy:

   * ``suspension``: creators with >= N overdue milestones (counted once
     at sweep start) are suspended for a fixed window;
   * ``penalty``: a warned milestone overdue >= N days penalizes its
     creator once (no new invitations for a fixed window).

Active penalty/suspension windows are never extended. Every record is
committed on its own; a failure rolls back only that record.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from nexa_platform.app.config import Settings, get_settings
from nexa_platform.domain.enums import EscalationPolicy, MilestoneStatus, UserRole
from nexa_platform.domain.models import CampaignTimeline, Contract, User
from nexa_platform.domain.schemas import ChatMessageData, DeadlineSweepSummary
from nexa_platform.domain.timeutils import utcnow
from nexa_platform.infra.database import conditional_update
from nexa_platform.infra.socket_relay import SocketRelay
from nexa_platform.services import email_service
from nexa_platform.services.chat_service import ChatService
from nexa_platform.services.notification_service import NotificationService, milestone_title

logger = logging.getLogger(__name__)

SUSPENSION_REASON = "Multiple overdue timeline milestones"

COMPLETED = MilestoneStatus.COMPLETED.value


def penalty_reason(days: int) -> str:
    return f"Milestone overdue for more than {days} days"


class DeadlineMonitor:
    """Runs one deadline sweep under a given escalation policy."""

    def __init__(
        self,
        db: AsyncSession,
        policy: EscalationPolicy,
        settings: Settings | None = None,
        relay: SocketRelay | None = None,
        send_email: bool = True,
    ):
        self.db = db
        self.policy = EscalationPolicy(policy)
        self.settings = settings or get_settings()
        self.notifications = NotificationService(db, relay)
        self.chat = ChatService(db, relay)
        self.send_email = send_email

    async def run(self, now: datetime | None = None) -> DeadlineSweepSummary:
        now = now or utcnow()
        summary = DeadlineSweepSummary()

        # Counted before any claim so the threshold sees a consistent picture
        overdue_counts: dict[str, int] = {}
        if self.policy == EscalationPolicy.SUSPENSION:
            overdue_counts = await self._overdue_counts(now)

        milestone_ids = await self._find_unnotified(now)
        logger.info("Deadline sweep (%s): %d overdue milestones to notify", self.policy.value, len(milestone_ids))

        for milestone_id in milestone_ids:
            summary.processed += 1
            try:
                if await self._flag_overdue(milestone_id, now):
                    summary.warnings_sent += 1
            except Exception:
                logger.exception("Failed to process overdue milestone %s", milestone_id)
                await self.db.rollback()

        if self.policy == EscalationPolicy.SUSPENSION:
            summary.penalties_applied = await self._apply_suspensions(overdue_counts, now)
        else:
            summary.penalties_applied = await self._apply_penalties(now)

        logger.info(
            "Deadline sweep (%s) done: processed=%d warnings=%d escalations=%d",
            self.policy.value, summary.processed, summary.warnings_sent, summary.penalties_applied,
        )
        return summary

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    async def _find_unnotified(self, now: datetime) -> list[str]:
        result = await self.db.execute(
            select(CampaignTimeline.id)
            .where(
                and_(
                    CampaignTimeline.deadline < now,
                    CampaignTimeline.status != COMPLETED,
                    CampaignTimeline.delay_notified_at.is_(None),
                )
            )
            .order_by(CampaignTimeline.deadline)
        )
        return list(result.scalars().all())

    async def _overdue_counts(self, now: datetime) -> dict[str, int]:
        """Per-creator count of non-completed milestones past their deadline.

        Only accounts with the creator role are counted.
        """
        result = await self.db.execute(
            select(Contract.creator_id, func.count(CampaignTimeline.id))
            .select_from(CampaignTimeline)
            .join(Contract, CampaignTimeline.contract_id == Contract.id)
            .join(User, User.id == Contract.creator_id)
            .where(
                and_(
                    CampaignTimeline.deadline < now,
                    CampaignTimeline.status != COMPLETED,
                    User.role == UserRole.CREATOR.value,
                )
            )
            .group_by(Contract.creator_id)
        )
        return {creator_id: count for creator_id, count in result.all()}

    async def _load_milestone(self, milestone_id: str) -> CampaignTimeline | None:
        contract_load = selectinload(CampaignTimeline.contract)
        result = await self.db.execute(
            select(CampaignTimeline)
            .where(CampaignTimeline.id == milestone_id)
            .options(
                contract_load.selectinload(Contract.offer),
                contract_load.selectinload(Contract.creator),
                contract_load.selectinload(Contract.brand),
            )
        )
        return result.scalar_one_or_none()

    # -----------------------------------------------------------------------
    # Overdue warning
    # -----------------------------------------------------------------------

    async def _flag_overdue(self, milestone_id: str, now: datetime) -> bool:
        """Claim, notify and announce one overdue milestone."""
        milestone = await self._load_milestone(milestone_id)
        if milestone is None:
            return False

        claimed = await conditional_update(
            self.db,
            milestone,
            CampaignTimeline.delay_notified_at.is_(None),
            CampaignTimeline.status != COMPLETED,
            status=MilestoneStatus.DELAYED.value,
            is_delayed=True,
            delay_notified_at=now,
        )
        if not claimed:
            logger.info("Milestone %s already claimed by another sweep", milestone_id)
            return False

        contract = milestone.contract
        justification_deadline = now + timedelta(hours=self.settings.justification_window_hours)
        await self.notifications.notify_timeline_overdue(milestone, contract, justification_deadline)
        await self.db.commit()

        logger.info(
            "Milestone %s (%s) flagged overdue: contract=%s creator=%s",
            milestone.id, milestone.milestone_type, contract.id, contract.creator_id,
        )

        await self._announce_in_chat(milestone, contract)

        if self.send_email and contract.creator is not None:
            await email_service.send_milestone_overdue(
                contract.creator.email,
                contract.creator.name,
                milestone_title(milestone.milestone_type),
                contract.title,
                justification_deadline,
            )
        return True

    async def _announce_in_chat(self, milestone: CampaignTimeline, contract: Contract) -> None:
        if contract.offer is None:
            logger.warning("Contract %s has no offer; overdue chat message skipped", contract.id)
            return
        try:
            await self.chat.send_system_message(
                contract.offer.chat_room_id,
                f"Milestone \"{milestone_title(milestone.milestone_type)}\" is overdue since "
                f"{milestone.deadline.strftime('%d/%m/%Y %H:%M')}. "
                f"Justification window: {self.settings.justification_window_hours} hours.",
                ChatMessageData(
                    event="timeline_overdue",
                    contract_id=contract.id,
                    milestone_id=milestone.id,
                    milestone_type=milestone.milestone_type,
                    deadline=milestone.deadline,
                ),
            )
            await self.db.commit()
        except Exception:
            logger.exception("Failed to post overdue chat message for milestone %s", milestone.id)
            await self.db.rollback()

    # -----------------------------------------------------------------------
    # Suspension escalation
    # -----------------------------------------------------------------------

    async def _apply_suspensions(self, overdue_counts: dict[str, int], now: datetime) -> int:
        applied = 0
        threshold = self.settings.suspension_overdue_threshold
        for creator_id, count in overdue_counts.items():
            if count < threshold:
                continue
            try:
                if await self._suspend(creator_id, count, now):
                    applied += 1
            except Exception:
                logger.exception("Failed to suspend creator %s", creator_id)
                await self.db.rollback()
        return applied

    async def _suspend(self, creator_id: str, overdue_count: int, now: datetime) -> bool:
        creator = await self.db.get(User, creator_id)
        if creator is None:
            return False
        if creator.is_suspended(now):
            logger.info("Creator %s already suspended until %s", creator_id, creator.suspended_until)
            return False

        suspended_until = now + timedelta(days=self.settings.suspension_days)
        claimed = await conditional_update(
            self.db,
            creator,
            or_(User.suspended_until.is_(None), User.suspended_until <= now),
            suspended_until=suspended_until,
            suspension_reason=SUSPENSION_REASON,
        )
        if not claimed:
            return False

        await self.notifications.notify_account_suspended(
            creator_id, suspended_until, overdue_count, SUSPENSION_REASON
        )
        await self.db.commit()
        logger.warning(
            "Creator %s suspended until %s (%d overdue milestones)", creator_id, suspended_until, overdue_count
        )

        if self.send_email:
            await email_service.send_account_suspended(creator.email, creator.name, suspended_until, overdue_count)
        return True

    # -----------------------------------------------------------------------
    # Penalty escalation
    # -----------------------------------------------------------------------

    async def _apply_penalties(self, now: datetime) -> int:
        """Penalize warned milestones that crossed the overdue-days mark.

        Covers milestones warned in this sweep and in earlier ones.
        """
        cutoff = now - timedelta(days=self.settings.penalty_overdue_days)
        result = await self.db.execute(
            select(CampaignTimeline.id)
            .where(
                and_(
                    CampaignTimeline.delay_notified_at.isnot(None),
                    CampaignTimeline.penalty_applied.is_(False),
                    CampaignTimeline.status != COMPLETED,
                    CampaignTimeline.deadline <= cutoff,
                )
            )
            .order_by(CampaignTimeline.deadline)
        )
        applied = 0
        for milestone_id in result.scalars().all():
            try:
                if await self._penalize(milestone_id, now):
                    applied += 1
            except Exception:
                logger.exception("Failed to apply penalty for milestone %s", milestone_id)
                await self.db.rollback()
        return applied

    async def _penalize(self, milestone_id: str, now: datetime) -> bool:
        milestone = await self._load_milestone(milestone_id)
        if milestone is None or milestone.contract is None:
            return False
        creator = milestone.contract.creator
        if creator is None:
            return False
        if creator.is_penalized(now):
            logger.info(
                "Creator %s already penalized until %s; milestone %s left unpenalized",
                creator.id, creator.penalty_until, milestone_id,
            )
            return False

        claimed = await conditional_update(
            self.db,
            milestone,
            CampaignTimeline.penalty_applied.is_(False),
            CampaignTimeline.status != COMPLETED,
            penalty_applied=True,
            penalty_applied_at=now,
        )
        if not claimed:
            return False

        penalty_until = now + timedelta(days=self.settings.penalty_days)
        reason = penalty_reason(self.settings.penalty_overdue_days)
        creator_claimed = await conditional_update(
            self.db,
            creator,
            or_(User.penalty_until.is_(None), User.penalty_until <= now),
            penalty_until=penalty_until,
            penalty_reason=reason,
            penalty_milestone_id=milestone.id,
        )
        if not creator_claimed:
            # Another sweep penalized the creator in between
            await self.db.rollback()
            return False

        await self.notifications.notify_milestone_penalty(creator.id, milestone, penalty_until, reason)
        await self.db.commit()
        logger.warning(
            "Penalty applied to creator %s until %s for milestone %s", creator.id, penalty_until, milestone.id
        )

        if self.send_email:
            await email_service.send_penalty_applied(creator.email, creator.name, penalty_until, reason)
        return True


async def check_deadlines(
    db: AsyncSession,
    policy: EscalationPolicy,
    settings: Settings | None = None,
    relay: SocketRelay | None = None,
) -> DeadlineSweepSummary:
    """Run one deadline sweep; see ``DeadlineMonitor``."""
    return await DeadlineMonitor(db, policy, settings=settings, relay=relay).run()
