"""In-app notification fan-out for workflow events.

Rows are flushed, not committed: the caller owns the transaction so a
notification is persisted together with the state change that caused it.
Each row is also pushed to the socket relay (best-effort).
"""

import logging
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nexa_platform.domain.enums import MILESTONE_TITLES, MilestoneType, NotificationType
from nexa_platform.domain.models import (
    CampaignTimeline,
    Contract,
    JobPayment,
    Notification,
    Offer,
    Withdrawal,
)
from nexa_platform.domain.schemas import (
    ContractNotificationData,
    MilestoneNotificationData,
    OfferNotificationData,
    PaymentNotificationData,
    PenaltyNotificationData,
    SuspensionNotificationData,
    WithdrawalNotificationData,
)
from nexa_platform.domain.timeutils import utcnow
from nexa_platform.infra.socket_relay import SocketRelay

logger = logging.getLogger(__name__)

NT = NotificationType


def format_brl(amount) -> str:
    """Format an amount as ``R$ 1.234,56``."""
    value = Decimal(str(amount or 0)).quantize(Decimal("0.01"))
    text = f"{value:,.2f}"
    return "R$ " + text.replace(",", "_").replace(".", ",").replace("_", ".")


def milestone_title(milestone_type: str) -> str:
    try:
        return MILESTONE_TITLES[MilestoneType(milestone_type)]
    except ValueError:
        return milestone_type.replace("_", " ").capitalize()


def _fmt_date(value: datetime | None) -> str:
    return value.strftime("%d/%m/%Y %H:%M") if value else "-"


class NotificationService:
    """Create and query in-app notifications."""

    def __init__(self, db: AsyncSession, relay: SocketRelay | None = None):
        self.db = db
        self.relay = relay

    async def create(
        self,
        user_id: str,
        type: NotificationType | str,
        title: str,
        message: str,
        data: BaseModel | dict | None = None,
    ) -> Notification:
        """Persist one notification row (flushed, not committed)."""
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json", exclude_none=True)
        notification = Notification(
            user_id=user_id,
            type=type.value if isinstance(type, NotificationType) else type,
            title=title,
            message=message,
            data=data,
            is_read=False,
        )
        self.db.add(notification)
        await self.db.flush()

        logger.info("Notification %s (%s) created for user %s", notification.id, notification.type, user_id)

        if self.relay is not None:
            await self.relay.emit(
                "notification",
                {
                    "room": f"user_{user_id}",
                    "id": notification.id,
                    "type": notification.type,
                    "title": title,
                    "message": message,
                    "data": data,
                },
            )
        return notification

    async def create_batch(self, items: list[dict]) -> list[Notification]:
        """Create several notifications; each item holds ``create`` kwargs."""
        created = []
        for item in items:
            created.append(await self.create(**item))
        return created

    async def mark_read(self, notification_id: str, user_id: str) -> bool:
        result = await self.db.execute(
            update(Notification)
            .where(
                and_(
                    Notification.id == notification_id,
                    Notification.user_id == user_id,
                    Notification.is_read.is_(False),
                )
            )
            .values(is_read=True, read_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_all_read(self, user_id: str) -> int:
        result = await self.db.execute(
            update(Notification)
            .where(and_(Notification.user_id == user_id, Notification.is_read.is_(False)))
            .values(is_read=True, read_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def get_unread_count(self, user_id: str) -> int:
        result = await self.db.execute(
            select(func.count(Notification.id)).where(
                and_(Notification.user_id == user_id, Notification.is_read.is_(False))
            )
        )
        return result.scalar_one()

    # -----------------------------------------------------------------------
    # Offers
    # -----------------------------------------------------------------------

    async def notify_new_offer(self, offer: Offer) -> Notification:
        return await self.create(
            offer.creator_id,
            NT.NEW_OFFER,
            "New offer received",
            f"You received a new offer of {format_brl(offer.budget)} for {offer.estimated_days} days.",
            OfferNotificationData(offer_id=offer.id, chat_room_id=offer.chat_room_id, budget=offer.budget),
        )

    async def notify_offer_accepted(self, offer: Offer, contract: Contract) -> Notification:
        return await self.create(
            offer.brand_id,
            NT.OFFER_ACCEPTED,
            "Offer accepted",
            f"Your offer \"{offer.title}\" was accepted. The contract is now in place.",
            OfferNotificationData(
                offer_id=offer.id, chat_room_id=offer.chat_room_id, contract_id=contract.id
            ),
        )

    async def notify_offer_rejected(self, offer: Offer, reason: str | None = None) -> Notification:
        message = f"Your offer \"{offer.title}\" was rejected."
        if reason:
            message += f" Reason: {reason}"
        return await self.create(
            offer.brand_id,
            NT.OFFER_REJECTED,
            "Offer rejected",
            message,
            OfferNotificationData(offer_id=offer.id, chat_room_id=offer.chat_room_id, reason=reason),
        )

    async def notify_offer_cancelled(self, offer: Offer) -> Notification:
        return await self.create(
            offer.creator_id,
            NT.OFFER_CANCELLED,
            "Offer cancelled",
            f"The offer \"{offer.title}\" was cancelled by the brand.",
            OfferNotificationData(offer_id=offer.id, chat_room_id=offer.chat_room_id),
        )

    # -----------------------------------------------------------------------
    # Contracts
    # -----------------------------------------------------------------------

    async def notify_review_required(self, contract: Contract) -> Notification:
        return await self.create(
            contract.brand_id,
            NT.REVIEW_REQUIRED,
            "Review required",
            f"The contract \"{contract.title}\" was completed. Please review the creator.",
            ContractNotificationData(contract_id=contract.id, offer_id=contract.offer_id),
        )

    async def notify_contract_completed(self, contract: Contract) -> Notification:
        return await self.create(
            contract.creator_id,
            NT.CONTRACT_COMPLETED,
            "Contract completed",
            f"The contract \"{contract.title}\" was completed. Payment will be released after review.",
            ContractNotificationData(contract_id=contract.id, amount=contract.creator_amount),
        )

    async def notify_contract_cancelled(
        self, contract: Contract, reason: str | None = None
    ) -> list[Notification]:
        message = f"The contract \"{contract.title}\" was cancelled."
        if reason:
            message += f" Reason: {reason}"
        data = ContractNotificationData(contract_id=contract.id, reason=reason)
        return [
            await self.create(user_id, NT.CONTRACT_CANCELLED, "Contract cancelled", message, data)
            for user_id in (contract.brand_id, contract.creator_id)
        ]

    async def notify_contract_terminated(
        self, contract: Contract, reason: str | None = None
    ) -> list[Notification]:
        message = f"The contract \"{contract.title}\" was terminated."
        if reason:
            message += f" Reason: {reason}"
        data = ContractNotificationData(contract_id=contract.id, reason=reason)
        return [
            await self.create(user_id, NT.CONTRACT_TERMINATED, "Contract terminated", message, data)
            for user_id in (contract.brand_id, contract.creator_id)
        ]

    async def notify_contract_disputed(
        self, contract: Contract, admin_ids: list[str], reason: str | None = None
    ) -> list[Notification]:
        data = ContractNotificationData(contract_id=contract.id, reason=reason)
        return [
            await self.create(
                admin_id,
                NT.CONTRACT_DISPUTED,
                "Contract disputed",
                f"The contract \"{contract.title}\" was disputed and needs mediation.",
                data,
            )
            for admin_id in admin_ids
        ]

    async def notify_payment_available(self, contract: Contract) -> Notification:
        return await self.create(
            contract.creator_id,
            NT.PAYMENT_AVAILABLE,
            "Payment available",
            f"{format_brl(contract.creator_amount)} from \"{contract.title}\" is available for withdrawal.",
            ContractNotificationData(contract_id=contract.id, amount=contract.creator_amount),
        )

    # -----------------------------------------------------------------------
    # Payments
    # -----------------------------------------------------------------------

    async def notify_payment_confirmed(self, payment: JobPayment) -> Notification:
        return await self.create(
            payment.creator_id,
            NT.CONTRACT_PAYMENT_CONFIRMED,
            "Contract payment confirmed",
            f"The brand's payment of {format_brl(payment.total_amount)} was confirmed. You can start working.",
            PaymentNotificationData(
                payment_id=payment.id,
                contract_id=payment.contract_id,
                amount=payment.total_amount,
                transaction_id=payment.transaction_id,
            ),
        )

    async def notify_payment_failed(self, payment: JobPayment, reason: str) -> Notification:
        return await self.create(
            payment.brand_id,
            NT.PAYMENT_FAILED,
            "Payment failed",
            f"The payment of {format_brl(payment.total_amount)} could not be processed: {reason}",
            PaymentNotificationData(
                payment_id=payment.id,
                contract_id=payment.contract_id,
                amount=payment.total_amount,
                failure_reason=reason,
            ),
        )

    # -----------------------------------------------------------------------
    # Milestones, penalties and suspensions
    # -----------------------------------------------------------------------

    async def notify_timeline_overdue(
        self,
        milestone: CampaignTimeline,
        contract: Contract,
        justification_deadline: datetime,
    ) -> list[Notification]:
        """Warn both parties that a milestone missed its deadline."""
        title = milestone_title(milestone.milestone_type)
        data = MilestoneNotificationData(
            contract_id=contract.id,
            milestone_id=milestone.id,
            milestone_type=milestone.milestone_type,
            deadline=milestone.deadline,
            justification_deadline=justification_deadline,
        )
        creator_note = await self.create(
            contract.creator_id,
            NT.TIMELINE_OVERDUE,
            "Milestone overdue",
            f"The milestone \"{title}\" of \"{contract.title}\" is overdue "
            f"(deadline {_fmt_date(milestone.deadline)}). You have until "
            f"{_fmt_date(justification_deadline)} to justify the delay.",
            data,
        )
        brand_note = await self.create(
            contract.brand_id,
            NT.TIMELINE_OVERDUE,
            "Creator missed a deadline",
            f"The milestone \"{title}\" of \"{contract.title}\" is overdue. "
            f"The creator has 24 hours to justify the delay.",
            data,
        )
        return [creator_note, brand_note]

    async def notify_milestone_penalty(
        self,
        creator_id: str,
        milestone: CampaignTimeline,
        penalty_until: datetime,
        reason: str,
    ) -> Notification:
        return await self.create(
            creator_id,
            NT.MILESTONE_PENALTY,
            "Penalty applied",
            f"{reason}. You cannot receive new invitations until {_fmt_date(penalty_until)}.",
            PenaltyNotificationData(milestone_id=milestone.id, penalty_until=penalty_until, reason=reason),
        )

    async def notify_account_suspended(
        self,
        creator_id: str,
        suspended_until: datetime,
        overdue_count: int,
        reason: str,
    ) -> Notification:
        return await self.create(
            creator_id,
            NT.ACCOUNT_SUSPENDED,
            "Account suspended",
            f"Your account is suspended until {_fmt_date(suspended_until)} "
            f"because {overdue_count} milestones are overdue.",
            SuspensionNotificationData(
                suspended_until=suspended_until, overdue_count=overdue_count, reason=reason
            ),
        )

    async def notify_milestone_extended(self, milestone: CampaignTimeline, contract: Contract) -> Notification:
        return await self.create(
            contract.creator_id,
            NT.MILESTONE_EXTENDED,
            "Deadline extended",
            f"The deadline of \"{milestone_title(milestone.milestone_type)}\" was extended to "
            f"{_fmt_date(milestone.deadline)}.",
            MilestoneNotificationData(
                contract_id=contract.id,
                milestone_id=milestone.id,
                milestone_type=milestone.milestone_type,
                deadline=milestone.deadline,
                extension_days=milestone.extension_days,
            ),
        )

    # -----------------------------------------------------------------------
    # Withdrawals
    # -----------------------------------------------------------------------

    async def notify_withdrawal_completed(self, withdrawal: Withdrawal) -> Notification:
        return await self.create(
            withdrawal.creator_id,
            NT.WITHDRAWAL_COMPLETED,
            "Withdrawal completed",
            f"Your withdrawal of {format_brl(withdrawal.amount)} was processed.",
            WithdrawalNotificationData(
                withdrawal_id=withdrawal.id,
                amount=withdrawal.amount,
                method=withdrawal.withdrawal_method,
                transaction_id=withdrawal.transaction_id,
            ),
        )

    async def notify_withdrawal_failed(self, withdrawal: Withdrawal, reason: str) -> Notification:
        return await self.create(
            withdrawal.creator_id,
            NT.WITHDRAWAL_FAILED,
            "Withdrawal failed",
            f"Your withdrawal of {format_brl(withdrawal.amount)} failed and the amount was "
            f"returned to your balance. Reason: {reason}",
            WithdrawalNotificationData(
                withdrawal_id=withdrawal.id,
                amount=withdrawal.amount,
                method=withdrawal.withdrawal_method,
                failure_reason=reason,
            ),
        )
