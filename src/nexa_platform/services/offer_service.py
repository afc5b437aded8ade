"""Offer lifecycle: create, accept (-> contract), reject, cancel.

Every transition is a conditional update on ``status = 'pending'`` so a
concurrent expiry sweep and a creator accepting at the same time cannot
both win.

These functions are the service-layer API the offer controllers call;
this package ships no HTTP routes for them.
"""

import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from nexa_platform.app.config import Settings, get_settings
from nexa_platform.domain.enums import (
    ContractStatus,
    ContractWorkflowStatus,
    MessageType,
    OfferStatus,
    PaymentStatus,
    WorkflowActor,
)
from nexa_platform.domain.models import ChatRoom, Contract, JobPayment, Message, Offer
from nexa_platform.domain.schemas import CardPaymentData, ChatMessageData
from nexa_platform.domain.timeutils import as_utc, utcnow
from nexa_platform.infra.database import conditional_update
from nexa_platform.infra.socket_relay import SocketRelay
from nexa_platform.services.chat_service import ChatService
from nexa_platform.services.milestone_service import MilestoneService
from nexa_platform.services.notification_service import NotificationService, format_brl
from nexa_platform.services.workflow_state_machine import InvalidTransitionError, state_machine

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class DuplicatePendingOfferError(Exception):
    """Raised when the brand already has a pending offer for this creator."""

    def __init__(self, brand_id: str, creator_id: str):
        self.brand_id = brand_id
        self.creator_id = creator_id
        super().__init__(f"Brand {brand_id} already has a pending offer for creator {creator_id}")


def split_budget(budget, fee_rate: float) -> tuple[Decimal, Decimal]:
    """Return ``(platform_fee, creator_amount)`` for *budget*."""
    total = Decimal(str(budget)).quantize(CENT)
    fee = (total * Decimal(str(fee_rate))).quantize(CENT, rounding=ROUND_HALF_UP)
    return fee, total - fee


class OfferService:
    """Brand/creator offer operations."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings | None = None,
        relay: SocketRelay | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.notifications = NotificationService(db, relay)
        self.chat = ChatService(db, relay)
        self.milestones = MilestoneService(db, self.settings, relay)

    async def get_offer(self, offer_id: str) -> Offer:
        offer = await self.db.get(Offer, offer_id)
        if offer is None:
            raise LookupError(f"Offer {offer_id} not found")
        return offer

    async def _transition(self, offer: Offer, target: OfferStatus, **values) -> None:
        claimed = await conditional_update(
            self.db,
            offer,
            Offer.status == OfferStatus.PENDING.value,
            status=target.value,
            **values,
        )
        if not claimed:
            raise InvalidTransitionError(
                OfferStatus(offer.status), target, "Offer is no longer pending"
            )

    # -----------------------------------------------------------------------
    # Create
    # -----------------------------------------------------------------------

    async def create_offer(
        self,
        brand_id: str,
        creator_id: str,
        chat_room_id: str,
        budget,
        estimated_days: int,
        title: str = "Project offer",
        description: str | None = None,
        requirements: list | None = None,
        expires_at=None,
    ) -> Offer:
        """Create a pending offer and post it into the chat room."""
        if Decimal(str(budget)) <= 0:
            raise ValueError("Offer budget must be positive")
        if estimated_days < 1:
            raise ValueError("Estimated days must be at least 1")

        room = await self.db.get(ChatRoom, chat_room_id)
        if room is None or room.brand_id != brand_id or room.creator_id != creator_id:
            raise LookupError(f"Chat room {chat_room_id} does not belong to this brand/creator pair")

        now = utcnow()
        await self._expire_stale_pending(brand_id, creator_id, now)

        offer = Offer(
            brand_id=brand_id,
            creator_id=creator_id,
            chat_room_id=chat_room_id,
            title=title,
            description=description,
            budget=Decimal(str(budget)).quantize(CENT),
            estimated_days=estimated_days,
            requirements=requirements,
            status=OfferStatus.PENDING.value,
            expires_at=expires_at or now + timedelta(hours=self.settings.offer_ttl_hours),
        )
        self.db.add(offer)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            await self.db.rollback()
            raise DuplicatePendingOfferError(brand_id, creator_id) from exc

        self.db.add(
            Message(
                chat_room_id=chat_room_id,
                sender_id=brand_id,
                message=f"New offer: {format_brl(offer.budget)} for {estimated_days} days",
                message_type=MessageType.OFFER.value,
                offer_data=ChatMessageData(
                    event="offer_created",
                    offer_id=offer.id,
                    budget=offer.budget,
                    estimated_days=estimated_days,
                    expires_at=offer.expires_at,
                ).model_dump(mode="json", exclude_none=True),
                created_at=now,
            )
        )
        room.last_message_at = now
        await self.notifications.notify_new_offer(offer)
        await self.db.commit()

        logger.info(
            "Offer %s created: brand=%s creator=%s budget=%s", offer.id, brand_id, creator_id, offer.budget
        )
        return offer

    async def _expire_stale_pending(self, brand_id: str, creator_id: str, now) -> None:
        """Expire a pending offer for the pair whose window already closed."""
        result = await self.db.execute(
            select(Offer).where(
                and_(
                    Offer.brand_id == brand_id,
                    Offer.creator_id == creator_id,
                    Offer.status == OfferStatus.PENDING.value,
                    Offer.expires_at <= now,
                )
            )
        )
        for stale in result.scalars().all():
            if await conditional_update(
                self.db, stale, Offer.status == OfferStatus.PENDING.value, status=OfferStatus.EXPIRED.value
            ):
                logger.info("Offer %s expired before a new offer for the same pair", stale.id)

    # -----------------------------------------------------------------------
    # Accept / reject / cancel
    # -----------------------------------------------------------------------

    async def accept_offer(
        self,
        offer_id: str,
        creator_id: str,
        payment_data: CardPaymentData | None = None,
    ) -> Contract:
        """Accept a pending offer and create its contract.

        With *payment_data* the contract starts ``pending`` and a pending
        JobPayment is queued for the payment batch; without it the contract
        is treated as pre-funded and starts ``active``.
        """
        offer = await self.get_offer(offer_id)
        if offer.creator_id != creator_id:
            raise PermissionError("Only the invited creator can accept this offer")
        state_machine.validate_offer_transition(offer, OfferStatus.ACCEPTED, WorkflowActor.CREATOR)

        now = utcnow()
        await self._transition(offer, OfferStatus.ACCEPTED, accepted_at=now)

        platform_fee, creator_amount = split_budget(offer.budget, self.settings.platform_fee_rate)
        contract = Contract(
            offer_id=offer.id,
            brand_id=offer.brand_id,
            creator_id=offer.creator_id,
            title=offer.title,
            description=offer.description,
            budget=Decimal(str(offer.budget)),
            estimated_days=offer.estimated_days,
            platform_fee=platform_fee,
            creator_amount=creator_amount,
            status=(ContractStatus.PENDING if payment_data else ContractStatus.ACTIVE).value,
            workflow_status=ContractWorkflowStatus.ACTIVE.value,
            started_at=now,
            expected_completion_at=now + timedelta(days=offer.estimated_days),
        )
        self.db.add(contract)
        await self.db.flush()

        await self.milestones.create_default_milestones(contract)

        if payment_data is not None:
            self.db.add(
                JobPayment(
                    contract_id=contract.id,
                    brand_id=contract.brand_id,
                    creator_id=contract.creator_id,
                    total_amount=contract.budget,
                    platform_fee=platform_fee,
                    creator_amount=creator_amount,
                    payment_method="credit_card",
                    status=PaymentStatus.PENDING.value,
                    payment_data=payment_data.model_dump(mode="json"),
                )
            )

        await self.notifications.notify_offer_accepted(offer, contract)
        await self.chat.send_system_message(
            offer.chat_room_id,
            f"Offer accepted. Contract created with delivery expected on "
            f"{as_utc(contract.expected_completion_at).strftime('%d/%m/%Y')}.",
            ChatMessageData(event="offer_accepted", offer_id=offer.id, contract_id=contract.id),
        )
        await self.db.commit()

        logger.info(
            "Offer %s accepted; contract %s created (fee=%s creator=%s)",
            offer.id, contract.id, platform_fee, creator_amount,
        )
        return contract

    async def reject_offer(self, offer_id: str, creator_id: str, reason: str | None = None) -> Offer:
        offer = await self.get_offer(offer_id)
        if offer.creator_id != creator_id:
            raise PermissionError("Only the invited creator can reject this offer")
        state_machine.validate_offer_transition(offer, OfferStatus.REJECTED, WorkflowActor.CREATOR)

        await self._transition(offer, OfferStatus.REJECTED, rejected_at=utcnow(), rejection_reason=reason)
        await self.notifications.notify_offer_rejected(offer, reason)
        await self.db.commit()

        logger.info("Offer %s rejected by creator %s", offer.id, creator_id)
        return offer

    async def cancel_offer(self, offer_id: str, brand_id: str) -> Offer:
        offer = await self.get_offer(offer_id)
        if offer.brand_id != brand_id:
            raise PermissionError("Only the offering brand can cancel this offer")
        state_machine.validate_offer_transition(offer, OfferStatus.CANCELLED, WorkflowActor.BRAND)

        await self._transition(offer, OfferStatus.CANCELLED)
        await self.notifications.notify_offer_cancelled(offer)
        await self.db.commit()

        logger.info("Offer %s cancelled by brand %s", offer.id, brand_id)
        return offer
