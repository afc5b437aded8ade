"""Contract lifecycle after an offer is accepted.

This is the service-layer API the contract controllers call; this package
ships no HTTP routes for it.
"""

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from nexa_platform.app.config import Settings, get_settings
from nexa_platform.domain.enums import (
    ContractStatus,
    ContractWorkflowStatus,
    UserRole,
    WorkflowActor,
)
from nexa_platform.domain.models import Contract, CreatorBalance, User
from nexa_platform.domain.schemas import ChatMessageData
from nexa_platform.domain.timeutils import utcnow
from nexa_platform.infra.database import conditional_update
from nexa_platform.infra.socket_relay import SocketRelay
from nexa_platform.services.chat_service import ChatService
from nexa_platform.services.notification_service import NotificationService
from nexa_platform.services.workflow_state_machine import InvalidTransitionError, state_machine

logger = logging.getLogger(__name__)

C = ContractStatus
W = ContractWorkflowStatus


async def get_or_create_balance(db: AsyncSession, creator_id: str) -> CreatorBalance:
    result = await db.execute(select(CreatorBalance).where(CreatorBalance.creator_id == creator_id))
    balance = result.scalar_one_or_none()
    if balance is None:
        balance = CreatorBalance(
            creator_id=creator_id,
            available_balance=Decimal("0"),
            pending_balance=Decimal("0"),
            total_earned=Decimal("0"),
            total_withdrawn=Decimal("0"),
        )
        db.add(balance)
        await db.flush()
    return balance


class ContractService:
    """Complete, cancel, terminate, dispute and settle contracts."""

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

    async def get_contract(self, contract_id: str) -> Contract:
        result = await self.db.execute(
            select(Contract).where(Contract.id == contract_id).options(selectinload(Contract.offer))
        )
        contract = result.scalar_one_or_none()
        if contract is None:
            raise LookupError(f"Contract {contract_id} not found")
        return contract

    async def _actor(self, contract: Contract, user_id: str) -> WorkflowActor:
        if user_id == contract.brand_id:
            return WorkflowActor.BRAND
        if user_id == contract.creator_id:
            return WorkflowActor.CREATOR
        user = await self.db.get(User, user_id)
        if user is not None and user.role == UserRole.ADMIN.value:
            return WorkflowActor.ADMIN
        raise PermissionError(f"User {user_id} cannot act on contract {contract.id}")

    async def _transition(
        self,
        contract: Contract,
        target: ContractStatus,
        workflow: ContractWorkflowStatus | None = None,
        **values,
    ) -> None:
        current = contract.status
        if workflow is not None:
            values["workflow_status"] = workflow.value
        claimed = await conditional_update(
            self.db,
            contract,
            Contract.status == current,
            status=target.value,
            **values,
        )
        if not claimed:
            raise InvalidTransitionError(C(current), target, "Contract was modified concurrently")

    async def _post_to_chat(self, contract: Contract, message: str, event: str) -> None:
        if contract.offer is None:
            return
        try:
            await self.chat.send_system_message(
                contract.offer.chat_room_id,
                message,
                ChatMessageData(event=event, contract_id=contract.id, offer_id=contract.offer_id),
            )
        except LookupError:
            logger.warning("Chat room missing for contract %s; system message skipped", contract.id)

    # -----------------------------------------------------------------------
    # Status transitions
    # -----------------------------------------------------------------------

    async def complete_contract(self, contract_id: str, user_id: str) -> Contract:
        """Mark the work delivered; the brand must now review."""
        contract = await self.get_contract(contract_id)
        actor = await self._actor(contract, user_id)
        state_machine.validate_contract_transition(contract, C.COMPLETED, actor)
        state_machine.validate_workflow_transition(contract, W.WAITING_REVIEW)

        await self._transition(contract, C.COMPLETED, W.WAITING_REVIEW, completed_at=utcnow())
        await self.notifications.notify_review_required(contract)
        await self.notifications.notify_contract_completed(contract)
        await self._post_to_chat(
            contract, "Contract completed. Waiting for the brand's review.", "contract_completed"
        )
        await self.db.commit()

        logger.info("Contract %s completed by %s", contract.id, actor.value)
        return contract

    async def cancel_contract(self, contract_id: str, user_id: str, reason: str | None = None) -> Contract:
        contract = await self.get_contract(contract_id)
        actor = await self._actor(contract, user_id)
        state_machine.validate_contract_transition(contract, C.CANCELLED, actor)

        await self._transition(
            contract, C.CANCELLED, cancelled_at=utcnow(), cancellation_reason=reason
        )
        await self.notifications.notify_contract_cancelled(contract, reason)
        await self.db.commit()

        logger.info("Contract %s cancelled by %s: %s", contract.id, actor.value, reason)
        return contract

    async def terminate_contract(self, contract_id: str, brand_id: str, reason: str | None = None) -> Contract:
        contract = await self.get_contract(contract_id)
        if brand_id != contract.brand_id:
            raise PermissionError("Only the brand can terminate a contract")
        state_machine.validate_contract_transition(contract, C.TERMINATED, WorkflowActor.BRAND)
        state_machine.validate_workflow_transition(contract, W.TERMINATED)

        await self._transition(
            contract, C.TERMINATED, W.TERMINATED, cancelled_at=utcnow(), cancellation_reason=reason
        )
        await self.notifications.notify_contract_terminated(contract, reason)
        await self._post_to_chat(contract, "The brand terminated this contract.", "contract_terminated")
        await self.db.commit()

        logger.info("Contract %s terminated by brand %s", contract.id, brand_id)
        return contract

    async def dispute_contract(self, contract_id: str, user_id: str, reason: str | None = None) -> Contract:
        contract = await self.get_contract(contract_id)
        actor = await self._actor(contract, user_id)
        state_machine.validate_contract_transition(contract, C.DISPUTED, actor)

        await self._transition(contract, C.DISPUTED)
        result = await self.db.execute(select(User.id).where(User.role == UserRole.ADMIN.value))
        admin_ids = list(result.scalars().all())
        await self.notifications.notify_contract_disputed(contract, admin_ids, reason)
        await self.db.commit()

        logger.info("Contract %s disputed by %s (%d admins notified)", contract.id, actor.value, len(admin_ids))
        return contract

    # -----------------------------------------------------------------------
    # Settlement
    # -----------------------------------------------------------------------

    async def _move_workflow(self, contract: Contract, target: ContractWorkflowStatus) -> None:
        state_machine.validate_workflow_transition(contract, target)
        current = contract.workflow_status
        claimed = await conditional_update(
            self.db, contract, Contract.workflow_status == current, workflow_status=target.value
        )
        if not claimed:
            raise InvalidTransitionError(W(current), target, "Contract was modified concurrently")

    async def mark_payment_available(self, contract_id: str) -> Contract:
        """Release the creator's share into their available balance."""
        contract = await self.get_contract(contract_id)
        await self._move_workflow(contract, W.PAYMENT_AVAILABLE)

        balance = await get_or_create_balance(self.db, contract.creator_id)
        amount = Decimal(str(contract.creator_amount))
        balance.available_balance = Decimal(str(balance.available_balance)) + amount
        balance.total_earned = Decimal(str(balance.total_earned)) + amount

        await self.notifications.notify_payment_available(contract)
        await self.db.commit()

        logger.info("Contract %s payment available: %s credited to %s", contract.id, amount, contract.creator_id)
        return contract

    async def mark_payment_withdrawn(self, contract_id: str) -> Contract:
        contract = await self.get_contract(contract_id)
        await self._move_workflow(contract, W.PAYMENT_WITHDRAWN)
        await self.db.commit()

        logger.info("Contract %s payment withdrawn", contract.id)
        return contract
