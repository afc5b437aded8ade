"""Creator withdrawals: request and batch payout.

Requesting a withdrawal moves the amount out of ``available_balance``
immediately. The batch then pays it out; success adds it to
``total_withdrawn`` and failure refunds it to ``available_balance``. A
payout the gateway accepted is never refunded, even when saving the
completed state fails.
"""

import logging
from decimal import Decimal

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nexa_platform.app.config import Settings, get_settings
from nexa_platform.domain.enums import WithdrawalMethod, WithdrawalStatus
from nexa_platform.domain.models import BankAccount, Withdrawal
from nexa_platform.domain.schemas import BankTransferDetails, BatchSummary, parse_withdrawal_details
from nexa_platform.domain.timeutils import utcnow
from nexa_platform.infra.database import conditional_update
from nexa_platform.infra.pagarme_client import PaymentGatewayError
from nexa_platform.infra.socket_relay import SocketRelay
from nexa_platform.services.contract_service import get_or_create_balance
from nexa_platform.services.notification_service import NotificationService
from nexa_platform.services.payment_processor import CompletionNotRecordedError, hold_for_reconciliation

logger = logging.getLogger(__name__)


class InsufficientBalanceError(Exception):
    """Raised when a withdrawal exceeds the creator's available balance."""


async def get_bank_account(db: AsyncSession, user_id: str) -> BankAccount | None:
    """Return the creator's current (most recently updated) bank account."""
    result = await db.execute(
        select(BankAccount)
        .where(BankAccount.user_id == user_id)
        .order_by(BankAccount.updated_at.desc(), BankAccount.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def request_withdrawal(
    db: AsyncSession,
    creator_id: str,
    amount,
    method: WithdrawalMethod | str,
    details: dict | None = None,
    settings: Settings | None = None,
) -> Withdrawal:
    """Create a pending withdrawal and reserve the amount from the balance.

    Bank transfers without explicit *details* snapshot the creator's
    current bank account.
    """
    settings = settings or get_settings()
    method = WithdrawalMethod(method)
    amount = Decimal(str(amount)).quantize(Decimal("0.01"))
    if amount <= 0:
        raise ValueError("Withdrawal amount must be positive")
    if amount > Decimal(str(settings.withdrawal_max_amount)):
        raise ValueError(f"Withdrawal amount exceeds the maximum of {settings.withdrawal_max_amount}")

    if details is None and method == WithdrawalMethod.BANK_TRANSFER:
        account = await get_bank_account(db, creator_id)
        if account is None:
            raise LookupError(f"Creator {creator_id} has no bank account")
        details = BankTransferDetails(
            bank_code=account.bank_code,
            agencia=account.agencia,
            agencia_dv=account.agencia_dv,
            conta=account.conta,
            conta_dv=account.conta_dv,
            cpf=account.cpf,
            name=account.name,
            recipient_id=account.recipient_id,
        ).model_dump(mode="json")
    elif details is not None:
        details = parse_withdrawal_details(method.value, details).model_dump(mode="json")

    balance = await get_or_create_balance(db, creator_id)
    available = Decimal(str(balance.available_balance))
    if amount > available:
        raise InsufficientBalanceError(f"Available balance {available} is lower than {amount}")
    balance.available_balance = available - amount

    withdrawal = Withdrawal(
        creator_id=creator_id,
        amount=amount,
        withdrawal_method=method.value,
        withdrawal_details=details,
        status=WithdrawalStatus.PENDING.value,
    )
    db.add(withdrawal)
    await db.commit()

    logger.info("Withdrawal %s requested: creator=%s amount=%s method=%s", withdrawal.id, creator_id, amount, method.value)
    return withdrawal


class WithdrawalProcessor:
    """Pays out one Withdrawal through the payment gateway."""

    def __init__(
        self,
        db: AsyncSession,
        gateway,
        settings: Settings | None = None,
        relay: SocketRelay | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.notifications = NotificationService(db, relay)

    async def _recipient_id(self, withdrawal: Withdrawal, details) -> str | None:
        if details is not None and details.recipient_id:
            return details.recipient_id
        account = await get_bank_account(self.db, withdrawal.creator_id)
        return account.recipient_id if account else None

    async def process(self, withdrawal: Withdrawal) -> bool | None:
        """Pay out *withdrawal*. True on success, False on failure, None if skipped."""
        claimed = await conditional_update(
            self.db,
            withdrawal,
            Withdrawal.status == WithdrawalStatus.PENDING.value,
            status=WithdrawalStatus.PROCESSING.value,
        )
        if not claimed:
            logger.info("Withdrawal %s already claimed; skipping", withdrawal.id)
            return None
        await self.db.commit()

        try:
            details = parse_withdrawal_details(withdrawal.withdrawal_method, withdrawal.withdrawal_details)
            result = await self.gateway.create_withdrawal(
                recipient_id=await self._recipient_id(withdrawal, details),
                amount=withdrawal.amount,
                withdrawal_id=withdrawal.id,
                method=withdrawal.withdrawal_method,
            )
            if not result.success:
                raise PaymentGatewayError(result.message or f"Withdrawal rejected (status={result.status})")
        except ValidationError as exc:
            await self.fail(withdrawal, f"Invalid withdrawal details: {exc.error_count()} error(s)")
            return False
        except PaymentGatewayError as exc:
            await self.fail(withdrawal, str(exc))
            return False

        withdrawal_id = withdrawal.id
        try:
            await self._complete(withdrawal, result.transaction_id)
        except Exception as exc:
            await self.db.rollback()
            await hold_for_reconciliation(self.db, Withdrawal, withdrawal_id, result.transaction_id)
            raise CompletionNotRecordedError(withdrawal_id, result.transaction_id) from exc

        try:
            await self.notifications.notify_withdrawal_completed(withdrawal)
            await self.db.commit()
        except Exception:
            logger.exception("Withdrawal %s completed but the notification could not be sent", withdrawal_id)
            await self.db.rollback()
        return True

    async def _complete(self, withdrawal: Withdrawal, transaction_id: str | None) -> None:
        """Commit the payout together with the ``total_withdrawn`` increase."""
        moved = await conditional_update(
            self.db,
            withdrawal,
            Withdrawal.status == WithdrawalStatus.PROCESSING.value,
            status=WithdrawalStatus.COMPLETED.value,
            transaction_id=transaction_id,
            processed_at=utcnow(),
            failure_reason=None,
        )
        if not moved:
            raise RuntimeError(f"Withdrawal {withdrawal.id} left processing during the payout")
        balance = await get_or_create_balance(self.db, withdrawal.creator_id)
        balance.total_withdrawn = Decimal(str(balance.total_withdrawn)) + Decimal(str(withdrawal.amount))

        await self.db.commit()
        logger.info("Withdrawal %s completed: transaction=%s", withdrawal.id, transaction_id)

    async def fail(self, withdrawal: Withdrawal, reason: str) -> None:
        """Mark a processing withdrawal failed and refund its amount.

        Withdrawals that already carry a gateway transaction are left alone.
        """
        moved = await conditional_update(
            self.db,
            withdrawal,
            Withdrawal.status == WithdrawalStatus.PROCESSING.value,
            Withdrawal.transaction_id.is_(None),
            status=WithdrawalStatus.FAILED.value,
            failure_reason=reason,
        )
        if not moved:
            return
        balance = await get_or_create_balance(self.db, withdrawal.creator_id)
        balance.available_balance = Decimal(str(balance.available_balance)) + Decimal(str(withdrawal.amount))

        await self.notifications.notify_withdrawal_failed(withdrawal, reason)
        await self.db.commit()
        logger.warning("Withdrawal %s failed and was refunded: %s", withdrawal.id, reason)


async def process_pending_withdrawals(
    db: AsyncSession,
    gateway,
    settings: Settings | None = None,
    relay: SocketRelay | None = None,
) -> BatchSummary:
    """Run ``process()`` over every pending withdrawal."""
    processor = WithdrawalProcessor(db, gateway, settings=settings, relay=relay)

    result = await db.execute(
        select(Withdrawal.id)
        .where(Withdrawal.status == WithdrawalStatus.PENDING.value)
        .order_by(Withdrawal.created_at)
    )
    withdrawal_ids = list(result.scalars().all())
    logger.info("Withdrawal batch: %d pending withdrawals", len(withdrawal_ids))

    summary = BatchSummary()
    for withdrawal_id in withdrawal_ids:
        try:
            withdrawal = await db.get(Withdrawal, withdrawal_id)
            if withdrawal is None:
                continue
            outcome = await processor.process(withdrawal)
            if outcome is None:
                continue
            if outcome:
                summary.processed += 1
            else:
                summary.failed += 1
        except CompletionNotRecordedError:
            summary.failed += 1
        except Exception as exc:
            summary.failed += 1
            logger.exception("Withdrawal %s failed with error", withdrawal_id)
            await db.rollback()
            try:
                withdrawal = await db.get(Withdrawal, withdrawal_id)
                if (
                    withdrawal is not None
                    and withdrawal.status == WithdrawalStatus.PROCESSING.value
                    and withdrawal.transaction_id is None
                ):
                    await processor.fail(withdrawal, str(exc))
            except Exception:
                logger.exception("Could not mark withdrawal %s as failed", withdrawal_id)
                await db.rollback()

    logger.info("Withdrawal batch done: processed=%d failed=%d", summary.processed, summary.failed)
    return summary
