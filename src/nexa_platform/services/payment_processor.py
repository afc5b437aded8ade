"""Batch processor that charges pending contract payments.

Each payment is claimed ``pending -> processing`` and committed before the
gateway is called, so a second batch running at the same time skips it.
The gateway outcome then moves it to ``completed`` or ``failed`` and
updates the contract.

Once the gateway has captured a charge the record is never marked
``failed``: the completed state is committed on its own, notifications
follow as best-effort, and a completion that cannot be saved leaves the
record ``processing`` with its transaction id for reconciliation.
"""

import logging

from pydantic import ValidationError
from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from nexa_platform.app.config import Settings, get_settings
from nexa_platform.domain.enums import ContractStatus, ContractWorkflowStatus, PaymentStatus
from nexa_platform.domain.models import Contract, JobPayment
from nexa_platform.domain.schemas import BatchSummary, CardPaymentData
from nexa_platform.domain.timeutils import utcnow
from nexa_platform.infra.database import conditional_update
from nexa_platform.infra.pagarme_client import GatewayResult, PaymentGatewayError
from nexa_platform.infra.socket_relay import SocketRelay
from nexa_platform.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

# Contract states a successful charge may activate
FUNDABLE_STATUSES = [ContractStatus.PENDING.value, ContractStatus.PAYMENT_FAILED.value]

# Contract states a failed charge may mark as unfunded
UNFUNDED_STATUSES = [ContractStatus.PENDING.value, ContractStatus.ACTIVE.value]


class CompletionNotRecordedError(Exception):
    """The gateway moved the money but the completed state was not saved."""

    def __init__(self, record_id: str, transaction_id: str | None):
        self.record_id = record_id
        self.transaction_id = transaction_id
        super().__init__(f"{record_id} paid (transaction={transaction_id}) but completion was not saved")


async def hold_for_reconciliation(db: AsyncSession, model, record_id: str, transaction_id: str | None) -> None:
    """Store the gateway transaction id on a row still in ``processing``."""
    try:
        await db.execute(
            update(model)
            .where(and_(model.id == record_id, model.status == "processing"))
            .values(transaction_id=transaction_id)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        logger.exception("Could not store transaction %s on %s %s", transaction_id, model.__tablename__, record_id)
        await db.rollback()
    logger.error(
        "%s %s paid (transaction=%s) but completion was not saved; left processing for reconciliation",
        model.__tablename__, record_id, transaction_id,
    )


class PaymentProcessor:
    """Charges one JobPayment through the payment gateway."""

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

    async def load(self, payment_id: str) -> JobPayment | None:
        result = await self.db.execute(
            select(JobPayment)
            .where(JobPayment.id == payment_id)
            .options(selectinload(JobPayment.contract))
        )
        return result.scalar_one_or_none()

    async def process(self, payment: JobPayment) -> bool | None:
        """Charge *payment*. True on success, False on failure, None if skipped."""
        claimed = await conditional_update(
            self.db,
            payment,
            JobPayment.status == PaymentStatus.PENDING.value,
            status=PaymentStatus.PROCESSING.value,
        )
        if not claimed:
            logger.info("Payment %s already claimed; skipping", payment.id)
            return None
        await self.db.commit()

        try:
            card = CardPaymentData.model_validate(payment.payment_data or {})
            result = await self.gateway.create_order(
                contract_id=payment.contract_id,
                amount=payment.total_amount,
                customer_id=card.customer_id,
                card_id=card.card_id,
                description=f"Contract: {payment.contract.title}" if payment.contract else "Contract payment",
                installments=card.installments,
                statement_descriptor=card.statement_descriptor,
            )
            if not result.success:
                raise PaymentGatewayError(result.message or f"Payment declined (status={result.status})")
        except ValidationError as exc:
            await self.fail(payment, f"Invalid payment data: {exc.error_count()} error(s)")
            return False
        except PaymentGatewayError as exc:
            await self.fail(payment, str(exc))
            return False

        payment_id = payment.id
        try:
            await self._complete(payment, result)
        except Exception as exc:
            await self.db.rollback()
            await hold_for_reconciliation(self.db, JobPayment, payment_id, result.transaction_id)
            raise CompletionNotRecordedError(payment_id, result.transaction_id) from exc

        try:
            await self.notifications.notify_payment_confirmed(payment)
            await self.db.commit()
        except Exception:
            logger.exception("Payment %s completed but the confirmation could not be sent", payment_id)
            await self.db.rollback()
        return True

    async def _complete(self, payment: JobPayment, result: GatewayResult) -> None:
        """Commit the captured charge together with the contract activation."""
        now = utcnow()
        moved = await conditional_update(
            self.db,
            payment,
            JobPayment.status == PaymentStatus.PROCESSING.value,
            status=PaymentStatus.COMPLETED.value,
            transaction_id=result.transaction_id,
            paid_at=now,
            processed_at=now,
            failure_reason=None,
        )
        if not moved:
            raise RuntimeError(f"Payment {payment.id} left processing during the charge")

        contract = payment.contract
        if contract is not None:
            activated = await conditional_update(
                self.db,
                contract,
                Contract.status.in_(FUNDABLE_STATUSES),
                status=ContractStatus.ACTIVE.value,
                workflow_status=ContractWorkflowStatus.ACTIVE.value,
            )
            if activated:
                logger.info("Contract %s activated by payment %s", contract.id, payment.id)

        await self.db.commit()
        logger.info("Payment %s completed: transaction=%s", payment.id, result.transaction_id)

    async def fail(self, payment: JobPayment, reason: str) -> None:
        """Mark a processing payment failed and flag its contract unfunded.

        Payments that already carry a gateway transaction are left alone.
        """
        moved = await conditional_update(
            self.db,
            payment,
            JobPayment.status == PaymentStatus.PROCESSING.value,
            JobPayment.transaction_id.is_(None),
            status=PaymentStatus.FAILED.value,
            failure_reason=reason,
            processed_at=utcnow(),
        )
        if not moved:
            return

        contract = payment.contract
        if contract is not None:
            await conditional_update(
                self.db,
                contract,
                Contract.status.in_(UNFUNDED_STATUSES),
                status=ContractStatus.PAYMENT_FAILED.value,
                workflow_status=ContractWorkflowStatus.PAYMENT_FAILED.value,
            )

        await self.notifications.notify_payment_failed(payment, reason)
        await self.db.commit()
        logger.warning("Payment %s failed: %s", payment.id, reason)


async def process_pending_payments(
    db: AsyncSession,
    gateway,
    settings: Settings | None = None,
    relay: SocketRelay | None = None,
) -> BatchSummary:
    """Run ``process()`` over every pending payment."""
    processor = PaymentProcessor(db, gateway, settings=settings, relay=relay)

    result = await db.execute(
        select(JobPayment.id)
        .where(JobPayment.status == PaymentStatus.PENDING.value)
        .order_by(JobPayment.created_at)
    )
    payment_ids = list(result.scalars().all())
    logger.info("Payment batch: %d pending payments", len(payment_ids))

    summary = BatchSummary()
    for payment_id in payment_ids:
        try:
            payment = await processor.load(payment_id)
            if payment is None:
                continue
            outcome = await processor.process(payment)
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
            logger.exception("Payment %s failed with error", payment_id)
            await db.rollback()
            try:
                payment = await processor.load(payment_id)
                if (
                    payment is not None
                    and payment.status == PaymentStatus.PROCESSING.value
                    and payment.transaction_id is None
                ):
                    await processor.fail(payment, str(exc))
            except Exception:
                logger.exception("Could not mark payment %s as failed", payment_id)
                await db.rollback()

    logger.info("Payment batch done: processed=%d failed=%d", summary.processed, summary.failed)
    return summary
