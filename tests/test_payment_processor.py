"""Tests for the contract payment batch."""

from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy import select

from nexa_platform.domain.enums import (
    ContractStatus,
    ContractWorkflowStatus,
    NotificationType,
    PaymentStatus,
)
from nexa_platform.domain.models import Contract, JobPayment, Notification
from nexa_platform.infra.pagarme_client import GatewayResult, PaymentGatewayError, SimulatedGateway
from nexa_platform.services.notification_service import NotificationService
from nexa_platform.services.payment_processor import PaymentProcessor, process_pending_payments


async def _fresh(db, model, obj_id):
    result = await db.execute(
        select(model).where(model.id == obj_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


def _gateway(outcomes: dict):
    """Gateway mock whose create_order outcome is chosen per contract id."""
    async def _create_order(*, contract_id, **kwargs):
        outcome = outcomes[contract_id]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    gateway = MagicMock()
    gateway.create_order = AsyncMock(side_effect=_create_order)
    return gateway


class TestProcessPendingPayments:

    async def test_mixed_batch_counts_successes_and_failures(
        self, db_session, settings, make_contract, make_payment
    ):
        contracts = [await make_contract(status=ContractStatus.PENDING.value) for _ in range(4)]
        payments = [await make_payment(c) for c in contracts]
        await db_session.commit()
        ids = [p.id for p in payments]
        contract_ids = [c.id for c in contracts]

        gateway = _gateway({
            contract_ids[0]: GatewayResult(success=True, transaction_id="or_1", status="paid"),
            contract_ids[1]: GatewayResult(success=False, status="failed", message="Card declined"),
            contract_ids[2]: PaymentGatewayError("Gateway timed out after 30.0s"),
            contract_ids[3]: RuntimeError("unexpected"),
        })

        summary = await process_pending_payments(db_session, gateway, settings=settings)

        assert summary.processed == 1
        assert summary.failed == 3
        assert gateway.create_order.await_count == 4

        paid = await _fresh(db_session, JobPayment, ids[0])
        assert paid.status == PaymentStatus.COMPLETED.value
        assert paid.transaction_id == "or_1"
        assert paid.paid_at is not None

        declined = await _fresh(db_session, JobPayment, ids[1])
        assert declined.status == PaymentStatus.FAILED.value
        assert declined.failure_reason == "Card declined"

        timed_out = await _fresh(db_session, JobPayment, ids[2])
        assert timed_out.status == PaymentStatus.FAILED.value
        assert "timed out" in timed_out.failure_reason

        crashed = await _fresh(db_session, JobPayment, ids[3])
        assert crashed.status == PaymentStatus.FAILED.value
        assert crashed.failure_reason == "unexpected"

        active = await _fresh(db_session, Contract, contract_ids[0])
        assert active.status == ContractStatus.ACTIVE.value
        for contract_id in contract_ids[1:]:
            contract = await _fresh(db_session, Contract, contract_id)
            assert contract.status == ContractStatus.PAYMENT_FAILED.value
            assert contract.workflow_status == ContractWorkflowStatus.PAYMENT_FAILED.value

    async def test_only_pending_payments_are_processed(
        self, db_session, settings, make_contract, make_payment
    ):
        contract = await make_contract()
        await make_payment(contract, status=PaymentStatus.COMPLETED.value)
        gateway = _gateway({})

        summary = await process_pending_payments(db_session, gateway, settings=settings)

        assert summary.processed == 0
        assert summary.failed == 0
        gateway.create_order.assert_not_awaited()

    async def test_second_batch_does_not_charge_again(
        self, db_session, settings, make_contract, make_payment
    ):
        contract = await make_contract(status=ContractStatus.PENDING.value)
        await make_payment(contract)

        gateway = SimulatedGateway()
        first = await process_pending_payments(db_session, gateway, settings=settings)
        second = await process_pending_payments(db_session, gateway, settings=settings)

        assert first.processed == 1
        assert second.processed == 0


class TestPaymentProcessor:

    async def test_claimed_payment_is_skipped(self, db_session, settings, make_contract, make_payment):
        contract = await make_contract()
        payment = await make_payment(contract, status=PaymentStatus.PROCESSING.value)
        gateway = _gateway({})

        outcome = await PaymentProcessor(db_session, gateway, settings).process(payment)

        assert outcome is None
        gateway.create_order.assert_not_awaited()

    async def test_invalid_card_data_fails_without_gateway_call(
        self, db_session, settings, make_contract, make_payment
    ):
        contract = await make_contract(status=ContractStatus.PENDING.value)
        payment = await make_payment(contract, payment_data={"customer_id": "cus_1"})
        gateway = _gateway({})
        processor = PaymentProcessor(db_session, gateway, settings)

        outcome = await processor.process(await processor.load(payment.id))

        assert outcome is False
        assert payment.status == PaymentStatus.FAILED.value
        assert payment.failure_reason.startswith("Invalid payment data")
        gateway.create_order.assert_not_awaited()

    async def test_success_notifies_creator_and_failure_notifies_brand(
        self, db_session, settings, make_contract, make_payment
    ):
        ok_contract = await make_contract(status=ContractStatus.PENDING.value)
        bad_contract = await make_contract(status=ContractStatus.PENDING.value)
        ok_payment = await make_payment(ok_contract)
        bad_payment = await make_payment(bad_contract)

        processor = PaymentProcessor(db_session, SimulatedGateway(), settings)
        assert await processor.process(await processor.load(ok_payment.id)) is True
        processor = PaymentProcessor(db_session, SimulatedGateway(decline=True), settings)
        assert await processor.process(await processor.load(bad_payment.id)) is False

        creator_types = (await db_session.execute(
            select(Notification.type).where(Notification.user_id == ok_contract.creator_id)
        )).scalars().all()
        brand_types = (await db_session.execute(
            select(Notification.type).where(Notification.user_id == bad_contract.brand_id)
        )).scalars().all()
        assert creator_types == [NotificationType.CONTRACT_PAYMENT_CONFIRMED.value]
        assert brand_types == [NotificationType.PAYMENT_FAILED.value]


class TestCapturedChargeIsNeverFailed:

    async def test_confirmation_error_keeps_payment_completed(
        self, db_session, settings, make_contract, make_payment
    ):
        contract = await make_contract(status=ContractStatus.PENDING.value)
        payment = await make_payment(contract)
        await db_session.commit()
        payment_id, contract_id = payment.id, contract.id

        with patch.object(
            NotificationService, "notify_payment_confirmed",
            AsyncMock(side_effect=RuntimeError("relay down")),
        ):
            summary = await process_pending_payments(db_session, SimulatedGateway(), settings=settings)

        assert summary.processed == 1
        assert summary.failed == 0
        paid = await _fresh(db_session, JobPayment, payment_id)
        assert paid.status == PaymentStatus.COMPLETED.value
        assert paid.transaction_id is not None
        assert paid.failure_reason is None
        active = await _fresh(db_session, Contract, contract_id)
        assert active.status == ContractStatus.ACTIVE.value
        assert active.workflow_status == ContractWorkflowStatus.ACTIVE.value

    async def test_unsaved_completion_is_held_for_reconciliation(
        self, db_session, settings, make_contract, make_payment
    ):
        contract = await make_contract(status=ContractStatus.PENDING.value)
        payment = await make_payment(contract)
        await db_session.commit()
        payment_id, contract_id, brand_id = payment.id, contract.id, contract.brand_id
        gateway = _gateway({contract_id: GatewayResult(success=True, transaction_id="or_held", status="paid")})

        with patch.object(PaymentProcessor, "_complete", AsyncMock(side_effect=RuntimeError("disk I/O error"))):
            summary = await process_pending_payments(db_session, gateway, settings=settings)

        assert summary.processed == 0
        assert summary.failed == 1
        held = await _fresh(db_session, JobPayment, payment_id)
        assert held.status == PaymentStatus.PROCESSING.value
        assert held.transaction_id == "or_held"
        assert held.failure_reason is None
        untouched = await _fresh(db_session, Contract, contract_id)
        assert untouched.status == ContractStatus.PENDING.value

        brand_types = (await db_session.execute(
            select(Notification.type).where(Notification.user_id == brand_id)
        )).scalars().all()
        assert NotificationType.PAYMENT_FAILED.value not in brand_types

    async def test_fail_ignores_payment_with_transaction(
        self, db_session, settings, make_contract, make_payment
    ):
        contract = await make_contract(status=ContractStatus.PENDING.value)
        payment = await make_payment(contract, status=PaymentStatus.PROCESSING.value)
        payment.transaction_id = "or_paid"
        await db_session.flush()
        processor = PaymentProcessor(db_session, SimulatedGateway(), settings)

        await processor.fail(await processor.load(payment.id), "late error")

        assert payment.status == PaymentStatus.PROCESSING.value
        assert payment.failure_reason is None
        assert contract.status == ContractStatus.PENDING.value
