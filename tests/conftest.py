"""Shared test infrastructure for the Nexa platform test suite.

Provides:
- db_session: async SQLite session on a per-test database file
- other_session / commit_before_claim: a concurrent worker for lost-claim tests
- settings: Settings with e-mail disabled and default thresholds
- make_user / make_chat_room / make_offer / make_contract / make_milestone
- make_bank_account / make_withdrawal / make_payment / make_balance
"""

import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from nexa_platform.infra.database import Base, conditional_update

import nexa_platform.domain.models  # noqa: F401

from nexa_platform.app.config import Settings
from nexa_platform.domain.enums import (
    ContractStatus,
    ContractWorkflowStatus,
    MilestoneStatus,
    MilestoneType,
    OfferStatus,
    PaymentStatus,
    UserRole,
    WithdrawalStatus,
)
from nexa_platform.domain.models import (
    BankAccount,
    CampaignTimeline,
    ChatRoom,
    Contract,
    CreatorBalance,
    JobPayment,
    Offer,
    User,
    Withdrawal,
)
from nexa_platform.domain.timeutils import utcnow


# ---------------------------------------------------------------------------
# Database session fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def engine(tmp_path):
    """Async SQLite engine on a per-test database file with all tables created.

    A file (not ``:memory:``) so a second session can see committed rows.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'nexa_test.db'}",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """Session used by the code under test; rolled back on teardown."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def other_session(session_factory):
    """A second session on the same database, acting as a concurrent worker."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def commit_before_claim(other_session):
    """Commit *statement* from ``other_session`` right before a claim runs.

    Patches ``conditional_update`` in *module* so the first claim on an
    instance of *target* (any model when None) sees the conflicting row
    state another worker just committed.

    Usage:
        with commit_before_claim("nexa_platform.services.deadline_monitor", stmt, target=User):
            await monitor.run()
    """
    def _install(module: str, statement, target=None):
        fired = False

        async def _claim(db, obj, *conditions, **values):
            nonlocal fired
            if not fired and (target is None or isinstance(obj, target)):
                fired = True
                await other_session.execute(statement)
                await other_session.commit()
            return await conditional_update(db, obj, *conditions, **values)

        return patch(f"{module}.conditional_update", new=_claim)

    return _install


@pytest.fixture
def settings():
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        sendgrid_api_key="",
        socket_relay_url="",
        pagarme_secret_key="",
        pagarme_simulation_mode=False,
    )


# ---------------------------------------------------------------------------
# Users and chat
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user(db_session):
    """Factory that creates a User row.

    Usage:
        creator = await make_user(role="creator")
    """
    async def _factory(
        role: str = UserRole.CREATOR.value,
        name: str | None = None,
        email: str | None = None,
        **fields,
    ) -> User:
        suffix = uuid.uuid4().hex[:8]
        user = User(
            id=str(uuid.uuid4()),
            name=name or f"Test {role.capitalize()} {suffix}",
            email=email or f"{role}-{suffix}@test.com",
            role=role,
            **fields,
        )
        db_session.add(user)
        await db_session.flush()
        return user

    return _factory


@pytest.fixture
def make_chat_room(db_session):
    async def _factory(brand: User, creator: User) -> ChatRoom:
        room = ChatRoom(
            id=str(uuid.uuid4()),
            room_id=f"room_{uuid.uuid4().hex[:12]}",
            brand_id=brand.id,
            creator_id=creator.id,
        )
        db_session.add(room)
        await db_session.flush()
        return room

    return _factory


# ---------------------------------------------------------------------------
# Offer -> Contract -> Milestones
# ---------------------------------------------------------------------------

@pytest.fixture
def make_offer(db_session, make_user, make_chat_room):
    """Factory that creates a pending Offer (and its parties/room if omitted).

    Usage:
        offer = await make_offer(expires_at=utcnow() - timedelta(hours=1))
    """
    async def _factory(
        brand: User | None = None,
        creator: User | None = None,
        status: str = OfferStatus.PENDING.value,
        budget=Decimal("1000.00"),
        estimated_days: int = 14,
        expires_at=None,
        title: str = "Unboxing video",
    ) -> Offer:
        brand = brand or await make_user(role=UserRole.BRAND.value)
        creator = creator or await make_user(role=UserRole.CREATOR.value)
        room = await make_chat_room(brand, creator)
        offer = Offer(
            id=str(uuid.uuid4()),
            brand_id=brand.id,
            creator_id=creator.id,
            chat_room_id=room.id,
            title=title,
            budget=Decimal(str(budget)),
            estimated_days=estimated_days,
            status=status,
            expires_at=expires_at or utcnow() + timedelta(hours=24),
        )
        db_session.add(offer)
        await db_session.flush()
        return offer

    return _factory


@pytest.fixture
def make_contract(db_session, make_offer):
    """Factory that creates a Contract from a fresh accepted Offer.

    Usage:
        contract = await make_contract(creator=creator, status="active")
    """
    async def _factory(
        brand: User | None = None,
        creator: User | None = None,
        status: str = ContractStatus.ACTIVE.value,
        workflow_status: str = ContractWorkflowStatus.ACTIVE.value,
        budget=Decimal("1000.00"),
        estimated_days: int = 14,
        started_at=None,
    ) -> Contract:
        offer = await make_offer(
            brand=brand,
            creator=creator,
            status=OfferStatus.ACCEPTED.value,
            budget=budget,
            estimated_days=estimated_days,
        )
        started_at = started_at or utcnow()
        budget = Decimal(str(budget))
        contract = Contract(
            id=str(uuid.uuid4()),
            offer_id=offer.id,
            brand_id=offer.brand_id,
            creator_id=offer.creator_id,
            title=offer.title,
            budget=budget,
            estimated_days=estimated_days,
            platform_fee=budget * Decimal("0.10"),
            creator_amount=budget * Decimal("0.90"),
            status=status,
            workflow_status=workflow_status,
            started_at=started_at,
            expected_completion_at=started_at + timedelta(days=estimated_days),
        )
        db_session.add(contract)
        await db_session.flush()
        return contract

    return _factory


@pytest.fixture
def make_milestone(db_session):
    async def _factory(
        contract: Contract,
        milestone_type: str = MilestoneType.VIDEO_SUBMISSION.value,
        deadline=None,
        status: str = MilestoneStatus.PENDING.value,
        **fields,
    ) -> CampaignTimeline:
        milestone = CampaignTimeline(
            id=str(uuid.uuid4()),
            contract_id=contract.id,
            milestone_type=milestone_type,
            title=milestone_type.replace("_", " ").capitalize(),
            deadline=deadline or utcnow() + timedelta(days=3),
            status=status,
            is_delayed=fields.pop("is_delayed", False),
            penalty_applied=fields.pop("penalty_applied", False),
            extension_days=fields.pop("extension_days", 0),
            **fields,
        )
        db_session.add(milestone)
        await db_session.flush()
        return milestone

    return _factory


# ---------------------------------------------------------------------------
# Money movement
# ---------------------------------------------------------------------------

@pytest.fixture
def make_bank_account(db_session):
    async def _factory(user: User, **fields) -> BankAccount:
        defaults = {
            "bank_code": "341",
            "agencia": "1234",
            "agencia_dv": "5",
            "conta": "67890",
            "conta_dv": "1",
            "cpf": "12345678900",
            "name": user.name,
            "recipient_id": "rp_test_123",
        }
        defaults.update(fields)
        account = BankAccount(id=str(uuid.uuid4()), user_id=user.id, **defaults)
        db_session.add(account)
        await db_session.flush()
        return account

    return _factory


@pytest.fixture
def make_balance(db_session):
    async def _factory(creator: User, available=Decimal("0"), **fields) -> CreatorBalance:
        balance = CreatorBalance(
            id=str(uuid.uuid4()),
            creator_id=creator.id,
            available_balance=Decimal(str(available)),
            pending_balance=fields.pop("pending_balance", Decimal("0")),
            total_earned=fields.pop("total_earned", Decimal("0")),
            total_withdrawn=fields.pop("total_withdrawn", Decimal("0")),
        )
        db_session.add(balance)
        await db_session.flush()
        return balance

    return _factory


@pytest.fixture
def make_withdrawal(db_session):
    """Factory that creates a Withdrawal row.

    ``details=None`` stores no bank snapshot; pass a dict to set one.
    """
    async def _factory(
        creator: User,
        amount=Decimal("500.00"),
        method: str = "bank_transfer",
        status: str = WithdrawalStatus.PENDING.value,
        details: dict | None = None,
        **fields,
    ) -> Withdrawal:
        withdrawal = Withdrawal(
            id=str(uuid.uuid4()),
            creator_id=creator.id,
            amount=Decimal(str(amount)),
            withdrawal_method=method,
            withdrawal_details=details,
            status=status,
            **fields,
        )
        db_session.add(withdrawal)
        await db_session.flush()
        return withdrawal

    return _factory


@pytest.fixture
def make_payment(db_session):
    async def _factory(
        contract: Contract,
        status: str = PaymentStatus.PENDING.value,
        payment_data: dict | None = None,
    ) -> JobPayment:
        payment = JobPayment(
            id=str(uuid.uuid4()),
            contract_id=contract.id,
            brand_id=contract.brand_id,
            creator_id=contract.creator_id,
            total_amount=contract.budget,
            platform_fee=contract.platform_fee,
            creator_amount=contract.creator_amount,
            status=status,
            payment_data=payment_data if payment_data is not None else {
                "customer_id": "cus_test",
                "card_id": "card_test",
            },
        )
        db_session.add(payment)
        await db_session.flush()
        return payment

    return _factory


@pytest.fixture
def bank_details():
    """Withdrawal bank snapshot matching make_bank_account defaults."""
    return {
        "method": "bank_transfer",
        "bank_code": "341",
        "agencia": "1234",
        "agencia_dv": "5",
        "conta": "67890",
        "conta_dv": "1",
        "cpf": "12345678900",
        "recipient_id": "rp_test_123",
    }
