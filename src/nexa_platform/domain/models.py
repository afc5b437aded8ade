"""SQLAlchemy ORM models for the Nexa Platform.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps (no TIMESTAMPTZ)
- Numeric(12, 2) for money in BRL
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from nexa_platform.domain.enums import (
    ContractStatus,
    ContractWorkflowStatus,
    MilestoneStatus,
    OfferStatus,
    PaymentStatus,
    UserRole,
    WithdrawalStatus,
)
from nexa_platform.domain.timeutils import as_utc, is_future, utcnow
from nexa_platform.infra.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(Base):
    """Marketplace account: creator, brand or admin."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    role = Column(String(20), nullable=False, default=UserRole.CREATOR.value)  # UserRole

    # Creator-side restrictions (one active window each, never stacked)
    penalty_until = Column(DateTime, nullable=True)
    penalty_reason = Column(Text, nullable=True)
    penalty_milestone_id = Column(String(36), nullable=True)
    suspended_until = Column(DateTime, nullable=True)
    suspension_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    def is_penalized(self, now: datetime | None = None) -> bool:
        return is_future(self.penalty_until, now)

    def is_suspended(self, now: datetime | None = None) -> bool:
        return is_future(self.suspended_until, now)


class BankAccount(Base):
    """Creator's current payout bank account (Brazilian format)."""

    __tablename__ = "bank_accounts"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    bank_code = Column(String(10), nullable=False)
    agencia = Column(String(10), nullable=False)
    agencia_dv = Column(String(2), nullable=True)
    conta = Column(String(20), nullable=False)
    conta_dv = Column(String(2), nullable=True)
    cpf = Column(String(14), nullable=False)
    name = Column(String(255), nullable=False)
    recipient_id = Column(String(100), nullable=True)  # Pagar.me recipient

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    user = relationship("User", backref="bank_accounts")


class CreatorBalance(Base):
    """Running earnings/withdrawal totals for a creator."""

    __tablename__ = "creator_balances"

    id = Column(String(36), primary_key=True, default=_uuid)
    creator_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    available_balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    pending_balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    total_earned = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    total_withdrawn = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    creator = relationship("User")


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class ChatRoom(Base):
    """Brand/creator conversation where offers are negotiated."""

    __tablename__ = "chat_rooms"

    id = Column(String(36), primary_key=True, default=_uuid)
    room_id = Column(String(100), unique=True, nullable=False, default=_uuid)  # socket room key
    brand_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    creator_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    last_message_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=func.now())

    messages = relationship("Message", back_populates="chat_room", cascade="all, delete-orphan")


class Message(Base):
    """Chat message. ``sender_id`` is NULL for system messages."""

    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    chat_room_id = Column(String(36), ForeignKey("chat_rooms.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    message = Column(Text, nullable=False)
    message_type = Column(String(20), nullable=False, default="text")  # MessageType
    offer_data = Column(JSON, nullable=True)  # ChatMessageData
    created_at = Column(DateTime, default=func.now())

    chat_room = relationship("ChatRoom", back_populates="messages")


# ---------------------------------------------------------------------------
# Offer -> Contract -> Milestones
# ---------------------------------------------------------------------------


class Offer(Base):
    """Brand proposal to a creator; expires after a fixed window."""

    __tablename__ = "offers"
    __table_args__ = (
        Index("ix_offers_status_expires_at", "status", "expires_at"),
        # At most one pending offer per (brand, creator) pair
        Index(
            "uq_offers_pending_pair",
            "brand_id",
            "creator_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    brand_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    creator_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    chat_room_id = Column(String(36), ForeignKey("chat_rooms.id", ondelete="CASCADE"), nullable=False)

    title = Column(String(255), nullable=False, default="Project offer")
    description = Column(Text, nullable=True)
    budget = Column(Numeric(12, 2), nullable=False)
    estimated_days = Column(Integer, nullable=False)
    requirements = Column(JSON, nullable=True)

    status = Column(String(20), nullable=False, default=OfferStatus.PENDING.value)  # OfferStatus
    expires_at = Column(DateTime, nullable=False)
    accepted_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    brand = relationship("User", foreign_keys=[brand_id])
    creator = relationship("User", foreign_keys=[creator_id])
    chat_room = relationship("ChatRoom")
    contract = relationship("Contract", back_populates="offer", uselist=False)

    def is_expired(self, now: datetime | None = None) -> bool:
        return as_utc(self.expires_at) <= (now or utcnow())


class Contract(Base):
    """Binding agreement created exactly once from an accepted offer."""

    __tablename__ = "contracts"
    __table_args__ = (
        Index("ix_contracts_brand_creator", "brand_id", "creator_id"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    offer_id = Column(String(36), ForeignKey("offers.id", ondelete="CASCADE"), unique=True, nullable=False)
    brand_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    creator_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    budget = Column(Numeric(12, 2), nullable=False)
    estimated_days = Column(Integer, nullable=False)
    platform_fee = Column(Numeric(12, 2), nullable=False)
    creator_amount = Column(Numeric(12, 2), nullable=False)

    status = Column(String(20), nullable=False, default=ContractStatus.ACTIVE.value)  # ContractStatus
    workflow_status = Column(
        String(30), nullable=False, default=ContractWorkflowStatus.ACTIVE.value
    )  # ContractWorkflowStatus

    started_at = Column(DateTime, nullable=False)
    expected_completion_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    offer = relationship("Offer", back_populates="contract")
    brand = relationship("User", foreign_keys=[brand_id])
    creator = relationship("User", foreign_keys=[creator_id])
    milestones = relationship(
        "CampaignTimeline",
        back_populates="contract",
        cascade="all, delete-orphan",
        order_by="CampaignTimeline.deadline",
    )
    payment = relationship("JobPayment", back_populates="contract", uselist=False)


class CampaignTimeline(Base):
    """Deadline-bound milestone within a contract."""

    __tablename__ = "campaign_timelines"
    __table_args__ = (
        Index("ix_timelines_contract_type", "contract_id", "milestone_type"),
        Index("ix_timelines_status_delayed", "status", "is_delayed"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    contract_id = Column(String(36), ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False)
    milestone_type = Column(String(30), nullable=False)  # MilestoneType
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    deadline = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    status = Column(String(20), nullable=False, default=MilestoneStatus.PENDING.value)  # MilestoneStatus
    comment = Column(Text, nullable=True)

    # Delay tracking
    justification = Column(Text, nullable=True)
    is_delayed = Column(Boolean, nullable=False, default=False)
    delay_notified_at = Column(DateTime, nullable=True)
    penalty_applied = Column(Boolean, nullable=False, default=False)
    penalty_applied_at = Column(DateTime, nullable=True)

    # Deadline extensions (brand granted)
    extension_days = Column(Integer, nullable=False, default=0)
    extension_reason = Column(Text, nullable=True)
    extended_at = Column(DateTime, nullable=True)
    extended_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    contract = relationship("Contract", back_populates="milestones")

    def is_overdue(self, now: datetime | None = None) -> bool:
        return (
            as_utc(self.deadline) < (now or utcnow())
            and self.status != MilestoneStatus.COMPLETED.value
        )

    def days_overdue(self, now: datetime | None = None) -> int:
        """Whole days past the deadline; 0 when not overdue."""
        now = now or utcnow()
        if not self.is_overdue(now):
            return 0
        return (now - as_utc(self.deadline)).days


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class Notification(Base):
    """Append-only in-app notification; only read-state changes."""

    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "is_read"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type = Column(String(50), nullable=False)  # NotificationType
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=func.now())

    user = relationship("User", backref="notifications")


# ---------------------------------------------------------------------------
# Money movement
# ---------------------------------------------------------------------------


class JobPayment(Base):
    """Brand charge for a contract, captured through the payment gateway."""

    __tablename__ = "job_payments"
    __table_args__ = (
        Index("ix_job_payments_status_paid_at", "status", "paid_at"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    contract_id = Column(String(36), ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False)
    brand_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    creator_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    total_amount = Column(Numeric(12, 2), nullable=False)
    platform_fee = Column(Numeric(12, 2), nullable=False)
    creator_amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String(30), nullable=False, default="credit_card")
    transaction_id = Column(String(100), nullable=True, index=True)

    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)  # PaymentStatus
    paid_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)
    payment_data = Column(JSON, nullable=True)  # CardPaymentData

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    contract = relationship("Contract", back_populates="payment")
    brand = relationship("User", foreign_keys=[brand_id])
    creator = relationship("User", foreign_keys=[creator_id])


class Withdrawal(Base):
    """Creator payout request."""

    __tablename__ = "withdrawals"

    id = Column(String(36), primary_key=True, default=_uuid)
    creator_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    withdrawal_method = Column(String(30), nullable=False)  # WithdrawalMethod
    withdrawal_details = Column(JSON, nullable=True)  # WithdrawalDetails
    status = Column(String(20), nullable=False, default=WithdrawalStatus.PENDING.value)  # WithdrawalStatus
    transaction_id = Column(String(100), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    creator = relationship("User", backref="withdrawals")
