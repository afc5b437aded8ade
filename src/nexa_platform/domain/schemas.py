"""Pydantic v2 schemas for JSON columns and job summaries.

JSON blobs stored on rows (notification ``data``, chat ``offer_data``,
``withdrawal_details`` and ``payment_data``) are validated through these
models on write and parsed back on read.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from nexa_platform.domain.enums import VerificationOutcome


# ---------------------------------------------------------------------------
# Withdrawal details (discriminated on method)
# ---------------------------------------------------------------------------


class BankTransferDetails(BaseModel):
    """Bank account snapshot taken when the withdrawal was requested."""

    method: Literal["bank_transfer"] = "bank_transfer"
    bank_code: str
    agencia: str
    agencia_dv: str | None = None
    conta: str
    conta_dv: str | None = None
    cpf: str
    name: str | None = None
    recipient_id: str | None = None


class PixDetails(BaseModel):
    """PIX payout; bank fields are optional snapshots for auditing."""

    method: Literal["pix"] = "pix"
    pix_key: str
    pix_key_type: str | None = None
    bank_code: str | None = None
    agencia: str | None = None
    agencia_dv: str | None = None
    conta: str | None = None
    conta_dv: str | None = None
    cpf: str | None = None
    recipient_id: str | None = None


class PagarMeAccountDetails(BaseModel):
    """Payout straight to the creator's Pagar.me recipient."""

    method: Literal["pagarme_account"] = "pagarme_account"
    recipient_id: str
    bank_code: str | None = None
    agencia: str | None = None
    agencia_dv: str | None = None
    conta: str | None = None
    conta_dv: str | None = None
    cpf: str | None = None


WithdrawalDetails = Annotated[
    Union[BankTransferDetails, PixDetails, PagarMeAccountDetails],
    Field(discriminator="method"),
]

_withdrawal_details_adapter = TypeAdapter(WithdrawalDetails)


def parse_withdrawal_details(method: str, raw: dict | None):
    """Validate a stored ``withdrawal_details`` blob.

    Blobs written before the ``method`` key existed get it from the row's
    ``withdrawal_method`` column. Raises ``pydantic.ValidationError`` on
    malformed data.
    """
    if raw is None:
        return None
    payload = dict(raw)
    payload.setdefault("method", method)
    return _withdrawal_details_adapter.validate_python(payload)


# ---------------------------------------------------------------------------
# Payment data
# ---------------------------------------------------------------------------


class CardPaymentData(BaseModel):
    """Stored card references needed to charge a brand."""

    customer_id: str
    card_id: str
    installments: int = 1
    statement_descriptor: str = "NEXA CONTRACT"


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class ChatMessageData(BaseModel):
    """Structured payload attached to offer and system chat messages."""

    event: str
    offer_id: str | None = None
    contract_id: str | None = None
    milestone_id: str | None = None
    milestone_type: str | None = None
    deadline: datetime | None = None
    budget: Decimal | None = None
    estimated_days: int | None = None
    expires_at: datetime | None = None


# ---------------------------------------------------------------------------
# Notification payloads
# ---------------------------------------------------------------------------


class OfferNotificationData(BaseModel):
    offer_id: str
    chat_room_id: str | None = None
    contract_id: str | None = None
    budget: Decimal | None = None
    reason: str | None = None


class ContractNotificationData(BaseModel):
    contract_id: str
    offer_id: str | None = None
    amount: Decimal | None = None
    reason: str | None = None


class MilestoneNotificationData(BaseModel):
    contract_id: str
    milestone_id: str
    milestone_type: str
    deadline: datetime | None = None
    justification_deadline: datetime | None = None
    extension_days: int | None = None


class PenaltyNotificationData(BaseModel):
    milestone_id: str | None = None
    penalty_until: datetime
    reason: str


class SuspensionNotificationData(BaseModel):
    suspended_until: datetime
    overdue_count: int
    reason: str


class PaymentNotificationData(BaseModel):
    payment_id: str
    contract_id: str
    amount: Decimal
    transaction_id: str | None = None
    failure_reason: str | None = None


class WithdrawalNotificationData(BaseModel):
    withdrawal_id: str
    amount: Decimal
    method: str
    transaction_id: str | None = None
    failure_reason: str | None = None


# ---------------------------------------------------------------------------
# Job summaries
# ---------------------------------------------------------------------------


class DeadlineSweepSummary(BaseModel):
    """Result of a milestone deadline sweep."""

    processed: int = 0
    warnings_sent: int = 0
    penalties_applied: int = 0


class BatchSummary(BaseModel):
    """Result of a payment or withdrawal batch run."""

    processed: int = 0
    failed: int = 0


class OfferExpirySummary(BaseModel):
    expired: int = 0


class VerificationCheck(BaseModel):
    """One named check in a withdrawal audit."""

    name: str
    passed: bool
    detail: str = ""


class VerificationResult(BaseModel):
    """Audit outcome for a single withdrawal."""

    model_config = ConfigDict(use_enum_values=True)

    withdrawal_id: str
    creator_id: str
    amount: Decimal
    method: str
    status: str
    outcome: VerificationOutcome
    checks: list[VerificationCheck] = Field(default_factory=list)
    withdrawal_bank: dict[str, str | None] | None = None
    account_bank: dict[str, str | None] | None = None

    @property
    def failures(self) -> list[VerificationCheck]:
        return [c for c in self.checks if not c.passed]


class VerificationSummary(BaseModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    pending: int = 0
    pass_rate: float = 0.0


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str
