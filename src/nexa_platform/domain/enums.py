"""Domain enumerations for the Nexa creator marketplace.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class UserRole(str, Enum):
    """Account role on the platform."""

    CREATOR = "creator"
    BRAND = "brand"
    ADMIN = "admin"


class WorkflowActor(str, Enum):
    """Who is driving a workflow transition."""

    BRAND = "brand"
    CREATOR = "creator"
    ADMIN = "admin"
    SYSTEM = "system"


class OfferStatus(str, Enum):
    """Lifecycle of a brand-to-creator offer."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ContractStatus(str, Enum):
    """Overall status of a contract."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    PAYMENT_FAILED = "payment_failed"
    TERMINATED = "terminated"


class ContractWorkflowStatus(str, Enum):
    """Detailed post-start workflow tracking for a contract."""

    ACTIVE = "active"
    WAITING_REVIEW = "waiting_review"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_AVAILABLE = "payment_available"
    PAYMENT_WITHDRAWN = "payment_withdrawn"
    PAYMENT_FAILED = "payment_failed"
    TERMINATED = "terminated"


class MilestoneType(str, Enum):
    """Checkpoints of a content contract, in delivery order."""

    SCRIPT_SUBMISSION = "script_submission"
    SCRIPT_APPROVAL = "script_approval"
    VIDEO_SUBMISSION = "video_submission"
    FINAL_APPROVAL = "final_approval"


class MilestoneStatus(str, Enum):
    """Status of a single milestone."""

    PENDING = "pending"
    APPROVED = "approved"
    DELAYED = "delayed"
    COMPLETED = "completed"


class PaymentStatus(str, Enum):
    """Status of a brand-to-platform contract payment."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class WithdrawalStatus(str, Enum):
    """Status of a creator payout request."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WithdrawalMethod(str, Enum):
    """Payout rail chosen by the creator."""

    BANK_TRANSFER = "bank_transfer"
    PIX = "pix"
    PAGARME_ACCOUNT = "pagarme_account"


class MessageType(str, Enum):
    """Kind of chat message."""

    TEXT = "text"
    OFFER = "offer"
    SYSTEM = "system"
    FILE = "file"


class NotificationType(str, Enum):
    """In-app notification types emitted by the workflow."""

    NEW_OFFER = "new_offer"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_REJECTED = "offer_rejected"
    OFFER_CANCELLED = "offer_cancelled"
    REVIEW_REQUIRED = "review_required"
    CONTRACT_COMPLETED = "contract_completed"
    CONTRACT_CANCELLED = "contract_cancelled"
    CONTRACT_TERMINATED = "contract_terminated"
    CONTRACT_DISPUTED = "contract_disputed"
    CONTRACT_PAYMENT_CONFIRMED = "contract_payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_AVAILABLE = "payment_available"
    TIMELINE_OVERDUE = "timeline_overdue"
    MILESTONE_PENALTY = "milestone_penalty"
    ACCOUNT_SUSPENDED = "account_suspended"
    MILESTONE_EXTENDED = "milestone_extended"
    WITHDRAWAL_COMPLETED = "withdrawal_completed"
    WITHDRAWAL_FAILED = "withdrawal_failed"


class VerificationOutcome(str, Enum):
    """Classification produced by the withdrawal audit."""

    PASSED = "passed"
    FAILED = "failed"
    PENDING = "pending"


class EscalationPolicy(str, Enum):
    """How the deadline sweep escalates lateness onto a creator."""

    SUSPENSION = "suspension"  # >= N overdue milestones -> account suspension
    PENALTY = "penalty"        # single milestone overdue >= N days -> invite block


# Display titles for milestone types, in delivery order
MILESTONE_TITLES: dict[MilestoneType, str] = {
    MilestoneType.SCRIPT_SUBMISSION: "Script submission",
    MilestoneType.SCRIPT_APPROVAL: "Script approval",
    MilestoneType.VIDEO_SUBMISSION: "Video submission",
    MilestoneType.FINAL_APPROVAL: "Final approval",
}
