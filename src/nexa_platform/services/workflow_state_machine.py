"""Workflow state machine for offers, contracts and milestones.

Each entity has its own transition map: from_status -> {to_status: actors}.
Services call ``validate_*`` before mutating a row so illegal changes raise
``InvalidTransitionError`` instead of silently writing.
"""

from datetime import datetime, timezone
from enum import Enum

from nexa_platform.domain.enums import (
    ContractStatus,
    ContractWorkflowStatus,
    MilestoneStatus,
    OfferStatus,
    WorkflowActor,
)


class InvalidTransitionError(Exception):
    """Raised when a workflow state transition is not allowed."""

    def __init__(self, current_status: Enum, target_status: Enum, reason: str):
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        super().__init__(
            f"Invalid transition from {current_status.value} to {target_status.value}: {reason}"
        )


A = WorkflowActor

# ---------------------------------------------------------------------------
# Offers
# ---------------------------------------------------------------------------

OF = OfferStatus

OFFER_TRANSITIONS: dict[OfferStatus, dict[OfferStatus, set[WorkflowActor]]] = {
    OF.PENDING: {
        OF.ACCEPTED: {A.CREATOR},
        OF.REJECTED: {A.CREATOR},
        OF.CANCELLED: {A.BRAND, A.ADMIN},
        OF.EXPIRED: {A.SYSTEM},
    },
}

OFFER_TERMINAL_STATES: set[OfferStatus] = {OF.ACCEPTED, OF.REJECTED, OF.EXPIRED, OF.CANCELLED}

# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------

C = ContractStatus

CONTRACT_TRANSITIONS: dict[ContractStatus, dict[ContractStatus, set[WorkflowActor]]] = {
    C.PENDING: {
        C.ACTIVE: {A.SYSTEM},
        C.PAYMENT_FAILED: {A.SYSTEM},
        C.CANCELLED: {A.BRAND, A.CREATOR, A.ADMIN},
    },
    C.PAYMENT_FAILED: {
        C.PENDING: {A.BRAND, A.SYSTEM},  # retry with a new payment
        C.ACTIVE: {A.SYSTEM},
        C.CANCELLED: {A.BRAND, A.ADMIN, A.SYSTEM},
    },
    C.ACTIVE: {
        C.COMPLETED: {A.CREATOR, A.BRAND},
        C.CANCELLED: {A.BRAND, A.CREATOR, A.ADMIN},
        C.DISPUTED: {A.BRAND, A.CREATOR},
        C.TERMINATED: {A.BRAND},
        C.PAYMENT_FAILED: {A.SYSTEM},
    },
    C.DISPUTED: {
        C.ACTIVE: {A.ADMIN},
        C.CANCELLED: {A.ADMIN},
        C.COMPLETED: {A.ADMIN},
    },
}

CONTRACT_TERMINAL_STATES: set[ContractStatus] = {C.COMPLETED, C.CANCELLED, C.TERMINATED}

W = ContractWorkflowStatus

WORKFLOW_TRANSITIONS: dict[ContractWorkflowStatus, set[ContractWorkflowStatus]] = {
    W.ACTIVE: {W.WAITING_REVIEW, W.PAYMENT_FAILED, W.TERMINATED},
    W.PAYMENT_FAILED: {W.ACTIVE, W.TERMINATED},
    W.WAITING_REVIEW: {W.PAYMENT_PENDING, W.PAYMENT_AVAILABLE},
    W.PAYMENT_PENDING: {W.PAYMENT_AVAILABLE},
    W.PAYMENT_AVAILABLE: {W.PAYMENT_WITHDRAWN},
}

# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------

M = MilestoneStatus

MILESTONE_TRANSITIONS: dict[MilestoneStatus, dict[MilestoneStatus, set[WorkflowActor]]] = {
    M.PENDING: {
        M.APPROVED: {A.BRAND},
        M.COMPLETED: {A.CREATOR, A.BRAND},
        M.DELAYED: {A.SYSTEM},
    },
    M.APPROVED: {
        M.COMPLETED: {A.CREATOR, A.BRAND},
        M.DELAYED: {A.SYSTEM},
    },
    M.DELAYED: {
        M.COMPLETED: {A.CREATOR, A.BRAND},
        M.PENDING: {A.BRAND},  # deadline extension
    },
}


def _coerce(enum_cls, value):
    return value if isinstance(value, enum_cls) else enum_cls(value)


def _check(transitions, current, target, actor) -> bool:
    if actor == A.ADMIN and target in transitions.get(current, {}):
        return True

    allowed_targets = transitions.get(current)
    if allowed_targets is None:
        raise InvalidTransitionError(
            current, target, f"No transitions allowed from {current.value}"
        )

    if target not in allowed_targets:
        raise InvalidTransitionError(
            current,
            target,
            f"Transition from {current.value} to {target.value} is not allowed",
        )

    allowed_actors = allowed_targets[target]
    if actor not in allowed_actors:
        raise InvalidTransitionError(
            current,
            target,
            f"Actor {actor.value} is not permitted for this transition "
            f"(allowed: {', '.join(sorted(a.value for a in allowed_actors))})",
        )
    return True


class WorkflowStateMachine:
    """Validates offer, contract and milestone transitions."""

    def validate_offer_transition(self, offer, target: OfferStatus, actor: WorkflowActor) -> bool:
        """Return True if the offer may move to *target*; raise otherwise.

        Accept/reject/cancel are also blocked once ``expires_at`` has passed;
        only the system expiry may act on a stale pending offer.
        """
        current = _coerce(OfferStatus, offer.status)
        _check(OFFER_TRANSITIONS, current, target, actor)

        if target != OF.EXPIRED and offer.expires_at is not None:
            expires_at = offer.expires_at
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if datetime.now(timezone.utc) >= expires_at:
                raise InvalidTransitionError(
                    current,
                    target,
                    f"Offer expired at {expires_at.isoformat()}",
                )
        return True

    def validate_contract_transition(
        self, contract, target: ContractStatus, actor: WorkflowActor
    ) -> bool:
        current = _coerce(ContractStatus, contract.status)
        return _check(CONTRACT_TRANSITIONS, current, target, actor)

    def validate_workflow_transition(self, contract, target: ContractWorkflowStatus) -> bool:
        current = _coerce(ContractWorkflowStatus, contract.workflow_status)
        if target not in WORKFLOW_TRANSITIONS.get(current, set()):
            raise InvalidTransitionError(
                current,
                target,
                f"Workflow cannot move from {current.value} to {target.value}",
            )
        return True

    def validate_milestone_transition(
        self, milestone, target: MilestoneStatus, actor: WorkflowActor
    ) -> bool:
        current = _coerce(MilestoneStatus, milestone.status)
        return _check(MILESTONE_TRANSITIONS, current, target, actor)

    def get_allowed_offer_transitions(self, status: OfferStatus, actor: WorkflowActor) -> list[OfferStatus]:
        """Return valid next offer states for the actor."""
        return [
            target
            for target, actors in OFFER_TRANSITIONS.get(_coerce(OfferStatus, status), {}).items()
            if actor in actors or actor == A.ADMIN
        ]

    def get_allowed_contract_transitions(
        self, status: ContractStatus, actor: WorkflowActor
    ) -> list[ContractStatus]:
        """Return valid next contract states for the actor."""
        return [
            target
            for target, actors in CONTRACT_TRANSITIONS.get(_coerce(ContractStatus, status), {}).items()
            if actor in actors or actor == A.ADMIN
        ]


state_machine = WorkflowStateMachine()
