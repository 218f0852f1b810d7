"""
Loan State Machine Module

Owns the loan status vocabulary and the table of legal transitions. Every
status write in the system goes through transition(); nothing assigns
loan.status directly. Each edge lists the triggers allowed to drive it, so
the approval workflow cannot, for example, mark a loan as defaulted: only
the arrears monitor can.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Set, Tuple

from .errors import DisbursementPreconditionFailed, IllegalStatusTransition


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING_APPROVAL = "pending_approval"
    PENDING_DOCUMENTS = "pending_documents"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING_DISBURSEMENT = "pending_disbursement"
    DISBURSED = "disbursed"
    ACTIVE = "active"
    IN_ARREARS = "in_arrears"
    DEFAULTED = "defaulted"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TransitionTrigger(Enum):
    """Who is driving a status change"""
    WORKFLOW = "workflow"   # approval/disbursement actions by staff
    PAYMENT = "payment"     # payment ledger
    ARREARS = "arrears"     # arrears monitor
    SYSTEM = "system"       # internal bookkeeping


INITIAL_STATUS = LoanStatus.PENDING_APPROVAL

TERMINAL_STATUSES: FrozenSet[LoanStatus] = frozenset({
    LoanStatus.REJECTED,
    LoanStatus.COMPLETED,
    LoanStatus.CANCELLED,
})

# Loan has been paid out and the schedule is locked
DISBURSED_STATUSES: FrozenSet[LoanStatus] = frozenset({
    LoanStatus.DISBURSED,
    LoanStatus.ACTIVE,
    LoanStatus.IN_ARREARS,
    LoanStatus.DEFAULTED,
    LoanStatus.COMPLETED,
})

# Statuses in which repayments may be recorded
REPAYABLE_STATUSES: FrozenSet[LoanStatus] = frozenset({
    LoanStatus.DISBURSED,
    LoanStatus.ACTIVE,
    LoanStatus.IN_ARREARS,
    LoanStatus.DEFAULTED,
})

# Applications still waiting on a decision or payout
OPEN_STATUSES: FrozenSet[LoanStatus] = frozenset({
    LoanStatus.PENDING_APPROVAL,
    LoanStatus.PENDING_DOCUMENTS,
    LoanStatus.UNDER_REVIEW,
    LoanStatus.APPROVED,
    LoanStatus.PENDING_DISBURSEMENT,
}) | REPAYABLE_STATUSES

_W = frozenset({TransitionTrigger.WORKFLOW})
_A = frozenset({TransitionTrigger.ARREARS})
_P = frozenset({TransitionTrigger.PAYMENT})

TRANSITIONS: Dict[Tuple[LoanStatus, LoanStatus], FrozenSet[TransitionTrigger]] = {
    (LoanStatus.PENDING_APPROVAL, LoanStatus.APPROVED): _W,
    (LoanStatus.PENDING_APPROVAL, LoanStatus.REJECTED): _W,
    (LoanStatus.PENDING_APPROVAL, LoanStatus.PENDING_DOCUMENTS): _W,
    (LoanStatus.PENDING_APPROVAL, LoanStatus.UNDER_REVIEW): _W,
    (LoanStatus.PENDING_APPROVAL, LoanStatus.CANCELLED): _W,
    (LoanStatus.PENDING_DOCUMENTS, LoanStatus.PENDING_APPROVAL): _W,
    (LoanStatus.PENDING_DOCUMENTS, LoanStatus.UNDER_REVIEW): _W,
    (LoanStatus.PENDING_DOCUMENTS, LoanStatus.CANCELLED): _W,
    (LoanStatus.UNDER_REVIEW, LoanStatus.APPROVED): _W,
    (LoanStatus.UNDER_REVIEW, LoanStatus.REJECTED): _W,
    (LoanStatus.UNDER_REVIEW, LoanStatus.CANCELLED): _W,
    (LoanStatus.APPROVED, LoanStatus.PENDING_DISBURSEMENT): _W,
    (LoanStatus.APPROVED, LoanStatus.DISBURSED): _W,
    (LoanStatus.APPROVED, LoanStatus.CANCELLED): _W,
    (LoanStatus.PENDING_DISBURSEMENT, LoanStatus.DISBURSED): _W,
    (LoanStatus.PENDING_DISBURSEMENT, LoanStatus.CANCELLED): _W,
    (LoanStatus.DISBURSED, LoanStatus.ACTIVE): frozenset({TransitionTrigger.PAYMENT, TransitionTrigger.SYSTEM}),
    (LoanStatus.DISBURSED, LoanStatus.IN_ARREARS): _A,
    (LoanStatus.DISBURSED, LoanStatus.DEFAULTED): _A,
    (LoanStatus.ACTIVE, LoanStatus.IN_ARREARS): _A,
    (LoanStatus.ACTIVE, LoanStatus.DEFAULTED): _A,
    (LoanStatus.IN_ARREARS, LoanStatus.ACTIVE): _A,
    (LoanStatus.IN_ARREARS, LoanStatus.DEFAULTED): _A,
    (LoanStatus.ACTIVE, LoanStatus.COMPLETED): _P,
    (LoanStatus.IN_ARREARS, LoanStatus.COMPLETED): _P,
    (LoanStatus.DEFAULTED, LoanStatus.COMPLETED): _P,
}

REASON_REQUIRED: FrozenSet[LoanStatus] = frozenset({LoanStatus.REJECTED, LoanStatus.CANCELLED})


@dataclass
class StatusChange:
    """One entry in a loan's status history"""
    from_status: LoanStatus
    to_status: LoanStatus
    trigger: TransitionTrigger
    changed_at: datetime
    actor_id: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'from_status': self.from_status.value,
            'to_status': self.to_status.value,
            'trigger': self.trigger.value,
            'changed_at': self.changed_at.isoformat(),
            'actor_id': self.actor_id,
            'reason': self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StatusChange':
        return cls(
            from_status=LoanStatus(data['from_status']),
            to_status=LoanStatus(data['to_status']),
            trigger=TransitionTrigger(data['trigger']),
            changed_at=datetime.fromisoformat(data['changed_at']),
            actor_id=data.get('actor_id'),
            reason=data.get('reason'),
        )


def can_transition(current: LoanStatus, target: LoanStatus,
                   trigger: TransitionTrigger = TransitionTrigger.WORKFLOW) -> bool:
    """Check whether the trigger may move a loan from current to target"""
    return trigger in TRANSITIONS.get((current, target), frozenset())


def allowed_targets(current: LoanStatus,
                    trigger: TransitionTrigger = TransitionTrigger.WORKFLOW) -> Set[LoanStatus]:
    return {to for (frm, to), triggers in TRANSITIONS.items() if frm == current and trigger in triggers}


def check_disbursement(loan, require_guarantor: bool = False) -> None:
    """
    Raise DisbursementPreconditionFailed unless the loan can be paid out

    The loan must be approved, carry a generated schedule, and name a
    complete guarantor when the owning company requires one.
    """
    if loan.status not in (LoanStatus.APPROVED, LoanStatus.PENDING_DISBURSEMENT):
        raise DisbursementPreconditionFailed(
            f"Loan must be approved before disbursement, status is {loan.status.value}"
        )
    if not loan.repayment_schedule:
        raise DisbursementPreconditionFailed("Repayment schedule has not been generated")
    if require_guarantor:
        guarantor = loan.guarantor
        if guarantor is None or not guarantor.is_complete():
            raise DisbursementPreconditionFailed("Company policy requires guarantor details")


def transition(
    loan,
    target: LoanStatus,
    trigger: TransitionTrigger = TransitionTrigger.WORKFLOW,
    actor_id: Optional[str] = None,
    reason: Optional[str] = None,
    at: Optional[datetime] = None,
    require_guarantor: bool = False
) -> StatusChange:
    """
    Move a loan to a new status

    Args:
        loan: Loan aggregate (status and status_history are updated in place)
        target: Desired status
        trigger: Source of the change; must be allowed for this edge
        actor_id: User performing a workflow action
        reason: Required for rejection and cancellation
        at: Timestamp of the change, defaults to now
        require_guarantor: Company policy flag checked on disbursement

    Returns:
        The recorded StatusChange

    Raises:
        IllegalStatusTransition: Edge not in the table, wrong trigger or missing reason
        DisbursementPreconditionFailed: Disbursement checks failed
    """
    current = loan.status
    if not can_transition(current, target, trigger):
        raise IllegalStatusTransition(
            f"Cannot move loan from {current.value} to {target.value} via {trigger.value}"
        )

    if target in REASON_REQUIRED and not (reason and reason.strip()):
        raise IllegalStatusTransition(f"A reason is required to mark a loan {target.value}")

    if target == LoanStatus.DISBURSED:
        check_disbursement(loan, require_guarantor=require_guarantor)

    change = StatusChange(
        from_status=current,
        to_status=target,
        trigger=trigger,
        changed_at=at or datetime.now(timezone.utc),
        actor_id=actor_id,
        reason=reason,
    )
    loan.status = target
    loan.status_history.append(change)
    return change
