"""
Arrears Monitoring Module

Flags installments that have passed their due date and derives the days
in arrears and the status a loan should carry because of them.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional, Union

from .amortization import Installment, InstallmentStatus
from .loans import Loan
from .state_machine import LoanStatus, StatusChange, TransitionTrigger, transition

DEFAULT_THRESHOLD_DAYS = 90

# Only loans that are out the door and not yet closed are monitored
MONITORED_STATUSES = frozenset({LoanStatus.DISBURSED, LoanStatus.ACTIVE, LoanStatus.IN_ARREARS})

_UNSETTLED = (InstallmentStatus.PENDING, InstallmentStatus.PARTIAL)


@dataclass(frozen=True)
class ArrearsEvaluation:
    days_in_arrears: int
    status_override: Optional[LoanStatus]
    earliest_overdue_installment: Optional[int]
    missed_payments_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'days_in_arrears': self.days_in_arrears,
            'status_override': self.status_override.value if self.status_override else None,
            'earliest_overdue_installment': self.earliest_overdue_installment,
            'missed_payments_count': self.missed_payments_count,
        }


def _as_datetime(as_of: Union[date, datetime]) -> datetime:
    if isinstance(as_of, datetime):
        return as_of if as_of.tzinfo else as_of.replace(tzinfo=timezone.utc)
    return datetime.combine(as_of, time.min, tzinfo=timezone.utc)


def _due_at(installment: Installment) -> datetime:
    return datetime.combine(installment.due_date, time.min, tzinfo=timezone.utc)


def mark_overdue_installments(loan: Loan, as_of: Union[date, datetime]) -> List[Installment]:
    """Move pending and partial installments past their due date to overdue"""
    moment = _as_datetime(as_of)
    marked = []
    for installment in loan.repayment_schedule:
        if installment.status in _UNSETTLED and moment > _due_at(installment):
            installment.status = InstallmentStatus.OVERDUE
            marked.append(installment)
    return marked


def evaluate_arrears(loan: Loan, as_of: Union[date, datetime],
                     default_threshold_days: int = DEFAULT_THRESHOLD_DAYS) -> ArrearsEvaluation:
    """
    Compute days in arrears and the status the loan should move to

    Only installments already marked overdue count. Partial days round up,
    so a loan one hour past its due date is one day in arrears. The loan's
    payment_tracking is refreshed; its status is left alone.
    """
    moment = _as_datetime(as_of)
    overdue = [i for i in loan.repayment_schedule if i.status == InstallmentStatus.OVERDUE]

    days = 0
    earliest = None
    if overdue:
        earliest = min(overdue, key=lambda i: (i.due_date, i.installment_number))
        elapsed = (moment - _due_at(earliest)).total_seconds() / 86400
        days = max(0, math.ceil(elapsed))

    override = None
    if loan.status in MONITORED_STATUSES:
        if days > default_threshold_days:
            override = LoanStatus.DEFAULTED
        elif days > 0:
            override = LoanStatus.IN_ARREARS
        elif loan.status == LoanStatus.IN_ARREARS:
            override = LoanStatus.ACTIVE

    # Already in the target status: nothing to change
    if override == loan.status:
        override = None

    loan.payment_tracking.days_in_arrears = days
    loan.payment_tracking.missed_payments_count = len(overdue)

    return ArrearsEvaluation(
        days_in_arrears=days,
        status_override=override,
        earliest_overdue_installment=earliest.installment_number if earliest else None,
        missed_payments_count=len(overdue),
    )


def review_arrears(loan: Loan, as_of: Union[date, datetime],
                   default_threshold_days: int = DEFAULT_THRESHOLD_DAYS) -> Optional[StatusChange]:
    """
    Scheduled re-evaluation: mark overdue rows, evaluate, apply the override

    Returns:
        The StatusChange applied, or None when the status stays as it is
    """
    mark_overdue_installments(loan, as_of)
    evaluation = evaluate_arrears(loan, as_of, default_threshold_days)
    if evaluation.status_override is None:
        return None
    return transition(loan, evaluation.status_override, TransitionTrigger.ARREARS, at=_as_datetime(as_of))
