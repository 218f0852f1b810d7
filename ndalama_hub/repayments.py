"""
Repayment Module

Applies a payment to one installment of a loan's schedule, updates the
payment tracking aggregates and moves the loan forward through the state
machine (first payment activates it, the last one completes it).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .amortization import Installment, InstallmentStatus
from .currency import Money, sum_money
from .errors import IllegalStatusTransition, InvalidPaymentAmount, OverpaymentNotAllowed
from .loans import Loan
from .state_machine import REPAYABLE_STATUSES, LoanStatus, TransitionTrigger, transition

# An installment counts as paid once less than one cent remains
ROUNDING_TOLERANCE = Decimal('0.01')


class OverpaymentPolicy(Enum):
    """What to do with the part of a payment beyond the installment due"""
    ACCEPT = "accept"                # keep the excess on the named installment
    REJECT = "reject"                # refuse the whole payment
    CLAMP = "clamp"                  # record up to the amount due, return the rest
    CARRY_FORWARD = "carry_forward"  # spill the excess onto later installments


@dataclass(frozen=True)
class PaymentAllocation:
    """Part of a payment recorded against a single installment"""
    installment_number: int
    amount: Money
    status_after: InstallmentStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installment_number': self.installment_number,
            'amount': str(self.amount.amount),
            'status_after': self.status_after.value,
        }


@dataclass
class PaymentResult:
    loan: Loan
    allocations: List[PaymentAllocation] = field(default_factory=list)
    unapplied: Money = None

    def __post_init__(self):
        if self.unapplied is None:
            self.unapplied = Money.zero(self.loan.currency)

    @property
    def applied(self) -> Money:
        return sum_money((a.amount for a in self.allocations), self.loan.currency)


def _settled(installment: Installment) -> bool:
    shortfall = installment.amount_due.amount - installment.paid_amount.amount
    return shortfall < ROUNDING_TOLERANCE


def _record(installment: Installment, amount: Money, paid_at: datetime) -> PaymentAllocation:
    installment.paid_amount = installment.paid_amount + amount
    installment.paid_at = paid_at
    # Paid is final; anything short of it is partial, including a formerly overdue row
    if installment.status != InstallmentStatus.PAID:
        installment.status = InstallmentStatus.PAID if _settled(installment) else InstallmentStatus.PARTIAL
    return PaymentAllocation(installment.installment_number, amount, installment.status)


def _coerce_amount(loan: Loan, amount: Union[Money, Decimal, int, str]) -> Money:
    if not isinstance(amount, Money):
        try:
            amount = Money(Decimal(str(amount)), loan.currency)
        except ArithmeticError:
            raise InvalidPaymentAmount(f"Payment amount {amount!r} is not a number")
    if not amount.amount.is_finite():
        raise InvalidPaymentAmount(f"Payment amount {amount.amount} is not a finite number")
    if amount.currency != loan.currency:
        raise InvalidPaymentAmount(
            f"Payment currency {amount.currency.code} does not match loan currency {loan.currency.code}"
        )
    if not amount.is_positive():
        raise InvalidPaymentAmount(f"Payment amount must be positive, got {amount.to_string()}")
    return amount


def apply_payment(
    loan: Loan,
    installment_number: int,
    amount: Union[Money, Decimal, int, str],
    policy: OverpaymentPolicy = OverpaymentPolicy.ACCEPT,
    paid_at: Optional[datetime] = None
) -> PaymentResult:
    """
    Record a payment against an installment

    Args:
        loan: Disbursed loan, mutated in place
        installment_number: 1-based installment the payment is for
        amount: Payment amount in the loan currency
        policy: Overpayment handling
        paid_at: Payment timestamp, defaults to now

    Returns:
        PaymentResult with the per-installment allocations and any
        amount that could not be applied

    Raises:
        IllegalStatusTransition: Loan is not in a repayable status
        InvalidPaymentAmount: Amount not positive or in the wrong currency
        InstallmentNotFound: No such installment
        OverpaymentNotAllowed: Amount exceeds the outstanding amount under REJECT
    """
    if loan.status not in REPAYABLE_STATUSES:
        raise IllegalStatusTransition(f"Cannot record a payment on a {loan.status.value} loan")

    amount = _coerce_amount(loan, amount)
    installment = loan.get_installment(installment_number)
    paid_at = paid_at or datetime.now(timezone.utc)
    currency = loan.currency

    result = PaymentResult(loan=loan)
    outstanding = installment.outstanding

    if policy == OverpaymentPolicy.ACCEPT or amount <= outstanding:
        result.allocations.append(_record(installment, amount, paid_at))

    elif policy == OverpaymentPolicy.REJECT:
        raise OverpaymentNotAllowed(
            f"Payment of {amount.to_string()} exceeds {outstanding.to_string()} "
            f"outstanding on installment {installment_number}"
        )

    elif policy == OverpaymentPolicy.CLAMP:
        if outstanding.is_positive():
            result.allocations.append(_record(installment, outstanding, paid_at))
        result.unapplied = amount - outstanding

    else:
        remaining = amount
        for target in loan.repayment_schedule:
            if target.installment_number < installment_number or target.is_paid:
                continue
            portion = min(remaining, target.outstanding)
            if not portion.is_positive():
                continue
            result.allocations.append(_record(target, portion, paid_at))
            remaining = remaining - portion
            if remaining.is_zero():
                break
        result.unapplied = remaining if remaining.is_positive() else Money.zero(currency)

    if result.allocations:
        _update_tracking(loan, paid_at)
        _advance_status(loan, paid_at)

    return result


def _update_tracking(loan: Loan, paid_at: datetime) -> None:
    tracking = loan.payment_tracking
    tracking.total_paid = sum_money((i.paid_amount for i in loan.repayment_schedule), loan.currency)
    tracking.last_payment_date = paid_at


def _advance_status(loan: Loan, at: datetime) -> None:
    if loan.status == LoanStatus.DISBURSED:
        transition(loan, LoanStatus.ACTIVE, TransitionTrigger.PAYMENT, at=at)
    if loan.is_fully_paid:
        transition(loan, LoanStatus.COMPLETED, TransitionTrigger.PAYMENT, at=at)
