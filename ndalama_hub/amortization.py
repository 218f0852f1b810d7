"""
Amortization Module

Fixed-payment (annuity) amortization and repayment schedule generation.
Both operations are pure: same inputs, same outputs, no storage access.

Rounding policy: intermediate math runs at the global Decimal precision
(28 digits); the periodic payment and every schedule component are
quantized to the currency precision with ROUND_HALF_UP, and the last
installment absorbs whatever principal drift the rounding leaves.
"""

import calendar
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .currency import Money, Currency
from .errors import InvalidLoanParameters

MAX_ANNUAL_RATE_PERCENT = Decimal('100')
MONTHS_PER_YEAR = Decimal('12')


class InstallmentStatus(Enum):
    """Repayment state of a single installment"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class AmortizationResult:
    """Derived amounts for a principal/rate/term combination"""
    periodic_payment: Money
    total_interest: Money
    total_payable: Money


@dataclass
class Installment:
    """One scheduled repayment obligation within a loan"""
    installment_number: int
    due_date: date
    amount_due: Money
    principal_component: Money
    interest_component: Money
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_amount: Money = None
    paid_at: Optional[datetime] = None

    def __post_init__(self):
        if self.paid_amount is None:
            self.paid_amount = Money.zero(self.amount_due.currency)

    @property
    def outstanding(self) -> Money:
        """Amount still owed on this installment, never negative"""
        remaining = self.amount_due - self.paid_amount
        if remaining.is_negative():
            return Money.zero(remaining.currency)
        return remaining

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'amount_due': str(self.amount_due.amount),
            'principal_component': str(self.principal_component.amount),
            'interest_component': str(self.interest_component.amount),
            'status': self.status.value,
            'paid_amount': str(self.paid_amount.amount),
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], currency: Currency) -> 'Installment':
        return cls(
            installment_number=int(data['installment_number']),
            due_date=date.fromisoformat(data['due_date']),
            amount_due=Money(Decimal(data['amount_due']), currency),
            principal_component=Money(Decimal(data['principal_component']), currency),
            interest_component=Money(Decimal(data['interest_component']), currency),
            status=InstallmentStatus(data['status']),
            paid_amount=Money(Decimal(data.get('paid_amount', '0')), currency),
            paid_at=datetime.fromisoformat(data['paid_at']) if data.get('paid_at') else None,
        )


class DueDatePolicy(ABC):
    """Strategy for placing installment due dates"""

    name: str = ""

    @abstractmethod
    def due_date(self, start_date: date, installment_number: int) -> date:
        """Due date of the given 1-based installment"""


class ThirtyDayPeriod(DueDatePolicy):
    """Every period is a fixed number of days (30 by default)"""

    name = "thirty_day"

    def __init__(self, days: int = 30):
        self.days = days

    def due_date(self, start_date: date, installment_number: int) -> date:
        return start_date + timedelta(days=self.days * installment_number)


class CalendarMonthPeriod(DueDatePolicy):
    """Same day-of-month each month, clamped to shorter months"""

    name = "calendar_month"

    def due_date(self, start_date: date, installment_number: int) -> date:
        month = start_date.month - 1 + installment_number
        year = start_date.year + month // 12
        month = month % 12 + 1
        day = min(start_date.day, calendar.monthrange(year, month)[1])
        return date(year, month, day)


_POLICIES = {
    ThirtyDayPeriod.name: ThirtyDayPeriod,
    CalendarMonthPeriod.name: CalendarMonthPeriod,
}


def due_date_policy_from_name(name: str) -> DueDatePolicy:
    try:
        return _POLICIES[name]()
    except KeyError:
        raise ValueError(f"Unknown due date policy: {name}")


def _as_rate(annual_rate_percent: Union[Decimal, int, str]) -> Decimal:
    if isinstance(annual_rate_percent, float):
        annual_rate_percent = str(annual_rate_percent)
    try:
        return Decimal(annual_rate_percent)
    except (ArithmeticError, TypeError, ValueError):
        raise InvalidLoanParameters(f"Interest rate {annual_rate_percent!r} is not a number")


def monthly_rate(annual_rate_percent: Decimal) -> Decimal:
    """Monthly rate as a fraction, e.g. 15% p.a. -> 0.0125"""
    return annual_rate_percent / Decimal('100') / MONTHS_PER_YEAR


def validate_parameters(principal: Money, annual_rate_percent, term_months) -> Decimal:
    """Check amortization inputs and return the rate as Decimal"""
    if not isinstance(principal, Money):
        raise InvalidLoanParameters("Principal must be a Money amount")
    if not principal.amount.is_finite() or not principal.is_positive():
        raise InvalidLoanParameters(f"Principal must be a positive amount, got {principal.amount}")

    rate = _as_rate(annual_rate_percent)
    if not rate.is_finite() or rate < 0 or rate > MAX_ANNUAL_RATE_PERCENT:
        raise InvalidLoanParameters(f"Interest rate must be between 0 and 100 percent, got {rate}")

    if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months < 1:
        raise InvalidLoanParameters(f"Term must be a positive whole number of months, got {term_months!r}")

    return rate


def _split_installments(principal: Money, r: Decimal, term_months: int, periodic_payment: Money):
    """Yield (principal_part, interest) per installment; the last settles what is left"""
    remaining = principal
    for number in range(1, term_months + 1):
        interest = remaining * r
        if number == term_months:
            principal_part = remaining
        else:
            principal_part = periodic_payment - interest
        remaining = remaining - principal_part
        yield principal_part, interest


def compute_amortization(principal: Money, annual_rate_percent, term_months: int) -> AmortizationResult:
    """
    Compute the fixed periodic payment for a loan

    Standard annuity formula: P * [r(1+r)^n] / [(1+r)^n - 1] where r is the
    monthly rate and n the number of monthly payments.

    Args:
        principal: Amount borrowed
        annual_rate_percent: Nominal annual rate, e.g. Decimal('15') for 15%
        term_months: Number of monthly installments

    Returns:
        AmortizationResult with payment, total interest and total payable

    Raises:
        InvalidLoanParameters: If any input is out of range, or the principal
            is too small to repay over the term at the currency precision
    """
    rate = validate_parameters(principal, annual_rate_percent, term_months)
    currency = principal.currency
    r = monthly_rate(rate)

    if r == 0:
        periodic_payment = principal / term_months
        total_interest = Money.zero(currency)
    else:
        factor = (Decimal('1') + r) ** term_months
        periodic_payment = Money(principal.amount * r * factor / (factor - Decimal('1')), currency)
        total_interest = periodic_payment * term_months - principal

    # Rounding the payment to the currency quantum can leave an empty or
    # negative last installment for tiny principals over long terms
    if not periodic_payment.is_positive() or total_interest.is_negative() or any(
        not part.is_positive() for part, _ in _split_installments(principal, r, term_months, periodic_payment)
    ):
        raise InvalidLoanParameters(
            f"Principal {principal.to_string()} is too small to repay over {term_months} months"
        )

    return AmortizationResult(
        periodic_payment=periodic_payment,
        total_interest=total_interest,
        total_payable=principal + total_interest,
    )


def generate_schedule(
    principal: Money,
    annual_rate_percent,
    term_months: int,
    periodic_payment: Money,
    start_date: date,
    due_date_policy: Optional[DueDatePolicy] = None
) -> List[Installment]:
    """
    Build the repayment schedule month by month

    Interest is charged on the remaining principal, the rest of the payment
    reduces principal. The final installment settles exactly the principal
    left, so principal components always sum to the original principal.

    Args:
        principal: Amount borrowed
        annual_rate_percent: Nominal annual rate in percent
        term_months: Number of installments
        periodic_payment: Payment from compute_amortization
        start_date: Date the schedule counts from
        due_date_policy: Period strategy, 30-day periods by default

    Returns:
        Installments numbered 1..term_months, all pending
    """
    rate = validate_parameters(principal, annual_rate_percent, term_months)
    if periodic_payment.currency != principal.currency:
        raise InvalidLoanParameters("Payment currency must match principal currency")

    policy = due_date_policy or ThirtyDayPeriod()
    if isinstance(start_date, datetime):
        start_date = start_date.date()

    r = monthly_rate(rate)
    currency = principal.currency
    schedule: List[Installment] = []

    rows = _split_installments(principal, r, term_months, periodic_payment)
    for number, (principal_part, interest) in enumerate(rows, start=1):
        if principal_part.is_negative():
            raise InvalidLoanParameters(
                f"Payment {periodic_payment.to_string()} overpays the principal before installment {number}"
            )

        schedule.append(Installment(
            installment_number=number,
            due_date=policy.due_date(start_date, number),
            amount_due=principal_part + interest,
            principal_component=principal_part,
            interest_component=interest,
            paid_amount=Money.zero(currency),
        ))

    return schedule
