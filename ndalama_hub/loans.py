"""
Loan Module

The Loan aggregate: application details, derived amortization amounts, the
embedded repayment schedule, payment tracking and workflow stamps, plus its
document serialization and the read-only summary used by reporting.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .amortization import (
    DueDatePolicy, Installment, InstallmentStatus, compute_amortization, generate_schedule
)
from .currency import Currency, Money, sum_money
from .errors import InstallmentNotFound, InvalidLoanParameters, ScheduleAlreadyLocked
from .state_machine import DISBURSED_STATUSES, INITIAL_STATUS, LoanStatus, StatusChange
from .storage import StorageRecord

MAX_TERM_MONTHS = 60
MAX_PURPOSE_LENGTH = 200


class DisbursementMethod(Enum):
    """How approved funds reach the borrower"""
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"
    CASH = "cash"
    PAYROLL_DEDUCTION = "payroll_deduction"


class DocumentType(Enum):
    """Supporting documents attached to an application"""
    ID_DOCUMENT = "id_document"
    PAYSLIP = "payslip"
    BANK_STATEMENT = "bank_statement"
    OTHER = "other"


def format_loan_number(year: int, sequence: int) -> str:
    """Loan numbers look like LN20250007: year plus a 4-digit yearly sequence"""
    return f"LN{year}{sequence:04d}"


@dataclass
class Guarantor:
    """Third party pledging to cover the loan"""
    name: str = ""
    phone: str = ""
    relationship: str = ""
    id_number: str = ""

    def is_complete(self) -> bool:
        return bool(self.name.strip() and self.phone.strip())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'phone': self.phone,
            'relationship': self.relationship,
            'id_number': self.id_number,
        }


@dataclass
class LoanDocument:
    document_type: DocumentType
    filename: str
    original_name: str
    uploaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'document_type': self.document_type.value,
            'filename': self.filename,
            'original_name': self.original_name,
            'uploaded_at': self.uploaded_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanDocument':
        return cls(
            document_type=DocumentType(data['document_type']),
            filename=data['filename'],
            original_name=data['original_name'],
            uploaded_at=datetime.fromisoformat(data['uploaded_at']),
        )


@dataclass
class LoanNote:
    author_id: str
    message: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'author_id': self.author_id,
            'message': self.message,
            'created_at': self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanNote':
        return cls(
            author_id=data['author_id'],
            message=data['message'],
            created_at=datetime.fromisoformat(data['created_at']),
        )


@dataclass
class PaymentTrackingSummary:
    """Aggregates maintained by the payment ledger and the arrears monitor"""
    total_paid: Money
    last_payment_date: Optional[datetime] = None
    days_in_arrears: int = 0
    missed_payments_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_paid': str(self.total_paid.amount),
            'last_payment_date': self.last_payment_date.isoformat() if self.last_payment_date else None,
            'days_in_arrears': self.days_in_arrears,
            'missed_payments_count': self.missed_payments_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], currency: Currency) -> 'PaymentTrackingSummary':
        return cls(
            total_paid=Money(Decimal(data.get('total_paid', '0')), currency),
            last_payment_date=(
                datetime.fromisoformat(data['last_payment_date']) if data.get('last_payment_date') else None
            ),
            days_in_arrears=data.get('days_in_arrears', 0),
            missed_payments_count=data.get('missed_payments_count', 0),
        )


@dataclass(frozen=True)
class LoanSummary:
    """Read-only repayment position of a loan"""
    total_amount: Money
    total_paid: Money
    remaining_balance: Money
    overdue_amount: Money
    next_pending_installment: Optional[Installment]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_amount': str(self.total_amount.amount),
            'total_paid': str(self.total_paid.amount),
            'remaining_balance': str(self.remaining_balance.amount),
            'overdue_amount': str(self.overdue_amount.amount),
            'currency': self.total_amount.currency.code,
            'next_pending_installment': (
                self.next_pending_installment.to_dict() if self.next_pending_installment else None
            ),
        }


@dataclass
class Loan(StorageRecord):
    """Loan application and, once disbursed, the repayment account"""
    loan_number: str
    applicant_id: str
    company_id: str                      # employer of the applicant
    lender_company_id: str
    principal: Money
    annual_interest_rate_percent: Decimal  # e.g. Decimal('15') for 15%
    term_months: int
    purpose: str = ""
    status: LoanStatus = INITIAL_STATUS

    # Derived from principal/rate/term
    periodic_payment: Money = None
    total_interest: Money = None
    total_payable: Money = None

    repayment_schedule: List[Installment] = field(default_factory=list)
    payment_tracking: PaymentTrackingSummary = None

    guarantor: Optional[Guarantor] = None
    documents: List[LoanDocument] = field(default_factory=list)
    notes: List[LoanNote] = field(default_factory=list)

    # Workflow stamps
    application_date: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approval_notes: Optional[str] = None
    disbursed_by: Optional[str] = None
    disbursed_at: Optional[datetime] = None
    disbursement_method: DisbursementMethod = DisbursementMethod.BANK_TRANSFER
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    cancelled_reason: Optional[str] = None

    status_history: List[StatusChange] = field(default_factory=list)
    processed_payment_keys: List[str] = field(default_factory=list)
    version: int = 0

    def __post_init__(self):
        if not isinstance(self.annual_interest_rate_percent, Decimal):
            self.annual_interest_rate_percent = Decimal(str(self.annual_interest_rate_percent))

        if self.payment_tracking is None:
            self.payment_tracking = PaymentTrackingSummary(total_paid=Money.zero(self.currency))

        if self.periodic_payment is None:
            self.recalculate()

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def is_schedule_locked(self) -> bool:
        """The schedule shape is frozen once funds have been disbursed"""
        return self.status in DISBURSED_STATUSES

    @property
    def is_fully_paid(self) -> bool:
        return bool(self.repayment_schedule) and all(i.is_paid for i in self.repayment_schedule)

    def recalculate(self) -> None:
        """Recompute payment, interest and total payable from the terms"""
        if self.is_schedule_locked:
            raise ScheduleAlreadyLocked(f"Loan {self.loan_number} has been disbursed; terms are fixed")
        if isinstance(self.term_months, int) and self.term_months > MAX_TERM_MONTHS:
            raise InvalidLoanParameters(f"Term cannot exceed {MAX_TERM_MONTHS} months")

        result = compute_amortization(self.principal, self.annual_interest_rate_percent, self.term_months)
        self.periodic_payment = result.periodic_payment
        self.total_interest = result.total_interest
        self.total_payable = result.total_payable

    def build_schedule(self, start_date: Optional[date] = None,
                       due_date_policy: Optional[DueDatePolicy] = None) -> List[Installment]:
        """
        Generate the repayment schedule from the current terms

        Raises:
            ScheduleAlreadyLocked: If the loan has already been disbursed
        """
        if self.is_schedule_locked:
            raise ScheduleAlreadyLocked(
                f"Loan {self.loan_number} is {self.status.value}; its schedule cannot be regenerated"
            )

        anchor = start_date or self.application_date.date()
        self.repayment_schedule = generate_schedule(
            self.principal,
            self.annual_interest_rate_percent,
            self.term_months,
            self.periodic_payment,
            anchor,
            due_date_policy,
        )
        self.start_date = anchor
        self.end_date = self.repayment_schedule[-1].due_date
        return self.repayment_schedule

    def update_terms(self, principal: Optional[Money] = None, annual_interest_rate_percent=None,
                     term_months: Optional[int] = None,
                     due_date_policy: Optional[DueDatePolicy] = None) -> None:
        """Change amount, rate or term and rebuild derived values before disbursement"""
        if self.is_schedule_locked:
            raise ScheduleAlreadyLocked(f"Loan {self.loan_number} has been disbursed; terms are fixed")

        if principal is not None:
            self.principal = principal
        if annual_interest_rate_percent is not None:
            self.annual_interest_rate_percent = Decimal(str(annual_interest_rate_percent))
        if term_months is not None:
            self.term_months = term_months

        self.recalculate()
        if self.repayment_schedule:
            self.build_schedule(self.start_date, due_date_policy)

    def get_installment(self, installment_number: int) -> Installment:
        for installment in self.repayment_schedule:
            if installment.installment_number == installment_number:
                return installment
        raise InstallmentNotFound(
            f"Installment {installment_number} not found on loan {self.loan_number}"
        )

    def get_summary(self) -> LoanSummary:
        return get_summary(self)

    def to_dict(self) -> Dict[str, Any]:
        """Convert loan to a storage document"""
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_number': self.loan_number,
            'applicant_id': self.applicant_id,
            'company_id': self.company_id,
            'lender_company_id': self.lender_company_id,
            'currency': self.currency.code,
            'principal': str(self.principal.amount),
            'annual_interest_rate_percent': str(self.annual_interest_rate_percent),
            'term_months': self.term_months,
            'purpose': self.purpose,
            'status': self.status.value,
            'periodic_payment': str(self.periodic_payment.amount),
            'total_interest': str(self.total_interest.amount),
            'total_payable': str(self.total_payable.amount),
            'repayment_schedule': [i.to_dict() for i in self.repayment_schedule],
            'payment_tracking': self.payment_tracking.to_dict(),
            'guarantor': self.guarantor.to_dict() if self.guarantor else None,
            'documents': [d.to_dict() for d in self.documents],
            'notes': [n.to_dict() for n in self.notes],
            'application_date': self.application_date.isoformat(),
            'approved_by': self.approved_by,
            'approved_at': self.approved_at.isoformat() if self.approved_at else None,
            'approval_notes': self.approval_notes,
            'disbursed_by': self.disbursed_by,
            'disbursed_at': self.disbursed_at.isoformat() if self.disbursed_at else None,
            'disbursement_method': self.disbursement_method.value,
            'start_date': self.start_date.isoformat() if self.start_date else None,
            'end_date': self.end_date.isoformat() if self.end_date else None,
            'cancelled_reason': self.cancelled_reason,
            'status_history': [c.to_dict() for c in self.status_history],
            'processed_payment_keys': list(self.processed_payment_keys),
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        """Rebuild a loan from its storage document"""
        currency = Currency[data['currency']]

        def money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        def when(key: str) -> Optional[datetime]:
            return datetime.fromisoformat(data[key]) if data.get(key) else None

        def day(key: str) -> Optional[date]:
            return date.fromisoformat(data[key]) if data.get(key) else None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            applicant_id=data['applicant_id'],
            company_id=data['company_id'],
            lender_company_id=data['lender_company_id'],
            principal=money('principal'),
            annual_interest_rate_percent=Decimal(data['annual_interest_rate_percent']),
            term_months=data['term_months'],
            purpose=data.get('purpose', ''),
            status=LoanStatus(data['status']),
            periodic_payment=money('periodic_payment'),
            total_interest=money('total_interest'),
            total_payable=money('total_payable'),
            repayment_schedule=[Installment.from_dict(i, currency) for i in data.get('repayment_schedule', [])],
            payment_tracking=PaymentTrackingSummary.from_dict(data.get('payment_tracking') or {}, currency),
            guarantor=Guarantor(**data['guarantor']) if data.get('guarantor') else None,
            documents=[LoanDocument.from_dict(d) for d in data.get('documents', [])],
            notes=[LoanNote.from_dict(n) for n in data.get('notes', [])],
            application_date=datetime.fromisoformat(data['application_date']),
            approved_by=data.get('approved_by'),
            approved_at=when('approved_at'),
            approval_notes=data.get('approval_notes'),
            disbursed_by=data.get('disbursed_by'),
            disbursed_at=when('disbursed_at'),
            disbursement_method=DisbursementMethod(data.get('disbursement_method', 'bank_transfer')),
            start_date=day('start_date'),
            end_date=day('end_date'),
            cancelled_reason=data.get('cancelled_reason'),
            status_history=[StatusChange.from_dict(c) for c in data.get('status_history', [])],
            processed_payment_keys=list(data.get('processed_payment_keys', [])),
            version=data.get('version', 0),
        )


def get_summary(loan: Loan) -> LoanSummary:
    """
    Repayment position of a loan, computable at any time without mutation

    The total is the scheduled amount (which includes the last installment's
    rounding adjustment); the remaining balance is what the schedule still
    expects, so an overpaid installment does not reduce later ones.
    """
    currency = loan.currency
    schedule = loan.repayment_schedule

    if schedule:
        total_amount = sum_money((i.amount_due for i in schedule), currency)
    else:
        total_amount = loan.total_payable

    total_paid = sum_money((i.paid_amount for i in schedule), currency)
    if schedule:
        remaining = sum_money((i.outstanding for i in schedule), currency)
    else:
        remaining = total_amount - total_paid

    overdue = sum_money(
        (i.outstanding for i in schedule if i.status == InstallmentStatus.OVERDUE), currency
    )
    next_pending = next((i for i in schedule if i.status == InstallmentStatus.PENDING), None)

    return LoanSummary(
        total_amount=total_amount,
        total_paid=total_paid,
        remaining_balance=remaining,
        overdue_amount=overdue,
        next_pending_installment=next_pending,
    )
