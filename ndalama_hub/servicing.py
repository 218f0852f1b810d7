"""
Loan Servicing Module

The workflow layer around the lifecycle engine: applications, approval,
disbursement, repayments and the scheduled arrears review. Every change is
persisted with an optimistic version check, recorded in the audit trail and
logged.
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

from .amortization import (
    AmortizationResult, DueDatePolicy, Installment, ThirtyDayPeriod,
    compute_amortization, generate_schedule
)
from .arrears import DEFAULT_THRESHOLD_DAYS, MONITORED_STATUSES, review_arrears
from .audit import AuditEventType, AuditTrail
from .companies import CompanyManager
from .currency import Currency, Money
from .errors import (
    ConcurrentModificationError, InvalidLoanParameters, LoanNotFound,
    LoanPolicyViolation, NdalamaError
)
from .loans import (
    MAX_PURPOSE_LENGTH, DisbursementMethod, DocumentType, Guarantor, Loan,
    LoanDocument, LoanNote, LoanSummary, format_loan_number
)
from .logging_config import get_logger, log_action
from .repayments import OverpaymentPolicy, PaymentResult, apply_payment
from .state_machine import OPEN_STATUSES, LoanStatus, StatusChange, TransitionTrigger, transition
from .storage import StorageInterface

logger = get_logger("ndalama.loans")


def _as_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except ArithmeticError:
        raise InvalidLoanParameters(f"Loan amount {value!r} is not a number")
    if not amount.is_finite():
        raise InvalidLoanParameters(f"Loan amount {value!r} is not a finite number")
    return amount


class LoanManager:
    """
    Manages loans from application through final repayment
    """

    def __init__(
        self,
        storage: StorageInterface,
        company_manager: CompanyManager,
        audit_trail: Optional[AuditTrail] = None,
        due_date_policy: Optional[DueDatePolicy] = None,
        overpayment_policy: OverpaymentPolicy = OverpaymentPolicy.ACCEPT,
        min_loan_amount: Decimal = Decimal('100'),
        max_loan_amount: Decimal = Decimal('1000000'),
        max_term_months: int = 60,
        default_threshold_days: int = DEFAULT_THRESHOLD_DAYS,
        default_currency: Currency = Currency.MWK
    ):
        self.storage = storage
        self.company_manager = company_manager
        self.audit_trail = audit_trail
        self.due_date_policy = due_date_policy or ThirtyDayPeriod()
        self.overpayment_policy = overpayment_policy
        self.min_loan_amount = Decimal(str(min_loan_amount))
        self.max_loan_amount = Decimal(str(max_loan_amount))
        self.max_term_months = max_term_months
        self.default_threshold_days = default_threshold_days
        self.default_currency = default_currency

        self.loans_table = "loans"

    # Applications

    def _validate_terms(self, amount: Decimal, term_months: int, max_for_company: Decimal) -> None:
        if amount < self.min_loan_amount or amount > self.max_loan_amount:
            raise InvalidLoanParameters(
                f"Loan amount must be between {self.min_loan_amount} and {self.max_loan_amount}"
            )
        if isinstance(term_months, bool) or not isinstance(term_months, int) \
                or not 1 <= term_months <= self.max_term_months:
            raise InvalidLoanParameters(f"Term must be between 1 and {self.max_term_months} months")
        if amount > max_for_company:
            raise LoanPolicyViolation(f"Loan amount exceeds the company maximum of {max_for_company}")

    def _next_loan_number(self, year: int) -> str:
        prefix = str(year)
        applied = self.storage.find_where(
            self.loans_table, lambda record: record.get('application_date', '').startswith(prefix)
        )
        return format_loan_number(year, len(applied) + 1)

    def apply_for_loan(
        self,
        applicant_id: str,
        company_id: str,
        amount: Union[Decimal, int, str],
        term_months: Optional[int] = None,
        purpose: str = "",
        guarantor: Optional[Guarantor] = None,
        application_date: Optional[datetime] = None,
        user_id: Optional[str] = None
    ) -> Loan:
        """
        Create a loan application for an employee of a company

        The interest rate and default term come from the settings of the
        lender behind the company; the repayment schedule is generated
        straight away and anchored at the application date.

        Args:
            applicant_id: Borrower reference
            company_id: Borrower's employer (or the lender itself)
            amount: Requested principal
            term_months: Repayment term, defaults to the lender's repayment period
            purpose: Free text, at most 200 characters
            guarantor: Optional guarantor details
            application_date: Defaults to now
            user_id: User submitting the application

        Returns:
            The new Loan in pending_approval

        Raises:
            CompanyNotFound: Unknown company
            InvalidLoanParameters: Amount, term or purpose out of range
            LoanPolicyViolation: Above the company maximum, or an open loan
                already exists and multiple loans are not allowed
        """
        company = self.company_manager.require_company(company_id)
        lender = self.company_manager.get_lender_for(company)
        settings = lender.settings

        amount = _as_amount(amount)
        if term_months is None:
            term_months = settings.repayment_period
        self._validate_terms(amount, term_months, settings.max_loan_amount)

        if len(purpose or "") > MAX_PURPOSE_LENGTH:
            raise InvalidLoanParameters(f"Purpose cannot exceed {MAX_PURPOSE_LENGTH} characters")

        if not settings.allow_multiple_loans:
            open_loans = [
                loan for loan in self.list_loans(applicant_id=applicant_id)
                if loan.status in OPEN_STATUSES
            ]
            if open_loans:
                raise LoanPolicyViolation(
                    f"Applicant already has an open loan ({open_loans[0].loan_number})"
                )

        now = datetime.now(timezone.utc)
        applied_at = application_date or now

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_number=self._next_loan_number(applied_at.year),
            applicant_id=applicant_id,
            company_id=company.id,
            lender_company_id=lender.id,
            principal=Money(amount, lender.currency),
            annual_interest_rate_percent=settings.interest_rate,
            term_months=term_months,
            purpose=purpose or "",
            guarantor=guarantor,
            application_date=applied_at,
        )
        loan.build_schedule(applied_at.date(), self.due_date_policy)
        self._save_loan(loan)

        self._audit(AuditEventType.LOAN_APPLIED, loan, user_id, {
            "loan_number": loan.loan_number,
            "applicant_id": applicant_id,
            "company_id": company.id,
            "principal": loan.principal.to_string(),
            "annual_rate": str(loan.annual_interest_rate_percent),
            "term_months": term_months,
            "periodic_payment": loan.periodic_payment.to_string(),
        })
        log_action(logger, "info", f"Loan {loan.loan_number} applied for",
                   user_id=user_id, action="apply_for_loan", resource=f"loan:{loan.id}",
                   extra={"principal": str(amount), "term_months": term_months})
        return loan

    def quote(
        self,
        amount: Union[Decimal, int, str],
        term_months: int,
        annual_interest_rate_percent=None,
        company_id: Optional[str] = None,
        currency: Optional[Currency] = None,
        start_date: Optional[date] = None
    ) -> Tuple[AmortizationResult, List[Installment]]:
        """Amortization preview without creating a loan; a company sets rate and currency"""
        currency = currency or self.default_currency
        if company_id:
            lender = self.company_manager.get_lender_for(self.company_manager.require_company(company_id))
            currency = lender.currency
            if annual_interest_rate_percent is None:
                annual_interest_rate_percent = lender.settings.interest_rate
        if annual_interest_rate_percent is None:
            raise InvalidLoanParameters("An interest rate or a company is required for a quote")

        principal = Money(_as_amount(amount), currency)
        result = compute_amortization(principal, annual_interest_rate_percent, term_months)
        schedule = generate_schedule(
            principal, annual_interest_rate_percent, term_months, result.periodic_payment,
            start_date or date.today(), self.due_date_policy
        )
        return result, schedule

    def update_loan_terms(
        self,
        loan_id: str,
        amount=None,
        term_months: Optional[int] = None,
        annual_interest_rate_percent=None,
        user_id: Optional[str] = None
    ) -> Loan:
        """
        Change amount, term or rate before disbursement and rebuild the schedule

        Raises:
            ScheduleAlreadyLocked: Loan already disbursed
        """
        loan = self.require_loan(loan_id)
        company = self.company_manager.require_company(loan.company_id)
        lender = self.company_manager.get_lender_for(company)

        new_amount = _as_amount(amount) if amount is not None else loan.principal.amount
        new_term = term_months if term_months is not None else loan.term_months
        self._validate_terms(new_amount, new_term, lender.settings.max_loan_amount)

        previous = {
            "principal": str(loan.principal.amount),
            "term_months": loan.term_months,
            "annual_rate": str(loan.annual_interest_rate_percent),
        }
        loan.update_terms(
            principal=Money(new_amount, loan.currency),
            annual_interest_rate_percent=annual_interest_rate_percent,
            term_months=new_term,
            due_date_policy=self.due_date_policy,
        )
        self._save_loan(loan)

        self._audit(AuditEventType.LOAN_TERMS_UPDATED, loan, user_id, {
            "previous": previous,
            "principal": str(loan.principal.amount),
            "term_months": loan.term_months,
            "annual_rate": str(loan.annual_interest_rate_percent),
        })
        log_action(logger, "info", f"Terms updated for loan {loan.loan_number}",
                   user_id=user_id, action="update_loan_terms", resource=f"loan:{loan.id}")
        return loan

    # Workflow

    def approve_loan(self, loan_id: str, approved_by: str, notes: Optional[str] = None) -> Loan:
        loan = self.require_loan(loan_id)
        change = transition(loan, LoanStatus.APPROVED, TransitionTrigger.WORKFLOW, actor_id=approved_by)
        loan.approved_by = approved_by
        loan.approved_at = change.changed_at
        loan.approval_notes = notes
        self._save_loan(loan)

        self._audit(AuditEventType.LOAN_APPROVED, loan, approved_by, {"notes": notes})
        log_action(logger, "info", f"Loan {loan.loan_number} approved",
                   user_id=approved_by, action="approve_loan", resource=f"loan:{loan.id}")
        return loan

    def reject_loan(self, loan_id: str, rejected_by: str, reason: str) -> Loan:
        """Reject an application; a reason is mandatory"""
        loan = self.require_loan(loan_id)
        change = transition(loan, LoanStatus.REJECTED, TransitionTrigger.WORKFLOW,
                            actor_id=rejected_by, reason=reason)
        loan.approved_by = rejected_by
        loan.approved_at = change.changed_at
        loan.approval_notes = reason
        self._save_loan(loan)

        self._audit(AuditEventType.LOAN_REJECTED, loan, rejected_by, {"reason": reason})
        log_action(logger, "info", f"Loan {loan.loan_number} rejected",
                   user_id=rejected_by, action="reject_loan", resource=f"loan:{loan.id}")
        return loan

    def update_status(self, loan_id: str, target: LoanStatus, user_id: str,
                      reason: Optional[str] = None) -> Loan:
        """
        Move an application between the intermediate workflow states
        (pending_documents, under_review, pending_disbursement)
        """
        if target not in (LoanStatus.PENDING_APPROVAL, LoanStatus.PENDING_DOCUMENTS,
                          LoanStatus.UNDER_REVIEW, LoanStatus.PENDING_DISBURSEMENT):
            raise NdalamaError(f"Use the dedicated operation to move a loan to {target.value}")

        loan = self.require_loan(loan_id)
        change = transition(loan, target, TransitionTrigger.WORKFLOW, actor_id=user_id, reason=reason)
        self._save_loan(loan)
        self._audit_status_change(loan, change)
        return loan

    def disburse_loan(
        self,
        loan_id: str,
        disbursed_by: str,
        method: DisbursementMethod = DisbursementMethod.BANK_TRANSFER,
        disbursed_at: Optional[datetime] = None
    ) -> Loan:
        """
        Release funds to the borrower and lock the schedule

        Raises:
            DisbursementPreconditionFailed: Not approved, no schedule, or
                guarantor required by company policy but missing
        """
        loan = self.require_loan(loan_id)
        company = self.company_manager.require_company(loan.company_id)
        lender = self.company_manager.get_lender_for(company)
        require_guarantor = company.settings.require_guarantor or lender.settings.require_guarantor

        change = transition(loan, LoanStatus.DISBURSED, TransitionTrigger.WORKFLOW,
                            actor_id=disbursed_by, at=disbursed_at,
                            require_guarantor=require_guarantor)
        loan.disbursed_by = disbursed_by
        loan.disbursed_at = change.changed_at
        loan.disbursement_method = method
        self._save_loan(loan)

        self._audit(AuditEventType.LOAN_DISBURSED, loan, disbursed_by, {
            "amount": loan.principal.to_string(),
            "method": method.value,
            "first_due_date": loan.repayment_schedule[0].due_date.isoformat(),
        })
        log_action(logger, "info", f"Loan {loan.loan_number} disbursed",
                   user_id=disbursed_by, action="disburse_loan", resource=f"loan:{loan.id}",
                   extra={"amount": str(loan.principal.amount), "method": method.value})
        return loan

    def cancel_loan(self, loan_id: str, cancelled_by: str, reason: str) -> Loan:
        loan = self.require_loan(loan_id)
        transition(loan, LoanStatus.CANCELLED, TransitionTrigger.WORKFLOW,
                   actor_id=cancelled_by, reason=reason)
        loan.cancelled_reason = reason
        self._save_loan(loan)

        self._audit(AuditEventType.LOAN_CANCELLED, loan, cancelled_by, {"reason": reason})
        log_action(logger, "info", f"Loan {loan.loan_number} cancelled",
                   user_id=cancelled_by, action="cancel_loan", resource=f"loan:{loan.id}")
        return loan

    # Repayments

    def record_repayment(
        self,
        loan_id: str,
        installment_number: int,
        amount: Union[Money, Decimal, int, str],
        paid_at: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
        policy: Optional[OverpaymentPolicy] = None,
        user_id: Optional[str] = None
    ) -> PaymentResult:
        """
        Apply a repayment and persist the loan

        A payment carrying an idempotency key that was already processed is
        ignored and reported with no allocations.

        Returns:
            PaymentResult of the underlying payment application
        """
        loan = self.require_loan(loan_id)

        if idempotency_key and idempotency_key in loan.processed_payment_keys:
            log_action(logger, "info", f"Duplicate repayment ignored for loan {loan.loan_number}",
                       user_id=user_id, action="record_repayment", resource=f"loan:{loan.id}",
                       extra={"idempotency_key": idempotency_key})
            return PaymentResult(loan=loan)

        history_length = len(loan.status_history)
        result = apply_payment(loan, installment_number, amount,
                               policy or self.overpayment_policy, paid_at)
        if idempotency_key:
            loan.processed_payment_keys.append(idempotency_key)
        self._save_loan(loan)

        self._audit(AuditEventType.REPAYMENT_RECORDED, loan, user_id, {
            "installment_number": installment_number,
            "amount": str(result.applied.amount),
            "unapplied": str(result.unapplied.amount),
            "allocations": [a.to_dict() for a in result.allocations],
            "total_paid": str(loan.payment_tracking.total_paid.amount),
        })
        for change in loan.status_history[history_length:]:
            self._audit_status_change(loan, change)

        log_action(logger, "info", f"Repayment recorded for loan {loan.loan_number}",
                   user_id=user_id, action="record_repayment", resource=f"loan:{loan.id}",
                   extra={"installment_number": installment_number,
                          "amount": str(result.applied.amount),
                          "status": loan.status.value})
        return result

    # Notes and documents

    def add_note(self, loan_id: str, author_id: str, message: str) -> LoanNote:
        if not message or not message.strip():
            raise NdalamaError("Note message is required")
        loan = self.require_loan(loan_id)
        note = LoanNote(author_id=author_id, message=message.strip())
        loan.notes.append(note)
        self._save_loan(loan)
        self._audit(AuditEventType.LOAN_NOTE_ADDED, loan, author_id, {"message": note.message})
        return note

    def attach_document(self, loan_id: str, document_type: DocumentType, filename: str,
                        original_name: str, user_id: Optional[str] = None) -> LoanDocument:
        loan = self.require_loan(loan_id)
        document = LoanDocument(document_type=document_type, filename=filename, original_name=original_name)
        loan.documents.append(document)
        self._save_loan(loan)
        log_action(logger, "info", f"Document attached to loan {loan.loan_number}",
                   user_id=user_id, action="attach_document", resource=f"loan:{loan.id}",
                   extra={"document_type": document_type.value})
        return document

    # Arrears

    def run_arrears_review(self, as_of: Optional[Union[date, datetime]] = None) -> Dict[str, int]:
        """
        Scheduled arrears pass over every monitored loan

        Returns:
            Counts of loans reviewed, status changes by target and failures
        """
        as_of = as_of or datetime.now(timezone.utc)
        results = {"loans_reviewed": 0, "status_changes": 0, "in_arrears": 0,
                   "defaulted": 0, "recovered": 0, "failed": 0}

        candidates = [
            Loan.from_dict(data) for data in self.storage.find_where(
                self.loans_table,
                lambda record: record.get('status') in {s.value for s in MONITORED_STATUSES}
            )
        ]

        for loan in candidates:
            try:
                change = review_arrears(loan, as_of, self.default_threshold_days)
                self._save_loan(loan)
            except NdalamaError as e:
                results["failed"] += 1
                log_action(logger, "error", f"Arrears review failed for loan {loan.loan_number}: {e}",
                           action="run_arrears_review", resource=f"loan:{loan.id}")
                continue

            results["loans_reviewed"] += 1
            if change is None:
                continue

            results["status_changes"] += 1
            if change.to_status == LoanStatus.DEFAULTED:
                results["defaulted"] += 1
            elif change.to_status == LoanStatus.IN_ARREARS:
                results["in_arrears"] += 1
            elif change.to_status == LoanStatus.ACTIVE:
                results["recovered"] += 1
            self._audit_status_change(loan, change)

        self._audit(AuditEventType.ARREARS_REVIEWED, None, None, dict(results))
        log_action(logger, "info", "Arrears review completed", action="run_arrears_review", extra=results)
        return results

    # Queries

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found")
        return loan

    def get_loan_by_number(self, loan_number: str) -> Optional[Loan]:
        records = self.storage.find(self.loans_table, {'loan_number': loan_number})
        return Loan.from_dict(records[0]) if records else None

    def list_loans(
        self,
        status: Optional[LoanStatus] = None,
        company_id: Optional[str] = None,
        applicant_id: Optional[str] = None,
        lender_company_id: Optional[str] = None
    ) -> List[Loan]:
        """Loans matching all given filters, newest application first"""
        filters: Dict[str, Any] = {}
        if status:
            filters['status'] = status.value
        if company_id:
            filters['company_id'] = company_id
        if applicant_id:
            filters['applicant_id'] = applicant_id
        if lender_company_id:
            filters['lender_company_id'] = lender_company_id

        records = self.storage.find(self.loans_table, filters) if filters \
            else self.storage.load_all(self.loans_table)
        loans = [Loan.from_dict(data) for data in records]
        loans.sort(key=lambda loan: loan.application_date, reverse=True)
        return loans

    def get_summary(self, loan_id: str) -> LoanSummary:
        return self.require_loan(loan_id).get_summary()

    # Persistence

    def _save_loan(self, loan: Loan) -> None:
        """Save with an optimistic version check; bumps loan.version"""
        with self.storage.atomic():
            existing = self.storage.load(self.loans_table, loan.id)
            stored_version = existing.get('version', 0) if existing else 0
            if existing is not None and stored_version != loan.version:
                raise ConcurrentModificationError(
                    f"Loan {loan.loan_number} was modified concurrently "
                    f"(version {loan.version}, stored {stored_version})"
                )
            loan.version += 1
            loan.touch()
            self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def _audit(self, event_type: AuditEventType, loan: Optional[Loan], user_id: Optional[str],
               metadata: Dict[str, Any]) -> None:
        if not self.audit_trail:
            return
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="loan",
            entity_id=loan.id if loan else "arrears_review",
            metadata=metadata,
            user_id=user_id
        )

    def _audit_status_change(self, loan: Loan, change: StatusChange) -> None:
        self._audit(AuditEventType.LOAN_STATUS_CHANGED, loan, change.actor_id, change.to_dict())
        log_action(logger, "info",
                   f"Loan {loan.loan_number} moved from {change.from_status.value} to {change.to_status.value}",
                   user_id=change.actor_id, action="status_change", resource=f"loan:{loan.id}",
                   extra={"trigger": change.trigger.value})
