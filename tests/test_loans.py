"""
Test suite for the loan aggregate

Derived amounts, schedule locking after disbursement, the repayment
summary and document serialization.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from ndalama_hub.amortization import InstallmentStatus, CalendarMonthPeriod, compute_amortization
from ndalama_hub.currency import Money, Currency, sum_money
from ndalama_hub.errors import InstallmentNotFound, InvalidLoanParameters, ScheduleAlreadyLocked
from ndalama_hub.loans import (
    Loan, Guarantor, LoanNote, LoanDocument, DocumentType, format_loan_number, get_summary
)
from ndalama_hub.repayments import apply_payment
from ndalama_hub.state_machine import LoanStatus, transition


class TestLoanNumbers:

    def test_format(self):
        assert format_loan_number(2025, 7) == "LN20250007"
        assert format_loan_number(2026, 1234) == "LN20261234"


class TestLoanDerivedValues:

    def test_amounts_computed_on_creation(self, make_loan):
        loan = make_loan(schedule=False)
        expected = compute_amortization(loan.principal, Decimal('15'), 12)

        assert loan.periodic_payment == expected.periodic_payment
        assert loan.total_interest == expected.total_interest
        assert loan.total_payable == expected.total_payable
        assert loan.payment_tracking.total_paid.is_zero()

    def test_term_bounded_to_sixty_months(self, make_loan):
        with pytest.raises(InvalidLoanParameters):
            make_loan(term=61, schedule=False)
        assert make_loan(term=60, schedule=False).term_months == 60

    def test_rate_normalized_to_decimal(self, make_loan):
        loan = make_loan(rate="12.5", schedule=False)
        assert loan.annual_interest_rate_percent == Decimal('12.5')

    def test_update_terms_rebuilds_schedule(self, make_loan):
        loan = make_loan()
        old_payment = loan.periodic_payment

        loan.update_terms(principal=Money(Decimal('24000'), Currency.MWK), term_months=24)

        assert loan.periodic_payment != old_payment
        assert len(loan.repayment_schedule) == 24
        assert sum_money((i.principal_component for i in loan.repayment_schedule), Currency.MWK).amount \
            == Decimal('24000.00')


class TestScheduleLock:

    def test_build_schedule_sets_dates(self, make_loan):
        loan = make_loan(schedule=False)
        loan.build_schedule(date(2025, 3, 1))

        assert loan.start_date == date(2025, 3, 1)
        assert loan.end_date == loan.repayment_schedule[-1].due_date

    def test_build_schedule_defaults_to_application_date(self, make_loan):
        loan = make_loan(schedule=False)
        loan.build_schedule()
        assert loan.start_date == loan.application_date.date()

    def test_calendar_policy(self, make_loan):
        loan = make_loan(schedule=False)
        loan.build_schedule(date(2025, 1, 31), CalendarMonthPeriod())
        assert loan.repayment_schedule[0].due_date == date(2025, 2, 28)

    def test_schedule_locked_after_disbursement(self, disbursed_loan):
        with pytest.raises(ScheduleAlreadyLocked):
            disbursed_loan.build_schedule(date(2025, 2, 1))

    def test_terms_locked_after_disbursement(self, disbursed_loan):
        with pytest.raises(ScheduleAlreadyLocked):
            disbursed_loan.update_terms(term_months=6)
        assert disbursed_loan.term_months == 12

    def test_rebuild_allowed_while_approved(self, make_loan):
        loan = make_loan()
        transition(loan, LoanStatus.APPROVED)
        loan.build_schedule(date(2025, 2, 1))
        assert loan.repayment_schedule[0].due_date == date(2025, 3, 3)

    def test_get_installment(self, disbursed_loan):
        assert disbursed_loan.get_installment(3).installment_number == 3
        with pytest.raises(InstallmentNotFound):
            disbursed_loan.get_installment(13)


class TestLoanSummary:

    def test_fresh_loan(self, make_loan):
        loan = make_loan()
        summary = get_summary(loan)

        expected_total = sum_money((i.amount_due for i in loan.repayment_schedule), Currency.MWK)
        assert summary.total_amount == expected_total
        assert summary.total_paid.is_zero()
        assert summary.remaining_balance == expected_total
        assert summary.overdue_amount.is_zero()
        assert summary.next_pending_installment.installment_number == 1

    def test_without_schedule_uses_total_payable(self, make_loan):
        loan = make_loan(schedule=False)
        summary = loan.get_summary()
        assert summary.total_amount == loan.total_payable
        assert summary.next_pending_installment is None

    def test_after_payment(self, disbursed_loan):
        first = disbursed_loan.repayment_schedule[0]
        apply_payment(disbursed_loan, 1, first.amount_due)
        summary = disbursed_loan.get_summary()

        assert summary.total_paid == first.amount_due
        assert summary.remaining_balance == summary.total_amount - first.amount_due
        assert summary.next_pending_installment.installment_number == 2

    def test_overdue_amount(self, disbursed_loan):
        disbursed_loan.repayment_schedule[0].status = InstallmentStatus.OVERDUE
        summary = disbursed_loan.get_summary()
        assert summary.overdue_amount == disbursed_loan.repayment_schedule[0].amount_due

    def test_summary_does_not_mutate(self, disbursed_loan):
        before = disbursed_loan.to_dict()
        disbursed_loan.get_summary()
        assert disbursed_loan.to_dict() == before

    def test_to_dict(self, make_loan):
        data = make_loan().get_summary().to_dict()
        assert data['currency'] == "MWK"
        assert data['next_pending_installment']['installment_number'] == 1


class TestLoanSerialization:

    def test_document_round_trip(self, disbursed_loan):
        loan = disbursed_loan
        loan.guarantor = Guarantor(name="Tamanda Phiri", phone="+265888000111", relationship="spouse")
        loan.notes.append(LoanNote(author_id="officer", message="Payslip verified"))
        loan.documents.append(LoanDocument(DocumentType.PAYSLIP, "f1.pdf", "march-payslip.pdf"))
        apply_payment(loan, 1, Decimal('500'), paid_at=datetime(2025, 1, 20, tzinfo=timezone.utc))

        restored = Loan.from_dict(loan.to_dict())

        assert restored.to_dict() == loan.to_dict()
        assert restored.status == LoanStatus.ACTIVE
        assert restored.repayment_schedule[0].status == InstallmentStatus.PARTIAL
        assert restored.repayment_schedule[0].paid_amount.amount == Decimal('500.00')
        assert restored.guarantor.is_complete()
        assert restored.notes[0].message == "Payslip verified"
        assert restored.documents[0].document_type == DocumentType.PAYSLIP
        assert restored.status_history[-1].to_status == LoanStatus.ACTIVE

    def test_money_stored_as_strings(self, make_loan):
        data = make_loan().to_dict()
        assert data['principal'] == "12000.00"
        assert data['currency'] == "MWK"
        assert isinstance(data['repayment_schedule'][0]['amount_due'], str)
