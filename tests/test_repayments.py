"""
Test suite for payment application

Covers installment status rules, overpayment policies, loan activation and
completion, and the preconditions on payments.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone

from ndalama_hub.amortization import InstallmentStatus
from ndalama_hub.currency import Money, Currency, sum_money
from ndalama_hub.errors import (
    IllegalStatusTransition, InstallmentNotFound, InvalidPaymentAmount, OverpaymentNotAllowed
)
from ndalama_hub.repayments import OverpaymentPolicy, apply_payment
from ndalama_hub.state_machine import LoanStatus, TransitionTrigger, transition

PAID_AT = datetime(2025, 1, 25, 10, 0, tzinfo=timezone.utc)


class TestApplyPayment:

    def test_full_installment_payment(self, disbursed_loan):
        """Paying installment 1 in full marks it paid and activates the loan"""
        first = disbursed_loan.repayment_schedule[0]
        result = apply_payment(disbursed_loan, 1, first.amount_due, paid_at=PAID_AT)

        assert first.status == InstallmentStatus.PAID
        assert first.paid_at == PAID_AT
        assert disbursed_loan.payment_tracking.total_paid == first.amount_due
        assert disbursed_loan.payment_tracking.last_payment_date == PAID_AT
        assert disbursed_loan.status == LoanStatus.ACTIVE
        assert result.unapplied.is_zero()
        assert result.allocations[0].installment_number == 1

    def test_activation_goes_through_state_machine(self, disbursed_loan):
        apply_payment(disbursed_loan, 1, Decimal('100'))
        change = disbursed_loan.status_history[-1]

        assert change.from_status == LoanStatus.DISBURSED
        assert change.to_status == LoanStatus.ACTIVE
        assert change.trigger == TransitionTrigger.PAYMENT

    def test_partial_then_full(self, disbursed_loan):
        first = disbursed_loan.repayment_schedule[0]
        apply_payment(disbursed_loan, 1, Decimal('500'))
        assert first.status == InstallmentStatus.PARTIAL
        assert first.outstanding == first.amount_due - Money(Decimal('500'), Currency.MWK)

        apply_payment(disbursed_loan, 1, first.outstanding)
        assert first.status == InstallmentStatus.PAID
        assert first.outstanding.is_zero()

    def test_full_repayment_completes_loan(self, disbursed_loan):
        for installment in disbursed_loan.repayment_schedule:
            apply_payment(disbursed_loan, installment.installment_number, installment.amount_due)

        assert disbursed_loan.status == LoanStatus.COMPLETED
        assert all(i.status == InstallmentStatus.PAID for i in disbursed_loan.repayment_schedule)
        assert [c.to_status for c in disbursed_loan.status_history][-2:] == [
            LoanStatus.ACTIVE, LoanStatus.COMPLETED
        ]
        expected = sum_money((i.amount_due for i in disbursed_loan.repayment_schedule), Currency.MWK)
        assert disbursed_loan.payment_tracking.total_paid == expected

    def test_eleven_of_twelve_stays_active(self, disbursed_loan):
        for installment in disbursed_loan.repayment_schedule[:-1]:
            apply_payment(disbursed_loan, installment.installment_number, installment.amount_due)
        assert disbursed_loan.status == LoanStatus.ACTIVE

    def test_single_payoff_from_disbursed(self, make_loan):
        loan = make_loan(principal="1000", rate="12", term=1)
        transition(loan, LoanStatus.APPROVED)
        transition(loan, LoanStatus.DISBURSED)

        apply_payment(loan, 1, loan.repayment_schedule[0].amount_due)
        assert [c.to_status for c in loan.status_history][-2:] == [LoanStatus.ACTIVE, LoanStatus.COMPLETED]

    def test_overdue_installment_becomes_partial(self, disbursed_loan):
        first = disbursed_loan.repayment_schedule[0]
        first.status = InstallmentStatus.OVERDUE
        apply_payment(disbursed_loan, 1, Decimal('10'))
        assert first.status == InstallmentStatus.PARTIAL

    def test_paid_installment_never_reverts(self, disbursed_loan):
        first = disbursed_loan.repayment_schedule[0]
        apply_payment(disbursed_loan, 1, first.amount_due)
        apply_payment(disbursed_loan, 1, Decimal('1'))
        assert first.status == InstallmentStatus.PAID

    def test_payment_on_defaulted_loan(self, disbursed_loan):
        transition(disbursed_loan, LoanStatus.DEFAULTED, TransitionTrigger.ARREARS)
        apply_payment(disbursed_loan, 1, Decimal('100'))
        assert disbursed_loan.status == LoanStatus.DEFAULTED

        for installment in disbursed_loan.repayment_schedule:
            apply_payment(disbursed_loan, installment.installment_number, installment.outstanding)
        assert disbursed_loan.status == LoanStatus.COMPLETED


class TestPaymentPreconditions:

    def test_unknown_installment(self, disbursed_loan):
        with pytest.raises(InstallmentNotFound):
            apply_payment(disbursed_loan, 13, Decimal('100'))

    @pytest.mark.parametrize("amount", [Decimal('0'), Decimal('-5'), "0.001"])
    def test_non_positive_amount(self, disbursed_loan, amount):
        with pytest.raises(InvalidPaymentAmount):
            apply_payment(disbursed_loan, 1, amount)

    def test_non_numeric_amount(self, disbursed_loan):
        with pytest.raises(InvalidPaymentAmount):
            apply_payment(disbursed_loan, 1, "ten")

    @pytest.mark.parametrize("amount", ["NaN", Decimal("sNaN"), "Infinity"])
    def test_non_finite_amount(self, disbursed_loan, amount):
        with pytest.raises(InvalidPaymentAmount):
            apply_payment(disbursed_loan, 1, amount)
        assert disbursed_loan.repayment_schedule[0].paid_amount.is_zero()

    def test_wrong_currency(self, disbursed_loan):
        with pytest.raises(InvalidPaymentAmount):
            apply_payment(disbursed_loan, 1, Money(Decimal('100'), Currency.ZMW))

    def test_loan_not_disbursed(self, make_loan):
        loan = make_loan()
        with pytest.raises(IllegalStatusTransition):
            apply_payment(loan, 1, Decimal('100'))

    def test_completed_loan(self, disbursed_loan):
        for installment in disbursed_loan.repayment_schedule:
            apply_payment(disbursed_loan, installment.installment_number, installment.amount_due)
        with pytest.raises(IllegalStatusTransition):
            apply_payment(disbursed_loan, 1, Decimal('1'))


class TestOverpaymentPolicies:

    def test_accept_keeps_excess_on_installment(self, disbursed_loan):
        first, second = disbursed_loan.repayment_schedule[:2]
        amount = first.amount_due + Money(Decimal('100'), Currency.MWK)

        result = apply_payment(disbursed_loan, 1, amount, OverpaymentPolicy.ACCEPT)

        assert first.paid_amount == amount
        assert first.status == InstallmentStatus.PAID
        assert second.paid_amount.is_zero()
        assert second.status == InstallmentStatus.PENDING
        assert result.unapplied.is_zero()
        assert disbursed_loan.payment_tracking.total_paid == amount

    def test_reject_leaves_loan_untouched(self, disbursed_loan):
        first = disbursed_loan.repayment_schedule[0]
        before = disbursed_loan.to_dict()

        with pytest.raises(OverpaymentNotAllowed):
            apply_payment(disbursed_loan, 1, first.amount_due + Money('0.01', Currency.MWK),
                          OverpaymentPolicy.REJECT)

        assert disbursed_loan.to_dict() == before

    def test_reject_allows_exact_amount(self, disbursed_loan):
        first = disbursed_loan.repayment_schedule[0]
        apply_payment(disbursed_loan, 1, first.amount_due, OverpaymentPolicy.REJECT)
        assert first.status == InstallmentStatus.PAID

    def test_clamp_returns_excess(self, disbursed_loan):
        first = disbursed_loan.repayment_schedule[0]
        result = apply_payment(disbursed_loan, 1, first.amount_due + Money('250', Currency.MWK),
                               OverpaymentPolicy.CLAMP)

        assert first.paid_amount == first.amount_due
        assert result.unapplied.amount == Decimal('250.00')
        assert result.applied == first.amount_due

    def test_clamp_on_paid_installment(self, disbursed_loan):
        first = disbursed_loan.repayment_schedule[0]
        apply_payment(disbursed_loan, 1, first.amount_due)
        result = apply_payment(disbursed_loan, 1, Decimal('40'), OverpaymentPolicy.CLAMP)

        assert result.allocations == []
        assert result.unapplied.amount == Decimal('40.00')
        assert first.paid_amount == first.amount_due

    def test_carry_forward_spills_to_next(self, disbursed_loan):
        first, second, third = disbursed_loan.repayment_schedule[:3]
        amount = disbursed_loan.periodic_payment * 2 + Money('10', Currency.MWK)

        result = apply_payment(disbursed_loan, 1, amount, OverpaymentPolicy.CARRY_FORWARD)

        assert first.status == InstallmentStatus.PAID
        assert second.status == InstallmentStatus.PAID
        assert third.status == InstallmentStatus.PARTIAL
        assert third.paid_amount.amount == Decimal('10.00')
        assert [a.installment_number for a in result.allocations] == [1, 2, 3]
        assert result.unapplied.is_zero()

    def test_carry_forward_leftover_after_last(self, disbursed_loan):
        total = disbursed_loan.get_summary().total_amount
        result = apply_payment(disbursed_loan, 1, total + Money('50', Currency.MWK),
                               OverpaymentPolicy.CARRY_FORWARD)

        assert disbursed_loan.status == LoanStatus.COMPLETED
        assert result.unapplied.amount == Decimal('50.00')
        assert disbursed_loan.payment_tracking.total_paid == total
