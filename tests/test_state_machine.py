"""
Test suite for the loan state machine

Every status write goes through transition(); the table decides which
trigger may drive which edge.
"""

import pytest

from ndalama_hub.errors import DisbursementPreconditionFailed, IllegalStatusTransition
from ndalama_hub.loans import Guarantor
from ndalama_hub.state_machine import (
    LoanStatus, TransitionTrigger, TRANSITIONS, TERMINAL_STATUSES, INITIAL_STATUS,
    can_transition, allowed_targets, transition
)


class TestTransitionTable:

    def test_initial_status(self, make_loan):
        assert INITIAL_STATUS == LoanStatus.PENDING_APPROVAL
        assert make_loan().status == LoanStatus.PENDING_APPROVAL

    def test_terminal_statuses_have_no_exits(self):
        for (frm, _to) in TRANSITIONS:
            assert frm not in TERMINAL_STATUSES

    def test_workflow_cannot_drive_arrears_edges(self):
        assert not can_transition(LoanStatus.ACTIVE, LoanStatus.DEFAULTED, TransitionTrigger.WORKFLOW)
        assert can_transition(LoanStatus.ACTIVE, LoanStatus.DEFAULTED, TransitionTrigger.ARREARS)

    def test_only_payments_complete_a_loan(self):
        assert can_transition(LoanStatus.ACTIVE, LoanStatus.COMPLETED, TransitionTrigger.PAYMENT)
        assert not can_transition(LoanStatus.ACTIVE, LoanStatus.COMPLETED, TransitionTrigger.WORKFLOW)
        assert not can_transition(LoanStatus.DISBURSED, LoanStatus.COMPLETED, TransitionTrigger.PAYMENT)

    def test_allowed_targets(self):
        assert allowed_targets(LoanStatus.PENDING_APPROVAL) == {
            LoanStatus.APPROVED, LoanStatus.REJECTED, LoanStatus.PENDING_DOCUMENTS,
            LoanStatus.UNDER_REVIEW, LoanStatus.CANCELLED,
        }
        assert allowed_targets(LoanStatus.IN_ARREARS, TransitionTrigger.ARREARS) == {
            LoanStatus.ACTIVE, LoanStatus.DEFAULTED,
        }
        assert allowed_targets(LoanStatus.COMPLETED) == set()


class TestTransition:

    def test_approve_records_history(self, make_loan):
        loan = make_loan()
        change = transition(loan, LoanStatus.APPROVED, actor_id="officer")

        assert loan.status == LoanStatus.APPROVED
        assert loan.status_history == [change]
        assert change.from_status == LoanStatus.PENDING_APPROVAL
        assert change.to_status == LoanStatus.APPROVED
        assert change.trigger == TransitionTrigger.WORKFLOW
        assert change.actor_id == "officer"

    def test_illegal_edge(self, make_loan):
        loan = make_loan()
        with pytest.raises(IllegalStatusTransition):
            transition(loan, LoanStatus.ACTIVE)
        assert loan.status == LoanStatus.PENDING_APPROVAL
        assert loan.status_history == []

    def test_terminal_status_is_final(self, make_loan):
        loan = make_loan()
        transition(loan, LoanStatus.REJECTED, reason="Insufficient income")
        with pytest.raises(IllegalStatusTransition):
            transition(loan, LoanStatus.APPROVED)

    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_rejection_requires_reason(self, make_loan, reason):
        loan = make_loan()
        with pytest.raises(IllegalStatusTransition, match="reason"):
            transition(loan, LoanStatus.REJECTED, reason=reason)

    def test_cancellation_requires_reason(self, make_loan):
        loan = make_loan()
        with pytest.raises(IllegalStatusTransition):
            transition(loan, LoanStatus.CANCELLED)
        change = transition(loan, LoanStatus.CANCELLED, reason="Applicant withdrew")
        assert change.reason == "Applicant withdrew"

    def test_review_path(self, make_loan):
        loan = make_loan()
        transition(loan, LoanStatus.PENDING_DOCUMENTS)
        transition(loan, LoanStatus.UNDER_REVIEW)
        transition(loan, LoanStatus.APPROVED)
        transition(loan, LoanStatus.PENDING_DISBURSEMENT)
        transition(loan, LoanStatus.DISBURSED)

        assert loan.status == LoanStatus.DISBURSED
        assert [c.to_status for c in loan.status_history] == [
            LoanStatus.PENDING_DOCUMENTS, LoanStatus.UNDER_REVIEW, LoanStatus.APPROVED,
            LoanStatus.PENDING_DISBURSEMENT, LoanStatus.DISBURSED,
        ]

    def test_status_change_serialization(self, make_loan):
        loan = make_loan()
        change = transition(loan, LoanStatus.APPROVED, actor_id="officer")
        data = change.to_dict()

        assert data['from_status'] == "pending_approval"
        assert data['trigger'] == "workflow"
        assert type(change).from_dict(data) == change


class TestDisbursementPreconditions:

    def test_requires_schedule(self, make_loan):
        loan = make_loan(schedule=False)
        transition(loan, LoanStatus.APPROVED)
        with pytest.raises(DisbursementPreconditionFailed, match="schedule"):
            transition(loan, LoanStatus.DISBURSED)
        assert loan.status == LoanStatus.APPROVED

    def test_requires_guarantor_when_policy_says_so(self, make_loan):
        loan = make_loan()
        transition(loan, LoanStatus.APPROVED)

        with pytest.raises(DisbursementPreconditionFailed, match="guarantor"):
            transition(loan, LoanStatus.DISBURSED, require_guarantor=True)

        loan.guarantor = Guarantor(name="Chikondi Banda", phone="")
        with pytest.raises(DisbursementPreconditionFailed):
            transition(loan, LoanStatus.DISBURSED, require_guarantor=True)

        loan.guarantor = Guarantor(name="Chikondi Banda", phone="+265991000000", relationship="sibling")
        transition(loan, LoanStatus.DISBURSED, require_guarantor=True)
        assert loan.status == LoanStatus.DISBURSED

    def test_guarantor_not_needed_by_default(self, make_loan):
        loan = make_loan()
        transition(loan, LoanStatus.APPROVED)
        transition(loan, LoanStatus.DISBURSED)
        assert loan.status == LoanStatus.DISBURSED

    def test_unapproved_loan_cannot_be_disbursed(self, make_loan):
        loan = make_loan()
        with pytest.raises(IllegalStatusTransition):
            transition(loan, LoanStatus.DISBURSED)
