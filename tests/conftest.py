"""
Shared fixtures: loan factories for engine-level tests
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from ndalama_hub.currency import Money, Currency
from ndalama_hub.loans import Loan
from ndalama_hub.state_machine import LoanStatus, transition

SCHEDULE_START = date(2025, 1, 1)


def build_loan(principal="12000", rate="15", term=12, currency=Currency.MWK, schedule=True):
    now = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)
    loan = Loan(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        loan_number="LN20250001",
        applicant_id="EMP001",
        company_id="CORP001",
        lender_company_id="LEND001",
        principal=Money(Decimal(principal), currency),
        annual_interest_rate_percent=Decimal(rate),
        term_months=term,
        purpose="School fees",
        application_date=now,
    )
    if schedule:
        loan.build_schedule(SCHEDULE_START)
    return loan


@pytest.fixture
def make_loan():
    """Factory for loans in pending_approval with a schedule from 2025-01-01"""
    return build_loan


@pytest.fixture
def disbursed_loan():
    """12-month MWK 12,000 loan at 15%, approved and disbursed"""
    loan = build_loan()
    transition(loan, LoanStatus.APPROVED, actor_id="officer")
    transition(loan, LoanStatus.DISBURSED, actor_id="officer")
    return loan
