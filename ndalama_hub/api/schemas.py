"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from ..companies import CompanySettings
from ..currency import Currency, Money
from ..loans import Guarantor


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (MWK, ZMW, etc.)")

    def to_money(self) -> Money:
        return Money(Decimal(self.amount), Currency[self.currency])

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


class GuarantorModel(BaseModel):
    name: str
    phone: str
    relationship: str = ""
    id_number: str = ""

    def to_guarantor(self) -> Guarantor:
        return Guarantor(
            name=self.name,
            phone=self.phone,
            relationship=self.relationship,
            id_number=self.id_number
        )


# Company schemas
class CompanySettingsModel(BaseModel):
    max_loan_amount: str = "50000"
    interest_rate: str = "15"
    repayment_period: int = 12
    allow_multiple_loans: bool = False
    require_guarantor: bool = False

    def to_settings(self) -> CompanySettings:
        return CompanySettings(
            max_loan_amount=Decimal(self.max_loan_amount),
            interest_rate=Decimal(self.interest_rate),
            repayment_period=self.repayment_period,
            allow_multiple_loans=self.allow_multiple_loans,
            require_guarantor=self.require_guarantor
        )


class CreateCompanyRequest(BaseModel):
    name: str
    company_type: str = Field(..., description="lender or corporate")
    lender_company_id: Optional[str] = None
    currency: Optional[str] = None  # defaults to the configured currency
    settings: Optional[CompanySettingsModel] = None
    contact_email: str = ""
    phone: str = ""
    address: str = ""
    user_id: Optional[str] = None


class UpdateCompanySettingsRequest(BaseModel):
    max_loan_amount: Optional[str] = None
    interest_rate: Optional[str] = None
    repayment_period: Optional[int] = None
    allow_multiple_loans: Optional[bool] = None
    require_guarantor: Optional[bool] = None
    user_id: Optional[str] = None


# Loan schemas
class ApplyLoanRequest(BaseModel):
    applicant_id: str
    company_id: str
    amount: str = Field(..., description="Requested principal as decimal string")
    term_months: Optional[int] = None
    purpose: str = ""
    guarantor: Optional[GuarantorModel] = None
    user_id: Optional[str] = None


class UpdateLoanTermsRequest(BaseModel):
    amount: Optional[str] = None
    term_months: Optional[int] = None
    annual_interest_rate_percent: Optional[str] = None
    user_id: Optional[str] = None


class QuoteRequest(BaseModel):
    amount: str
    term_months: int
    annual_interest_rate_percent: Optional[str] = None
    company_id: Optional[str] = None
    currency: Optional[str] = None  # defaults to the configured currency
    start_date: Optional[str] = None  # ISO date string


class ApproveLoanRequest(BaseModel):
    approved_by: str
    notes: Optional[str] = None


class RejectLoanRequest(BaseModel):
    rejected_by: str
    reason: str


class CancelLoanRequest(BaseModel):
    cancelled_by: str
    reason: str


class StatusUpdateRequest(BaseModel):
    status: str
    user_id: str
    reason: Optional[str] = None


class DisburseLoanRequest(BaseModel):
    disbursed_by: str
    method: str = "bank_transfer"


class RepaymentRequest(BaseModel):
    installment_number: int
    amount: str = Field(..., description="Payment amount as decimal string")
    paid_at: Optional[str] = None  # ISO datetime string
    idempotency_key: Optional[str] = None
    policy: Optional[str] = Field(None, description="accept, reject, clamp or carry_forward")
    user_id: Optional[str] = None


class NoteRequest(BaseModel):
    author_id: str
    message: str


class ArrearsReviewRequest(BaseModel):
    as_of: Optional[str] = None  # ISO date or datetime string
