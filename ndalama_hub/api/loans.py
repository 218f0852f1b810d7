"""
Loan endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from .deps import (
    LendingSystem, get_lending_system, http_error, parse_date, parse_datetime, parse_decimal
)
from .schemas import (
    ApplyLoanRequest, ApproveLoanRequest, ArrearsReviewRequest, CancelLoanRequest,
    DisburseLoanRequest, MoneyModel, NoteRequest, QuoteRequest, RejectLoanRequest,
    RepaymentRequest, StatusUpdateRequest, UpdateLoanTermsRequest
)
from ..currency import Currency
from ..errors import NdalamaError
from ..loans import DisbursementMethod
from ..repayments import OverpaymentPolicy
from ..state_machine import LoanStatus


router = APIRouter()


def _loan_status(value: str) -> LoanStatus:
    try:
        return LoanStatus(value)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown loan status: {value}")


@router.post("", status_code=status.HTTP_201_CREATED)
async def apply_for_loan(
    request: ApplyLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Submit a loan application"""
    try:
        loan = system.loan_manager.apply_for_loan(
            applicant_id=request.applicant_id,
            company_id=request.company_id,
            amount=parse_decimal(request.amount),
            term_months=request.term_months,
            purpose=request.purpose,
            guarantor=request.guarantor.to_guarantor() if request.guarantor else None,
            user_id=request.user_id
        )
    except NdalamaError as e:
        raise http_error(e)

    return loan.to_dict()


@router.get("")
async def list_loans(
    status: Optional[str] = None,
    company_id: Optional[str] = None,
    applicant_id: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """List loans with optional filters"""
    loans = system.loan_manager.list_loans(
        status=_loan_status(status) if status else None,
        company_id=company_id,
        applicant_id=applicant_id
    )
    return {"loans": [loan.to_dict() for loan in loans], "total": len(loans)}


@router.post("/quote")
async def quote_loan(
    request: QuoteRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Amortization preview for prospective terms"""
    currency_code = request.currency or system.config.default_currency
    if currency_code not in Currency.__members__:
        raise HTTPException(status_code=422, detail=f"Unknown currency: {currency_code}")

    rate = None
    if request.annual_interest_rate_percent is not None:
        rate = parse_decimal(request.annual_interest_rate_percent, "annual_interest_rate_percent")

    try:
        result, schedule = system.loan_manager.quote(
            amount=parse_decimal(request.amount),
            term_months=request.term_months,
            annual_interest_rate_percent=rate,
            company_id=request.company_id,
            currency=Currency[currency_code],
            start_date=parse_date(request.start_date, "start_date")
        )
    except NdalamaError as e:
        raise http_error(e)

    return {
        "periodic_payment": MoneyModel.from_money(result.periodic_payment).model_dump(),
        "total_interest": MoneyModel.from_money(result.total_interest).model_dump(),
        "total_payable": MoneyModel.from_money(result.total_payable).model_dump(),
        "schedule": [installment.to_dict() for installment in schedule]
    }


@router.post("/arrears-review")
async def run_arrears_review(
    request: ArrearsReviewRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Re-evaluate arrears on every monitored loan"""
    as_of = parse_datetime(request.as_of, "as_of")
    results = system.loan_manager.run_arrears_review(as_of)
    return results


@router.get("/by-number/{loan_number}")
async def get_loan_by_number(
    loan_number: str,
    system: LendingSystem = Depends(get_lending_system)
):
    loan = system.loan_manager.get_loan_by_number(loan_number)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")
    return loan.to_dict()


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan details"""
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")
    return loan.to_dict()


@router.get("/{loan_id}/summary")
async def get_loan_summary(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    try:
        summary = system.loan_manager.get_summary(loan_id)
    except NdalamaError as e:
        raise http_error(e)
    return summary.to_dict()


@router.get("/{loan_id}/schedule")
async def get_loan_schedule(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get the repayment schedule"""
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")
    return {
        "loan_id": loan.id,
        "loan_number": loan.loan_number,
        "currency": loan.currency.code,
        "schedule": [installment.to_dict() for installment in loan.repayment_schedule]
    }


@router.patch("/{loan_id}/terms")
async def update_loan_terms(
    loan_id: str,
    request: UpdateLoanTermsRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Change amount, term or rate before disbursement"""
    amount = parse_decimal(request.amount) if request.amount is not None else None
    rate = None
    if request.annual_interest_rate_percent is not None:
        rate = parse_decimal(request.annual_interest_rate_percent, "annual_interest_rate_percent")

    try:
        loan = system.loan_manager.update_loan_terms(
            loan_id,
            amount=amount,
            term_months=request.term_months,
            annual_interest_rate_percent=rate,
            user_id=request.user_id
        )
    except NdalamaError as e:
        raise http_error(e)
    return loan.to_dict()


@router.put("/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    request: ApproveLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    try:
        loan = system.loan_manager.approve_loan(loan_id, request.approved_by, request.notes)
    except NdalamaError as e:
        raise http_error(e)
    return loan.to_dict()


@router.put("/{loan_id}/reject")
async def reject_loan(
    loan_id: str,
    request: RejectLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    try:
        loan = system.loan_manager.reject_loan(loan_id, request.rejected_by, request.reason)
    except NdalamaError as e:
        raise http_error(e)
    return loan.to_dict()


@router.put("/{loan_id}/status")
async def update_loan_status(
    loan_id: str,
    request: StatusUpdateRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Move an application through the intermediate review states"""
    try:
        loan = system.loan_manager.update_status(
            loan_id, _loan_status(request.status), request.user_id, request.reason
        )
    except NdalamaError as e:
        raise http_error(e)
    return loan.to_dict()


@router.put("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    request: DisburseLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Disburse an approved loan"""
    try:
        method = DisbursementMethod(request.method)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown disbursement method: {request.method}")

    try:
        loan = system.loan_manager.disburse_loan(loan_id, request.disbursed_by, method)
    except NdalamaError as e:
        raise http_error(e)
    return loan.to_dict()


@router.put("/{loan_id}/repayment")
async def record_repayment(
    loan_id: str,
    request: RepaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Record a repayment against an installment"""
    policy = None
    if request.policy:
        try:
            policy = OverpaymentPolicy(request.policy)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown overpayment policy: {request.policy}")

    try:
        result = system.loan_manager.record_repayment(
            loan_id,
            installment_number=request.installment_number,
            amount=parse_decimal(request.amount),
            paid_at=parse_datetime(request.paid_at, "paid_at"),
            idempotency_key=request.idempotency_key,
            policy=policy,
            user_id=request.user_id
        )
    except NdalamaError as e:
        raise http_error(e)

    return {
        "loan": result.loan.to_dict(),
        "allocations": [a.to_dict() for a in result.allocations],
        "unapplied": MoneyModel.from_money(result.unapplied).model_dump(),
        "summary": result.loan.get_summary().to_dict()
    }


@router.put("/{loan_id}/cancel")
async def cancel_loan(
    loan_id: str,
    request: CancelLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    try:
        loan = system.loan_manager.cancel_loan(loan_id, request.cancelled_by, request.reason)
    except NdalamaError as e:
        raise http_error(e)
    return loan.to_dict()


@router.post("/{loan_id}/notes", status_code=status.HTTP_201_CREATED)
async def add_note(
    loan_id: str,
    request: NoteRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    try:
        note = system.loan_manager.add_note(loan_id, request.author_id, request.message)
    except NdalamaError as e:
        raise http_error(e)
    return note.to_dict()
