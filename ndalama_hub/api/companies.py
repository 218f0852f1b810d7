"""
Company endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from .deps import LendingSystem, get_lending_system, http_error, parse_decimal
from .schemas import CreateCompanyRequest, UpdateCompanySettingsRequest
from ..companies import CompanyType
from ..currency import Currency
from ..errors import NdalamaError


router = APIRouter()


def _company_type(value: str) -> CompanyType:
    try:
        return CompanyType(value)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown company type: {value}")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_company(
    request: CreateCompanyRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Register a lender or corporate company"""
    currency_code = request.currency or system.config.default_currency
    if currency_code not in Currency.__members__:
        raise HTTPException(status_code=422, detail=f"Unknown currency: {currency_code}")

    try:
        settings = request.settings.to_settings() if request.settings else None
        company = system.company_manager.create_company(
            name=request.name,
            company_type=_company_type(request.company_type),
            lender_company_id=request.lender_company_id,
            settings=settings,
            currency=Currency[currency_code],
            contact_email=request.contact_email,
            phone=request.phone,
            address=request.address,
            user_id=request.user_id
        )
    except ArithmeticError:
        raise HTTPException(status_code=422, detail="Invalid company settings amount")
    except NdalamaError as e:
        raise http_error(e)

    return company.to_dict()


@router.get("")
async def list_companies(
    company_type: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """List companies, optionally by type"""
    kind = _company_type(company_type) if company_type else None
    companies = system.company_manager.list_companies(kind)
    return {"companies": [c.to_dict() for c in companies], "total": len(companies)}


@router.get("/{company_id}")
async def get_company(
    company_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    company = system.company_manager.get_company(company_id)
    if not company:
        raise HTTPException(status_code=404, detail="Company not found")
    return company.to_dict()


@router.patch("/{company_id}/settings")
async def update_company_settings(
    company_id: str,
    request: UpdateCompanySettingsRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Change a company's loan policy"""
    changes = {
        "repayment_period": request.repayment_period,
        "allow_multiple_loans": request.allow_multiple_loans,
        "require_guarantor": request.require_guarantor,
    }
    if request.max_loan_amount is not None:
        changes["max_loan_amount"] = parse_decimal(request.max_loan_amount, "max_loan_amount")
    if request.interest_rate is not None:
        changes["interest_rate"] = parse_decimal(request.interest_rate, "interest_rate")

    try:
        company = system.company_manager.update_settings(
            company_id,
            user_id=request.user_id,
            **{k: v for k, v in changes.items() if v is not None}
        )
    except NdalamaError as e:
        raise http_error(e)

    return company.to_dict()
