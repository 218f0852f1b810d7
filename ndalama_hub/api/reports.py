"""
Reporting endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse

from .deps import LendingSystem, get_lending_system, parse_date
from ..reporting import ReportFormat, ReportPeriod
from ..state_machine import LoanStatus


router = APIRouter()


@router.get("/overview")
async def overview_report(
    lender_company_id: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    result = system.reporting_engine.overview(lender_company_id)
    return system.reporting_engine.export_report(result, ReportFormat.DICT)


@router.get("/loans")
async def loans_report(
    period: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    status: Optional[str] = None,
    company_id: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
    system: LendingSystem = Depends(get_lending_system)
):
    """Paginated loan report"""
    try:
        result = system.reporting_engine.loan_report(
            period=ReportPeriod(period) if period else None,
            start=parse_date(start_date, "start_date"),
            end=parse_date(end_date, "end_date"),
            status=LoanStatus(status) if status else None,
            company_id=company_id,
            page=page,
            page_size=page_size
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return system.reporting_engine.export_report(result, ReportFormat.DICT)


@router.get("/companies")
async def companies_report(system: LendingSystem = Depends(get_lending_system)):
    result = system.reporting_engine.company_report()
    return system.reporting_engine.export_report(result, ReportFormat.DICT)


@router.get("/arrears")
async def arrears_report(
    lender_company_id: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    result = system.reporting_engine.arrears_report(lender_company_id)
    return system.reporting_engine.export_report(result, ReportFormat.DICT)


@router.get("/export")
async def export_loans(
    format: str = "json",
    period: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Export the full loan report as JSON or CSV"""
    if format not in (ReportFormat.JSON.value, ReportFormat.CSV.value):
        raise HTTPException(status_code=400, detail=f"Unsupported export format: {format}")

    engine = system.reporting_engine
    try:
        first_page = engine.loan_report(
            period=ReportPeriod(period) if period else None,
            start=parse_date(start_date, "start_date"),
            end=parse_date(end_date, "end_date"),
            page_size=1
        )
        result = engine.loan_report(
            period=ReportPeriod(period) if period else None,
            start=parse_date(start_date, "start_date"),
            end=parse_date(end_date, "end_date"),
            page_size=max(first_page.metadata['total'], 1)
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    report_format = ReportFormat(format)
    content = engine.export_report(result, report_format)
    media_type = "text/csv" if report_format == ReportFormat.CSV else "application/json"
    return PlainTextResponse(
        content,
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename=loans.{format}"}
    )
