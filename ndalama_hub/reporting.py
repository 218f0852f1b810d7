"""
Reporting Module

Portfolio reports over the loan book: status overview, paginated loan
listings by period, per-company statistics and arrears aging, with export
to JSON or CSV.
"""

import csv
import io
import json
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .companies import CompanyManager
from .loans import Loan
from .servicing import LoanManager
from .state_machine import DISBURSED_STATUSES, REPAYABLE_STATUSES, LoanStatus

# Loans that got past the approval step
APPROVED_OR_LATER = DISBURSED_STATUSES | {LoanStatus.APPROVED, LoanStatus.PENDING_DISBURSEMENT}

AGING_BUCKETS = ('current', '1-30', '31-60', '61-90', '90+')


class ReportFormat(Enum):
    """Output formats for reports"""
    DICT = "dict"
    CSV = "csv"
    JSON = "json"


class ReportPeriod(Enum):
    """Application date windows for loan reports"""
    YESTERDAY = "yesterday"
    LAST_WEEK = "last_week"
    THIS_MONTH = "this_month"
    LAST_MONTH = "last_month"
    LAST_THREE_MONTHS = "last_three_months"
    CUSTOM = "custom"


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_id: str
    generated_at: datetime
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.metadata.setdefault('row_count', len(self.data))


def _start_of(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def period_bounds(
    period: ReportPeriod,
    start: Optional[date] = None,
    end: Optional[date] = None,
    now: Optional[datetime] = None
) -> Tuple[datetime, datetime]:
    """
    Half-open [start, end) window for a report period

    Raises:
        ValueError: Custom period without both dates, or end before start
    """
    now = now or datetime.now(timezone.utc)
    today = now.date()

    if period == ReportPeriod.YESTERDAY:
        return _start_of(today - timedelta(days=1)), _start_of(today)
    if period == ReportPeriod.LAST_WEEK:
        return _start_of(today - timedelta(days=7)), now
    if period == ReportPeriod.THIS_MONTH:
        return _start_of(today.replace(day=1)), now
    if period == ReportPeriod.LAST_MONTH:
        first_this_month = today.replace(day=1)
        first_last_month = (first_this_month - timedelta(days=1)).replace(day=1)
        return _start_of(first_last_month), _start_of(first_this_month)
    if period == ReportPeriod.LAST_THREE_MONTHS:
        month = today.month - 3
        year = today.year
        if month < 1:
            month += 12
            year -= 1
        return _start_of(date(year, month, 1)), now

    if start is None or end is None:
        raise ValueError("Custom period requires start and end dates")
    if end < start:
        raise ValueError("End date must not be before start date")
    return _start_of(start), _start_of(end + timedelta(days=1))


class ReportingEngine:
    """
    Read-only reports built from the loan and company managers
    """

    def __init__(self, loan_manager: LoanManager, company_manager: CompanyManager):
        self.loan_manager = loan_manager
        self.company_manager = company_manager

    def _loans(self, lender_company_id: Optional[str] = None) -> List[Loan]:
        return self.loan_manager.list_loans(lender_company_id=lender_company_id)

    @staticmethod
    def _repaid(loan: Loan) -> Decimal:
        return loan.payment_tracking.total_paid.amount

    @staticmethod
    def _by_currency(loans: List[Loan], amount: Callable[[Loan], Decimal]) -> Dict[str, Decimal]:
        """Sum an amount per currency code; lenders may lend in different currencies"""
        totals: Dict[str, Decimal] = {}
        for loan in loans:
            code = loan.currency.code
            totals[code] = totals.get(code, Decimal('0')) + amount(loan)
        return dict(sorted(totals.items()))

    @staticmethod
    def _disbursed(loan: Loan) -> Decimal:
        return loan.principal.amount if loan.status in DISBURSED_STATUSES else Decimal('0')

    def overview(self, lender_company_id: Optional[str] = None) -> ReportResult:
        """Loan counts per status plus headline amounts per currency"""
        loans = self._loans(lender_company_id)

        counts = {status.value: 0 for status in LoanStatus}
        for loan in loans:
            counts[loan.status.value] += 1

        approved = sum(1 for loan in loans if loan.status in APPROVED_OR_LATER)
        approval_rate = Decimal('0')
        if loans:
            approval_rate = (Decimal(approved) / Decimal(len(loans)) * 100).quantize(Decimal('0.01'))

        totals = {
            'total_loans': len(loans),
            'approval_rate': approval_rate,
            'total_amount': self._by_currency(loans, lambda loan: loan.principal.amount),
            'total_disbursed': self._by_currency(loans, self._disbursed),
            'total_repaid': self._by_currency(loans, self._repaid),
        }
        data = [{'status': status, 'count': count} for status, count in counts.items()]

        return ReportResult(
            report_id="overview",
            generated_at=datetime.now(timezone.utc),
            data=data,
            totals=totals,
        )

    def loan_report(
        self,
        period: Optional[ReportPeriod] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        status: Optional[LoanStatus] = None,
        company_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20
    ) -> ReportResult:
        """
        Paginated loan listing filtered by application period, status and company

        Rows are ordered newest application first. A start and end date
        without a period select a custom window. Amount totals are keyed by
        currency code.
        """
        if page < 1 or page_size < 1:
            raise ValueError("Page and page size must be positive")

        loans = self.loan_manager.list_loans(status=status, company_id=company_id)
        if period is None and start and end:
            period = ReportPeriod.CUSTOM
        window = None
        if period is not None:
            window = period_bounds(period, start, end)
            loans = [loan for loan in loans if window[0] <= loan.application_date < window[1]]

        total = len(loans)
        offset = (page - 1) * page_size
        rows = [self._loan_row(loan) for loan in loans[offset:offset + page_size]]

        metadata = {
            'row_count': len(rows),
            'total': total,
            'page': page,
            'page_size': page_size,
            'pages': math.ceil(total / page_size) if total else 0,
        }
        if window:
            metadata['period_start'] = window[0].isoformat()
            metadata['period_end'] = window[1].isoformat()

        return ReportResult(
            report_id="loans",
            generated_at=datetime.now(timezone.utc),
            data=rows,
            totals={
                'total_amount': self._by_currency(loans, lambda loan: loan.principal.amount),
                'total_repaid': self._by_currency(loans, self._repaid),
            },
            metadata=metadata,
        )

    def _loan_row(self, loan: Loan) -> Dict[str, Any]:
        summary = loan.get_summary()
        return {
            'loan_number': loan.loan_number,
            'applicant_id': loan.applicant_id,
            'company_id': loan.company_id,
            'status': loan.status.value,
            'currency': loan.currency.code,
            'principal': loan.principal.amount,
            'annual_interest_rate_percent': loan.annual_interest_rate_percent,
            'term_months': loan.term_months,
            'periodic_payment': loan.periodic_payment.amount,
            'total_paid': summary.total_paid.amount,
            'remaining_balance': summary.remaining_balance.amount,
            'days_in_arrears': loan.payment_tracking.days_in_arrears,
            'application_date': loan.application_date.isoformat(),
        }

    def company_report(self) -> ReportResult:
        """Loan statistics per company"""
        loans = self._loans()
        data = []
        for company in self.company_manager.list_companies():
            own = [loan for loan in loans if loan.company_id == company.id]
            data.append({
                'company_id': company.id,
                'name': company.name,
                'company_type': company.company_type.value,
                'total_loans': len(own),
                'active_loans': sum(1 for loan in own if loan.status in REPAYABLE_STATUSES),
                'total_amount': sum((loan.principal.amount for loan in own), Decimal('0')),
                'total_repaid': sum((self._repaid(loan) for loan in own), Decimal('0')),
                'currency': company.currency.code,
            })

        return ReportResult(
            report_id="companies",
            generated_at=datetime.now(timezone.utc),
            data=data,
            totals={'total_companies': len(data)},
        )

    def arrears_report(self, lender_company_id: Optional[str] = None) -> ReportResult:
        """
        Aging buckets of outstanding balances on repayable loans

        One row per currency and bucket; percentages are shares of the
        outstanding balance in that currency.
        """
        buckets: Dict[str, Dict[str, Dict[str, Any]]] = {}

        for loan in self._loans(lender_company_id):
            if loan.status not in REPAYABLE_STATUSES:
                continue

            days = loan.payment_tracking.days_in_arrears
            bucket_name = 'current'
            if days > 90:
                bucket_name = '90+'
            elif days > 60:
                bucket_name = '61-90'
            elif days > 30:
                bucket_name = '31-60'
            elif days > 0:
                bucket_name = '1-30'

            currency_buckets = buckets.setdefault(loan.currency.code, {
                name: {'loans': 0, 'balance': Decimal('0')} for name in AGING_BUCKETS
            })
            currency_buckets[bucket_name]['loans'] += 1
            currency_buckets[bucket_name]['balance'] += loan.get_summary().remaining_balance.amount

        data = []
        total_balance: Dict[str, Decimal] = {}
        for code in sorted(buckets):
            currency_total = sum((b['balance'] for b in buckets[code].values()), Decimal('0'))
            total_balance[code] = currency_total
            for bucket_name, bucket in buckets[code].items():
                percentage = Decimal('0')
                if currency_total > 0:
                    percentage = (bucket['balance'] / currency_total * 100).quantize(Decimal('0.01'))
                data.append({
                    'currency': code,
                    'aging_bucket': bucket_name,
                    'loan_count': bucket['loans'],
                    'total_balance': bucket['balance'],
                    'percentage': percentage,
                })

        return ReportResult(
            report_id="arrears",
            generated_at=datetime.now(timezone.utc),
            data=data,
            totals={
                'total_loans': sum(row['loan_count'] for row in data),
                'total_balance': total_balance,
            },
        )

    def export_report(self, result: ReportResult, format: ReportFormat) -> Union[Dict, str]:
        """
        Export report result in specified format
        """
        if format == ReportFormat.DICT:
            return {
                'report_id': result.report_id,
                'generated_at': result.generated_at.isoformat(),
                'data': result.data,
                'totals': result.totals,
                'metadata': result.metadata,
            }

        elif format == ReportFormat.JSON:
            export_dict = self.export_report(result, ReportFormat.DICT)
            return json.dumps(export_dict, indent=2, default=str)

        elif format == ReportFormat.CSV:
            output = io.StringIO()
            if result.data:
                writer = csv.DictWriter(output, fieldnames=list(result.data[0].keys()))
                writer.writeheader()
                for row in result.data:
                    writer.writerow(row)
            csv_content = output.getvalue()
            output.close()
            return csv_content

        else:
            raise ValueError(f"Unsupported export format: {format}")
