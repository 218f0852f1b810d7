"""
Shared API dependencies: the lending system container and error mapping
"""

from decimal import Decimal, InvalidOperation
from datetime import date, datetime
from typing import Optional

from fastapi import HTTPException, Request

from ..amortization import due_date_policy_from_name
from ..audit import AuditTrail
from ..companies import CompanyManager
from ..currency import Currency
from ..config import NdalamaConfig, get_config
from ..errors import (
    CompanyNotFound, ConcurrentModificationError, IllegalStatusTransition,
    InstallmentNotFound, InvalidLoanParameters, LoanNotFound, NdalamaError,
    ScheduleAlreadyLocked
)
from ..reporting import ReportingEngine
from ..repayments import OverpaymentPolicy
from ..servicing import LoanManager
from ..storage import StorageInterface, create_storage


class LendingSystem:
    """Lending core with all components initialized"""

    def __init__(self, config: Optional[NdalamaConfig] = None, storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.storage_backend, self.config.database_url)

        self.audit_trail = AuditTrail(self.storage) if self.config.enable_audit_logging else None
        self.company_manager = CompanyManager(self.storage, self.audit_trail)
        self.loan_manager = LoanManager(
            self.storage,
            self.company_manager,
            self.audit_trail,
            due_date_policy=due_date_policy_from_name(self.config.due_date_policy),
            overpayment_policy=OverpaymentPolicy(self.config.overpayment_policy),
            min_loan_amount=self.config.min_loan_amount,
            max_loan_amount=self.config.max_loan_amount,
            max_term_months=self.config.max_term_months,
            default_currency=Currency[self.config.default_currency],
        )
        self.reporting_engine = ReportingEngine(self.loan_manager, self.company_manager)

    def close(self) -> None:
        self.storage.close()


def get_lending_system(request: Request) -> LendingSystem:
    return request.app.state.system


_NOT_FOUND = (LoanNotFound, CompanyNotFound, InstallmentNotFound)
_CONFLICT = (IllegalStatusTransition, ScheduleAlreadyLocked, ConcurrentModificationError)


def http_error(exc: NdalamaError) -> HTTPException:
    """Map a lending error to the matching HTTP error"""
    if isinstance(exc, _NOT_FOUND):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, _CONFLICT):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InvalidLoanParameters):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def parse_decimal(value: str, field_name: str = "amount") -> Decimal:
    try:
        parsed = Decimal(value)
    except (InvalidOperation, TypeError):
        raise HTTPException(status_code=422, detail=f"Invalid {field_name}: {value!r}")
    if not parsed.is_finite():
        raise HTTPException(status_code=422, detail=f"Invalid {field_name}: {value!r}")
    return parsed


def parse_datetime(value: Optional[str], field_name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Invalid {field_name}: {value!r}")


def parse_date(value: Optional[str], field_name: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Invalid {field_name}: {value!r}")
