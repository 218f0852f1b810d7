"""
Company Module

Lender companies and the corporate clients whose staff borrow from them.
A lender's settings drive loan policy: maximum amount, interest rate,
default repayment period, multiple-loan and guarantor rules.
"""

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .audit import AuditEventType, AuditTrail
from .currency import Currency
from .errors import CompanyNotFound, InvalidLoanParameters, NdalamaError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord

logger = get_logger("ndalama.companies")


class CompanyType(Enum):
    LENDER = "lender"
    CORPORATE = "corporate"


@dataclass
class CompanySettings:
    """Loan policy of a company"""
    max_loan_amount: Decimal = Decimal('50000')
    interest_rate: Decimal = Decimal('15')  # annual percent
    repayment_period: int = 12  # default term in months
    allow_multiple_loans: bool = False
    require_guarantor: bool = False

    def __post_init__(self):
        self.max_loan_amount = Decimal(str(self.max_loan_amount))
        self.interest_rate = Decimal(str(self.interest_rate))
        self.validate()

    def validate(self) -> None:
        if self.max_loan_amount <= 0:
            raise InvalidLoanParameters("Maximum loan amount must be positive")
        if self.interest_rate < 0 or self.interest_rate > 100:
            raise InvalidLoanParameters("Interest rate must be between 0 and 100 percent")
        if not 1 <= self.repayment_period <= 60:
            raise InvalidLoanParameters("Repayment period must be between 1 and 60 months")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'max_loan_amount': str(self.max_loan_amount),
            'interest_rate': str(self.interest_rate),
            'repayment_period': self.repayment_period,
            'allow_multiple_loans': self.allow_multiple_loans,
            'require_guarantor': self.require_guarantor,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CompanySettings':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Company(StorageRecord):
    name: str
    company_type: CompanyType
    currency: Currency = Currency.MWK
    lender_company_id: Optional[str] = None
    settings: CompanySettings = field(default_factory=CompanySettings)
    contact_email: str = ""
    phone: str = ""
    address: str = ""
    is_active: bool = True

    @property
    def is_lender(self) -> bool:
        return self.company_type == CompanyType.LENDER

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'name': self.name,
            'company_type': self.company_type.value,
            'currency': self.currency.code,
            'lender_company_id': self.lender_company_id,
            'settings': self.settings.to_dict(),
            'contact_email': self.contact_email,
            'phone': self.phone,
            'address': self.address,
            'is_active': self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Company':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            name=data['name'],
            company_type=CompanyType(data['company_type']),
            currency=Currency[data.get('currency', 'MWK')],
            lender_company_id=data.get('lender_company_id'),
            settings=CompanySettings.from_dict(data.get('settings') or {}),
            contact_email=data.get('contact_email', ''),
            phone=data.get('phone', ''),
            address=data.get('address', ''),
            is_active=data.get('is_active', True),
        )


class CompanyManager:
    """
    Registers companies and resolves the lender behind each borrower
    """

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.companies_table = "companies"

    def create_company(
        self,
        name: str,
        company_type: CompanyType,
        lender_company_id: Optional[str] = None,
        settings: Optional[CompanySettings] = None,
        currency: Currency = Currency.MWK,
        contact_email: str = "",
        phone: str = "",
        address: str = "",
        user_id: Optional[str] = None
    ) -> Company:
        """
        Register a company

        Corporate companies must name an existing lender; lenders stand alone.

        Raises:
            CompanyNotFound: Referenced lender does not exist
            NdalamaError: Name missing or lender reference invalid
        """
        if not name or not name.strip():
            raise NdalamaError("Company name is required")

        if company_type == CompanyType.CORPORATE:
            if not lender_company_id:
                raise NdalamaError("Corporate companies must reference a lender company")
            lender = self.require_company(lender_company_id)
            if not lender.is_lender:
                raise NdalamaError(f"Company {lender_company_id} is not a lender")
            currency = lender.currency
        elif lender_company_id:
            raise NdalamaError("Lender companies cannot reference another lender")

        now = datetime.now(timezone.utc)
        company = Company(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name.strip(),
            company_type=company_type,
            currency=currency,
            lender_company_id=lender_company_id,
            settings=settings or CompanySettings(),
            contact_email=contact_email,
            phone=phone,
            address=address,
        )
        self._save_company(company)

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.COMPANY_CREATED,
                entity_type="company",
                entity_id=company.id,
                metadata={
                    "name": company.name,
                    "company_type": company_type.value,
                    "lender_company_id": lender_company_id,
                },
                user_id=user_id
            )
        log_action(logger, "info", f"Company {company.name} registered",
                   user_id=user_id, action="create_company", resource=f"company:{company.id}")
        return company

    def get_company(self, company_id: str) -> Optional[Company]:
        data = self.storage.load(self.companies_table, company_id)
        return Company.from_dict(data) if data else None

    def require_company(self, company_id: str) -> Company:
        company = self.get_company(company_id)
        if company is None:
            raise CompanyNotFound(f"Company {company_id} not found")
        return company

    def list_companies(self, company_type: Optional[CompanyType] = None) -> List[Company]:
        if company_type:
            records = self.storage.find(self.companies_table, {'company_type': company_type.value})
        else:
            records = self.storage.load_all(self.companies_table)
        return [Company.from_dict(data) for data in records]

    def get_corporate_clients(self, lender_company_id: str) -> List[Company]:
        records = self.storage.find(self.companies_table, {'lender_company_id': lender_company_id})
        return [Company.from_dict(data) for data in records]

    def get_lender_for(self, company: Company) -> Company:
        """The lender whose settings govern loans for staff of this company"""
        if company.is_lender:
            return company
        return self.require_company(company.lender_company_id)

    def update_settings(self, company_id: str, user_id: Optional[str] = None, **changes) -> Company:
        """
        Change loan policy settings

        Args:
            company_id: Company to update
            user_id: User making the change
            **changes: CompanySettings fields to overwrite

        Returns:
            Updated Company
        """
        company = self.require_company(company_id)

        known = {f.name for f in fields(CompanySettings)}
        unknown = set(changes) - known
        if unknown:
            raise NdalamaError(f"Unknown settings: {', '.join(sorted(unknown))}")

        previous = company.settings.to_dict()
        merged = dict(previous)
        merged.update({k: v for k, v in changes.items() if v is not None})
        company.settings = CompanySettings.from_dict(merged)
        company.touch()
        self._save_company(company)

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.COMPANY_SETTINGS_UPDATED,
                entity_type="company",
                entity_id=company.id,
                metadata={"previous": previous, "current": company.settings.to_dict()},
                user_id=user_id
            )
        log_action(logger, "info", f"Settings updated for company {company.name}",
                   user_id=user_id, action="update_company_settings", resource=f"company:{company.id}")
        return company

    def _save_company(self, company: Company) -> None:
        self.storage.save(self.companies_table, company.id, company.to_dict())
