"""Exception hierarchy for the lending core.

Every error subclasses ValueError so callers that only know the generic
"bad request" contract keep working; the API layer maps the specific
classes to HTTP status codes.
"""


class NdalamaError(ValueError):
    """Base exception for all lending errors."""


class InvalidLoanParameters(NdalamaError):
    """Raised when principal, rate or term are outside their allowed ranges."""


class ScheduleAlreadyLocked(NdalamaError):
    """Raised when regenerating the schedule of a disbursed loan."""


class OverpaymentNotAllowed(NdalamaError):
    """Raised when a payment exceeds the outstanding installment amount."""


class DisbursementPreconditionFailed(NdalamaError):
    """Raised when a loan is not ready to be disbursed."""


class IllegalStatusTransition(NdalamaError):
    """Raised for any status change outside the transition table."""


class InstallmentNotFound(NdalamaError):
    """Raised when a payment names an installment the schedule lacks."""


class InvalidPaymentAmount(NdalamaError):
    """Raised when a payment amount is not positive or in the wrong currency."""


class LoanNotFound(NdalamaError):
    """Raised when a referenced loan does not exist."""


class CompanyNotFound(NdalamaError):
    """Raised when a referenced company does not exist."""


class LoanPolicyViolation(NdalamaError):
    """Raised when an application breaks the lender's loan policy."""


class ConcurrentModificationError(NdalamaError):
    """Raised when a loan was saved by someone else since it was loaded."""
