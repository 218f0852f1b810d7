"""
NdalamaHub Lending Core

Employer-linked micro-lending administration: loan applications, approval
and disbursement workflow, amortized repayment schedules, arrears tracking
and portfolio reporting. All financial math uses Decimal.
"""

__version__ = "1.0.0"
