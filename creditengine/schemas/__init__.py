# Pydantic schemas package

from .account import Account
from .deposit import AuditEntry, Deposit, DepositListResponse, ReverseResponse
from .reconciliation import ReconciliationStatus

__all__ = [
    # Deposit schemas
    "Deposit",
    "DepositListResponse",
    "AuditEntry",
    "ReverseResponse",
    # Account schemas
    "Account",
    # Reconciliation schemas
    "ReconciliationStatus",
]
