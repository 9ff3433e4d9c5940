# Database models package

from .account import Account
from .audit import Audit
from .deposit import Deposit, DepositStatus

__all__ = ["Account", "Audit", "Deposit", "DepositStatus"]
