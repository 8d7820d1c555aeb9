"""
Honey Drops Bidding-Fee Ledger

This package provides:
- Per-user honey drop balances with atomic reserve and credit
- One ledger entry per job application: reserved -> refunded / captured
- Contact-information guard for cover letters
- Application lifecycle: pending -> accepted / rejected / withdrawn,
  with automatic refunds for every losing bid
"""

from .balance import BalanceStore
from .guard import ContentGuard
from .ledger import ApplicationLedger
from .models import (
    Application,
    ApplicationStatus,
    Balance,
    EntryState,
    HoneyTransaction,
    LedgerEntry,
    TransactionType,
)
from .service import AccessPolicy, ApplicationService

__all__ = [
    "AccessPolicy",
    "Application",
    "ApplicationLedger",
    "ApplicationService",
    "ApplicationStatus",
    "Balance",
    "BalanceStore",
    "ContentGuard",
    "EntryState",
    "HoneyTransaction",
    "LedgerEntry",
    "TransactionType",
]
