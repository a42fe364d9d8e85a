"""
School Wallet

This package provides:
- An append-only ledger of fee credits, usage debits and withdrawals per school
- Pessimistic holds so concurrent withdrawals can never overdraw a wallet
- Withdrawal lifecycle management: pending hold → held → submitted → succeeded / failed / expired
- A reconciliation sweep that resolves withdrawals the request path left open
- Idempotent webhook handling for fee payments and payout settlements
"""

from .models import (
    EntryKind,
    AttemptState,
    LedgerEntry,
    WithdrawalAttempt,
    TenantBalance,
    TransitionResult,
)
from .store import LedgerStore
from .balance import BalanceAccumulator
from .orchestrator import WithdrawalOrchestrator
from .sweep import ReconciliationSweep
from .service import WalletService

__all__ = [
    "EntryKind",
    "AttemptState",
    "LedgerEntry",
    "WithdrawalAttempt",
    "TenantBalance",
    "TransitionResult",
    "LedgerStore",
    "BalanceAccumulator",
    "WithdrawalOrchestrator",
    "ReconciliationSweep",
    "WalletService",
]
