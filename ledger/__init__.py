"""
Settlement Ledger

This package provides:
- Integer minor-unit Money and ledger primitives
- An append-only transaction log with wallet balances folded from it
- The per-order escrow reserve: hold, release, refund, freeze, unfreeze
- Idempotent record creation keyed by the operation that produced it
"""

from .escrow import EscrowReserveLedger
from .models import (
    ReserveEntry,
    ReserveStatus,
    SettlementReason,
    TransactionRecord,
    TransactionType,
    WalletBalance,
)
from .primitives import Money
from .service import LedgerService
from .storage import InMemoryStorage

__all__ = [
    "EscrowReserveLedger",
    "InMemoryStorage",
    "LedgerService",
    "Money",
    "ReserveEntry",
    "ReserveStatus",
    "SettlementReason",
    "TransactionRecord",
    "TransactionType",
    "WalletBalance",
]
