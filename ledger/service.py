from datetime import datetime, timezone
from typing import Optional

from logging_config import get_logger

from .errors import InsufficientBalanceError, ValidationError
from .models import (
    LedgerHistoryResponse,
    SettlementReason,
    TransactionRecord,
    TransactionType,
    WalletBalance,
)
from .primitives import DEFAULT_CURRENCY, Money, idempotency_key, make_reference
from .storage import InMemoryStorage

logger = get_logger(__name__)


class LedgerService:
    """
    Append-only transaction log and the wallet balances folded from it.

    This class is the only writer of TransactionRecords. Balances are never
    cached; every read folds the log again.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None, currency: str = DEFAULT_CURRENCY):
        self.storage = storage or InMemoryStorage()
        self.currency = currency

    def append(
        self,
        *,
        account_id: str,
        type: TransactionType,
        amount: Money,
        reference: str,
        key: str,
        order_id: Optional[str] = None,
        description: str = "",
        metadata: Optional[dict] = None,
    ) -> TransactionRecord:
        with self.storage.lock:
            existing = self.storage.idempotency_index.get(key)
            if existing is not None:
                logger.info(f"Transaction {key} already recorded (idempotent return)")
                return existing

            if amount.is_negative():
                raise ValidationError(f"Ledger amounts must not be negative, got {amount}")

            record = TransactionRecord(
                id=make_reference("TXN"),
                order_id=order_id,
                account_id=account_id,
                type=type,
                amount=amount,
                reference=reference,
                idempotency_key=key,
                description=description,
                created_at=datetime.now(timezone.utc),
                metadata=metadata or {},
            )
            self.storage.transactions.append(record)
            self.storage.idempotency_index[key] = record

        logger.info(f"Recorded {type.value} of {amount} for {account_id} ({reference})")
        return record

    def credit(
        self,
        account_id: str,
        amount: Money,
        reference: str,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
        key: Optional[str] = None,
    ) -> TransactionRecord:
        if not amount.is_positive():
            raise ValidationError(f"Credit amount must be positive, got {amount}")
        return self.append(
            account_id=account_id,
            type=TransactionType.CREDIT,
            amount=amount,
            reference=reference,
            key=key or idempotency_key("credit", account_id, reference),
            order_id=order_id,
            description=description or f"Wallet credit ({reference})",
        )

    def debit(
        self,
        account_id: str,
        amount: Money,
        reference: str,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
        key: Optional[str] = None,
    ) -> TransactionRecord:
        if not amount.is_positive():
            raise ValidationError(f"Debit amount must be positive, got {amount}")
        key = key or idempotency_key("debit", account_id, reference)
        # Balance check and append happen under one lock so two debits cannot
        # both pass against the same balance.
        with self.storage.lock:
            if key in self.storage.idempotency_index:
                return self.storage.idempotency_index[key]
            balance = self.get_balance(account_id, amount.currency).balance
            if balance < amount:
                raise InsufficientBalanceError(
                    f"Insufficient balance for {account_id}: {balance} available, {amount} required"
                )
            return self.append(
                account_id=account_id,
                type=TransactionType.DEBIT,
                amount=amount,
                reference=reference,
                key=key,
                order_id=order_id,
                description=description or f"Wallet debit ({reference})",
            )

    def fund_wallet(self, account_id: str, amount: Money, reference: str) -> TransactionRecord:
        return self.credit(
            account_id,
            amount,
            reference,
            description=f"Wallet funding ({reference})",
            key=idempotency_key(SettlementReason.WALLET_FUNDING.value, account_id, reference),
        )

    def get_balance(self, account_id: str, currency: Optional[str] = None) -> WalletBalance:
        currency = currency or self.currency
        with self.storage.lock:
            entries = [
                t for t in self.storage.transactions
                if t.account_id == account_id and t.amount.currency == currency
            ]

        total = sum(t.wallet_effect for t in entries)
        last_entry = entries[-1] if entries else None

        return WalletBalance(
            account_id=account_id,
            currency=currency,
            balance=Money(amount=total, currency=currency),
            total_entries=len(entries),
            last_transaction_at=last_entry.created_at if last_entry else None,
        )

    def get_history(self, account_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        with self.storage.lock:
            all_entries = [t for t in self.storage.transactions if t.account_id == account_id]
        all_entries.reverse()
        paginated = all_entries[offset:offset + limit]
        balance = self.get_balance(account_id)

        return LedgerHistoryResponse(
            account_id=account_id,
            entries=paginated,
            total_count=len(all_entries),
            balance=balance.balance,
        )

    def records_for_order(self, order_id: str, type: Optional[TransactionType] = None) -> list[TransactionRecord]:
        with self.storage.lock:
            return [
                t for t in self.storage.transactions
                if t.order_id == order_id and (type is None or t.type == type)
            ]
