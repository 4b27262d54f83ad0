from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .primitives import Money, StatusEnum


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    RESERVE_HOLD = "reserve_hold"
    RESERVE_RELEASE = "reserve_release"


# Effect of each record type on the wallet of the account it is posted to.
# Holds are neutral for wallets and count toward the order's escrow balance.
WALLET_SIGN = {
    TransactionType.CREDIT: 1,
    TransactionType.DEBIT: -1,
    TransactionType.RESERVE_HOLD: 0,
    TransactionType.RESERVE_RELEASE: 1,
}


class ReserveStatus(StatusEnum):
    NONE = "none"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    FROZEN = "frozen"

    @classmethod
    def terminal_values(cls) -> frozenset:
        return frozenset({"released", "refunded"})


class SettlementReason(str, Enum):
    DELIVERY_CONFIRMED = "delivery_confirmed"
    ORDER_CANCELLED = "order_cancelled"
    DISPUTE_FAVOR_BUYER = "dispute_favor_buyer"
    DISPUTE_FAVOR_SELLER = "dispute_favor_seller"
    PAYMENT_FAILED = "payment_failed"
    WALLET_FUNDING = "wallet_funding"
    WALLET_CHECKOUT = "wallet_checkout"


class TransactionRecord(BaseModel):
    id: str
    order_id: Optional[str] = None
    account_id: str
    type: TransactionType
    amount: Money
    reference: str
    idempotency_key: str
    description: str = ""
    created_at: datetime
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def wallet_effect(self) -> int:
        return WALLET_SIGN[self.type] * self.amount.amount


class ReserveEntry(BaseModel):
    id: str
    order_id: str
    buyer_id: str
    amount: Money
    status: ReserveStatus = ReserveStatus.HELD
    created_at: datetime
    released_at: Optional[datetime] = None
    reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal


class WalletBalance(BaseModel):
    account_id: str
    currency: str
    balance: Money
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    account_id: str
    entries: list[TransactionRecord]
    total_count: int
    balance: Money


class FundWalletRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Amount in minor units")
    currency: Optional[str] = None
    reference: str = Field(..., description="External funding reference, used as idempotency key")


class ReserveView(BaseModel):
    order_id: str
    status: ReserveStatus
    amount: Optional[Money] = None
    escrow_balance: Money
