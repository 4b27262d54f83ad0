from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ledger.primitives import Money, StatusEnum


class PaymentMethod(str, Enum):
    WALLET = "wallet"
    MOBILE_MONEY = "mobile_money"
    CARD = "card"
    CASH_ON_DELIVERY = "cash_on_delivery"


class IntentStatus(StatusEnum):
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"

    @classmethod
    def terminal_values(cls) -> frozenset:
        return frozenset({"success", "failed"})


class FailureReason(str, Enum):
    PROVIDER_DECLINED = "provider_declined"
    PROVIDER_TIMEOUT = "provider_timeout"
    PROVIDER_ERROR = "provider_error"
    USER_CANCELLED = "user_cancelled"


class ReconciliationStrategy(str, Enum):
    # Provider confirms asynchronously; poll it and race a fallback countdown.
    PROVIDER_POLL = "provider_poll"
    # Resolves locally after a short settlement delay, no countdown.
    SYNTHETIC = "synthetic"


class PaymentIntent(BaseModel):
    id: str = Field(frozen=True)
    order_id: str = Field(frozen=True)
    buyer_id: str = Field(frozen=True)
    method: PaymentMethod = Field(frozen=True)
    amount: Money = Field(frozen=True)
    provider_reference: Optional[str] = None
    provider_params: dict = Field(default_factory=dict)
    status: IntentStatus = IntentStatus.PROCESSING
    attempt: int = 1
    retry_count: int = 0
    max_retries: int = 3
    failure_reason: Optional[FailureReason] = None
    message: Optional[str] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None

    @property
    def retries_remaining(self) -> int:
        return max(self.max_retries - self.retry_count, 0)


class ProviderStatusResponse(BaseModel):
    status: IntentStatus
    message: Optional[str] = None
    result_code: Optional[str] = None


class CreateIntentRequest(BaseModel):
    order_id: str
    amount: int = Field(..., description="Amount in minor units; must equal the order total")
    currency: Optional[str] = None
    method: PaymentMethod
    params: dict = Field(default_factory=dict)


class IntentResponse(BaseModel):
    intent_id: str
    order_id: str
    status: IntentStatus
    method: PaymentMethod
    amount: Money
    provider_reference: Optional[str] = None
    attempt: int
    retry_count: int
    retries_remaining: int
    failure_reason: Optional[FailureReason] = None
    message: Optional[str] = None

    @classmethod
    def from_intent(cls, intent: PaymentIntent) -> "IntentResponse":
        return cls(
            intent_id=intent.id,
            order_id=intent.order_id,
            status=intent.status,
            method=intent.method,
            amount=intent.amount,
            provider_reference=intent.provider_reference,
            attempt=intent.attempt,
            retry_count=intent.retry_count,
            retries_remaining=intent.retries_remaining,
            failure_reason=intent.failure_reason,
            message=intent.message,
        )


class StatusResponse(BaseModel):
    intent_id: str
    status: IntentStatus
