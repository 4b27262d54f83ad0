"""
Payment intent dispatcher.

Creates one intent per payment attempt and is the single place where an
intent reaches a terminal status. resolve() is a compare-and-set: the first
caller moves the intent out of ``processing``; every later caller (a late
poll result, an expired countdown, a user cancel) observes the terminal
status and returns False without side effects.
"""

from datetime import datetime, timezone
from typing import Callable, Optional

from ledger.errors import (
    IntentConflictError,
    IntentNotFoundError,
    MaxRetriesExceededError,
    ProviderError,
    ValidationError,
)
from ledger.escrow import EscrowReserveLedger
from ledger.models import SettlementReason
from ledger.primitives import Money, idempotency_key, make_reference
from ledger.service import LedgerService
from logging_config import get_logger

from .models import (
    FailureReason,
    IntentStatus,
    PaymentIntent,
    PaymentMethod,
    ReconciliationStrategy,
)
from .providers import PaymentProvider, normalize_msisdn

logger = get_logger(__name__)

STRATEGY_BY_METHOD = {
    PaymentMethod.WALLET: ReconciliationStrategy.SYNTHETIC,
    PaymentMethod.CASH_ON_DELIVERY: ReconciliationStrategy.SYNTHETIC,
    PaymentMethod.MOBILE_MONEY: ReconciliationStrategy.PROVIDER_POLL,
    PaymentMethod.CARD: ReconciliationStrategy.PROVIDER_POLL,
}

IntentListener = Callable[[PaymentIntent], None]


class PaymentIntentDispatcher:
    def __init__(
        self,
        ledger: LedgerService,
        escrow: EscrowReserveLedger,
        providers: Optional[dict[PaymentMethod, PaymentProvider]] = None,
        max_retries: int = 3,
    ):
        self.ledger = ledger
        self.escrow = escrow
        self.orders = escrow.orders
        self.storage = ledger.storage
        self.providers = providers or {}
        self.max_retries = max_retries
        self._listeners: list[IntentListener] = []

    def subscribe(self, listener: IntentListener) -> None:
        """Call ``listener(intent)`` after every terminal transition."""
        self._listeners.append(listener)

    @staticmethod
    def strategy_for(method: PaymentMethod) -> ReconciliationStrategy:
        return STRATEGY_BY_METHOD[PaymentMethod(method)]

    def provider_for(self, method: PaymentMethod) -> PaymentProvider:
        provider = self.providers.get(method)
        if provider is None:
            raise ProviderError(f"No provider configured for {method.value} payments")
        return provider

    async def create_intent(
        self,
        order_id: str,
        amount: Money,
        method: PaymentMethod,
        provider_params: Optional[dict] = None,
    ) -> PaymentIntent:
        """
        Open a new payment attempt for an order.

        Validation happens before anything is written. Wallet payments are
        debited here, before the intent exists; push-based methods are
        initiated with their provider and left ``processing`` for the poller.

        Raises:
            ValidationError: unknown amount, bad phone number, order not payable
            InsufficientBalanceError: wallet balance below the amount
            IntentConflictError: another attempt is in flight or already paid
            MaxRetriesExceededError: the retry bound is exhausted
        """
        method = PaymentMethod(method)
        params = dict(provider_params or {})
        if method == PaymentMethod.MOBILE_MONEY:
            params["phone"] = normalize_msisdn(params.get("phone", ""))

        with self.storage.lock:
            order = self.orders.get(order_id)
            if amount != order.total:
                raise ValidationError(f"Amount {amount} does not match order {order_id} total {order.total}")
            if order.status != "pending":
                raise ValidationError(f"Order {order_id} is {order.status.value}; only pending orders can be paid")

            previous = self.intents_for_order(order_id)
            for existing in previous:
                if existing.status == IntentStatus.PROCESSING:
                    raise IntentConflictError(f"Order {order_id} already has payment {existing.id} in progress")
                if existing.status == IntentStatus.SUCCESS:
                    raise IntentConflictError(f"Order {order_id} was already paid by {existing.id}")

            failures = self._counted_failures(previous)
            if failures >= self.max_retries:
                logger.warning(f"Order {order_id} exhausted {failures} payment attempts; routing to support")
                raise MaxRetriesExceededError(order_id, failures)

            intent_id = make_reference("PI")
            if method == PaymentMethod.WALLET:
                self.ledger.debit(
                    order.buyer_id,
                    amount,
                    reference=f"order:{order_id}",
                    order_id=order_id,
                    description=f"Wallet payment for order {order_id}",
                    key=idempotency_key(SettlementReason.WALLET_CHECKOUT.value, intent_id),
                )

            intent = PaymentIntent(
                id=intent_id,
                order_id=order_id,
                buyer_id=order.buyer_id,
                method=method,
                amount=amount,
                provider_params=params,
                attempt=len(previous) + 1,
                retry_count=failures,
                max_retries=self.max_retries,
                created_at=datetime.now(timezone.utc),
            )
            self.storage.payment_intents[intent.id] = intent
            self.storage.intents_by_order.setdefault(order_id, []).append(intent.id)

        logger.info(
            f"Created {method.value} intent {intent.id} for order {order_id} "
            f"(attempt {intent.attempt}, {amount})"
        )

        if self.strategy_for(method) == ReconciliationStrategy.PROVIDER_POLL:
            try:
                intent.provider_reference = await self.provider_for(method).initiate(intent)
            except ProviderError as e:
                logger.warning(f"Provider initiation failed for intent {intent.id}: {e}")
                self.resolve(intent.id, IntentStatus.FAILED, FailureReason.PROVIDER_ERROR, message=str(e))

        return intent

    def resolve(
        self,
        intent_id: str,
        status: IntentStatus,
        reason: Optional[FailureReason] = None,
        message: Optional[str] = None,
    ) -> bool:
        """
        Move an intent to its terminal status, exactly once.

        Success places the escrow hold (except cash on delivery). Failure
        counts toward the retry bound, unless the buyer cancelled, and gives a
        wallet debit back. Returns False if the intent was already terminal.
        """
        status = IntentStatus(status)
        if not status.is_terminal:
            raise ValidationError(f"Cannot resolve intent {intent_id} to {status.value}")

        with self.storage.lock:
            intent = self.get_intent(intent_id)
            if intent.status.is_terminal:
                logger.info(
                    f"Intent {intent_id} already {intent.status.value}; ignoring late {status.value}"
                )
                return False

            if status == IntentStatus.SUCCESS and intent.method != PaymentMethod.CASH_ON_DELIVERY:
                self.escrow.hold(intent.order_id, intent.amount)

            intent.status = status
            intent.resolved_at = datetime.now(timezone.utc)
            intent.message = message

            if status == IntentStatus.FAILED:
                intent.failure_reason = reason or FailureReason.PROVIDER_DECLINED
                if intent.failure_reason != FailureReason.USER_CANCELLED:
                    intent.retry_count += 1
                if intent.method == PaymentMethod.WALLET:
                    self.ledger.credit(
                        intent.buyer_id,
                        intent.amount,
                        reference=f"order:{intent.order_id}",
                        order_id=intent.order_id,
                        description=f"Reversal of wallet payment {intent.id}",
                        key=idempotency_key(SettlementReason.PAYMENT_FAILED.value, intent.id),
                    )

        if status == IntentStatus.SUCCESS:
            logger.info(f"Intent {intent_id} succeeded for order {intent.order_id}")
        else:
            logger.info(
                f"Intent {intent_id} failed ({intent.failure_reason.value}); "
                f"{intent.retries_remaining} retr{'y' if intent.retries_remaining == 1 else 'ies'} remaining"
            )

        for listener in self._listeners:
            listener(intent)
        return True

    def get_intent(self, intent_id: str) -> PaymentIntent:
        intent = self.storage.payment_intents.get(intent_id)
        if intent is None:
            raise IntentNotFoundError(f"Payment intent {intent_id} not found")
        return intent

    def intents_for_order(self, order_id: str) -> list[PaymentIntent]:
        with self.storage.lock:
            return [self.storage.payment_intents[i] for i in self.storage.intents_by_order.get(order_id, [])]

    def active_intent(self, order_id: str) -> Optional[PaymentIntent]:
        for intent in self.intents_for_order(order_id):
            if intent.status == IntentStatus.PROCESSING:
                return intent
        return None

    def poll_status(self, intent_id: str) -> IntentStatus:
        return self.get_intent(intent_id).status

    def retries_remaining(self, order_id: str) -> int:
        return max(self.max_retries - self._counted_failures(self.intents_for_order(order_id)), 0)

    @staticmethod
    def _counted_failures(intents: list[PaymentIntent]) -> int:
        return sum(
            1 for i in intents
            if i.status == IntentStatus.FAILED and i.failure_reason != FailureReason.USER_CANCELLED
        )
