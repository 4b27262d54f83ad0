"""
Order reconciliation state machine.

    pending -> confirmed -> packed -> shipped -> delivered
    pending | confirmed -> cancelled

Transitions are applied to sub-orders; the master status is always derived
from them (see aggregate_status), so the two can never drift apart. The
moment a master order becomes ``delivered`` is the only place escrow is
released.
"""

from datetime import datetime, timezone
from typing import Optional

from ledger.errors import AlreadyRefundedError, AlreadyReleasedError, TransitionError, ValidationError
from ledger.escrow import EscrowReserveLedger
from ledger.models import ReserveStatus, SettlementReason
from ledger.primitives import Money
from logging_config import get_logger
from payments.dispatcher import PaymentIntentDispatcher
from payments.models import FailureReason, IntentStatus, PaymentIntent
from payments.poller import ProviderStatusPoller

from .models import (
    CancellationResult,
    DeliveryConfirmation,
    MasterOrder,
    OrderStatus,
    StatusChange,
    SubOrder,
)
from .repository import OrderRepository

logger = get_logger(__name__)

LEGAL_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PACKED, OrderStatus.CANCELLED},
    OrderStatus.PACKED: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

# Statuses sellers and logistics partners may set directly on a sub-order.
FULFILMENT_STATUSES = {OrderStatus.PACKED, OrderStatus.SHIPPED}

CANCELLABLE_STATUSES = {OrderStatus.PENDING, OrderStatus.CONFIRMED}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in LEGAL_TRANSITIONS[current]


class OrderReconciler:
    def __init__(
        self,
        repository: OrderRepository,
        escrow: EscrowReserveLedger,
        dispatcher: Optional[PaymentIntentDispatcher] = None,
        poller: Optional[ProviderStatusPoller] = None,
    ):
        self.repository = repository
        self.escrow = escrow
        self.storage = repository.storage
        self.dispatcher = dispatcher
        self.poller = poller
        if dispatcher is not None:
            dispatcher.subscribe(self.on_payment_resolved)

    def on_payment_resolved(self, intent: PaymentIntent) -> None:
        """Confirm the order when its payment succeeds; failures leave it pending for a retry."""
        if intent.status != IntentStatus.SUCCESS:
            return
        with self.storage.lock:
            order = self.repository.get(intent.order_id)
            if order.status != OrderStatus.PENDING:
                logger.warning(
                    f"Payment {intent.id} succeeded but order {order.id} is {order.status.value}; not confirming"
                )
                return
            for sub in order.sub_orders:
                self._transition(sub, OrderStatus.CONFIRMED, actor_id=None)
        logger.info(f"Order {order.id} confirmed by payment {intent.id}")

    def advance_sub_order(
        self,
        order_id: str,
        sub_order_id: str,
        status: OrderStatus,
        actor_id: Optional[str] = None,
    ) -> MasterOrder:
        """Seller/logistics progress on one sub-order (packed, shipped)."""
        status = OrderStatus(status)
        if status not in FULFILMENT_STATUSES:
            raise TransitionError(f"Sub-orders cannot be moved to {status.value} directly")
        with self.storage.lock:
            order = self.repository.get(order_id)
            sub = self._sub_order(order, sub_order_id)
            if actor_id is not None and actor_id != sub.seller_id:
                raise ValidationError(f"{actor_id} is not the seller of sub-order {sub_order_id}")
            self._transition(sub, status, actor_id)
        logger.info(f"Sub-order {sub_order_id} is now {status.value}; order {order_id} is {order.status.value}")
        return order

    def confirm_delivery(
        self,
        order_id: str,
        actor_id: str,
        sub_order_id: Optional[str] = None,
    ) -> DeliveryConfirmation:
        """
        Buyer confirms receipt of one sub-order, or of every shipped one.

        Once all sub-orders are delivered the escrow is released. Repeating
        the confirmation is safe: an already released reserve is reported
        back instead of being paid out again.
        """
        with self.storage.lock:
            order = self.repository.get(order_id)
            if actor_id != order.buyer_id:
                raise ValidationError(f"Only the buyer can confirm delivery of order {order_id}")

            if order.status == OrderStatus.DELIVERED:
                return self._settle_delivery(order)

            if sub_order_id is not None:
                targets = [self._sub_order(order, sub_order_id)]
            else:
                targets = [s for s in order.sub_orders if s.status != OrderStatus.CANCELLED]

            for sub in targets:
                if sub.status == OrderStatus.DELIVERED:
                    continue
                if not can_transition(sub.status, OrderStatus.DELIVERED):
                    raise TransitionError(
                        f"Sub-order {sub.id} is {sub.status.value}; only shipped sub-orders can be delivered"
                    )
            for sub in targets:
                if sub.status != OrderStatus.DELIVERED:
                    self._transition(sub, OrderStatus.DELIVERED, actor_id)

            if order.status != OrderStatus.DELIVERED:
                delivered = sum(1 for s in order.sub_orders if s.status == OrderStatus.DELIVERED)
                return DeliveryConfirmation(
                    order_id=order_id,
                    status=order.status,
                    released=False,
                    amount=Money.zero(order.currency),
                    message=f"{delivered} of {len(order.sub_orders)} deliveries confirmed",
                )

            logger.info(f"Order {order_id} delivered")
            return self._settle_delivery(order)

    def cancel(self, order_id: str, actor_id: str, reason: Optional[str] = None) -> CancellationResult:
        """
        Cancel a pending or confirmed order.

        An in-flight payment is stopped as a user cancellation and a held
        reserve is refunded to the buyer. A reserve frozen by a dispute blocks
        the cancellation.
        """
        with self.storage.lock:
            order = self.repository.get(order_id)
            if not order.involves(actor_id):
                raise ValidationError(f"{actor_id} is not a party to order {order_id}")
            if order.status not in CANCELLABLE_STATUSES:
                raise TransitionError(f"Order {order_id} is {order.status.value} and can no longer be cancelled")
            # The master status is the least advanced sub-order, so check each one.
            for sub in order.sub_orders:
                if sub.status != OrderStatus.CANCELLED and sub.status not in CANCELLABLE_STATUSES:
                    raise TransitionError(
                        f"Sub-order {sub.id} is already {sub.status.value}; order {order_id} can no longer be cancelled"
                    )
            if self.escrow.status(order_id) == ReserveStatus.FROZEN:
                raise TransitionError(f"Order {order_id} has an open dispute and cannot be cancelled")

            self._stop_payment(order_id)

            refunded = False
            amount = Money.zero(order.currency)
            if self.escrow.status(order_id) == ReserveStatus.HELD:
                record = self.escrow.refund(order_id, SettlementReason.ORDER_CANCELLED)
                refunded = True
                amount = record.amount

            for sub in order.sub_orders:
                if sub.status != OrderStatus.CANCELLED:
                    self._transition(sub, OrderStatus.CANCELLED, actor_id)

        logger.info(f"Order {order_id} cancelled by {actor_id}" + (f" ({reason})" if reason else ""))
        return CancellationResult(
            order_id=order_id,
            status=order.status,
            refunded=refunded,
            amount=amount,
            message=f"Refunded {amount} to buyer" if refunded else "Order cancelled, nothing to refund",
        )

    def _settle_delivery(self, order: MasterOrder) -> DeliveryConfirmation:
        reserve = self.escrow.get_reserve(order.id)
        if reserve is None:
            return DeliveryConfirmation(
                order_id=order.id,
                status=order.status,
                released=False,
                amount=Money.zero(order.currency),
                message="No escrow held for this order (cash on delivery)",
            )
        if reserve.status == ReserveStatus.FROZEN:
            return DeliveryConfirmation(
                order_id=order.id,
                status=order.status,
                released=False,
                amount=Money.zero(order.currency),
                message="Escrow is frozen by an open dispute; release waits for its resolution",
            )

        try:
            records = self.escrow.release(order.id, SettlementReason.DELIVERY_CONFIRMED)
        except AlreadyReleasedError:
            logger.info(f"Escrow for order {order.id} already released (idempotent return)")
            return DeliveryConfirmation(
                order_id=order.id,
                status=order.status,
                released=True,
                amount=reserve.amount,
                message="Escrow already released (idempotent return)",
            )
        except AlreadyRefundedError:
            logger.info(f"Escrow for order {order.id} was refunded to the buyer; nothing to release")
            return DeliveryConfirmation(
                order_id=order.id,
                status=order.status,
                released=False,
                amount=Money.zero(order.currency),
                message="Escrow was refunded to the buyer by dispute resolution; nothing to release",
            )

        released = Money.zero(reserve.amount.currency)
        for record in records:
            released = released + record.amount
        return DeliveryConfirmation(
            order_id=order.id,
            status=order.status,
            released=True,
            amount=released,
            message=f"Released {released} to {len(order.sub_orders)} seller(s)",
        )

    def _stop_payment(self, order_id: str) -> None:
        if self.dispatcher is None:
            return
        intent = self.dispatcher.active_intent(order_id)
        if intent is None:
            return
        if self.poller is not None:
            self.poller.cancel(intent.id)
        else:
            self.dispatcher.resolve(intent.id, IntentStatus.FAILED, FailureReason.USER_CANCELLED)

    @staticmethod
    def _sub_order(order: MasterOrder, sub_order_id: str) -> SubOrder:
        sub = order.get_sub_order(sub_order_id)
        if sub is None:
            raise ValidationError(f"Sub-order {sub_order_id} does not belong to order {order.id}")
        return sub

    @staticmethod
    def _transition(sub: SubOrder, target: OrderStatus, actor_id: Optional[str]) -> None:
        if not can_transition(sub.status, target):
            raise TransitionError(f"Illegal transition {sub.status.value} -> {target.value} for sub-order {sub.id}")
        sub.status = target
        sub.status_history.append(StatusChange(status=target, changed_at=datetime.now(timezone.utc), actor_id=actor_id))
