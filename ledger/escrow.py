"""
Escrow reserve ledger.

A reserve is placed on an order when its payment succeeds and leaves escrow
exactly once, either released to the sellers (pro-rata across sub-orders) or
refunded to the buyer. An open dispute freezes the reserve; it must be
unfrozen before it can be settled.

    none -> held -> released
                 -> refunded
            held <-> frozen
"""

from datetime import datetime, timezone
from typing import Optional, Protocol, Sequence

from logging_config import get_logger

from .errors import (
    AlreadyRefundedError,
    AlreadyReleasedError,
    DuplicateHoldError,
    InvalidStateError,
    ValidationError,
)
from .models import (
    ReserveEntry,
    ReserveStatus,
    ReserveView,
    SettlementReason,
    TransactionRecord,
    TransactionType,
)
from .primitives import Money, idempotency_key, make_reference
from .service import LedgerService

logger = get_logger(__name__)

# Order statuses in which the buyer may still be refunded without a dispute.
REFUNDABLE_ORDER_STATUSES = frozenset({"pending", "confirmed", "cancelled"})


def _status_of(order) -> str:
    return getattr(order.status, "value", order.status)


class SettlementParty(Protocol):
    id: str
    seller_id: str
    total: Money


class SettlementOrder(Protocol):
    id: str
    buyer_id: str
    status: str
    sub_orders: Sequence[SettlementParty]


class OrderDirectory(Protocol):
    def get(self, order_id: str) -> SettlementOrder:
        ...


class EscrowReserveLedger:
    def __init__(
        self,
        ledger: LedgerService,
        orders: OrderDirectory,
        platform_fee_bps: int = 0,
        platform_account_id: str = "platform",
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.orders = orders
        self.platform_fee_bps = platform_fee_bps
        self.platform_account_id = platform_account_id

    def get_reserve(self, order_id: str) -> Optional[ReserveEntry]:
        """Latest reserve entry for the order, terminal or not."""
        with self.storage.lock:
            entry_ids = self.storage.reserves_by_order.get(order_id, [])
            if not entry_ids:
                return None
            return self.storage.reserve_entries[entry_ids[-1]]

    def status(self, order_id: str) -> ReserveStatus:
        entry = self.get_reserve(order_id)
        return entry.status if entry else ReserveStatus.NONE

    def entries_for_order(self, order_id: str) -> list[ReserveEntry]:
        with self.storage.lock:
            return [self.storage.reserve_entries[i] for i in self.storage.reserves_by_order.get(order_id, [])]

    def hold(self, order_id: str, amount: Money) -> ReserveEntry:
        if not amount.is_positive():
            raise ValidationError(f"Reserve amount must be positive, got {amount}")
        order = self.orders.get(order_id)

        with self.storage.lock:
            current = self.get_reserve(order_id)
            if current is not None and current.is_active:
                raise DuplicateHoldError(f"Order {order_id} already has an active reserve ({current.status.value})")

            now = datetime.now(timezone.utc)
            entry = ReserveEntry(
                id=make_reference("RSV"),
                order_id=order_id,
                buyer_id=order.buyer_id,
                amount=amount,
                status=ReserveStatus.HELD,
                created_at=now,
            )
            self.storage.reserve_entries[entry.id] = entry
            self.storage.reserves_by_order.setdefault(order_id, []).append(entry.id)

            self.ledger.append(
                account_id=order.buyer_id,
                type=TransactionType.RESERVE_HOLD,
                amount=amount,
                reference=f"order:{order_id}",
                key=idempotency_key(TransactionType.RESERVE_HOLD.value, entry.id),
                order_id=order_id,
                description=f"Escrow hold for order {order_id}",
                metadata={"reserve_id": entry.id},
            )

        logger.info(f"Reserve {entry.id} held {amount} for order {order_id}")
        return entry

    def release(self, order_id: str, reason: str = SettlementReason.DELIVERY_CONFIRMED) -> list[TransactionRecord]:
        """
        Pay the held amount out to the order's sellers.

        Each sub-order receives a share proportional to its total (subtotal
        plus delivery fee); the shares sum exactly to the held amount. When a
        platform fee is configured it is taken from each share and credited to
        the platform account.

        Raises:
            AlreadyReleasedError: the reserve was already released
            InvalidStateError: no reserve, reserve frozen or refunded, or the
                order has not been delivered
        """
        reason = SettlementReason(reason)
        order = self.orders.get(order_id)

        with self.storage.lock:
            entry = self._settleable_entry(order_id, "release")
            if _status_of(order) != "delivered" and reason != SettlementReason.DISPUTE_FAVOR_SELLER:
                raise InvalidStateError(
                    f"Cannot release escrow for order {order_id} in {_status_of(order)} state; delivery not confirmed"
                )

            shares = entry.amount.allocate([sub.total.amount for sub in order.sub_orders])
            records = []
            for sub, share in zip(order.sub_orders, shares):
                fee = Money(amount=share.amount * self.platform_fee_bps // 10_000, currency=share.currency)
                payout = share - fee
                records.append(self.ledger.append(
                    account_id=sub.seller_id,
                    type=TransactionType.RESERVE_RELEASE,
                    amount=payout,
                    reference=f"order:{order_id}",
                    key=idempotency_key(TransactionType.RESERVE_RELEASE.value, entry.id, sub.id),
                    order_id=order_id,
                    description=f"Escrow release for sub-order {sub.id}",
                    metadata={"reserve_id": entry.id, "sub_order_id": sub.id, "reason": reason.value},
                ))
                if fee.is_positive():
                    records.append(self.ledger.append(
                        account_id=self.platform_account_id,
                        type=TransactionType.RESERVE_RELEASE,
                        amount=fee,
                        reference=f"order:{order_id}",
                        key=idempotency_key(TransactionType.RESERVE_RELEASE.value, entry.id, sub.id, "fee"),
                        order_id=order_id,
                        description=f"Platform fee for sub-order {sub.id}",
                        metadata={"reserve_id": entry.id, "sub_order_id": sub.id, "platform_fee_bps": self.platform_fee_bps},
                    ))

            entry.status = ReserveStatus.RELEASED
            entry.released_at = datetime.now(timezone.utc)
            entry.reason = reason.value

        logger.info(f"Reserve {entry.id} released {entry.amount} to {len(order.sub_orders)} seller(s) ({reason.value})")
        return records

    def refund(self, order_id: str, reason: str = SettlementReason.ORDER_CANCELLED) -> TransactionRecord:
        """Return the held amount to the buyer. Only allowed before shipment or on a buyer-favoured dispute."""
        reason = SettlementReason(reason)
        order = self.orders.get(order_id)

        with self.storage.lock:
            entry = self._settleable_entry(order_id, "refund")
            if _status_of(order) not in REFUNDABLE_ORDER_STATUSES and reason != SettlementReason.DISPUTE_FAVOR_BUYER:
                raise InvalidStateError(f"Cannot refund order {order_id} in {_status_of(order)} state; it has shipped")

            record = self.ledger.append(
                account_id=entry.buyer_id,
                type=TransactionType.RESERVE_RELEASE,
                amount=entry.amount,
                reference=f"order:{order_id}",
                key=idempotency_key("reserve_refund", entry.id),
                order_id=order_id,
                description=f"Escrow refund for order {order_id}",
                metadata={"reserve_id": entry.id, "settlement": "refund", "reason": reason.value},
            )
            entry.status = ReserveStatus.REFUNDED
            entry.released_at = datetime.now(timezone.utc)
            entry.reason = reason.value

        logger.info(f"Reserve {entry.id} refunded {entry.amount} to buyer {entry.buyer_id} ({reason.value})")
        return record

    def freeze(self, order_id: str) -> ReserveEntry:
        with self.storage.lock:
            entry = self.get_reserve(order_id)
            if entry is None or entry.status != ReserveStatus.HELD:
                current = entry.status.value if entry else ReserveStatus.NONE.value
                raise InvalidStateError(f"Cannot freeze reserve for order {order_id} in {current} state")
            entry.status = ReserveStatus.FROZEN
        logger.info(f"Reserve {entry.id} frozen for order {order_id}")
        return entry

    def unfreeze(self, order_id: str) -> ReserveEntry:
        with self.storage.lock:
            entry = self.get_reserve(order_id)
            if entry is None or entry.status != ReserveStatus.FROZEN:
                current = entry.status.value if entry else ReserveStatus.NONE.value
                raise InvalidStateError(f"Cannot unfreeze reserve for order {order_id} in {current} state")
            entry.status = ReserveStatus.HELD
        logger.info(f"Reserve {entry.id} unfrozen for order {order_id}")
        return entry

    def reserve_balance(self, order_id: str) -> Money:
        """Amount still in escrow for the order: holds minus releases and refunds."""
        held = released = 0
        currency = self.ledger.currency
        for record in self.ledger.records_for_order(order_id):
            if record.type == TransactionType.RESERVE_HOLD:
                held += record.amount.amount
                currency = record.amount.currency
            elif record.type == TransactionType.RESERVE_RELEASE:
                released += record.amount.amount
        return Money(amount=held - released, currency=currency)

    def view(self, order_id: str) -> ReserveView:
        entry = self.get_reserve(order_id)
        return ReserveView(
            order_id=order_id,
            status=entry.status if entry else ReserveStatus.NONE,
            amount=entry.amount if entry else None,
            escrow_balance=self.reserve_balance(order_id),
        )

    def _settleable_entry(self, order_id: str, action: str) -> ReserveEntry:
        entry = self.get_reserve(order_id)
        if entry is None:
            raise InvalidStateError(f"Cannot {action} order {order_id}: no reserve was ever held")
        if entry.status == ReserveStatus.RELEASED:
            raise AlreadyReleasedError(f"Reserve for order {order_id} was already released")
        if entry.status == ReserveStatus.REFUNDED:
            raise AlreadyRefundedError(f"Reserve for order {order_id} was already refunded")
        if entry.status == ReserveStatus.FROZEN:
            raise InvalidStateError(f"Cannot {action} order {order_id}: reserve is frozen by an open dispute")
        return entry
