"""
Unit Tests for the order reconciliation state machine

Tests cover:
1. Payment success confirms the order
2. Seller progress on sub-orders
3. Delivery confirmation and escrow release
4. Cancellation and refund
5. Cash on delivery
"""

import asyncio

import pytest

from api.engine import SettlementEngine
from config import Config
from ledger.errors import TransitionError, ValidationError
from ledger.models import ReserveStatus, TransactionType
from ledger.primitives import Money
from orders.models import CartItem, OrderStatus, Product, Seller
from orders.reconciliation import can_transition
from payments.models import IntentStatus, PaymentMethod
from payments.providers import SandboxProvider


# Test constants
BUYER_ID = "buyer-001"
FARMER_A = "farmer-a"
FARMER_B = "farmer-b"


def build_engine():
    config = Config(
        poll_interval_seconds=0.01,
        fallback_countdown_seconds=0.5,
        wallet_settlement_delay_seconds=0,
        cod_settlement_delay_seconds=0,
    )
    engine = SettlementEngine(config, providers={PaymentMethod.MOBILE_MONEY: SandboxProvider()})
    engine.sellers.register(Seller(id=FARMER_A, name="Kamau Farm"))
    engine.sellers.register(Seller(id=FARMER_B, name="Wanjiru Greens"))
    return engine


def place_order(engine):
    result = engine.splitter.split([
        CartItem(product=Product(id="maize", seller_id=FARMER_A, unit_price=Money.of(30000)), quantity=1),
        CartItem(product=Product(id="beans", seller_id=FARMER_B, unit_price=Money.of(15000)), quantity=3),
    ], BUYER_ID)
    return engine.orders.save(result)


def pay(engine, order, method=PaymentMethod.WALLET):
    async def _pay():
        intent = await engine.dispatcher.create_intent(order.id, order.total, method)
        engine.poller.track(intent)
        return await engine.poller.wait(intent.id)

    return asyncio.run(_pay())


def paid_order(engine):
    order = place_order(engine)
    engine.ledger.fund_wallet(BUYER_ID, order.total, "mpesa-topup-001")
    intent = pay(engine, order)
    assert intent.status == IntentStatus.SUCCESS
    return order


def ship_all(engine, order):
    for sub in order.sub_orders:
        engine.reconciler.advance_sub_order(order.id, sub.id, OrderStatus.PACKED, sub.seller_id)
        engine.reconciler.advance_sub_order(order.id, sub.id, OrderStatus.SHIPPED, sub.seller_id)


class TestTransitions:
    """Tests for the transition table."""

    def test_legal_transitions(self):
        assert can_transition(OrderStatus.PENDING, OrderStatus.CONFIRMED)
        assert can_transition(OrderStatus.CONFIRMED, OrderStatus.CANCELLED)
        assert can_transition(OrderStatus.SHIPPED, OrderStatus.DELIVERED)

    def test_illegal_transitions(self):
        assert not can_transition(OrderStatus.PENDING, OrderStatus.SHIPPED)
        assert not can_transition(OrderStatus.SHIPPED, OrderStatus.CANCELLED)
        assert not can_transition(OrderStatus.DELIVERED, OrderStatus.PENDING)
        assert not can_transition(OrderStatus.CANCELLED, OrderStatus.CONFIRMED)


class TestPaymentConfirmation:
    """Tests for confirming orders from payment outcomes."""

    def test_wallet_payment_confirms_and_holds(self):
        """Test that a successful payment confirms the order and holds escrow."""
        engine = build_engine()

        order = paid_order(engine)

        assert order.status == OrderStatus.CONFIRMED
        assert all(s.status == OrderStatus.CONFIRMED for s in order.sub_orders)
        assert engine.escrow.status(order.id) == ReserveStatus.HELD
        assert engine.escrow.get_reserve(order.id).amount == Money.of(75000)
        assert engine.ledger.get_balance(BUYER_ID).balance == Money.zero()

    def test_status_history_recorded(self):
        engine = build_engine()
        order = paid_order(engine)

        history = order.sub_orders[0].status_history

        assert [h.status for h in history] == [OrderStatus.CONFIRMED]


class TestSubOrderProgress:
    """Tests for seller progress on sub-orders."""

    def test_master_follows_least_advanced(self):
        """Test that the master status is derived from its sub-orders."""
        engine = build_engine()
        order = paid_order(engine)
        first, second = order.sub_orders

        engine.reconciler.advance_sub_order(order.id, first.id, OrderStatus.PACKED, FARMER_A)
        engine.reconciler.advance_sub_order(order.id, first.id, OrderStatus.SHIPPED, FARMER_A)

        assert first.status == OrderStatus.SHIPPED
        assert order.status == OrderStatus.CONFIRMED

        engine.reconciler.advance_sub_order(order.id, second.id, OrderStatus.PACKED, FARMER_B)

        assert order.status == OrderStatus.PACKED

    def test_cannot_pack_unpaid_order(self):
        engine = build_engine()
        order = place_order(engine)

        with pytest.raises(TransitionError):
            engine.reconciler.advance_sub_order(order.id, order.sub_orders[0].id, OrderStatus.PACKED, FARMER_A)

    def test_only_fulfilment_statuses(self):
        """Test that delivery cannot be set by the seller directly."""
        engine = build_engine()
        order = paid_order(engine)

        with pytest.raises(TransitionError):
            engine.reconciler.advance_sub_order(order.id, order.sub_orders[0].id, OrderStatus.DELIVERED, FARMER_A)

    def test_wrong_seller_rejected(self):
        engine = build_engine()
        order = paid_order(engine)

        with pytest.raises(ValidationError):
            engine.reconciler.advance_sub_order(order.id, order.sub_orders[0].id, OrderStatus.PACKED, FARMER_B)

    def test_unknown_sub_order(self):
        engine = build_engine()
        order = paid_order(engine)

        with pytest.raises(ValidationError):
            engine.reconciler.advance_sub_order(order.id, "MORD-other-S1", OrderStatus.PACKED)


class TestDeliveryConfirmation:
    """Tests for delivery confirmation and escrow release."""

    def test_delivery_releases_escrow_once(self):
        """Test shipped -> delivered releases escrow pro-rata, exactly once."""
        engine = build_engine()
        order = paid_order(engine)
        ship_all(engine, order)

        result = engine.reconciler.confirm_delivery(order.id, BUYER_ID)

        assert result.released is True
        assert result.status == OrderStatus.DELIVERED
        assert result.amount == Money.of(75000)
        assert engine.escrow.status(order.id) == ReserveStatus.RELEASED
        assert engine.ledger.get_balance(FARMER_A).balance == Money.of(30000)
        assert engine.ledger.get_balance(FARMER_B).balance == Money.of(45000)

        releases = engine.ledger.records_for_order(order.id, TransactionType.RESERVE_RELEASE)
        assert len(releases) == 2

        again = engine.reconciler.confirm_delivery(order.id, BUYER_ID)

        assert again.released is True
        assert "idempotent" in again.message
        assert len(engine.ledger.records_for_order(order.id, TransactionType.RESERVE_RELEASE)) == 2
        assert engine.ledger.get_balance(FARMER_A).balance == Money.of(30000)

    def test_partial_delivery_does_not_release(self):
        """Test that escrow waits until every sub-order is delivered."""
        engine = build_engine()
        order = paid_order(engine)
        ship_all(engine, order)
        first, second = order.sub_orders

        partial = engine.reconciler.confirm_delivery(order.id, BUYER_ID, first.id)

        assert partial.released is False
        assert partial.message == "1 of 2 deliveries confirmed"
        assert order.status == OrderStatus.SHIPPED
        assert engine.escrow.status(order.id) == ReserveStatus.HELD

        final = engine.reconciler.confirm_delivery(order.id, BUYER_ID, second.id)

        assert final.released is True
        assert engine.escrow.status(order.id) == ReserveStatus.RELEASED

    def test_cannot_confirm_before_shipment(self):
        engine = build_engine()
        order = paid_order(engine)

        with pytest.raises(TransitionError):
            engine.reconciler.confirm_delivery(order.id, BUYER_ID)

        assert engine.escrow.status(order.id) == ReserveStatus.HELD

    def test_only_buyer_confirms(self):
        engine = build_engine()
        order = paid_order(engine)
        ship_all(engine, order)

        with pytest.raises(ValidationError):
            engine.reconciler.confirm_delivery(order.id, FARMER_A)


class TestCancellation:
    """Tests for cancelling orders."""

    def test_cancel_confirmed_order_refunds(self):
        """Test that cancelling a paid order refunds the held escrow."""
        engine = build_engine()
        order = paid_order(engine)

        result = engine.reconciler.cancel(order.id, BUYER_ID, reason="Changed my mind")

        assert result.refunded is True
        assert result.amount == Money.of(75000)
        assert result.status == OrderStatus.CANCELLED
        assert engine.escrow.status(order.id) == ReserveStatus.REFUNDED
        assert engine.ledger.get_balance(BUYER_ID).balance == Money.of(75000)

    def test_cancel_pending_order(self):
        engine = build_engine()
        order = place_order(engine)

        result = engine.reconciler.cancel(order.id, FARMER_B)

        assert result.refunded is False
        assert order.status == OrderStatus.CANCELLED

    def test_cannot_cancel_shipped_order(self):
        engine = build_engine()
        order = paid_order(engine)
        ship_all(engine, order)

        with pytest.raises(TransitionError):
            engine.reconciler.cancel(order.id, BUYER_ID)

        assert engine.escrow.status(order.id) == ReserveStatus.HELD

    def test_cannot_cancel_with_packed_sub_order(self):
        """Test that one packed sub-order blocks the cancel before any refund."""
        engine = build_engine()
        order = paid_order(engine)
        packed = order.sub_orders[0]
        engine.reconciler.advance_sub_order(order.id, packed.id, OrderStatus.PACKED, packed.seller_id)
        assert order.status == OrderStatus.CONFIRMED

        with pytest.raises(TransitionError):
            engine.reconciler.cancel(order.id, BUYER_ID)

        assert engine.escrow.status(order.id) == ReserveStatus.HELD
        assert engine.ledger.get_balance(BUYER_ID).balance == Money.zero()
        assert [s.status for s in order.sub_orders] == [OrderStatus.PACKED, OrderStatus.CONFIRMED]

    def test_frozen_reserve_blocks_cancel(self):
        engine = build_engine()
        order = paid_order(engine)
        engine.escrow.freeze(order.id)

        with pytest.raises(TransitionError):
            engine.reconciler.cancel(order.id, BUYER_ID)

        assert order.status == OrderStatus.CONFIRMED

    def test_stranger_cannot_cancel(self):
        engine = build_engine()
        order = place_order(engine)

        with pytest.raises(ValidationError):
            engine.reconciler.cancel(order.id, "someone-else")


class TestCashOnDelivery:
    """Tests for orders paid on delivery."""

    def test_cod_has_no_escrow(self):
        """Test that COD confirms without a hold and delivery releases nothing."""
        engine = build_engine()
        order = place_order(engine)

        intent = pay(engine, order, PaymentMethod.CASH_ON_DELIVERY)

        assert intent.status == IntentStatus.SUCCESS
        assert order.status == OrderStatus.CONFIRMED
        assert engine.escrow.status(order.id) == ReserveStatus.NONE

        ship_all(engine, order)
        result = engine.reconciler.confirm_delivery(order.id, BUYER_ID)

        assert result.released is False
        assert result.status == OrderStatus.DELIVERED
        assert result.amount == Money.zero()
        assert engine.ledger.records_for_order(order.id, TransactionType.RESERVE_RELEASE) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
