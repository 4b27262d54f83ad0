"""
Unit Tests for the Order Splitter

Tests cover:
1. Single-seller and multi-seller carts
2. Total conservation across sub-orders
3. Seller ordering and generated ids
4. Validation of the cart
"""

import pytest

from ledger.errors import (
    CurrencyMismatchError,
    EmptyCartError,
    OrderNotFoundError,
    SellerLookupError,
    ValidationError,
)
from ledger.primitives import Money
from orders.models import CartItem, OrderStatus, Product, Seller, aggregate_status
from orders.repository import OrderRepository
from orders.splitter import OrderSplitter, SellerDirectory, flat_delivery_fee


# Test constants
BUYER_ID = "buyer-001"
FARMER_A = "farmer-a"
FARMER_B = "farmer-b"
FARMER_C = "farmer-c"

SELLERS = SellerDirectory([
    Seller(id=FARMER_A, name="Kamau Farm", location="Kiambu"),
    Seller(id=FARMER_B, name="Wanjiru Greens", location="Nakuru"),
    Seller(id=FARMER_C, name="Otieno Dairy", location="Kisumu"),
])


def item(product_id, seller_id, price, quantity, currency="KES"):
    return CartItem(
        product=Product(id=product_id, name=product_id, seller_id=seller_id, unit_price=Money.of(price, currency)),
        quantity=quantity,
    )


class TestSplitScenarios:
    """Tests for splitting carts into sub-orders."""

    def test_single_seller(self):
        """Test a cart from one farmer: 80 x 2 + 45 x 5 = 385."""
        splitter = OrderSplitter(SELLERS)

        result = splitter.split([
            item("tomatoes", FARMER_A, 8000, 2),
            item("kale", FARMER_A, 4500, 5),
        ], BUYER_ID)

        master = result.master_order
        assert master.is_split_order is False
        assert master.seller_count == 1
        assert len(result.sub_orders) == 1
        assert result.sub_orders[0].subtotal == Money.of(38500)
        assert master.total == Money.of(38500)
        assert master.status == OrderStatus.PENDING
        assert master.buyer_id == BUYER_ID

    def test_single_seller_with_delivery_fee(self):
        splitter = OrderSplitter(SELLERS, delivery_fee=flat_delivery_fee(20000))

        result = splitter.split([
            item("tomatoes", FARMER_A, 8000, 2),
            item("kale", FARMER_A, 4500, 5),
        ], BUYER_ID)

        sub = result.sub_orders[0]
        assert sub.delivery_fee == Money.of(20000)
        assert sub.total == Money.of(58500)
        assert result.master_order.total == Money.of(58500)

    def test_multi_seller(self):
        """Test a cart from two farmers: A 300, B 450."""
        splitter = OrderSplitter(SELLERS, delivery_fee=flat_delivery_fee(15000))

        result = splitter.split([
            item("maize", FARMER_A, 30000, 1),
            item("beans", FARMER_B, 15000, 3),
        ], BUYER_ID)

        master = result.master_order
        assert master.is_split_order is True
        assert master.seller_count == 2
        assert [s.seller_id for s in result.sub_orders] == [FARMER_A, FARMER_B]
        assert [s.subtotal.amount for s in result.sub_orders] == [30000, 45000]
        assert master.total == Money.of(75000 + 2 * 15000)

    def test_total_conservation(self):
        """Test that sub-order totals always add up to the master total."""
        splitter = OrderSplitter(SELLERS, delivery_fee=flat_delivery_fee(999))

        result = splitter.split([
            item("milk", FARMER_C, 6050, 7),
            item("eggs", FARMER_A, 1525, 30),
            item("onions", FARMER_B, 333, 3),
            item("cheese", FARMER_C, 120000, 1),
        ], BUYER_ID)

        total = Money.zero()
        for sub in result.sub_orders:
            assert sub.total == sub.subtotal + sub.delivery_fee
            total = total + sub.total
        assert total == result.master_order.total

    def test_seller_order_preserved(self):
        """Test that sub-orders follow the first appearance of each seller."""
        splitter = OrderSplitter(SELLERS)

        result = splitter.split([
            item("beans", FARMER_B, 100, 1),
            item("maize", FARMER_A, 100, 1),
            item("peas", FARMER_B, 100, 1),
        ], BUYER_ID)

        assert [s.seller_id for s in result.sub_orders] == [FARMER_B, FARMER_A]
        assert [i.product_id for i in result.sub_orders[0].items] == ["beans", "peas"]
        assert result.sub_orders[0].seller_name == "Wanjiru Greens"

    def test_ids_and_tracking(self):
        splitter = OrderSplitter(SELLERS)

        result = splitter.split([
            item("maize", FARMER_A, 100, 1),
            item("beans", FARMER_B, 100, 1),
        ], BUYER_ID)

        master = result.master_order
        assert master.id.startswith("MORD-")
        assert master.tracking_id.startswith("MTRK-")
        for n, sub in enumerate(result.sub_orders, start=1):
            assert sub.id == f"{master.id}-S{n}"
            assert sub.tracking_id == f"{master.tracking_id}-S{n}"
            assert sub.master_order_id == master.id

    def test_master_ids_unique(self):
        splitter = OrderSplitter(SELLERS)
        cart = [item("maize", FARMER_A, 100, 1)]

        ids = {splitter.split(cart, BUYER_ID).master_order.id for _ in range(50)}

        assert len(ids) == 50


class TestSplitValidation:
    """Tests for rejected carts."""

    def test_empty_cart(self):
        with pytest.raises(EmptyCartError):
            OrderSplitter(SELLERS).split([], BUYER_ID)

    def test_unknown_seller(self):
        with pytest.raises(SellerLookupError):
            OrderSplitter(SELLERS).split([item("mango", "farmer-unknown", 100, 1)], BUYER_ID)

    def test_non_positive_quantity(self):
        with pytest.raises(ValidationError):
            OrderSplitter(SELLERS).split([item("maize", FARMER_A, 100, 0)], BUYER_ID)

    def test_negative_price(self):
        with pytest.raises(ValidationError):
            OrderSplitter(SELLERS).split([item("maize", FARMER_A, -100, 1)], BUYER_ID)

    def test_mixed_currencies(self):
        """Test that a cart cannot mix currencies."""
        with pytest.raises(CurrencyMismatchError):
            OrderSplitter(SELLERS).split([
                item("maize", FARMER_A, 100, 1),
                item("coffee", FARMER_B, 100, 1, currency="USD"),
            ], BUYER_ID)


class TestMasterStatus:
    """Tests for deriving the master status from sub-orders."""

    def test_least_advanced_wins(self):
        assert aggregate_status([OrderStatus.SHIPPED, OrderStatus.CONFIRMED]) == OrderStatus.CONFIRMED
        assert aggregate_status([OrderStatus.DELIVERED, OrderStatus.DELIVERED]) == OrderStatus.DELIVERED

    def test_cancelled_ignored_unless_all(self):
        assert aggregate_status([OrderStatus.CANCELLED, OrderStatus.SHIPPED]) == OrderStatus.SHIPPED
        assert aggregate_status([OrderStatus.CANCELLED, OrderStatus.CANCELLED]) == OrderStatus.CANCELLED


class TestOrderRepository:
    """Tests for storing split orders."""

    def test_save_and_get(self):
        repository = OrderRepository()
        result = OrderSplitter(SELLERS).split([
            item("maize", FARMER_A, 100, 1),
            item("beans", FARMER_B, 100, 1),
        ], BUYER_ID)

        repository.save(result)

        order = repository.get(result.master_order.id)
        assert order.id == result.master_order.id
        assert repository.get_sub_order(order.sub_orders[1].id).seller_id == FARMER_B
        assert repository.list_for_buyer(BUYER_ID) == [order]

    def test_missing_order(self):
        with pytest.raises(OrderNotFoundError):
            OrderRepository().get("MORD-missing")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
