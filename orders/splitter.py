from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence

from ledger.errors import CurrencyMismatchError, EmptyCartError, SellerLookupError, ValidationError
from ledger.primitives import DEFAULT_CURRENCY, Money, make_reference
from logging_config import get_logger

from .models import (
    CartItem,
    DeliveryAddress,
    MasterOrder,
    OrderItem,
    Seller,
    SplitResult,
    SubOrder,
)

logger = get_logger(__name__)

SellerLookup = Callable[[str], Optional[Seller]]
DeliveryFeeFn = Callable[[Seller, Sequence[OrderItem], Optional[DeliveryAddress]], Money]


def flat_delivery_fee(amount: int, currency: str = DEFAULT_CURRENCY) -> DeliveryFeeFn:
    """Delivery pricing that charges the same fee for every seller group."""
    fee = Money.of(amount, currency)

    def _fee(seller, items, address):
        return fee

    return _fee


class SellerDirectory:
    """Registry of known sellers; usable directly as a SellerLookup."""

    def __init__(self, sellers: Iterable[Seller] = ()):
        self._sellers: dict[str, Seller] = {}
        for seller in sellers:
            self.register(seller)

    def register(self, seller: Seller) -> Seller:
        self._sellers[seller.id] = seller
        return seller

    def __call__(self, seller_id: str) -> Optional[Seller]:
        return self._sellers.get(seller_id)


class OrderSplitter:
    """
    Turns a cart into one master order and one sub-order per seller.

    Sellers keep the order in which they first appear in the cart. Nothing is
    persisted here; callers save the result through the order repository.
    """

    def __init__(
        self,
        seller_lookup: SellerLookup,
        delivery_fee: Optional[DeliveryFeeFn] = None,
        currency: str = DEFAULT_CURRENCY,
    ):
        self.seller_lookup = seller_lookup
        self.delivery_fee = delivery_fee or flat_delivery_fee(0, currency)
        self.currency = currency

    def split(
        self,
        cart_items: Sequence[CartItem],
        buyer_id: str,
        delivery_address: Optional[DeliveryAddress] = None,
    ) -> SplitResult:
        if not cart_items:
            raise EmptyCartError("Cannot check out an empty cart")

        currency = cart_items[0].product.unit_price.currency
        groups: dict[str, list[OrderItem]] = {}
        for item in cart_items:
            self._validate_item(item, currency)
            groups.setdefault(item.product.seller_id, []).append(
                OrderItem(
                    product_id=item.product.id,
                    name=item.product.name,
                    unit_price=item.product.unit_price,
                    quantity=item.quantity,
                )
            )

        sellers = {}
        for seller_id in groups:
            seller = self.seller_lookup(seller_id)
            if seller is None:
                raise SellerLookupError(f"Unknown seller {seller_id}")
            sellers[seller_id] = seller

        master_id = make_reference("MORD")
        tracking_id = make_reference("MTRK", length=6)

        sub_orders = []
        for index, (seller_id, items) in enumerate(groups.items(), start=1):
            seller = sellers[seller_id]
            fee = self.delivery_fee(seller, items, delivery_address)
            if fee.is_negative():
                raise ValidationError(f"Delivery fee for seller {seller_id} must not be negative")
            if fee.currency != currency:
                raise CurrencyMismatchError(f"Delivery fee for seller {seller_id} is in {fee.currency}, cart is in {currency}")
            sub_orders.append(SubOrder(
                id=f"{master_id}-S{index}",
                master_order_id=master_id,
                seller_id=seller_id,
                seller_name=seller.name,
                items=items,
                delivery_fee=fee,
                tracking_id=f"{tracking_id}-S{index}",
            ))

        master = MasterOrder(
            id=master_id,
            buyer_id=buyer_id,
            tracking_id=tracking_id,
            sub_orders=sub_orders,
            created_at=datetime.now(timezone.utc),
            delivery_address=delivery_address,
            is_split_order=len(sub_orders) > 1,
            seller_count=len(sub_orders),
            currency=currency,
        )

        logger.info(
            f"Split cart for buyer {buyer_id} into {master.seller_count} sub-order(s), "
            f"master {master.id} total {master.total}"
        )
        return SplitResult(master_order=master, sub_orders=master.sub_orders)

    @staticmethod
    def _validate_item(item: CartItem, currency: str) -> None:
        if item.quantity <= 0:
            raise ValidationError(f"Quantity for product {item.product.id} must be positive, got {item.quantity}")
        price = item.product.unit_price
        if price.is_negative():
            raise ValidationError(f"Price for product {item.product.id} must not be negative")
        if price.currency != currency:
            raise CurrencyMismatchError(f"Product {item.product.id} is priced in {price.currency}, cart is in {currency}")
