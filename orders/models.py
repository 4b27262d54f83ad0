from datetime import datetime
from typing import Iterable, Optional

from pydantic import BaseModel, Field, computed_field

from ledger.primitives import Money, StatusEnum


class OrderStatus(StatusEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PACKED = "packed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @classmethod
    def terminal_values(cls) -> frozenset:
        return frozenset({"delivered", "cancelled"})


# Progress order used to derive the master status from its sub-orders.
STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.CONFIRMED: 1,
    OrderStatus.PACKED: 2,
    OrderStatus.SHIPPED: 3,
    OrderStatus.DELIVERED: 4,
}


def aggregate_status(statuses: Iterable[OrderStatus]) -> OrderStatus:
    """
    Coarse master status from per-seller statuses.

    Cancelled sub-orders are ignored unless every sub-order is cancelled; the
    remaining ones are summarised by the least advanced of them.
    """
    live = [s for s in statuses if s != OrderStatus.CANCELLED]
    if not live:
        return OrderStatus.CANCELLED
    return min(live, key=STATUS_RANK.__getitem__)


class Seller(BaseModel):
    id: str
    name: str = ""
    location: Optional[str] = None


class Product(BaseModel):
    id: str
    name: str = ""
    seller_id: str
    unit_price: Money
    unit: Optional[str] = None


class CartItem(BaseModel):
    product: Product
    quantity: int


class OrderItem(BaseModel):
    product_id: str
    name: str = ""
    unit_price: Money
    quantity: int

    @computed_field
    @property
    def line_total(self) -> Money:
        return self.unit_price * self.quantity


class DeliveryAddress(BaseModel):
    name: str = ""
    address: str = ""
    city: str = ""
    phone: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class StatusChange(BaseModel):
    status: OrderStatus
    changed_at: datetime
    actor_id: Optional[str] = None


class SubOrder(BaseModel):
    id: str
    master_order_id: str
    seller_id: str
    seller_name: str = ""
    items: list[OrderItem]
    delivery_fee: Money
    status: OrderStatus = OrderStatus.PENDING
    tracking_id: str
    status_history: list[StatusChange] = Field(default_factory=list)

    @computed_field
    @property
    def subtotal(self) -> Money:
        total = Money.zero(self.delivery_fee.currency)
        for item in self.items:
            total = total + item.line_total
        return total

    @computed_field
    @property
    def total(self) -> Money:
        return self.subtotal + self.delivery_fee


class MasterOrder(BaseModel):
    id: str
    buyer_id: str
    tracking_id: str
    sub_orders: list[SubOrder]
    created_at: datetime
    delivery_address: Optional[DeliveryAddress] = None
    is_split_order: bool
    seller_count: int
    currency: str

    @computed_field
    @property
    def status(self) -> OrderStatus:
        return aggregate_status(sub.status for sub in self.sub_orders)

    @computed_field
    @property
    def total(self) -> Money:
        total = Money.zero(self.currency)
        for sub in self.sub_orders:
            total = total + sub.total
        return total

    def get_sub_order(self, sub_order_id: str) -> Optional[SubOrder]:
        for sub in self.sub_orders:
            if sub.id == sub_order_id:
                return sub
        return None

    def involves(self, actor_id: str) -> bool:
        return actor_id == self.buyer_id or any(sub.seller_id == actor_id for sub in self.sub_orders)


class SplitResult(BaseModel):
    master_order: MasterOrder
    sub_orders: list[SubOrder]


class SplitRequest(BaseModel):
    buyer_id: str
    items: list[CartItem]
    delivery_address: Optional[DeliveryAddress] = None


class AdvanceSubOrderRequest(BaseModel):
    status: OrderStatus
    actor_id: Optional[str] = None


class ConfirmDeliveryRequest(BaseModel):
    actor_id: str
    sub_order_id: Optional[str] = None


class CancelOrderRequest(BaseModel):
    actor_id: str
    reason: Optional[str] = None


class DeliveryConfirmation(BaseModel):
    order_id: str
    status: OrderStatus
    released: bool
    amount: Money
    message: str


class CancellationResult(BaseModel):
    order_id: str
    status: OrderStatus
    refunded: bool
    amount: Money
    message: str
