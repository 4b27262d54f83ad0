from typing import Optional

from ledger.errors import OrderNotFoundError
from ledger.storage import InMemoryStorage

from .models import MasterOrder, SplitResult, SubOrder


class OrderRepository:
    """Master and sub-orders, each addressable by id. Orders are never deleted."""

    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.storage = storage or InMemoryStorage()

    def save(self, result: SplitResult) -> MasterOrder:
        master = result.master_order
        with self.storage.lock:
            self.storage.master_orders[master.id] = master
            for sub in master.sub_orders:
                self.storage.sub_orders[sub.id] = sub
        return master

    def get(self, order_id: str) -> MasterOrder:
        order = self.storage.master_orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    def get_sub_order(self, sub_order_id: str) -> SubOrder:
        sub = self.storage.sub_orders.get(sub_order_id)
        if sub is None:
            raise OrderNotFoundError(f"Sub-order {sub_order_id} not found")
        return sub

    def list_for_buyer(self, buyer_id: str) -> list[MasterOrder]:
        with self.storage.lock:
            orders = [o for o in self.storage.master_orders.values() if o.buyer_id == buyer_id]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders
