"""
Orders Package

Splits a multi-seller cart into a master order with one sub-order per seller
and reconciles order status with payment and delivery events.
"""

from .models import MasterOrder, OrderStatus, SubOrder, aggregate_status
from .reconciliation import OrderReconciler
from .repository import OrderRepository
from .splitter import OrderSplitter, SellerDirectory, flat_delivery_fee

__all__ = [
    "MasterOrder",
    "OrderReconciler",
    "OrderRepository",
    "OrderSplitter",
    "OrderStatus",
    "SellerDirectory",
    "SubOrder",
    "aggregate_status",
    "flat_delivery_fee",
]
