import threading
from typing import Any


class InMemoryStorage:
    """
    Shared state for every settlement service.

    One instance is created per process and passed by reference to the
    ledger, the order repository and the payment dispatcher. Records are
    addressable by id; the transaction log is a list that is only ever
    appended to.
    """

    def __init__(self):
        self.lock = threading.RLock()
        self.master_orders: dict[str, Any] = {}
        self.sub_orders: dict[str, Any] = {}
        self.payment_intents: dict[str, Any] = {}
        self.intents_by_order: dict[str, list[str]] = {}
        self.reserve_entries: dict[str, Any] = {}
        self.reserves_by_order: dict[str, list[str]] = {}
        self.transactions: list[Any] = []
        self.idempotency_index: dict[str, Any] = {}
