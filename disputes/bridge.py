from enum import Enum
from typing import Optional

from pydantic import BaseModel

from ledger.errors import InvalidStateError
from ledger.escrow import EscrowReserveLedger
from ledger.models import ReserveStatus, SettlementReason
from logging_config import get_logger

logger = get_logger(__name__)


class DisputeOutcome(str, Enum):
    FAVOR_BUYER = "favor_buyer"
    FAVOR_SELLER = "favor_seller"


class Settlement(str, Enum):
    REFUND = "refund"
    RELEASE = "release"


SETTLED_MESSAGE = {
    Settlement.REFUND: "refunded to buyer",
    Settlement.RELEASE: "released to sellers",
}


class DisputeOpenedResponse(BaseModel):
    order_id: str
    frozen: bool
    message: str


class DisputeResolvedRequest(BaseModel):
    outcome: DisputeOutcome


class DisputeResolvedResponse(BaseModel):
    order_id: str
    settled: Settlement
    message: str


class DisputeBridge:
    """
    Boundary between the external dispute workflow and the escrow reserve.

    An opened dispute freezes the reserve so nothing can be settled; the
    resolution unfreezes it and performs exactly one refund or release.
    Duplicate notifications are acknowledged without touching the ledger.
    """

    def __init__(self, escrow: EscrowReserveLedger):
        self.escrow = escrow
        self.storage = escrow.storage

    def on_dispute_opened(self, order_id: str) -> DisputeOpenedResponse:
        self.escrow.orders.get(order_id)
        with self.storage.lock:
            status = self.escrow.status(order_id)
            if status == ReserveStatus.FROZEN:
                return DisputeOpenedResponse(order_id=order_id, frozen=True, message="Escrow already frozen")
            if status != ReserveStatus.HELD:
                logger.info(f"Dispute opened on order {order_id} with reserve {status.value}; nothing to freeze")
                return DisputeOpenedResponse(
                    order_id=order_id,
                    frozen=False,
                    message=f"No held escrow to freeze (reserve is {status.value})",
                )
            self.escrow.freeze(order_id)

        logger.info(f"Dispute opened on order {order_id}; escrow frozen")
        return DisputeOpenedResponse(order_id=order_id, frozen=True, message="Escrow frozen pending dispute resolution")

    def on_dispute_resolved(self, order_id: str, outcome: DisputeOutcome) -> DisputeResolvedResponse:
        outcome = DisputeOutcome(outcome)
        self.escrow.orders.get(order_id)
        settlement = Settlement.REFUND if outcome == DisputeOutcome.FAVOR_BUYER else Settlement.RELEASE

        with self.storage.lock:
            status = self.escrow.status(order_id)
            already = self._already_settled(status)
            if already is not None:
                if already != settlement:
                    raise InvalidStateError(
                        f"Order {order_id} was already settled by {already.value}; cannot apply {outcome.value}"
                    )
                return DisputeResolvedResponse(
                    order_id=order_id,
                    settled=already,
                    message=f"Escrow already settled by {already.value} (idempotent return)",
                )
            if status == ReserveStatus.NONE:
                raise InvalidStateError(f"Order {order_id} has no escrow to settle")

            if status == ReserveStatus.FROZEN:
                self.escrow.unfreeze(order_id)
            if settlement == Settlement.REFUND:
                self.escrow.refund(order_id, SettlementReason.DISPUTE_FAVOR_BUYER)
            else:
                self.escrow.release(order_id, SettlementReason.DISPUTE_FAVOR_SELLER)

        logger.info(f"Dispute on order {order_id} resolved {outcome.value}; escrow settled by {settlement.value}")
        return DisputeResolvedResponse(
            order_id=order_id,
            settled=settlement,
            message=f"Dispute resolved {outcome.value}; escrow {SETTLED_MESSAGE[settlement]}",
        )

    @staticmethod
    def _already_settled(status: ReserveStatus) -> Optional[Settlement]:
        if status == ReserveStatus.RELEASED:
            return Settlement.RELEASE
        if status == ReserveStatus.REFUNDED:
            return Settlement.REFUND
        return None
