from typing import Optional

from config import Config
from disputes.bridge import DisputeBridge
from ledger.escrow import EscrowReserveLedger
from ledger.service import LedgerService
from ledger.storage import InMemoryStorage
from orders.reconciliation import OrderReconciler
from orders.repository import OrderRepository
from orders.splitter import OrderSplitter, SellerDirectory, flat_delivery_fee
from payments.dispatcher import PaymentIntentDispatcher
from payments.models import PaymentMethod
from payments.poller import ProviderStatusPoller
from payments.providers import PaymentProvider, SandboxProvider, build_http_providers


class SettlementEngine:
    """Wires every settlement service around one shared storage object."""

    def __init__(
        self,
        config: Optional[Config] = None,
        providers: Optional[dict[PaymentMethod, PaymentProvider]] = None,
        storage: Optional[InMemoryStorage] = None,
    ):
        self.config = config or Config()
        self.storage = storage or InMemoryStorage()
        self.sellers = SellerDirectory()

        self.ledger = LedgerService(self.storage, currency=self.config.default_currency)
        self.orders = OrderRepository(self.storage)
        self.escrow = EscrowReserveLedger(
            self.ledger,
            self.orders,
            platform_fee_bps=self.config.platform_fee_bps,
            platform_account_id=self.config.platform_account_id,
        )
        self.splitter = OrderSplitter(
            self.sellers,
            delivery_fee=flat_delivery_fee(self.config.flat_delivery_fee, self.config.default_currency),
            currency=self.config.default_currency,
        )
        self.providers = providers if providers is not None else self._default_providers()
        self.dispatcher = PaymentIntentDispatcher(
            self.ledger,
            self.escrow,
            self.providers,
            max_retries=self.config.max_payment_retries,
        )
        self.poller = ProviderStatusPoller(self.dispatcher, self.config)
        self.reconciler = OrderReconciler(self.orders, self.escrow, self.dispatcher, self.poller)
        self.disputes = DisputeBridge(self.escrow)

    def _default_providers(self) -> dict[PaymentMethod, PaymentProvider]:
        if self.config.payment_provider == "sandbox":
            return {
                PaymentMethod.MOBILE_MONEY: SandboxProvider("mpesa-sandbox", prefix="SIM"),
                PaymentMethod.CARD: SandboxProvider("card-sandbox", prefix="SIMCARD"),
            }
        return build_http_providers(self.config.payment_gateway_url, self.config.payment_gateway_timeout_seconds)

    async def shutdown(self) -> None:
        await self.poller.shutdown()
        for provider in self.providers.values():
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()
