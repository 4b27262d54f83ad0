import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from disputes.bridge import (
    DisputeOpenedResponse,
    DisputeResolvedRequest,
    DisputeResolvedResponse,
)
from ledger.errors import (
    LedgerServiceError,
    MaxRetriesExceededError,
    NotFoundError,
    PaymentError,
    SettlementError,
    ValidationError,
)
from ledger.models import FundWalletRequest, LedgerHistoryResponse, ReserveView, TransactionRecord, WalletBalance
from ledger.primitives import Money
from logging_config import get_logger, setup_logging
from orders.models import (
    AdvanceSubOrderRequest,
    CancellationResult,
    CancelOrderRequest,
    ConfirmDeliveryRequest,
    DeliveryConfirmation,
    MasterOrder,
    Seller,
    SplitRequest,
    SplitResult,
)
from payments.models import CreateIntentRequest, IntentResponse, StatusResponse

from api.engine import SettlementEngine

logger = get_logger(__name__)


def _http_error(e: SettlementError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    if isinstance(e, MaxRetriesExceededError):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"message": str(e), "next_steps": ["contact_support", "change_payment_method"]},
        )
    if isinstance(e, (LedgerServiceError, PaymentError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def create_app(engine: Optional[SettlementEngine] = None) -> FastAPI:
    engine = engine or SettlementEngine(Config.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Settlement API starting (payment provider: {engine.config.payment_provider})")
        yield
        await engine.shutdown()
        logger.info("Settlement API stopped")

    app = FastAPI(
        title="Farm Marketplace Settlement API",
        description="Order splitting, payment reconciliation and escrow settlement for a buyer-to-farmer marketplace",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "farm-settlement"}

    @app.post("/sellers", response_model=Seller, status_code=status.HTTP_201_CREATED, tags=["Orders"])
    def register_seller(seller: Seller) -> Seller:
        return engine.sellers.register(seller)

    @app.post("/orders/split", response_model=SplitResult, status_code=status.HTTP_201_CREATED, tags=["Orders"])
    def split_order(request: SplitRequest) -> SplitResult:
        try:
            result = engine.splitter.split(request.items, request.buyer_id, request.delivery_address)
        except SettlementError as e:
            raise _http_error(e)
        engine.orders.save(result)
        return result

    @app.get("/orders/{order_id}", response_model=MasterOrder, tags=["Orders"])
    def get_order(order_id: str) -> MasterOrder:
        try:
            return engine.orders.get(order_id)
        except SettlementError as e:
            raise _http_error(e)

    @app.get("/orders/{order_id}/escrow", response_model=ReserveView, tags=["Escrow"])
    def get_escrow(order_id: str) -> ReserveView:
        try:
            engine.orders.get(order_id)
            return engine.escrow.view(order_id)
        except SettlementError as e:
            raise _http_error(e)

    @app.post("/orders/{order_id}/sub-orders/{sub_order_id}/status", response_model=MasterOrder, tags=["Orders"])
    async def advance_sub_order(order_id: str, sub_order_id: str, request: AdvanceSubOrderRequest) -> MasterOrder:
        try:
            return engine.reconciler.advance_sub_order(order_id, sub_order_id, request.status, request.actor_id)
        except SettlementError as e:
            raise _http_error(e)

    @app.post("/orders/{order_id}/confirm-delivery", response_model=DeliveryConfirmation, tags=["Orders"])
    async def confirm_delivery(order_id: str, request: ConfirmDeliveryRequest) -> DeliveryConfirmation:
        try:
            return engine.reconciler.confirm_delivery(order_id, request.actor_id, request.sub_order_id)
        except SettlementError as e:
            raise _http_error(e)

    @app.post("/orders/{order_id}/cancel", response_model=CancellationResult, tags=["Orders"])
    async def cancel_order(order_id: str, request: CancelOrderRequest) -> CancellationResult:
        try:
            return engine.reconciler.cancel(order_id, request.actor_id, request.reason)
        except SettlementError as e:
            raise _http_error(e)

    @app.post("/payments/intents", response_model=IntentResponse, status_code=status.HTTP_201_CREATED, tags=["Payments"])
    async def create_intent(request: CreateIntentRequest) -> IntentResponse:
        try:
            amount = Money.of(request.amount, request.currency or engine.config.default_currency)
            intent = await engine.dispatcher.create_intent(request.order_id, amount, request.method, request.params)
        except SettlementError as e:
            raise _http_error(e)
        engine.poller.track(intent)
        return IntentResponse.from_intent(intent)

    @app.get("/payments/intents/{intent_id}", response_model=StatusResponse, tags=["Payments"])
    async def poll_status(intent_id: str) -> StatusResponse:
        try:
            return StatusResponse(intent_id=intent_id, status=engine.dispatcher.poll_status(intent_id))
        except SettlementError as e:
            raise _http_error(e)

    @app.get("/payments/intents/{intent_id}/details", response_model=IntentResponse, tags=["Payments"])
    async def get_intent(intent_id: str) -> IntentResponse:
        try:
            return IntentResponse.from_intent(engine.dispatcher.get_intent(intent_id))
        except SettlementError as e:
            raise _http_error(e)

    @app.post("/payments/intents/{intent_id}/cancel", response_model=IntentResponse, tags=["Payments"])
    async def cancel_intent(intent_id: str) -> IntentResponse:
        try:
            engine.dispatcher.get_intent(intent_id)
            engine.poller.cancel(intent_id)
            return IntentResponse.from_intent(engine.dispatcher.get_intent(intent_id))
        except SettlementError as e:
            raise _http_error(e)

    @app.post("/disputes/{order_id}/opened", response_model=DisputeOpenedResponse, tags=["Disputes"])
    async def notify_dispute_opened(order_id: str) -> DisputeOpenedResponse:
        try:
            return engine.disputes.on_dispute_opened(order_id)
        except SettlementError as e:
            raise _http_error(e)

    @app.post("/disputes/{order_id}/resolved", response_model=DisputeResolvedResponse, tags=["Disputes"])
    async def notify_dispute_resolved(order_id: str, request: DisputeResolvedRequest) -> DisputeResolvedResponse:
        try:
            return engine.disputes.on_dispute_resolved(order_id, request.outcome)
        except SettlementError as e:
            raise _http_error(e)

    @app.post("/wallets/{account_id}/fund", response_model=TransactionRecord, status_code=status.HTTP_201_CREATED, tags=["Wallets"])
    def fund_wallet(account_id: str, request: FundWalletRequest) -> TransactionRecord:
        try:
            amount = Money.of(request.amount, request.currency or engine.config.default_currency)
            return engine.ledger.fund_wallet(account_id, amount, request.reference)
        except SettlementError as e:
            raise _http_error(e)

    @app.get("/wallets/{account_id}/balance", response_model=WalletBalance, tags=["Wallets"])
    def get_wallet_balance(account_id: str, currency: Optional[str] = None) -> WalletBalance:
        return engine.ledger.get_balance(account_id, currency)

    @app.get("/wallets/{account_id}/transactions", response_model=LedgerHistoryResponse, tags=["Wallets"])
    def get_wallet_transactions(account_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        return engine.ledger.get_history(account_id, limit, offset)

    return app


setup_logging(log_level=Config.from_env().logging_level)
app = create_app()
handler = Mangum(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
