"""
Payment provider clients.

The engine only needs two calls from a provider: initiate a payment (STK
push, card checkout session) and query its status. HttpPaymentProvider talks
to the payment gateway backend over HTTP; SandboxProvider settles payments
in memory and is used for local development and tests.
"""

import re
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from ledger.errors import ProviderError, ValidationError
from ledger.primitives import make_reference
from logging_config import get_logger

from .models import IntentStatus, PaymentIntent, PaymentMethod, ProviderStatusResponse

logger = get_logger(__name__)

# M-Pesa STK query result codes
RESULT_SUCCESS = "0"
RESULT_USER_CANCELLED = "1032"
RESULT_TIMEOUT = "1037"


def map_result_code(result_code: Optional[str], response_code: Optional[str] = None) -> IntentStatus:
    if result_code == RESULT_SUCCESS:
        return IntentStatus.SUCCESS
    if result_code in (RESULT_USER_CANCELLED, RESULT_TIMEOUT):
        return IntentStatus.FAILED
    if result_code is None or response_code == "0":
        return IntentStatus.PROCESSING
    return IntentStatus.FAILED


def parse_status(value: Optional[str]) -> IntentStatus:
    """Gateway status string; anything unrecognised is still processing."""
    try:
        return IntentStatus(value or IntentStatus.PROCESSING.value)
    except ValueError:
        logger.warning(f"Unknown provider status {value!r}, treating as processing")
        return IntentStatus.PROCESSING


def normalize_msisdn(phone: str) -> str:
    """Normalize a Kenyan mobile number to 2547XXXXXXXX / 2541XXXXXXXX."""
    cleaned = re.sub(r"\D", "", phone or "")
    if not cleaned:
        raise ValidationError("Phone number is required for mobile money payments")
    if cleaned.startswith("0"):
        cleaned = "254" + cleaned[1:]
    elif len(cleaned) == 9 and cleaned[0] in "17":
        cleaned = "254" + cleaned
    if not re.fullmatch(r"254[17]\d{8}", cleaned):
        raise ValidationError(f"Invalid Kenyan mobile number {phone!r} (e.g. 0712345678)")
    return cleaned


class PaymentProvider(ABC):
    name = "provider"

    @abstractmethod
    async def initiate(self, intent: PaymentIntent) -> str:
        """Start the payment with the provider and return its reference."""

    @abstractmethod
    async def poll_status(self, reference: str) -> ProviderStatusResponse:
        ...


class HttpPaymentProvider(PaymentProvider):
    def __init__(
        self,
        name: str,
        base_url: str,
        initiate_path: str,
        status_path: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.initiate_path = initiate_path
        self.status_path = status_path
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def initiate(self, intent: PaymentIntent) -> str:
        payload = {
            "orderId": intent.order_id,
            "intentId": intent.id,
            "amount": intent.amount.amount,
            "currency": intent.amount.currency,
            **intent.provider_params,
        }
        try:
            response = await self._get_client().post(self.initiate_path, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.name} initiation failed for intent {intent.id}: {e}") from e

        reference = data.get("checkoutRequestID") or data.get("reference")
        if not reference:
            raise ProviderError(f"{self.name} returned no reference for intent {intent.id}")
        logger.info(f"{self.name} initiated intent {intent.id} with reference {reference}")
        return reference

    async def poll_status(self, reference: str) -> ProviderStatusResponse:
        try:
            response = await self._get_client().get(self.status_path, params={"ref": reference})
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.name} status query failed for {reference}: {e}") from e
        except ValueError as e:
            raise ProviderError(f"{self.name} returned an unreadable status body for {reference}: {e}") from e
        if not isinstance(data, dict):
            raise ProviderError(f"{self.name} returned an unexpected status body for {reference}")

        result_code = data.get("resultCode")
        if result_code is not None:
            status = map_result_code(str(result_code), data.get("responseCode"))
        else:
            status = parse_status(data.get("status"))
        return ProviderStatusResponse(
            status=status,
            message=data.get("message") or data.get("resultDesc"),
            result_code=None if result_code is None else str(result_code),
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class SandboxProvider(PaymentProvider):
    """
    In-memory provider. Payments stay processing until settle() is called.

    fail_polls makes the next N status queries raise ProviderError, and
    initiate_error makes initiation fail, to exercise the error paths.
    """

    def __init__(self, name: str = "sandbox", prefix: str = "SIM"):
        self.name = name
        self.prefix = prefix
        self.statuses: dict[str, ProviderStatusResponse] = {}
        self.poll_counts: dict[str, int] = {}
        self.initiated: list[str] = []
        self.fail_polls = 0
        self.initiate_error: Optional[str] = None
        self.auto_settle: Optional[IntentStatus] = None

    async def initiate(self, intent: PaymentIntent) -> str:
        if self.initiate_error:
            raise ProviderError(self.initiate_error)
        reference = make_reference(self.prefix)
        status = self.auto_settle or IntentStatus.PROCESSING
        self.statuses[reference] = ProviderStatusResponse(status=status)
        self.initiated.append(reference)
        return reference

    def settle(self, reference: str, status: IntentStatus, result_code: Optional[str] = None) -> None:
        self.statuses[reference] = ProviderStatusResponse(status=status, result_code=result_code)

    async def poll_status(self, reference: str) -> ProviderStatusResponse:
        self.poll_counts[reference] = self.poll_counts.get(reference, 0) + 1
        if self.fail_polls > 0:
            self.fail_polls -= 1
            raise ProviderError(f"{self.name} unreachable")
        return self.statuses.get(reference, ProviderStatusResponse(status=IntentStatus.PROCESSING))


def build_http_providers(base_url: str, timeout: float = 10.0) -> dict[PaymentMethod, PaymentProvider]:
    return {
        PaymentMethod.MOBILE_MONEY: HttpPaymentProvider(
            "mpesa", base_url, "/api/payments/mpesa/stk", "/api/payments/mpesa/status", timeout
        ),
        PaymentMethod.CARD: HttpPaymentProvider(
            "card", base_url, "/api/payments/card/checkout", "/api/payments/card/status", timeout
        ),
    }
