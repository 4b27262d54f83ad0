"""
Payments Package

Payment intents per attempt, provider clients, and the status poller that
drives each intent to exactly one terminal outcome.
"""

from .dispatcher import PaymentIntentDispatcher
from .models import FailureReason, IntentStatus, PaymentIntent, PaymentMethod
from .poller import ProviderStatusPoller
from .providers import HttpPaymentProvider, PaymentProvider, SandboxProvider

__all__ = [
    "FailureReason",
    "HttpPaymentProvider",
    "IntentStatus",
    "PaymentIntent",
    "PaymentIntentDispatcher",
    "PaymentMethod",
    "PaymentProvider",
    "ProviderStatusPoller",
    "SandboxProvider",
]
