"""
Configuration for the settlement engine.

Values come from environment variables (a local .env file is loaded first).
Tests build Config(...) directly with short intervals instead of touching
the environment.
"""

import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv(override=False)


class Config(BaseModel):
    # Provider polling: query every POLL_INTERVAL_SECONDS, give up after
    # FALLBACK_COUNTDOWN_SECONDS. The countdown must exceed the provider SLA.
    poll_interval_seconds: float = Field(default=3.0, gt=0)
    fallback_countdown_seconds: float = Field(default=60.0, gt=0)
    max_payment_retries: int = Field(default=3, ge=1)

    # Wallet and cash-on-delivery settle without a provider after a short delay.
    wallet_settlement_delay_seconds: float = Field(default=1.5, ge=0)
    cod_settlement_delay_seconds: float = Field(default=1.0, ge=0)

    default_currency: str = "KES"
    flat_delivery_fee: int = Field(default=0, ge=0, description="Per-seller delivery fee in minor units")
    platform_fee_bps: int = Field(default=0, ge=0, le=10_000)
    platform_account_id: str = "platform"

    # "http" talks to the payment gateway backend, "sandbox" settles in memory.
    payment_provider: str = "http"
    payment_gateway_url: str = "http://localhost:8080"
    payment_gateway_timeout_seconds: float = Field(default=10.0, gt=0)

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        env = os.environ
        return cls(
            poll_interval_seconds=float(env.get("POLL_INTERVAL_SECONDS", "3.0")),
            fallback_countdown_seconds=float(env.get("FALLBACK_COUNTDOWN_SECONDS", "60.0")),
            max_payment_retries=int(env.get("MAX_PAYMENT_RETRIES", "3")),
            wallet_settlement_delay_seconds=float(env.get("WALLET_SETTLEMENT_DELAY_SECONDS", "1.5")),
            cod_settlement_delay_seconds=float(env.get("COD_SETTLEMENT_DELAY_SECONDS", "1.0")),
            default_currency=env.get("DEFAULT_CURRENCY", "KES"),
            flat_delivery_fee=int(env.get("FLAT_DELIVERY_FEE", "0")),
            platform_fee_bps=int(env.get("PLATFORM_FEE_BPS", "0")),
            platform_account_id=env.get("PLATFORM_ACCOUNT_ID", "platform"),
            payment_provider=env.get("PAYMENT_PROVIDER", "http").lower(),
            payment_gateway_url=env.get("PAYMENT_GATEWAY_URL", "http://localhost:8080"),
            payment_gateway_timeout_seconds=float(env.get("PAYMENT_GATEWAY_TIMEOUT_SECONDS", "10.0")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def logging_level(self) -> int:
        level = logging.getLevelName(self.log_level)
        return level if isinstance(level, int) else logging.INFO
