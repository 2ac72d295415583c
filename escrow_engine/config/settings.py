# escrow_engine/config/settings.py

import os
from dataclasses import dataclass, field
from datetime import timedelta

from dotenv import load_dotenv

from escrow_engine.domain.cancellation import CancellationPolicy
from escrow_engine.domain.eligibility import EligibilityRules
from escrow_engine.domain.pricing import PricingConfig

load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class Settings:
    currency: str = "USD"
    razorpay_key_id: str | None = None
    razorpay_key_secret: str | None = None
    razorpay_webhook_secret: str | None = None

    gateway_timeout_seconds: float = 15.0
    gateway_max_attempts: int = 3
    gateway_backoff_seconds: float = 0.5

    # Re-read/re-apply attempts after an optimistic version mismatch.
    conflict_retries: int = 2

    max_instructions_length: int = 500

    pricing: PricingConfig = field(default_factory=PricingConfig)
    eligibility: EligibilityRules = field(default_factory=EligibilityRules)
    cancellation: CancellationPolicy = field(default_factory=CancellationPolicy)

    @classmethod
    def from_env(cls) -> "Settings":
        utc_offset = _env_int("LOCAL_UTC_OFFSET_MINUTES", 0)
        return cls(
            currency=os.getenv("CURRENCY", "USD"),
            razorpay_key_id=os.getenv("RAZORPAY_KEY_ID"),
            razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET"),
            razorpay_webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET"),
            gateway_timeout_seconds=_env_float("GATEWAY_TIMEOUT_SECONDS", 15.0),
            gateway_max_attempts=_env_int("GATEWAY_MAX_ATTEMPTS", 3),
            gateway_backoff_seconds=_env_float("GATEWAY_BACKOFF_SECONDS", 0.5),
            conflict_retries=_env_int("CONFLICT_RETRIES", 2),
            pricing=PricingConfig(utc_offset_minutes=utc_offset),
            eligibility=EligibilityRules(
                min_lead_time=timedelta(minutes=_env_int("MIN_LEAD_TIME_MINUTES", 30)),
                utc_offset_minutes=utc_offset,
            ),
        )
