# config.py
"""
Runtime configuration for the escrow engine.

All values come from environment variables (a local .env file is loaded
with python-dotenv). The fee schedule and payout retry policy are exposed
as small value objects so services and tests can inject their own.
"""
import os
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

CENTS = Decimal("0.01")


def quantize_money(amount) -> Decimal:
     """Round an amount to cents (half-up)."""
     return Decimal(str(amount)).quantize(CENTS, rounding=ROUND_HALF_UP)


class PayoutCadence(str, Enum):
     """How released funds are grouped into payouts."""
     IMMEDIATE = "immediate"
     PERIODIC = "periodic"


@dataclass(frozen=True)
class FeeSchedule:
     """
     Platform fee applied to a payout's gross amount.

     fee = max(gross * percent / 100 + flat, minimum), capped at gross.
     """
     percent: Decimal = Decimal("0")
     flat: Decimal = Decimal("0")
     minimum: Decimal = Decimal("0")

     def fee_for(self, gross: Decimal) -> Decimal:
          gross = quantize_money(gross)
          fee = quantize_money(gross * self.percent / Decimal("100") + self.flat)
          fee = max(fee, quantize_money(self.minimum))
          return min(fee, gross)


@dataclass(frozen=True)
class PayoutPolicy:
     """Grouping and retry behaviour for payouts."""
     cadence: PayoutCadence = PayoutCadence.PERIODIC
     max_retries: int = 3
     backoff_base_seconds: int = 60
     backoff_max_seconds: int = 3600
     # PROCESSING payouts older than this are re-issued with the same idempotency key
     processing_timeout_seconds: int = 900

     def backoff_seconds(self, attempt: int) -> int:
          """Delay before retry number `attempt` (1-based), doubling each time."""
          delay = self.backoff_base_seconds * (2 ** max(attempt - 1, 0))
          return min(delay, self.backoff_max_seconds)


def _env_decimal(name: str, default: str) -> Decimal:
     return Decimal(os.getenv(name, default))


# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# API
JWT_SECRET = os.getenv("JWT_SECRET", "change-me")
JWT_ALGORITHM = "HS256"
CORS_ORIGINS = [o for o in os.getenv("CORS_ORIGINS", "").split(",") if o]

# Payouts
FEE_SCHEDULE = FeeSchedule(
     percent=_env_decimal("PAYOUT_FEE_PERCENT", "0"),
     flat=_env_decimal("PAYOUT_FEE_FLAT", "0"),
     minimum=_env_decimal("PAYOUT_FEE_MINIMUM", "0"),
)
PAYOUT_POLICY = PayoutPolicy(
     cadence=PayoutCadence(os.getenv("PAYOUT_CADENCE", "periodic").lower()),
     max_retries=int(os.getenv("PAYOUT_MAX_RETRIES", "3")),
     backoff_base_seconds=int(os.getenv("PAYOUT_BACKOFF_BASE_SECONDS", "60")),
     backoff_max_seconds=int(os.getenv("PAYOUT_BACKOFF_MAX_SECONDS", "3600")),
     processing_timeout_seconds=int(os.getenv("PAYOUT_PROCESSING_TIMEOUT_SECONDS", "900")),
)
PAYOUT_INTERVAL_SECONDS = int(os.getenv("PAYOUT_INTERVAL_SECONDS", "300"))
PAYOUT_JOB_ENABLED = os.getenv("PAYOUT_JOB_ENABLED", "true").lower() == "true"

# Payment rail
PAYMENT_RAIL_URL = os.getenv("PAYMENT_RAIL_URL")
PAYMENT_RAIL_API_KEY = os.getenv("PAYMENT_RAIL_API_KEY")
PAYMENT_RAIL_TIMEOUT = float(os.getenv("PAYMENT_RAIL_TIMEOUT", "15"))

# Deliverable storage
AZURE_STORAGE_ACCOUNT = os.getenv("AZURE_STORAGE_ACCOUNT")
AZURE_STORAGE_KEY = os.getenv("AZURE_STORAGE_KEY")
DELIVERABLE_CONTAINER = os.getenv("DELIVERABLE_CONTAINER", "deliverables")
