# services/payment_rail.py
"""
Payment rail adapter.

The rail is an external collaborator that moves net payout amounts to a
freelancer. Every call carries an idempotency key derived from the payout
id, so re-issuing a transfer after a crash can never pay twice: the rail
answers a repeated key with the original result.

Transport problems (timeouts, connection errors, 5xx, unreadable bodies)
come back as failed RailResult values and feed the payout retry policy;
they are never raised past this module.
"""
import hashlib
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

import requests

import config

logger = logging.getLogger(__name__)


def payout_idempotency_key(payout_id: int) -> str:
     """Stable idempotency token for a payout id (64-char hex)."""
     return hashlib.sha256(f"payout:{payout_id}".encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class TransferInstruction:
     payout_id: int
     freelancer_id: int
     net_amount: Decimal
     idempotency_key: str
     currency: str = "USD"


@dataclass(frozen=True)
class RailResult:
     """Outcome of one transfer attempt."""
     payout_id: int
     success: bool
     rail_transaction_id: Optional[str] = None
     error: Optional[str] = None


class PaymentRail(Protocol):
     def transfer(self, instruction: TransferInstruction) -> RailResult:
          ...


class HttpPaymentRail:
     """JSON-over-HTTP payment rail client."""

     def __init__(
          self,
          base_url: Optional[str] = None,
          api_key: Optional[str] = None,
          timeout: Optional[float] = None,
          session: Optional[requests.Session] = None,
     ):
          self.base_url = (base_url or config.PAYMENT_RAIL_URL or "").rstrip("/")
          self.api_key = api_key or config.PAYMENT_RAIL_API_KEY
          self.timeout = timeout or config.PAYMENT_RAIL_TIMEOUT
          self.session = session or requests.Session()

     def _headers(self, idempotency_key: str) -> dict:
          return {
               "Content-Type": "application/json",
               "Authorization": f"Bearer {self.api_key}",
               "Idempotency-Key": idempotency_key,
          }

     def transfer(self, instruction: TransferInstruction) -> RailResult:
          if not self.base_url:
               return RailResult(instruction.payout_id, False, error="PAYMENT_RAIL_URL is not set")

          payload = {
               "reference": f"PAYOUT-{instruction.payout_id}",
               "beneficiary_id": instruction.freelancer_id,
               "amount": {
                    "value": f"{instruction.net_amount:.2f}",
                    "currency": instruction.currency,
               },
          }
          try:
               response = self.session.post(
                    f"{self.base_url}/v1/transfers",
                    json=payload,
                    headers=self._headers(instruction.idempotency_key),
                    timeout=self.timeout,
               )
          except requests.RequestException as e:
               logger.warning(f"⚠️ RAIL_TRANSPORT_ERROR: payout {instruction.payout_id} - {e}")
               return RailResult(instruction.payout_id, False, error=f"transport error: {e}")

          if response.status_code not in (200, 201):
               logger.warning(
                    f"⚠️ RAIL_REJECTED: payout {instruction.payout_id} - HTTP {response.status_code}"
               )
               return RailResult(
                    instruction.payout_id,
                    False,
                    error=f"HTTP {response.status_code}: {response.text[:500]}",
               )

          try:
               data = response.json()
          except ValueError:
               data = None
          if not isinstance(data, dict):
               logger.warning(f"⚠️ RAIL_BAD_RESPONSE: payout {instruction.payout_id} - unparseable body")
               return RailResult(
                    instruction.payout_id,
                    False,
                    error=f"unparseable rail response: {response.text[:200]}",
               )
          if data.get("status") not in (None, "accepted", "settled", "completed"):
               return RailResult(
                    instruction.payout_id,
                    False,
                    error=f"rail status {data.get('status')}: {data.get('message', '')}",
               )
          return RailResult(
               instruction.payout_id,
               True,
               rail_transaction_id=str(data.get("id") or data.get("transaction_id") or ""),
          )
