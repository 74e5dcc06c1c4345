"""HTTP payment rail client against a stubbed requests session."""
from decimal import Decimal

import pytest
import requests

from services.payment_rail import HttpPaymentRail, TransferInstruction, payout_idempotency_key


class StubResponse:

     def __init__(self, status_code=200, body=None, text=None):
          self.status_code = status_code
          self._body = body
          self.text = text if text is not None else str(body)

     def json(self):
          if isinstance(self._body, Exception):
               raise self._body
          return self._body


class StubSession:
     """Records every POST and answers with queued responses (or raises them)."""

     def __init__(self, *responses):
          self.responses = list(responses)
          self.posts = []

     def post(self, url, json=None, headers=None, timeout=None):
          self.posts.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
          response = self.responses.pop(0)
          if isinstance(response, Exception):
               raise response
          return response


def _instruction(payout_id=42):
     return TransferInstruction(
          payout_id=payout_id,
          freelancer_id=19,
          net_amount=Decimal("490.00"),
          idempotency_key=payout_idempotency_key(payout_id),
     )


def _rail(session):
     return HttpPaymentRail(base_url="https://rail.example/", api_key="k-123", timeout=5, session=session)


def test_transfer_sends_idempotency_key_and_amount():
     session = StubSession(StubResponse(201, {"id": "tr_1", "status": "accepted"}))

     result = _rail(session).transfer(_instruction())

     assert result.success is True
     assert result.rail_transaction_id == "tr_1"
     post = session.posts[0]
     assert post["url"] == "https://rail.example/v1/transfers"
     assert post["headers"]["Idempotency-Key"] == payout_idempotency_key(42)
     assert post["headers"]["Authorization"] == "Bearer k-123"
     assert post["json"]["amount"] == {"value": "490.00", "currency": "USD"}
     assert post["timeout"] == 5


def test_reissue_reuses_the_same_key():
     session = StubSession(
          requests.Timeout("read timed out"),
          StubResponse(200, {"id": "tr_1", "status": "settled"}),
     )
     rail = _rail(session)

     first = rail.transfer(_instruction())
     second = rail.transfer(_instruction())

     assert first.success is False
     assert second.success is True
     keys = [post["headers"]["Idempotency-Key"] for post in session.posts]
     assert keys == [payout_idempotency_key(42)] * 2


def test_idempotency_key_differs_per_payout():
     assert payout_idempotency_key(1) != payout_idempotency_key(2)
     assert len(payout_idempotency_key(1)) == 64


@pytest.mark.parametrize("response, fragment", [
     (StubResponse(503, text="maintenance"), "HTTP 503"),
     (requests.ConnectionError("refused"), "transport error"),
     (StubResponse(200, ValueError("Expecting value"), text="<html>ok</html>"), "unparseable"),
     (StubResponse(200, ["not", "an", "object"]), "unparseable"),
     (StubResponse(200, {"status": "rejected", "message": "beneficiary blocked"}), "rejected"),
])
def test_bad_outcomes_become_failed_results(response, fragment):
     result = _rail(StubSession(response)).transfer(_instruction())

     assert result.success is False
     assert result.payout_id == 42
     assert fragment in result.error


def test_missing_url_fails_without_calling_out():
     session = StubSession()
     rail = HttpPaymentRail(base_url="", session=session)
     rail.base_url = ""

     result = rail.transfer(_instruction())

     assert result.success is False
     assert session.posts == []
