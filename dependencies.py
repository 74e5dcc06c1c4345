# dependencies.py
"""
Shared FastAPI dependencies: bearer-token auth, role/party checks and the
payment rail used by payout processing.
"""
from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt
from sqlalchemy.orm import Session

import config
from database import get_session
from models import Contract
from services.payment_rail import HttpPaymentRail, PaymentRail
from services.payout_scheduler import PayoutScheduler

OPERATOR_ROLES = ("admin", "operator")


# Token Auth Dependency
def verify_token(request: Request) -> dict:
     auth = request.headers.get("Authorization")
     if not auth or not auth.startswith("Bearer "):
          raise HTTPException(status_code=401, detail="Missing token")
     token = auth.split(" ")[1]
     try:
          payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
          return payload
     except JWTError:
          raise HTTPException(status_code=403, detail="Invalid token")


def is_operator(token: dict) -> bool:
     return token.get("role") in OPERATOR_ROLES


def require_operator(token: dict = Depends(verify_token)) -> dict:
     """Only platform operators may touch payouts and corrections directly."""
     if not is_operator(token):
          raise HTTPException(
               status_code=status.HTTP_403_FORBIDDEN,
               detail="Operator role required"
          )
     return token


def require_party(token: dict, contract: Contract, *, client: bool = False, freelancer: bool = False) -> None:
     """
     Raise 403 unless the caller is allowed to act on the contract.

     With neither flag set, either party (or an operator) passes. With a
     flag set, only that side of the contract passes.
     """
     if is_operator(token) and not (client or freelancer):
          return
     user_id = token.get("id")
     allowed = []
     if client or not freelancer:
          allowed.append(contract.client_id)
     if freelancer or not client:
          allowed.append(contract.freelancer_id)
     if user_id not in allowed:
          raise HTTPException(
               status_code=status.HTTP_403_FORBIDDEN,
               detail="You do not have permission to act on this contract"
          )


# Overridden in tests with a fake rail
def get_payment_rail() -> PaymentRail:
     return HttpPaymentRail()


def get_payout_scheduler(
     db: Session = Depends(get_session),
     rail: PaymentRail = Depends(get_payment_rail),
) -> PayoutScheduler:
     return PayoutScheduler(db, rail=rail)
