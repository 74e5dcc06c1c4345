# routers/payouts.py
"""
Payout API routes.

- Freelancer: view own payouts
- Operator: list failed payouts, force processing, requeue failed payouts
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from database import get_session
from dependencies import get_payout_scheduler, is_operator, require_operator, verify_token
from schemas.common import ApiResponse
from schemas.payout import PayoutListResponse, PayoutResponse
from services.payout_scheduler import PayoutScheduler

router = APIRouter(prefix="/api/payouts", tags=["payouts"])


@router.get(
     "/failed",
     response_model=ApiResponse[PayoutListResponse],
     summary="List payouts that need operator action"
)
def list_failed_payouts(
     db: Session = Depends(get_session),
     token: dict = Depends(require_operator)
):
     payouts = PayoutScheduler.list_failed(db)
     return ApiResponse.ok(PayoutListResponse(
          payouts=[PayoutResponse.model_validate(p) for p in payouts],
          total=len(payouts),
     ))


@router.get(
     "/{payout_id}",
     response_model=ApiResponse[PayoutResponse],
     summary="Get payout status"
)
def get_payout_status(
     payout_id: int,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     payout = PayoutScheduler.get_payout(db, payout_id)
     if not is_operator(token) and token.get("id") != payout.freelancer_id:
          raise HTTPException(
               status_code=status.HTTP_403_FORBIDDEN,
               detail="You do not have permission to view this payout"
          )
     return ApiResponse.ok(PayoutResponse.model_validate(payout))


@router.post(
     "/{payout_id}/process",
     response_model=ApiResponse[PayoutResponse],
     summary="Attempt the payout now"
)
def process_payout(
     payout_id: int,
     token: dict = Depends(require_operator),
     scheduler: PayoutScheduler = Depends(get_payout_scheduler)
):
     """
     Issue the transfer immediately, ignoring any retry backoff.

     A SETTLED payout is returned unchanged. When this attempt exhausts
     the retry bound the payout is FAILED and the call answers 502.
     """
     payout = scheduler.process_payout(payout_id)
     return ApiResponse.ok(PayoutResponse.model_validate(payout))


@router.post(
     "/{payout_id}/requeue",
     response_model=ApiResponse[PayoutResponse],
     status_code=status.HTTP_201_CREATED,
     summary="Requeue a failed payout"
)
def requeue_payout(
     payout_id: int,
     token: dict = Depends(require_operator),
     scheduler: PayoutScheduler = Depends(get_payout_scheduler)
):
     payout = scheduler.requeue_failed_payout(payout_id)
     return ApiResponse.ok(PayoutResponse.model_validate(payout))
