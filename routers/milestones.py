# routers/milestones.py
"""
Milestone transition routes.

Role-based access:
- Client: fund, request changes, approve
- Freelancer: submit deliverables
"""
from fastapi import APIRouter, BackgroundTasks, Depends, File, UploadFile
from sqlalchemy.orm import Session

import config
from config import PayoutCadence
from database import get_session
from dependencies import get_payment_rail, require_party, verify_token
from models import Contract, Milestone
from schemas.common import ApiResponse
from schemas.contract import MilestoneResponse
from schemas.milestone import FundMilestoneRequest, RequestChangesRequest, SubmitDeliverableRequest
from scheduler import process_payout_now
from services.contract_service import ContractService
from services.errors import EngineError, NotFoundError
from services.milestone_state_machine import MilestoneStateMachine
from services.payment_rail import PaymentRail
from services.payout_scheduler import PayoutScheduler
from storage import delete_deliverable, upload_deliverable

router = APIRouter(prefix="/api/milestones", tags=["milestones"])


def _contract_for_milestone(db: Session, milestone_id: int) -> Contract:
     contract_id = db.query(Milestone.contract_id).filter(Milestone.id == milestone_id).scalar()
     if contract_id is None:
          raise NotFoundError(f"Milestone with ID {milestone_id} not found", milestone_id=milestone_id)
     return ContractService.get_contract(db, contract_id)


@router.post(
     "/{milestone_id}/fund",
     response_model=ApiResponse[MilestoneResponse],
     summary="Fund a milestone into escrow"
)
def fund_milestone(
     milestone_id: int,
     body: FundMilestoneRequest,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     """
     Lock the milestone amount in escrow.

     - **amount**: must equal the milestone amount
     - **capture**: processor confirmation for this contract, milestone and amount
     """
     require_party(token, _contract_for_milestone(db, milestone_id), client=True)
     milestone = MilestoneStateMachine.fund(db, milestone_id, body.amount, body.capture)
     return ApiResponse.ok(MilestoneResponse.model_validate(milestone))


@router.post(
     "/{milestone_id}/submit",
     response_model=ApiResponse[MilestoneResponse],
     summary="Submit a deliverable reference"
)
def submit_deliverable(
     milestone_id: int,
     body: SubmitDeliverableRequest,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     require_party(token, _contract_for_milestone(db, milestone_id), freelancer=True)
     milestone = MilestoneStateMachine.submit_deliverable(db, milestone_id, body.artifact_ref)
     return ApiResponse.ok(MilestoneResponse.model_validate(milestone))


@router.post(
     "/{milestone_id}/deliverable",
     response_model=ApiResponse[MilestoneResponse],
     summary="Upload a deliverable file and submit it"
)
def upload_and_submit(
     milestone_id: int,
     file: UploadFile = File(...),
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     """
     Store the file in blob storage and submit its URL as the deliverable.

     The milestone state is checked before uploading; if the submit is
     still rejected (state changed meanwhile) the blob is removed again.
     """
     contract = _contract_for_milestone(db, milestone_id)
     require_party(token, contract, freelancer=True)
     MilestoneStateMachine.check_can_submit(db, milestone_id)
     artifact_ref = upload_deliverable(file, contract.id, milestone_id)
     try:
          milestone = MilestoneStateMachine.submit_deliverable(db, milestone_id, artifact_ref)
     except EngineError:
          delete_deliverable(artifact_ref)
          raise
     return ApiResponse.ok(MilestoneResponse.model_validate(milestone))


@router.post(
     "/{milestone_id}/request-changes",
     response_model=ApiResponse[MilestoneResponse],
     summary="Send a submission back with a note"
)
def request_changes(
     milestone_id: int,
     body: RequestChangesRequest,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     require_party(token, _contract_for_milestone(db, milestone_id), client=True)
     milestone = MilestoneStateMachine.request_changes(db, milestone_id, body.note)
     return ApiResponse.ok(MilestoneResponse.model_validate(milestone))


@router.post(
     "/{milestone_id}/approve",
     response_model=ApiResponse[MilestoneResponse],
     summary="Approve a submission and release its funds"
)
def approve_milestone(
     milestone_id: int,
     background_tasks: BackgroundTasks,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token),
     rail: PaymentRail = Depends(get_payment_rail)
):
     """
     Approve the milestone, release escrow and queue the payout.

     With the immediate cadence the payout is processed right after the
     response is sent; otherwise the periodic payout job picks it up.
     """
     require_party(token, _contract_for_milestone(db, milestone_id), client=True)
     milestone = MilestoneStateMachine.approve(db, milestone_id)
     if config.PAYOUT_POLICY.cadence == PayoutCadence.IMMEDIATE:
          payout = PayoutScheduler.active_payout_for_milestone(db, milestone_id)
          if payout is not None:
               background_tasks.add_task(process_payout_now, payout.id, rail)
     return ApiResponse.ok(MilestoneResponse.model_validate(milestone))
