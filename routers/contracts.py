# routers/contracts.py
"""
Contract API routes.

Access:
- Client and freelancer of a contract: read it, cancel it, raise a dispute
- Client only: edit milestones before anything is funded
- Operators: everything readable, and contract creation on behalf of the client
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from database import get_session
from dependencies import is_operator, require_party, verify_token
from schemas.activity import ActivityEventResponse, ActivityListResponse
from schemas.common import ApiResponse
from schemas.contract import (
     ContractCancelRequest,
     ContractDisputeRequest,
     ContractSnapshot,
     EscrowVerification,
     MilestoneEditRequest,
     ProposalAccepted,
)
from services.contract_service import ContractService

router = APIRouter(prefix="/api/contracts", tags=["contracts"])


@router.post(
     "",
     response_model=ApiResponse[ContractSnapshot],
     status_code=status.HTTP_201_CREATED,
     summary="Create a contract from an accepted proposal"
)
def create_contract(
     proposal: ProposalAccepted,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     """
     Create a contract, its milestones and an empty escrow account.

     - **proposal_id**: the accepted proposal (one contract per proposal)
     - **agreed_amount**: must equal the sum of milestone amounts
     - **milestone_specs**: at least one, each with a positive amount
     """
     if not is_operator(token) and token.get("id") != proposal.client_id:
          raise HTTPException(
               status_code=status.HTTP_403_FORBIDDEN,
               detail="Only the client can accept a proposal"
          )
     contract = ContractService.create_contract(db, proposal)
     return ApiResponse.ok(ContractService.get_contract_snapshot(db, contract.id))


@router.get(
     "/{contract_id}",
     response_model=ApiResponse[ContractSnapshot],
     summary="Get a contract snapshot"
)
def get_contract(
     contract_id: int,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     require_party(token, ContractService.get_contract(db, contract_id))
     return ApiResponse.ok(ContractService.get_contract_snapshot(db, contract_id))


@router.patch(
     "/{contract_id}/milestones",
     response_model=ApiResponse[ContractSnapshot],
     summary="Edit milestones before funding"
)
def update_milestones(
     contract_id: int,
     body: MilestoneEditRequest,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     require_party(token, ContractService.get_contract(db, contract_id), client=True)
     ContractService.update_milestones(db, contract_id, body.edits)
     return ApiResponse.ok(ContractService.get_contract_snapshot(db, contract_id))


@router.post(
     "/{contract_id}/cancel",
     response_model=ApiResponse[ContractSnapshot],
     summary="Cancel a contract and refund locked funds"
)
def cancel_contract(
     contract_id: int,
     body: ContractCancelRequest,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     require_party(token, ContractService.get_contract(db, contract_id))
     ContractService.cancel_contract(db, contract_id, body.reason)
     return ApiResponse.ok(ContractService.get_contract_snapshot(db, contract_id))


@router.post(
     "/{contract_id}/dispute",
     response_model=ApiResponse[ContractSnapshot],
     summary="Raise a dispute and freeze the contract"
)
def dispute_contract(
     contract_id: int,
     body: ContractDisputeRequest,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     require_party(token, ContractService.get_contract(db, contract_id))
     ContractService.dispute_contract(db, contract_id, body.reason)
     return ApiResponse.ok(ContractService.get_contract_snapshot(db, contract_id))


@router.get(
     "/{contract_id}/activity",
     response_model=ApiResponse[ActivityListResponse],
     summary="Read the contract's activity stream"
)
def list_activity(
     contract_id: int,
     since_seq: int = Query(0, ge=0, description="Return events with seq greater than this"),
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     require_party(token, ContractService.get_contract(db, contract_id))
     events = [
          ActivityEventResponse.model_validate(event)
          for event in ContractService.list_activity(db, contract_id, since_seq)
     ]
     return ApiResponse.ok(ActivityListResponse(contract_id=contract_id, since_seq=since_seq, events=events))


@router.get(
     "/{contract_id}/escrow/verify",
     response_model=ApiResponse[EscrowVerification],
     summary="Verify the escrow ledger hash chain"
)
def verify_escrow(
     contract_id: int,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     require_party(token, ContractService.get_contract(db, contract_id))
     verified, message, checked = ContractService.verify_escrow(db, contract_id)
     return ApiResponse.ok(EscrowVerification(
          contract_id=contract_id,
          verified=verified,
          message=message,
          entries_checked=checked,
     ))
