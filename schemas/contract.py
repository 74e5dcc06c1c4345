# schemas/contract.py
"""
Pydantic schemas for contract creation, editing and snapshots.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List
from pydantic import BaseModel, Field, ConfigDict

from models.contract import ContractStatus
from models.milestone import MilestoneStatus


class MilestoneSpec(BaseModel):
     """One milestone as agreed in the proposal."""
     title: str = Field(..., min_length=1, max_length=255)
     amount: Decimal = Field(..., max_digits=12, decimal_places=2, description="Milestone price (must be positive)")
     deadline: Optional[date] = None


class ProposalAccepted(BaseModel):
     """Accepted-proposal event that a contract is created from."""
     proposal_id: str = Field(..., min_length=1, max_length=100)
     client_id: int = Field(..., gt=0)
     freelancer_id: int = Field(..., gt=0)
     agreed_amount: Decimal = Field(..., max_digits=12, decimal_places=2)
     milestone_specs: List[MilestoneSpec] = Field(default_factory=list)

     model_config = ConfigDict(
          json_schema_extra={
               "example": {
                    "proposal_id": "PRP-1042",
                    "client_id": 7,
                    "freelancer_id": 19,
                    "agreed_amount": 1500.00,
                    "milestone_specs": [
                         {"title": "Wireframes", "amount": 500.00, "deadline": "2026-11-15"},
                         {"title": "Implementation", "amount": 1000.00, "deadline": "2026-12-20"}
                    ]
               }
          }
     )


class MilestoneEdit(BaseModel):
     """Change to one not-yet-funded milestone; omitted fields stay as they are."""
     milestone_id: int = Field(..., gt=0)
     title: Optional[str] = Field(None, min_length=1, max_length=255)
     amount: Optional[Decimal] = Field(None, max_digits=12, decimal_places=2)
     deadline: Optional[date] = None


class MilestoneEditRequest(BaseModel):
     edits: List[MilestoneEdit] = Field(..., min_length=1)


class ContractCancelRequest(BaseModel):
     reason: str = Field(..., min_length=1, max_length=500)


class ContractDisputeRequest(BaseModel):
     reason: str = Field(..., min_length=1, max_length=500)


class MilestoneResponse(BaseModel):
     id: int
     contract_id: int
     position: int
     title: str
     amount: Decimal
     deadline: Optional[date] = None
     status: MilestoneStatus
     artifact_ref: Optional[str] = None
     change_note: Optional[str] = None

     model_config = ConfigDict(from_attributes=True)


class EscrowAccountResponse(BaseModel):
     contract_id: int
     locked_total: Decimal
     released_total: Decimal
     refunded_total: Decimal
     funded_total: Decimal

     model_config = ConfigDict(from_attributes=True)


class ContractSnapshot(BaseModel):
     """Point-in-time view of a contract, its milestones and escrow account."""
     id: int
     proposal_id: str
     client_id: int
     freelancer_id: int
     total_amount: Decimal
     status: ContractStatus
     cancel_reason: Optional[str] = None
     milestone_ids: List[int]
     milestones: List[MilestoneResponse]
     escrow: EscrowAccountResponse
     taken_at: datetime

     model_config = ConfigDict(from_attributes=True)


class EscrowVerification(BaseModel):
     contract_id: int
     verified: bool
     message: str
     entries_checked: int
