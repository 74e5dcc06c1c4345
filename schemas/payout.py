# schemas/payout.py
"""
Pydantic schemas for payout status responses.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from pydantic import BaseModel, ConfigDict

from models.payout import PayoutStatus


class PayoutItemResponse(BaseModel):
     milestone_id: int
     contract_id: int
     amount: Decimal

     model_config = ConfigDict(from_attributes=True)


class PayoutResponse(BaseModel):
     id: int
     freelancer_id: int
     milestone_ids: List[int]
     items: List[PayoutItemResponse]
     gross_amount: Decimal
     fee_amount: Optional[Decimal] = None
     net_amount: Optional[Decimal] = None
     status: PayoutStatus
     retry_count: int
     next_attempt_at: Optional[datetime] = None
     last_error: Optional[str] = None
     rail_transaction_id: Optional[str] = None
     settled_at: Optional[datetime] = None

     model_config = ConfigDict(from_attributes=True)


class PayoutListResponse(BaseModel):
     payouts: List[PayoutResponse]
     total: int
