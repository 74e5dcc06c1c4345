# schemas/invoice.py
"""
Pydantic schemas for Invoice API request/response validation.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, List
from pydantic import BaseModel, Field, ConfigDict

from models.invoice import InvoiceKind


class CompensatingInvoiceCreate(BaseModel):
     """Schema for correcting an issued invoice with a new one."""
     adjustment: Decimal = Field(..., max_digits=12, decimal_places=2, description="Signed correction to the net amount")
     reason: str = Field(..., min_length=1, max_length=500)

     model_config = ConfigDict(
          json_schema_extra={
               "example": {
                    "adjustment": -25.00,
                    "reason": "Fee overcharged on milestone 3"
               }
          }
     )


class InvoiceResponse(BaseModel):
     """Schema for invoice response."""
     id: int
     contract_id: int
     milestone_id: Optional[int] = None
     payout_id: Optional[int] = None
     corrects_invoice_id: Optional[int] = None
     kind: InvoiceKind
     trigger_ref: str
     gross_amount: Decimal
     fee_amount: Decimal
     net_amount: Decimal
     breakdown: dict[str, Any]
     invoice_hash: str
     created_at: datetime

     model_config = ConfigDict(
          from_attributes=True,
          json_schema_extra={
               "example": {
                    "id": 1,
                    "contract_id": 1,
                    "milestone_id": 1,
                    "payout_id": 1,
                    "corrects_invoice_id": None,
                    "kind": "MILESTONE",
                    "trigger_ref": "milestone:1",
                    "gross_amount": 500.00,
                    "fee_amount": 10.00,
                    "net_amount": 490.00,
                    "breakdown": {"gross": "500.00", "fee": "10.00", "net": "490.00"},
                    "invoice_hash": "a1b2c3d4e5f6...",
                    "created_at": "2026-10-19T10:30:00"
               }
          }
     )


class InvoiceListResponse(BaseModel):
     """Schema for an invoice list response."""
     invoices: List[InvoiceResponse]
     total: int
