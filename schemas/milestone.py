# schemas/milestone.py
"""
Pydantic schemas for milestone transitions.
"""
from decimal import Decimal
from pydantic import BaseModel, Field, ConfigDict


class CaptureConfirmation(BaseModel):
     """Confirmation from the payment processor that client funds were captured."""
     contract_id: int = Field(..., gt=0)
     milestone_id: int = Field(..., gt=0)
     amount: Decimal = Field(..., max_digits=12, decimal_places=2)
     capture_ref: str = Field(..., min_length=1, max_length=255, description="Processor capture reference")


class FundMilestoneRequest(BaseModel):
     amount: Decimal = Field(..., max_digits=12, decimal_places=2, description="Must equal the milestone amount")
     capture: CaptureConfirmation

     model_config = ConfigDict(
          json_schema_extra={
               "example": {
                    "amount": 500.00,
                    "capture": {
                         "contract_id": 1,
                         "milestone_id": 1,
                         "amount": 500.00,
                         "capture_ref": "CAP-8f2c1e"
                    }
               }
          }
     )


class SubmitDeliverableRequest(BaseModel):
     artifact_ref: str = Field(..., min_length=1, max_length=1000, description="Opaque reference to the uploaded artifact")


class RequestChangesRequest(BaseModel):
     note: str = Field(..., min_length=1, max_length=4000)
