# schemas/__init__.py
from .common import ApiResponse, ErrorDetail
from .contract import (
     MilestoneSpec,
     ProposalAccepted,
     MilestoneEdit,
     MilestoneEditRequest,
     ContractCancelRequest,
     ContractDisputeRequest,
     MilestoneResponse,
     EscrowAccountResponse,
     ContractSnapshot,
     EscrowVerification,
)
from .milestone import (
     CaptureConfirmation,
     FundMilestoneRequest,
     SubmitDeliverableRequest,
     RequestChangesRequest,
)
from .payout import PayoutItemResponse, PayoutResponse, PayoutListResponse
from .invoice import CompensatingInvoiceCreate, InvoiceResponse, InvoiceListResponse
from .activity import ActivityEventResponse, ActivityListResponse

__all__ = [
     "ApiResponse",
     "ErrorDetail",
     "MilestoneSpec",
     "ProposalAccepted",
     "MilestoneEdit",
     "MilestoneEditRequest",
     "ContractCancelRequest",
     "ContractDisputeRequest",
     "MilestoneResponse",
     "EscrowAccountResponse",
     "ContractSnapshot",
     "EscrowVerification",
     "CaptureConfirmation",
     "FundMilestoneRequest",
     "SubmitDeliverableRequest",
     "RequestChangesRequest",
     "PayoutItemResponse",
     "PayoutResponse",
     "PayoutListResponse",
     "CompensatingInvoiceCreate",
     "InvoiceResponse",
     "InvoiceListResponse",
     "ActivityEventResponse",
     "ActivityListResponse",
]
