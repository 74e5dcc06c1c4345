# routers/invoices.py
"""
Invoice API routes.

Invoices are generated by the engine when payouts settle; there is no
create/update/delete here. Corrections are new compensating invoices.
Role-based access:
- Client / freelancer: can view invoices of their own contracts
- Operator: can view all invoices and issue compensating invoices
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from database import get_session
from dependencies import require_operator, require_party, verify_token
from schemas.common import ApiResponse
from schemas.invoice import CompensatingInvoiceCreate, InvoiceListResponse, InvoiceResponse
from services.contract_service import ContractService
from services.invoice_generator import InvoiceGenerator

router = APIRouter(prefix="/api/invoices", tags=["invoices"])


@router.get(
     "/contract/{contract_id}",
     response_model=ApiResponse[InvoiceListResponse],
     summary="List invoices of a contract"
)
def list_contract_invoices(
     contract_id: int,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     """
     Get all invoices for a contract, oldest first.

     Includes milestone, completion and compensating invoices.
     """
     require_party(token, ContractService.get_contract(db, contract_id))
     invoices = InvoiceGenerator.list_for_contract(db, contract_id)
     return ApiResponse.ok(InvoiceListResponse(
          invoices=[InvoiceResponse.model_validate(inv) for inv in invoices],
          total=len(invoices),
     ))


@router.get(
     "/{invoice_id}",
     response_model=ApiResponse[InvoiceResponse],
     summary="Get invoice by ID"
)
def get_invoice(
     invoice_id: int,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     invoice = InvoiceGenerator.get_invoice(db, invoice_id)
     require_party(token, ContractService.get_contract(db, invoice.contract_id))
     return ApiResponse.ok(InvoiceResponse.model_validate(invoice))


@router.post(
     "/{invoice_id}/compensate",
     response_model=ApiResponse[InvoiceResponse],
     status_code=status.HTTP_201_CREATED,
     summary="Issue a compensating invoice"
)
def compensate_invoice(
     invoice_id: int,
     body: CompensatingInvoiceCreate,
     db: Session = Depends(get_session),
     token: dict = Depends(require_operator)
):
     """
     Correct an issued invoice without touching it.

     - **adjustment**: signed change to the original net amount
     - **reason**: shown on the compensating invoice
     """
     invoice = InvoiceGenerator.issue_compensating_invoice(db, invoice_id, body.adjustment, body.reason)
     return ApiResponse.ok(InvoiceResponse.model_validate(invoice))
