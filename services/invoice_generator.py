# services/invoice_generator.py
"""
Invoice Generator - business logic for write-once invoices.

Invoices are a deterministic function of the triggering entity's final
state: the settled payout item for a milestone, or the full set of
milestone invoices for a completed contract. Each trigger has a unique
trigger_ref, so generating twice is rejected instead of duplicated.
Corrections are issued as new compensating invoices.
"""
import hashlib
import json
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from config import quantize_money
from models import Contract, ContractStatus, Invoice, InvoiceKind, Milestone, MilestoneStatus, Payout
from models.base import utcnow
from services import activity_log, escrow_ledger
from services.contract_lock import locked_contract
from services.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def milestone_trigger(milestone_id: int) -> str:
     return f"milestone:{milestone_id}"


def completion_trigger(contract_id: int) -> str:
     return f"contract:{contract_id}:completion"


def _money(amount: Decimal) -> str:
     return f"{quantize_money(amount):.2f}"


def compute_invoice_hash(trigger_ref: str, breakdown: dict) -> str:
     """SHA-256 over the trigger and canonical JSON breakdown."""
     canonical = json.dumps(breakdown, sort_keys=True, separators=(",", ":"))
     return hashlib.sha256(f"{trigger_ref}|{canonical}".encode("utf-8")).hexdigest()


def _current_milestones(db: Session, contract_id: int) -> list[Milestone]:
     db.flush()
     return (
          db.query(Milestone)
          .filter(Milestone.contract_id == contract_id)
          .order_by(Milestone.position)
          .populate_existing()
          .all()
     )


class InvoiceGenerator:
     """Service class for invoice-related business logic."""

     @staticmethod
     def get_by_trigger(db: Session, trigger_ref: str) -> Optional[Invoice]:
          return db.query(Invoice).filter(Invoice.trigger_ref == trigger_ref).first()

     @staticmethod
     def get_invoice(db: Session, invoice_id: int) -> Invoice:
          invoice = db.query(Invoice).filter(Invoice.id == invoice_id).first()
          if invoice is None:
               raise NotFoundError(f"Invoice with ID {invoice_id} not found", invoice_id=invoice_id)
          return invoice

     @staticmethod
     def list_for_contract(db: Session, contract_id: int) -> list[Invoice]:
          return (
               db.query(Invoice)
               .filter(Invoice.contract_id == contract_id)
               .order_by(Invoice.id)
               .all()
          )

     @staticmethod
     def allocate_fee(payout: Payout) -> dict[int, Decimal]:
          """
          Split a payout's fee across its items in proportion to amount.

          Rounded to cents; the last item absorbs the rounding remainder so
          the parts always add up to payout.fee_amount.
          """
          fee = quantize_money(payout.fee_amount or 0)
          gross = quantize_money(payout.gross_amount)
          shares: dict[int, Decimal] = {}
          remaining = fee
          items = list(payout.items)
          for index, item in enumerate(items):
               if index == len(items) - 1:
                    share = remaining
               elif gross == 0:
                    share = Decimal("0.00")
               else:
                    share = quantize_money(fee * item.amount / gross)
               shares[item.milestone_id] = share
               remaining -= share
          return shares

     @staticmethod
     def _store(
          db: Session,
          contract_id: int,
          kind: InvoiceKind,
          trigger_ref: str,
          gross: Decimal,
          fee: Decimal,
          breakdown: dict,
          created_at,
          milestone_id: Optional[int] = None,
          payout_id: Optional[int] = None,
          corrects_invoice_id: Optional[int] = None,
     ) -> Invoice:
          if InvoiceGenerator.get_by_trigger(db, trigger_ref) is not None:
               raise ValidationError("invoice already exists", trigger_ref=trigger_ref)

          invoice = Invoice(
               contract_id=contract_id,
               milestone_id=milestone_id,
               payout_id=payout_id,
               corrects_invoice_id=corrects_invoice_id,
               kind=kind,
               trigger_ref=trigger_ref,
               gross_amount=quantize_money(gross),
               fee_amount=quantize_money(fee),
               net_amount=quantize_money(gross - fee),
               breakdown=breakdown,
               invoice_hash=compute_invoice_hash(trigger_ref, breakdown),
               created_at=created_at,
          )
          db.add(invoice)
          db.flush()  # Flush to get the ID without committing

          activity_log.append(db, contract_id, activity_log.INVOICE_ISSUED, {
               "invoice_id": invoice.id,
               "kind": kind.value,
               "trigger_ref": trigger_ref,
               "gross": breakdown["gross"],
               "fee": breakdown["fee"],
               "net": breakdown["net"],
          })
          logger.info(f"🧾 INVOICE_ISSUED: {trigger_ref} id={invoice.id} net={invoice.net_amount}")
          return invoice

     @staticmethod
     def generate_for_milestone(db: Session, milestone: Milestone, payout: Payout, fee: Decimal) -> Invoice:
          """
          Issue the invoice for a released milestone whose payout settled.

          Args:
               db: SQLAlchemy database session
               milestone: The released milestone
               payout: The settled payout carrying the milestone
               fee: The milestone's share of the payout fee

          Raises:
               ValidationError: If the milestone already has an invoice
          """
          if milestone.status != MilestoneStatus.RELEASED:
               raise ValidationError(
                    f"Milestone {milestone.id} is not released",
                    milestone_id=milestone.id,
               )
          gross = quantize_money(milestone.amount)
          fee = quantize_money(fee)
          timestamp = payout.settled_at
          breakdown = {
               "contract_id": milestone.contract_id,
               "milestone_id": milestone.id,
               "title": milestone.title,
               "payout_id": payout.id,
               "rail_transaction_id": payout.rail_transaction_id,
               "gross": _money(gross),
               "fee": _money(fee),
               "net": _money(gross - fee),
               "settled_at": timestamp.isoformat(),
          }
          return InvoiceGenerator._store(
               db,
               contract_id=milestone.contract_id,
               kind=InvoiceKind.MILESTONE,
               trigger_ref=milestone_trigger(milestone.id),
               gross=gross,
               fee=fee,
               breakdown=breakdown,
               created_at=timestamp,
               milestone_id=milestone.id,
               payout_id=payout.id,
          )

     @staticmethod
     def generate_for_contract(db: Session, contract: Contract) -> Invoice:
          """
          Issue the completion invoice summarising a completed contract.

          Requires every released milestone to have its own invoice, so the
          completion totals are final.
          """
          if contract.status != ContractStatus.COMPLETED:
               raise ValidationError(
                    f"Contract {contract.id} is not completed",
                    contract_id=contract.id,
               )

          invoices = {
               inv.milestone_id: inv
               for inv in InvoiceGenerator.list_for_contract(db, contract.id)
               if inv.kind == InvoiceKind.MILESTONE
          }
          lines = []
          gross = Decimal("0")
          fee = Decimal("0")
          for milestone in _current_milestones(db, contract.id):
               line = {
                    "milestone_id": milestone.id,
                    "title": milestone.title,
                    "amount": _money(milestone.amount),
                    "status": milestone.status.value,
               }
               if milestone.status == MilestoneStatus.RELEASED:
                    invoice = invoices.get(milestone.id)
                    if invoice is None:
                         raise ValidationError(
                              f"Milestone {milestone.id} has not been invoiced yet",
                              contract_id=contract.id,
                              milestone_id=milestone.id,
                         )
                    line["invoice_id"] = invoice.id
                    line["fee"] = _money(invoice.fee_amount)
                    line["net"] = _money(invoice.net_amount)
                    gross += invoice.gross_amount
                    fee += invoice.fee_amount
               lines.append(line)

          timestamp = max(inv.created_at for inv in invoices.values())
          refunded = escrow_ledger.get_account(db, contract.id).refunded_total
          breakdown = {
               "contract_id": contract.id,
               "proposal_id": contract.proposal_id,
               "client_id": contract.client_id,
               "freelancer_id": contract.freelancer_id,
               "total_amount": _money(contract.total_amount),
               "refunded": _money(refunded),
               "milestones": lines,
               "gross": _money(gross),
               "fee": _money(fee),
               "net": _money(gross - fee),
               "completed_at": timestamp.isoformat(),
          }
          return InvoiceGenerator._store(
               db,
               contract_id=contract.id,
               kind=InvoiceKind.CONTRACT_COMPLETION,
               trigger_ref=completion_trigger(contract.id),
               gross=gross,
               fee=fee,
               breakdown=breakdown,
               created_at=timestamp,
          )

     @staticmethod
     def generate_completion_if_ready(db: Session, contract: Contract) -> Optional[Invoice]:
          """Issue the completion invoice once the last milestone invoice exists."""
          if contract.status != ContractStatus.COMPLETED:
               return None
          if InvoiceGenerator.get_by_trigger(db, completion_trigger(contract.id)) is not None:
               return None
          released = [m.id for m in _current_milestones(db, contract.id) if m.status == MilestoneStatus.RELEASED]
          invoiced = {
               milestone_id
               for (milestone_id,) in db.query(Invoice.milestone_id).filter(
                    Invoice.contract_id == contract.id,
                    Invoice.kind == InvoiceKind.MILESTONE,
               )
          }
          if not released or not set(released) <= invoiced:
               return None
          return InvoiceGenerator.generate_for_contract(db, contract)

     @staticmethod
     def issue_compensating_invoice(db: Session, invoice_id: int, adjustment: Decimal, reason: str) -> Invoice:
          """
          Correct an issued invoice by adding a new one; the original is never touched.

          The compensating invoice carries the signed adjustment to the net
          amount as its gross, with no fee.
          """
          original = InvoiceGenerator.get_invoice(db, invoice_id)
          adjustment = quantize_money(adjustment)
          if adjustment == 0:
               raise ValidationError("Adjustment must be non-zero", invoice_id=invoice_id)

          with locked_contract(db, original.contract_id):
               corrections = (
                    db.query(Invoice)
                    .filter(Invoice.corrects_invoice_id == original.id)
                    .count()
               )
               trigger_ref = f"invoice:{original.id}:correction:{corrections + 1}"
               breakdown = {
                    "corrects_invoice_id": original.id,
                    "corrects_trigger_ref": original.trigger_ref,
                    "reason": reason,
                    "original_net": _money(original.net_amount),
                    "adjustment": _money(adjustment),
                    "corrected_net": _money(original.net_amount + adjustment),
                    "gross": _money(adjustment),
                    "fee": _money(Decimal("0")),
                    "net": _money(adjustment),
               }
               invoice = InvoiceGenerator._store(
                    db,
                    contract_id=original.contract_id,
                    kind=InvoiceKind.COMPENSATING,
                    trigger_ref=trigger_ref,
                    gross=adjustment,
                    fee=Decimal("0"),
                    breakdown=breakdown,
                    created_at=utcnow(),
                    milestone_id=original.milestone_id,
                    corrects_invoice_id=original.id,
               )
          return invoice
