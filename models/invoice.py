# models/invoice.py
"""
Invoice model - write-once billing documents.

An invoice is triggered either by a settled milestone payout
(trigger_ref "milestone:<id>") or by contract completion
(trigger_ref "contract:<id>:completion"). The unique trigger_ref makes
regeneration impossible; corrections are separate compensating invoices
that point at the original through corrects_invoice_id.
"""
import enum
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Enum, JSON, func
from .base import Base, utcnow


class InvoiceKind(str, enum.Enum):
     """What triggered the invoice."""
     MILESTONE = "MILESTONE"
     CONTRACT_COMPLETION = "CONTRACT_COMPLETION"
     COMPENSATING = "COMPENSATING"


class Invoice(Base):
     """Immutable invoice for a milestone release or a completed contract."""
     __tablename__ = "invoices"

     id = Column(Integer, primary_key=True, autoincrement=True)

     # Foreign keys
     contract_id = Column(
          Integer,
          ForeignKey("contracts.id", ondelete="RESTRICT"),
          nullable=False,
          index=True
     )
     milestone_id = Column(
          Integer,
          ForeignKey("milestones.id", ondelete="RESTRICT"),
          nullable=True,
          index=True
     )
     payout_id = Column(Integer, ForeignKey("payouts.id"), nullable=True, index=True)
     corrects_invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=True)

     kind = Column(
          Enum(InvoiceKind, name="invoice_kind", create_constraint=True),
          nullable=False,
          index=True
     )
     trigger_ref = Column(String(100), nullable=False, unique=True, index=True)

     # Invoice amounts
     gross_amount = Column(Numeric(12, 2), nullable=False)
     fee_amount = Column(Numeric(12, 2), nullable=False)
     net_amount = Column(Numeric(12, 2), nullable=False)
     breakdown = Column(JSON, nullable=False)
     invoice_hash = Column(String(64), nullable=False, unique=True)

     # Timestamps
     created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)

     def __repr__(self):
          return f"<Invoice(id={self.id}, trigger='{self.trigger_ref}', gross={self.gross_amount}, net={self.net_amount})>"
