# models/payout.py
import enum
from sqlalchemy import (
     Column, Integer, String, Numeric, DateTime, ForeignKey, Enum, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from .base import Base, TimestampMixin


class PayoutStatus(str, enum.Enum):
     """Payout lifecycle states."""
     QUEUED = "QUEUED"
     PROCESSING = "PROCESSING"
     RETRY_PENDING = "RETRY_PENDING"
     SETTLED = "SETTLED"
     FAILED = "FAILED"


class Payout(TimestampMixin, Base):
     """
     Payout model - an aggregated transfer of released funds to one
     freelancer through the external payment rail.

     fee_amount / net_amount are fixed when processing starts; gross_amount
     grows while the payout is still QUEUED and collecting releases.
     """
     __tablename__ = "payouts"

     id = Column(Integer, primary_key=True, autoincrement=True)
     freelancer_id = Column(Integer, nullable=False, index=True)

     gross_amount = Column(Numeric(12, 2), nullable=False, default=0)
     fee_amount = Column(Numeric(12, 2), nullable=True)
     net_amount = Column(Numeric(12, 2), nullable=True)

     status = Column(
          Enum(PayoutStatus, name="payout_status", create_constraint=True),
          default=PayoutStatus.QUEUED,
          nullable=False,
          index=True
     )
     retry_count = Column(Integer, nullable=False, default=0)
     next_attempt_at = Column(DateTime, nullable=True, index=True)
     last_error = Column(Text, nullable=True)

     idempotency_key = Column(String(64), nullable=True, unique=True)
     rail_transaction_id = Column(String(255), nullable=True)
     settled_at = Column(DateTime, nullable=True)

     # Relationships
     items = relationship(
          "PayoutItem",
          back_populates="payout",
          order_by="PayoutItem.id",
          cascade="all, delete-orphan",
     )

     def __repr__(self):
          return f"<Payout(id={self.id}, freelancer_id={self.freelancer_id}, gross={self.gross_amount}, status='{self.status.value}')>"

     @property
     def milestone_ids(self) -> list[int]:
          return [item.milestone_id for item in self.items]

     @property
     def contract_ids(self) -> list[int]:
          return sorted({item.contract_id for item in self.items})


class PayoutItem(Base):
     """One released milestone contributing to a payout."""
     __tablename__ = "payout_items"
     __table_args__ = (
          UniqueConstraint("payout_id", "milestone_id", name="uq_payout_items_payout_milestone"),
     )

     id = Column(Integer, primary_key=True, autoincrement=True)
     payout_id = Column(
          Integer,
          ForeignKey("payouts.id", ondelete="CASCADE"),
          nullable=False,
          index=True
     )
     milestone_id = Column(Integer, ForeignKey("milestones.id"), nullable=False, index=True)
     contract_id = Column(Integer, ForeignKey("contracts.id"), nullable=False, index=True)
     release_entry_id = Column(Integer, ForeignKey("escrow_entries.id"), nullable=False)
     amount = Column(Numeric(12, 2), nullable=False)

     payout = relationship("Payout", back_populates="items")

     def __repr__(self):
          return f"<PayoutItem(payout_id={self.payout_id}, milestone_id={self.milestone_id}, amount={self.amount})>"
