# models/escrow.py
"""
Escrow custody models.

EscrowAccount holds the running totals for one contract. EscrowEntry is the
append-only, hash-chained record of every movement: each entry stores a
SHA-256 hash of its own fields and the previous entry's hash for the same
contract, forming one chain per contract. Entries are never updated or
deleted; only services.escrow_ledger writes either table.
"""
import enum
from sqlalchemy import (
     Column, Integer, String, Numeric, DateTime, ForeignKey, Enum, UniqueConstraint, func,
)
from .base import Base, TimestampMixin, utcnow


class EscrowEntryKind(str, enum.Enum):
     """Kinds of custody movement."""
     LOCK = "LOCK"
     RELEASE = "RELEASE"
     REFUND = "REFUND"


class EscrowAccount(TimestampMixin, Base):
     """Per-contract custody totals."""
     __tablename__ = "escrow_accounts"

     contract_id = Column(
          Integer,
          ForeignKey("contracts.id", ondelete="CASCADE"),
          primary_key=True
     )
     locked_total = Column(Numeric(12, 2), nullable=False, default=0)
     released_total = Column(Numeric(12, 2), nullable=False, default=0)
     refunded_total = Column(Numeric(12, 2), nullable=False, default=0)
     # Sum of every amount ever locked
     funded_total = Column(Numeric(12, 2), nullable=False, default=0)

     def __repr__(self):
          return (
               f"<EscrowAccount(contract_id={self.contract_id}, locked={self.locked_total}, "
               f"released={self.released_total}, refunded={self.refunded_total})>"
          )

     @property
     def is_balanced(self) -> bool:
          """locked + released + refunded must always equal everything funded."""
          return (
               self.locked_total + self.released_total + self.refunded_total
               == self.funded_total
          )


class EscrowEntry(Base):
     """
     Immutable escrow ledger entry.

     A RELEASE entry doubles as the release record consumed by the payout
     scheduler. The (milestone_id, kind) constraint makes each movement
     happen at most once per milestone.
     """
     __tablename__ = "escrow_entries"
     __table_args__ = (
          UniqueConstraint("milestone_id", "kind", name="uq_escrow_entries_milestone_kind"),
     )

     id = Column(Integer, primary_key=True, autoincrement=True)
     contract_id = Column(
          Integer,
          ForeignKey("contracts.id", ondelete="RESTRICT"),
          nullable=False,
          index=True
     )
     milestone_id = Column(
          Integer,
          ForeignKey("milestones.id", ondelete="RESTRICT"),
          nullable=False,
          index=True
     )
     kind = Column(
          Enum(EscrowEntryKind, name="escrow_entry_kind", create_constraint=True),
          nullable=False,
          index=True
     )
     amount = Column(Numeric(12, 2), nullable=False)
     freelancer_id = Column(Integer, nullable=False, index=True)
     capture_ref = Column(String(255), nullable=True)  # LOCK entries only

     transaction_hash = Column(String(64), nullable=False, unique=True, index=True)  # SHA-256 hex length
     previous_hash = Column(String(64), nullable=False, index=True)  # "0" for the first entry of a contract
     created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)

     def __repr__(self):
          return (
               f"<EscrowEntry(id={self.id}, kind='{self.kind.value}', milestone_id={self.milestone_id}, "
               f"amount={self.amount}, hash={self.transaction_hash[:16]}...)>"
          )
