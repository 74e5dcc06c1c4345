# models/milestone.py
"""
Milestone model - a priced unit of contracted work with its own approval
lifecycle. Status changes go through services.milestone_state_machine only.
"""
import enum
from sqlalchemy import (
     Column, Integer, String, Numeric, Date, Text, ForeignKey, Enum,
     CheckConstraint, UniqueConstraint,
)
from .base import Base, TimestampMixin


class MilestoneStatus(str, enum.Enum):
     """Milestone lifecycle states."""
     UPCOMING = "UPCOMING"
     FUNDED = "FUNDED"
     SUBMITTED = "SUBMITTED"
     REQUESTED_CHANGES = "REQUESTED_CHANGES"
     APPROVED = "APPROVED"
     RELEASED = "RELEASED"
     CANCELLED = "CANCELLED"


# Statuses whose amount is held as locked escrow
LOCKED_STATUSES = frozenset({
     MilestoneStatus.FUNDED,
     MilestoneStatus.SUBMITTED,
     MilestoneStatus.REQUESTED_CHANGES,
     MilestoneStatus.APPROVED,
})

TERMINAL_STATUSES = frozenset({MilestoneStatus.RELEASED, MilestoneStatus.CANCELLED})


class Milestone(TimestampMixin, Base):
     """Milestone row; contract_id is a plain id back-reference."""
     __tablename__ = "milestones"
     __table_args__ = (
          UniqueConstraint("contract_id", "position", name="uq_milestones_contract_position"),
          CheckConstraint("amount > 0", name="ck_milestones_positive_amount"),
     )

     id = Column(Integer, primary_key=True, autoincrement=True)
     contract_id = Column(
          Integer,
          ForeignKey("contracts.id", ondelete="CASCADE"),
          nullable=False,
          index=True
     )
     position = Column(Integer, nullable=False)
     title = Column(String(255), nullable=False)
     amount = Column(Numeric(12, 2), nullable=False)
     deadline = Column(Date, nullable=True)
     status = Column(
          Enum(MilestoneStatus, name="milestone_status", create_constraint=True),
          default=MilestoneStatus.UPCOMING,
          nullable=False,
          index=True
     )

     # Opaque reference to the uploaded deliverable (external storage)
     artifact_ref = Column(String(1000), nullable=True)
     # Reviewer note carried while status is REQUESTED_CHANGES
     change_note = Column(Text, nullable=True)

     def __repr__(self):
          return f"<Milestone(id={self.id}, contract_id={self.contract_id}, amount={self.amount}, status='{self.status.value}')>"

     @property
     def is_terminal(self) -> bool:
          return self.status in TERMINAL_STATUSES

     @property
     def holds_locked_funds(self) -> bool:
          return self.status in LOCKED_STATUSES
