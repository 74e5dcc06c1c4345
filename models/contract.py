# models/contract.py
import enum
from sqlalchemy import Column, Integer, String, Numeric, Enum
from sqlalchemy.orm import relationship
from .base import Base, TimestampMixin


class ContractStatus(str, enum.Enum):
     """Overall contract status."""
     ACTIVE = "ACTIVE"
     COMPLETED = "COMPLETED"
     CANCELLED = "CANCELLED"
     DISPUTED = "DISPUTED"


class Contract(TimestampMixin, Base):
     """
     Contract model - aggregate root created from an accepted proposal.

     Owns an ordered list of milestones (by position) and exactly one
     escrow account. Milestones refer back to the contract by id only.
     """
     __tablename__ = "contracts"

     id = Column(Integer, primary_key=True, autoincrement=True)
     proposal_id = Column(String(100), nullable=False, unique=True, index=True)

     # Parties
     client_id = Column(Integer, nullable=False, index=True)
     freelancer_id = Column(Integer, nullable=False, index=True)

     total_amount = Column(Numeric(12, 2), nullable=False)
     status = Column(
          Enum(ContractStatus, name="contract_status", create_constraint=True),
          default=ContractStatus.ACTIVE,
          nullable=False,
          index=True
     )
     cancel_reason = Column(String(500), nullable=True)

     # Relationships
     milestones = relationship(
          "Milestone",
          order_by="Milestone.position",
          cascade="all, delete-orphan",
     )
     escrow_account = relationship(
          "EscrowAccount",
          uselist=False,
          cascade="all, delete-orphan",
     )

     def __repr__(self):
          return f"<Contract(id={self.id}, total={self.total_amount}, status='{self.status.value}')>"

     @property
     def milestone_ids(self) -> list[int]:
          return [m.id for m in self.milestones]

     @property
     def is_active(self) -> bool:
          return self.status == ContractStatus.ACTIVE

     def is_party(self, user_id: int) -> bool:
          return user_id in (self.client_id, self.freelancer_id)
